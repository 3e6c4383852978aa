"""
Pytest configuration and fixtures for chrootenv tests.

Provides fixtures for:
- A populated guest root under a temporary chroots directory
- A recording mount runner backed by a temporary mountinfo file
- A fake command launcher that records argv and environment

No test needs root: mount commands never reach the kernel and chroot entry
is patched out wherever a real process is spawned.
"""
from pathlib import Path
from typing import Callable, Optional, Sequence

import pytest

from chrootenv.core.mounts import MountError, MountTable

ENV_FLAGS = (
    "CHROOTENV_CONFIG",
    "CHROOTENV_CHROOTS_DIR",
    "CHROOTENV_NO_UNMOUNT",
    "CHROOTENV_WEAK_RANDOM",
)

GUEST_PASSWD = """\
root:x:0:0:root:/root:/bin/sh
daemon:x:1:1:daemon:/usr/sbin:/usr/sbin/nologin
# local accounts
alice:x:1000:1000:Alice,,,:/home/alice:/bin/sh
bob:x:1001:1001:Bob,,,:/home/bob:/bin/bash
"""

GUEST_GROUP = """\
root:x:0:
audio:x:29:alice
video:x:44:alice,bob
plugdev:x:46:alice
"""


def pytest_configure(config: pytest.Config) -> None:
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "unit: marks tests as unit tests (fast, no processes spawned)"
    )
    config.addinivalue_line(
        "markers",
        "process: marks tests that spawn or fork real processes"
    )
    config.addinivalue_line(
        "markers",
        "security: marks tests that check chroot containment"
    )


class RecordingRunner:
    """
    Stand-in for run_mount_command.

    Records every command and keeps a mountinfo file in sync, so MountTable
    sees the mounts this runner "made" and forgets the ones it unmounted.
    """

    def __init__(self, mountinfo: Path) -> None:
        self.mountinfo = mountinfo
        self.commands: list[list[str]] = []
        self.fail_when: Optional[Callable[[Sequence[str]], bool]] = None
        self._next_id = 100

    def __call__(self, cmd: Sequence[str]) -> None:
        cmd = list(cmd)
        self.commands.append(cmd)
        if self.fail_when is not None and self.fail_when(cmd):
            raise MountError(f"{' '.join(cmd)} failed (exit 32): simulated failure")

        if cmd[0] == "mount" and cmd[1] in ("--bind", "--rbind"):
            self._add(cmd[3])
        elif cmd[0] == "mount" and cmd[1] == "-t":
            self._add(cmd[-1])
        elif cmd[0] == "umount":
            self._remove(cmd[-1])

    @property
    def mounted_targets(self) -> list[str]:
        return [
            cmd[-1] for cmd in self.commands
            if cmd[0] == "mount" and cmd[1] in ("--bind", "--rbind", "-t")
        ]

    @property
    def unmounted(self) -> list[str]:
        return [cmd[-1] for cmd in self.commands if cmd[0] == "umount"]

    def _add(self, point: str) -> None:
        self._next_id += 1
        escaped = point.replace("\\", "\\134").replace(" ", "\\040")
        with open(self.mountinfo, "a", encoding="utf-8") as f:
            f.write(f"{self._next_id} 1 0:50 / {escaped} rw,relatime shared:1 - tmpfs tmpfs rw\n")

    def _remove(self, point: str) -> None:
        escaped = point.replace("\\", "\\134").replace(" ", "\\040")
        lines = self.mountinfo.read_text(encoding="utf-8").splitlines(keepends=True)
        kept = [line for line in lines if line.split()[4] != escaped]
        self.mountinfo.write_text("".join(kept), encoding="utf-8")


class FakeLauncher:
    """CommandLauncher that records launches instead of spawning processes."""

    def __init__(self, exit_codes: Sequence[int] = (0,), on_launch: Optional[Callable] = None) -> None:
        self.calls: list[tuple[list[str], dict[str, str]]] = []
        self._exit_codes = list(exit_codes)
        self._on_launch = on_launch

    def launch(self, argv: Sequence[str], env) -> int:
        self.calls.append((list(argv), dict(env)))
        if self._on_launch is not None:
            self._on_launch(list(argv))
        if len(self._exit_codes) > 1:
            return self._exit_codes.pop(0)
        return self._exit_codes[0]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep host chrootenv settings out of every test."""
    for name in ENV_FLAGS:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def chroots_dir(tmp_path: Path) -> Path:
    """Empty chroots directory."""
    path = tmp_path / "chroots"
    path.mkdir()
    return path


@pytest.fixture
def guest_root(chroots_dir: Path) -> Path:
    """A minimal but valid guest root named 'jammy'."""
    root = chroots_dir / "jammy"
    for directory in ("etc", "bin", "home/alice", "home/bob", "root", "tmp", "dev"):
        (root / directory).mkdir(parents=True)
    (root / "etc" / "passwd").write_text(GUEST_PASSWD)
    (root / "etc" / "group").write_text(GUEST_GROUP)
    shell = root / "bin" / "sh"
    shell.write_text("#!/bin/sh\n")
    shell.chmod(0o755)
    return root.resolve()


@pytest.fixture
def mountinfo(tmp_path: Path) -> Path:
    """Temporary mountinfo file holding the host root mount only."""
    path = tmp_path / "mountinfo"
    path.write_text("1 0 8:1 / / rw,relatime shared:1 - ext4 /dev/sda1 rw\n")
    return path


@pytest.fixture
def mount_table(mountinfo: Path) -> MountTable:
    return MountTable(mountinfo)


@pytest.fixture
def runner(mountinfo: Path) -> RecordingRunner:
    return RecordingRunner(mountinfo)


@pytest.fixture
def fake_launcher_factory():
    """Build FakeLauncher instances: fake_launcher_factory(exit_codes, on_launch)."""
    return FakeLauncher


@pytest.fixture
def host_dir(tmp_path: Path) -> Path:
    """A host directory usable as a bind-mount source."""
    path = tmp_path / "host"
    (path / "dev").mkdir(parents=True)
    (path / "media").mkdir()
    return path

