"""Tests for the name marker, guest D-Bus and rc.local."""
from pathlib import Path

import pytest

from chrootenv.core.path_resolver import ChrootPathResolver
from chrootenv.services.host_services import (
    DBUS_DAEMON_PATH,
    RC_LOCAL_PATH,
    run_rc_local,
    start_system_dbus,
    write_name_marker,
)


@pytest.fixture
def resolver(guest_root: Path) -> ChrootPathResolver:
    return ChrootPathResolver(guest_root)


def make_executable(path: Path) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n")
    path.chmod(0o755)


class TestNameMarker:
    """Recording the chroot name inside the guest."""

    def test_writes_marker(self, resolver: ChrootPathResolver, guest_root: Path) -> None:
        """The marker holds the chroot name."""
        write_name_marker(resolver, "jammy")
        assert (guest_root / "etc" / "chrootenv" / "name").read_text() == "jammy\n"

    def test_marker_stays_inside_root(
        self, resolver: ChrootPathResolver, guest_root: Path, tmp_path: Path
    ) -> None:
        """A guest link on the marker's directory cannot redirect the write."""
        outside = tmp_path / "outside"
        outside.mkdir()
        (guest_root / "etc" / "chrootenv").symlink_to(str(outside))
        write_name_marker(resolver, "jammy")
        assert list(outside.iterdir()) == []
        assert resolver.contains(resolver.resolve("/etc/chrootenv/name"))


class TestSystemDbus:
    """Starting the guest's system bus."""

    def test_no_daemon(self, resolver: ChrootPathResolver, fake_launcher_factory) -> None:
        """Nothing happens without dbus-daemon in the guest."""
        launcher = fake_launcher_factory()
        assert start_system_dbus(resolver, launcher) is False
        assert launcher.calls == []

    def test_starts_daemon(
        self, resolver: ChrootPathResolver, guest_root: Path, fake_launcher_factory
    ) -> None:
        """The daemon is launched with a scrubbed environment."""
        make_executable(guest_root / "usr" / "bin" / "dbus-daemon")
        launcher = fake_launcher_factory()
        assert start_system_dbus(resolver, launcher) is True
        argv, env = launcher.calls[0]
        assert argv == [DBUS_DAEMON_PATH, "--system", "--fork"]
        assert set(env) <= {"TERM"}
        assert (guest_root / "var" / "run" / "dbus").is_dir()

    def test_already_running(
        self, resolver: ChrootPathResolver, guest_root: Path, fake_launcher_factory
    ) -> None:
        """An existing pid file means the bus is up."""
        make_executable(guest_root / "usr" / "bin" / "dbus-daemon")
        pid = guest_root / "var" / "run" / "dbus" / "pid"
        pid.parent.mkdir(parents=True)
        pid.write_text("123\n")
        launcher = fake_launcher_factory()
        assert start_system_dbus(resolver, launcher) is False
        assert launcher.calls == []

    def test_failure_is_warning(
        self,
        resolver: ChrootPathResolver,
        guest_root: Path,
        fake_launcher_factory,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """A daemon that fails to start is logged, not raised."""
        make_executable(guest_root / "usr" / "bin" / "dbus-daemon")
        assert start_system_dbus(resolver, fake_launcher_factory(exit_codes=[1])) is False
        assert "D-Bus" in caplog.text


class TestRcLocal:
    """Running /etc/rc.local."""

    def test_runs_executable(
        self, resolver: ChrootPathResolver, guest_root: Path, fake_launcher_factory
    ) -> None:
        """An executable rc.local is run."""
        make_executable(guest_root / "etc" / "rc.local")
        launcher = fake_launcher_factory()
        assert run_rc_local(resolver, launcher) is True
        assert launcher.calls[0][0] == [RC_LOCAL_PATH]

    def test_skips_non_executable(
        self, resolver: ChrootPathResolver, guest_root: Path, fake_launcher_factory
    ) -> None:
        """A non-executable rc.local is ignored."""
        (guest_root / "etc" / "rc.local").write_text("exit 0\n")
        launcher = fake_launcher_factory()
        assert run_rc_local(resolver, launcher) is False
        assert launcher.calls == []

    def test_failure_is_warning(
        self,
        resolver: ChrootPathResolver,
        guest_root: Path,
        fake_launcher_factory,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """A failing rc.local is logged, not raised."""
        make_executable(guest_root / "etc" / "rc.local")
        assert run_rc_local(resolver, fake_launcher_factory(exit_codes=[1])) is False
        assert "rc.local" in caplog.text
