"""
Mount orchestration for chroot environments.

Defines the declarative mount schema (MountSpec) and the MountOperator that
applies it under a ChrootPathResolver. Every operation is idempotent: a
target that is already a mount point is left alone, so entry can be
repeated (e.g. between setup-script passes) without double-mounting.

Mount-point membership is read from /proc/self/mountinfo rather than
os.path.ismount(), which cannot see a bind mount of the same filesystem.
"""
from __future__ import annotations

import logging
import os
import re
import subprocess
import time
from pathlib import Path
from typing import Callable, Iterable, Optional, Sequence

from pydantic import BaseModel, Field, field_validator, model_validator

from chrootenv.core.errors import ChrootEnvError, ExitCode
from chrootenv.core.path_resolver import ChrootPathResolver

logger = logging.getLogger(__name__)

MOUNTINFO_PATH = Path("/proc/self/mountinfo")

PROPAGATION_MODES = {"shared", "rshared", "slave", "rslave", "private", "rprivate"}
BIND_OPTIONS = PROPAGATION_MODES | {"recursive"}

CommandRunner = Callable[[Sequence[str]], None]


class MountError(ChrootEnvError):
    """Raised when a mount cannot be made.

    Mount failures are fatal and never retried; cleanup actions that were
    already registered still run.
    """

    exit_code = ExitCode.MOUNT


class MountSpec(BaseModel):
    """One required mount point inside the chroot."""

    kind: str = Field(default="bind", description="Mount kind: bind or tmpfs")
    source: Optional[str] = Field(default=None, description="Host path (bind only)")
    target: str = Field(description="Guest path, resolved under the chroot root")
    options: list[str] = Field(
        default_factory=list,
        description="bind: recursive and/or a propagation mode; tmpfs: mount options",
    )
    remount_options: list[str] = Field(
        default_factory=list,
        description="Extra flags applied with a bind remount (e.g. ro, exec)",
    )
    optional: bool = Field(
        default=False,
        description="If True, skip the mount when the source doesn't exist (don't fail)",
    )

    @field_validator("kind", mode="before")
    @classmethod
    def validate_kind(cls, value: str) -> str:
        normalized = (value or "bind").lower()
        if normalized not in {"bind", "tmpfs"}:
            raise ValueError("Mount kind must be 'bind' or 'tmpfs'")
        return normalized

    @field_validator("target")
    @classmethod
    def validate_target(cls, value: str) -> str:
        if not value.startswith("/"):
            raise ValueError(f"Mount target must be an absolute guest path: {value}")
        return value

    @model_validator(mode="after")
    def validate_kind_fields(self) -> "MountSpec":
        if self.kind == "bind":
            if not self.source:
                raise ValueError(f"Bind mount for {self.target} needs a source")
            unknown = set(self.options) - BIND_OPTIONS
            if unknown:
                raise ValueError(f"Unknown bind options for {self.target}: {sorted(unknown)}")
        elif self.remount_options:
            raise ValueError("remount_options only apply to bind mounts")
        return self

    def resolve(self, placeholders: dict[str, str]) -> "MountSpec":
        return MountSpec(
            kind=self.kind,
            source=_resolve_placeholders(self.source, placeholders) if self.source else None,
            target=_resolve_placeholders(self.target, placeholders),
            options=list(self.options),
            remount_options=list(self.remount_options),
            optional=self.optional,
        )


def _resolve_placeholders(value: str, placeholders: dict[str, str]) -> str:
    resolved = value
    for key, replacement in placeholders.items():
        resolved = resolved.replace(f"{{{key}}}", replacement)
    return resolved


def run_mount_command(cmd: Sequence[str]) -> None:
    """Run a mount/umount command, raising MountError on failure."""
    logger.debug(f"MOUNT CMD: {' '.join(cmd)}")
    env = os.environ.copy()
    env.setdefault("LC_ALL", "C")
    try:
        result = subprocess.run(list(cmd), capture_output=True, text=True, env=env)
    except OSError as e:
        raise MountError(f"Failed to run {cmd[0]}: {e}") from e
    if result.returncode != 0:
        detail = result.stderr.strip() or result.stdout.strip()
        raise MountError(f"{' '.join(cmd)} failed (exit {result.returncode}): {detail}")


# =============================================================================
# Mount table
# =============================================================================

def _unescape_mount_path(value: str) -> str:
    # mountinfo escapes space, tab, newline and backslash as \ooo
    return re.sub(r"\\([0-7]{3})", lambda m: chr(int(m.group(1), 8)), value)


class MountTable:
    """Read-only view of the kernel mount table."""

    def __init__(self, mountinfo_path: str | os.PathLike = MOUNTINFO_PATH) -> None:
        self._path = Path(mountinfo_path)

    def mount_points(self) -> set[str]:
        points: set[str] = set()
        text = self._path.read_text(encoding="utf-8", errors="replace")
        for line in text.splitlines():
            parts = line.split()
            if len(parts) < 5:
                continue
            points.add(os.path.normpath(_unescape_mount_path(parts[4])))
        return points

    def is_mount_point(self, path: str | os.PathLike) -> bool:
        return os.path.normpath(os.fspath(path)) in self.mount_points()

    def mounts_under(self, root: str | os.PathLike) -> list[Path]:
        """Mount points strictly below root, deepest first."""
        root_str = os.path.normpath(os.fspath(root))
        below = [
            point for point in self.mount_points()
            if point != root_str and os.path.commonpath([root_str, point]) == root_str
        ]
        below.sort(key=lambda p: (p.count("/"), len(p)), reverse=True)
        return [Path(p) for p in below]


# =============================================================================
# Mount operator
# =============================================================================

class MountOperator:
    """Apply bind and tmpfs mounts under a chroot root, idempotently."""

    def __init__(
        self,
        resolver: ChrootPathResolver,
        table: Optional[MountTable] = None,
        runner: CommandRunner = run_mount_command,
    ) -> None:
        self._resolver = resolver
        self._table = table or MountTable()
        self._runner = runner

    @property
    def resolver(self) -> ChrootPathResolver:
        return self._resolver

    @property
    def table(self) -> MountTable:
        return self._table

    def bind_mount(
        self,
        source: str,
        target: str,
        options: Iterable[str] = (),
        remount_options: Iterable[str] = (),
    ) -> bool:
        """
        Bind-mount a host path into the chroot.

        Args:
            source: Host path to bind.
            target: Guest path; resolved under the root before use.
            options: "recursive" and/or one propagation mode (e.g. "rshared").
            remount_options: Flags for a follow-up bind remount (e.g. "ro").

        Returns:
            True if a mount was made, False if the target was already mounted.
        """
        target_path = self._resolver.resolve(target)
        if self._table.is_mount_point(target_path):
            logger.debug(f"Already mounted: {target_path}")
            return False

        options = list(options)
        remount_options = list(remount_options)
        _prepare_target(target_path, is_directory=os.path.isdir(source))

        bind_flag = "--rbind" if "recursive" in options else "--bind"
        logger.info(f"Bind mount {source} -> {target_path}")
        self._runner(["mount", bind_flag, source, str(target_path)])

        for mode in options:
            if mode in PROPAGATION_MODES:
                self._runner(["mount", f"--make-{mode}", str(target_path)])

        if remount_options:
            flags = ",".join(["remount", "bind", *remount_options])
            self._runner(["mount", "-o", flags, str(target_path)])
        return True

    def tmpfs_mount(self, target: str, options: Iterable[str] = ()) -> bool:
        """
        Mount a fresh tmpfs inside the chroot.

        Returns:
            True if a mount was made, False if the target was already mounted.
        """
        target_path = self._resolver.resolve(target)
        if self._table.is_mount_point(target_path):
            logger.debug(f"Already mounted: {target_path}")
            return False

        _prepare_target(target_path, is_directory=True)
        flags = ",".join(["rw", *options])
        logger.info(f"tmpfs mount {target_path} ({flags})")
        self._runner(["mount", "-t", "tmpfs", "-o", flags, "tmpfs", str(target_path)])
        return True

    def apply(self, spec: MountSpec) -> bool:
        """Apply one MountSpec. FAIL-CLOSED for required mounts with a missing source."""
        if spec.kind == "tmpfs":
            return self.tmpfs_mount(spec.target, spec.options)

        if not os.path.exists(spec.source):
            if spec.optional:
                logger.debug(f"Skipping optional mount {spec.target}: {spec.source} (not found)")
                return False
            raise MountError(
                f"Mount source does not exist for {spec.target}: {spec.source}"
            )
        return self.bind_mount(spec.source, spec.target, spec.options, spec.remount_options)

    def apply_all(self, specs: Iterable[MountSpec]) -> int:
        """Apply specs in the given order. Returns the number of new mounts."""
        mounted = 0
        for spec in specs:
            if self.apply(spec):
                mounted += 1
        logger.info(f"Mount plan applied under {self._resolver.root}: {mounted} new mount(s)")
        return mounted

    def unmount_all(self, retries: int = 3, retry_delay: float = 0.2) -> list[str]:
        """
        Unmount everything below the chroot root, deepest first.

        Never raises: busy mounts are retried, then lazily detached, and
        whatever still fails is logged and returned.
        """
        failed: list[str] = []
        for point in self._table.mounts_under(self._resolver.root):
            if not self._unmount_one(str(point), retries, retry_delay):
                failed.append(str(point))
        if failed:
            logger.warning(f"Could not unmount {len(failed)} mount(s): {', '.join(failed)}")
        else:
            logger.info(f"Unmounted everything under {self._resolver.root}")
        return failed

    def _unmount_one(self, point: str, retries: int, retry_delay: float) -> bool:
        for attempt in range(retries):
            try:
                self._runner(["umount", point])
                return True
            except MountError as e:
                logger.debug(f"umount {point} attempt {attempt + 1} failed: {e}")
                time.sleep(retry_delay * (attempt + 1))
        try:
            self._runner(["umount", "-l", point])
            logger.warning(f"Lazily detached busy mount {point}")
            return True
        except MountError as e:
            logger.error(f"Failed to unmount {point}: {e}")
            return False


def _prepare_target(target: Path, is_directory: bool) -> None:
    try:
        if is_directory:
            target.mkdir(parents=True, exist_ok=True)
        else:
            target.parent.mkdir(parents=True, exist_ok=True)
            if not target.exists():
                target.touch(mode=0o644)
    except OSError as e:
        raise MountError(f"Cannot create mount target {target}: {e}") from e
