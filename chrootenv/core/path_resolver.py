"""
Chroot Path Resolver - symlink-safe path canonicalization under a guest root.

Every mount target and every guest lookup goes through this resolver, so a
guest-controlled symlink can never make the host act on a path outside the
chroot.

RESOLUTION RULES:
=================

- Paths are guest paths: "/etc/passwd" means <root>/etc/passwd.
- Symlinks are followed one component at a time.
- An ABSOLUTE link target is re-rooted under <root>: a guest link
  "/etc/x -> /etc/shadow" resolves to <root>/etc/shadow, never the host file.
- ".." stops at <root>.
- Missing components are kept as-is, so the result can name a mount target
  that has not been created yet.
- Link hops are bounded by MAX_SYMLINK_HOPS; a cycle fails closed with
  PathResolutionError.

USAGE:
======

    resolver = ChrootPathResolver("/usr/local/chroots/jammy")
    resolver.resolve("/var/run/dbus")   # -> /usr/local/chroots/jammy/run/dbus
                                        #    when the guest has /var/run -> /run
"""
from __future__ import annotations

import errno
import logging
import os
from collections import deque
from pathlib import Path

from chrootenv.core.errors import PreconditionError

logger = logging.getLogger(__name__)

# Same bound the kernel uses before returning ELOOP
MAX_SYMLINK_HOPS = 40


class PathResolutionError(PreconditionError):
    """Raised when a guest path cannot be resolved inside the chroot."""

    def __init__(self, message: str, path: str, reason: str):
        super().__init__(message)
        self.path = path
        self.reason = reason


def _split(path: str) -> list[str]:
    return [part for part in path.split("/") if part and part != "."]


class ChrootPathResolver:
    """
    Resolves guest paths to host paths confined to a chroot root.

    The root itself is a host path and is canonicalized once with
    os.path.realpath; everything below it is resolved with guest semantics.
    """

    def __init__(self, root: str | os.PathLike, max_hops: int = MAX_SYMLINK_HOPS) -> None:
        self._root = os.path.realpath(os.fspath(root))
        self._max_hops = max_hops

    @property
    def root(self) -> Path:
        return Path(self._root)

    def contains(self, path: str | os.PathLike) -> bool:
        """Check whether a host path is the root or lies below it."""
        normalized = os.path.normpath(os.fspath(path))
        if self._root == "/":
            return normalized.startswith("/")
        return normalized == self._root or normalized.startswith(self._root + "/")

    def to_guest(self, path: str | os.PathLike) -> str:
        """Strip the root prefix from a host path already inside the chroot."""
        raw = os.fspath(path)
        if self._root != "/" and os.path.isabs(raw) and self.contains(raw):
            relative = os.path.relpath(os.path.normpath(raw), self._root)
            return "/" if relative == "." else "/" + relative
        return raw

    def resolve_host(self, path: str | os.PathLike) -> Path:
        """
        Re-resolve a host path that names something inside the root.

        Raises:
            PathResolutionError: If the path is not below the root.
        """
        raw = os.fspath(path)
        if not (os.path.isabs(raw) and self.contains(raw)):
            raise PathResolutionError(
                f"{raw} is not inside {self._root}",
                path=raw,
                reason="outside_root",
            )
        return self.resolve(self.to_guest(raw))

    def resolve(self, path: str | os.PathLike) -> Path:
        """
        Canonicalize a guest path under the root.

        The path is always read as a guest path, even when it happens to
        start with the root's host path; use resolve_host() for host paths.

        Args:
            path: Guest path, absolute or relative to the guest "/".

        Returns:
            Host path that is the root or a descendant of it.

        Raises:
            PathResolutionError: If following links exceeds the hop bound.
        """
        original = os.fspath(path)
        pending = deque(_split(original))
        resolved: list[str] = []
        hops = 0

        while pending:
            part = pending.popleft()
            if part == "..":
                if resolved:
                    resolved.pop()
                continue

            candidate = os.path.join(self._root, *resolved, part)
            try:
                target = os.readlink(candidate)
            except OSError as e:
                if e.errno not in (errno.EINVAL, errno.ENOENT, errno.ENOTDIR):
                    raise PathResolutionError(
                        f"Cannot inspect {candidate}: {e.strerror}",
                        path=original,
                        reason="unreadable",
                    ) from e
                # Not a link, or does not exist yet
                resolved.append(part)
                continue

            hops += 1
            if hops > self._max_hops:
                raise PathResolutionError(
                    f"Too many levels of symbolic links resolving {original} "
                    f"under {self._root}",
                    path=original,
                    reason="symlink_loop",
                )

            if target.startswith("/"):
                logger.debug(f"Re-rooting absolute link {candidate} -> {target}")
                resolved = []
            pending.extendleft(reversed(_split(target)))

        return Path(self._root, *resolved)
