"""
Chroot location and validation.

Maps a chroot name to its host-side root directory under chroots_dir and
checks that the directory looks like a usable guest root.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from chrootenv.core.errors import PreconditionError, UsageError
from chrootenv.core.path_resolver import ChrootPathResolver

logger = logging.getLogger(__name__)

_NAME_RE = re.compile(r"^[A-Za-z0-9_.+-]+$")

# Files a guest root must have before it can be entered
REQUIRED_GUEST_FILES = ("etc/passwd", "bin/sh")


@dataclass(frozen=True)
class ChrootEnvironment:
    """A chroot for the duration of one session. root_path never changes."""
    name: str
    root_path: Path


def validate_chroot_name(name: str) -> str:
    if not name or name in (".", "..") or not _NAME_RE.match(name):
        raise UsageError(f"Invalid chroot name: {name!r}")
    return name


def locate_chroot(chroots_dir: str | Path, name: Optional[str] = None) -> ChrootEnvironment:
    """
    Find the chroot to enter.

    Args:
        chroots_dir: Directory holding one subdirectory per chroot.
        name: Chroot name; None picks the first chroot (sorted by name).

    Raises:
        UsageError: If the name is not a plain directory name.
        PreconditionError: If the chroot (or any chroot) does not exist.
    """
    base = Path(chroots_dir)
    if not base.is_dir():
        raise PreconditionError(f"Chroots directory {base} does not exist")

    if name is None:
        candidates = sorted(p for p in base.iterdir() if p.is_dir() and not p.name.startswith("."))
        if not candidates:
            raise PreconditionError(f"No chroots found in {base}")
        root = candidates[0]
        logger.info(f"No chroot specified, using '{root.name}'")
        return ChrootEnvironment(name=root.name, root_path=root.resolve())

    validate_chroot_name(name)
    root = base / name
    if not root.is_dir():
        raise PreconditionError(f"Chroot '{name}' not found in {base}")
    return ChrootEnvironment(name=name, root_path=root.resolve())


def validate_chroot(environment: ChrootEnvironment) -> None:
    """Reject a root that is missing the files a guest needs."""
    resolver = ChrootPathResolver(environment.root_path)
    missing = [
        rel for rel in REQUIRED_GUEST_FILES
        if not resolver.resolve(rel).exists()
    ]
    if missing:
        raise PreconditionError(
            f"Chroot '{environment.name}' at {environment.root_path} is invalid or corrupt "
            f"(missing {', '.join(missing)})"
        )
