"""
Flat passwd/group file access.

Guest account data lives in the chroot's own /etc/passwd and /etc/group,
which the host's pwd/grp modules cannot read, so the colon-delimited
records are parsed here directly.
"""
from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Iterable, Optional, Union

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PasswdEntry:
    """One /etc/passwd record."""
    name: str
    uid: int
    gid: int
    gecos: str
    home: str
    shell: str


@dataclass
class GroupEntry:
    """
    One /etc/group record.

    Records read from a file keep their original line in ``raw`` so that a
    rewrite reproduces them exactly unless their GID was changed.
    """
    name: str
    password: str
    gid: int
    members: list[str] = field(default_factory=list)
    raw: Optional[str] = field(default=None, repr=False, compare=False)

    def to_line(self) -> str:
        return f"{self.name}:{self.password}:{self.gid}:{','.join(self.members)}"

    def render(self) -> str:
        """File text for this record, including its line ending."""
        if self.raw is None:
            return f"{self.to_line()}\n"
        body = self.raw.rstrip("\r\n")
        parts = body.split(":")
        if parts[2] == str(self.gid):
            return self.raw
        # Only the GID field changes; members and spacing stay as written
        parts[2] = str(self.gid)
        return ":".join(parts) + self.raw[len(body):]


# A group file line: a parsed record, or any other line kept verbatim
GroupLine = Union[str, GroupEntry]


def _records(path: Path, width: int) -> Iterable[list[str]]:
    for lineno, line in enumerate(path.read_text(encoding="utf-8").splitlines(), 1):
        if not line.strip() or line.startswith("#"):
            continue
        parts = line.split(":")
        if len(parts) != width:
            logger.debug(f"Skipping malformed line {lineno} in {path}")
            continue
        yield parts


def read_passwd(path: Union[str, os.PathLike]) -> list[PasswdEntry]:
    entries = []
    for parts in _records(Path(path), 7):
        try:
            entries.append(PasswdEntry(
                name=parts[0],
                uid=int(parts[2]),
                gid=int(parts[3]),
                gecos=parts[4],
                home=parts[5],
                shell=parts[6],
            ))
        except ValueError:
            logger.debug(f"Skipping passwd entry with non-numeric ids: {parts[0]}")
    return entries


def _parse_group_line(line: str) -> Optional[GroupEntry]:
    body = line.rstrip("\r\n")
    if not body.strip() or body.startswith("#"):
        return None
    parts = body.split(":")
    if len(parts) != 4:
        return None
    try:
        gid = int(parts[2])
    except ValueError:
        return None
    members = [m for m in parts[3].split(",") if m]
    return GroupEntry(name=parts[0], password=parts[1], gid=gid, members=members, raw=line)


def read_group_lines(path: Union[str, os.PathLike]) -> list[GroupLine]:
    """
    Read a group file line by line.

    Parsed records come back as GroupEntry; comments, blank lines, NIS
    "+" entries and anything malformed come back as the raw string, line
    ending included, so write_group() can pass them through untouched.
    """
    lines: list[GroupLine] = []
    for lineno, line in enumerate(Path(path).read_text(encoding="utf-8").splitlines(keepends=True), 1):
        entry = _parse_group_line(line)
        if entry is None:
            if line.strip() and not line.startswith("#"):
                logger.debug(f"Keeping unparsed line {lineno} in {path} as-is")
            lines.append(line)
        else:
            lines.append(entry)
    return lines


def read_group(path: Union[str, os.PathLike]) -> list[GroupEntry]:
    return [line for line in read_group_lines(path) if isinstance(line, GroupEntry)]


def write_group(path: Union[str, os.PathLike], lines: Iterable[GroupLine]) -> None:
    """Atomically replace a group file, keeping its permissions."""
    path = Path(path)
    mode = path.stat().st_mode & 0o7777 if path.exists() else 0o644
    content = ""
    for line in lines:
        if content and not content.endswith("\n"):
            content += "\n"
        content += line if isinstance(line, str) else line.render()
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
        os.chmod(tmp_name, mode)
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise


def find_user(
    entries: Iterable[PasswdEntry],
    name_or_uid: Union[str, int],
) -> Optional[PasswdEntry]:
    """Look up a user by name, or by uid (int or all-digit string)."""
    entries = list(entries)
    if isinstance(name_or_uid, int) or str(name_or_uid).isdigit():
        uid = int(name_or_uid)
        for entry in entries:
            if entry.uid == uid:
                return entry
        # Fall through: an all-digit string may still be a user name
    for entry in entries:
        if entry.name == str(name_or_uid):
            return entry
    return None
