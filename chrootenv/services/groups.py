"""
Hardware-access group ID reconciliation.

Device nodes shared from the host (/dev/snd, /dev/dri, /dev/input, ...) are
group-owned by host GIDs. For guest users to keep access, selected guest
groups must carry the same GIDs as their host counterparts. For each
mapping:

1. Guest group already has the host GID -> nothing to do.
2. Another guest group holds that GID -> move it to the next free GID
   (linear probe upward, skipping GIDs any mapping still needs).
3. Set the guest group's GID, creating the group if it is missing.

Only records whose GID changes are rewritten; every other line of the
guest's /etc/group, comments and unparsed entries included, is kept as-is.
"""
from __future__ import annotations

import grp
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterable, Optional

from chrootenv.services.passwd import GroupEntry, read_group_lines, write_group

logger = logging.getLogger(__name__)

# Highest GID handed out when relocating a conflicting group
MAX_PROBE_GID = 65533


@dataclass(frozen=True)
class GroupMapping:
    """Transient pairing used during one reconciliation pass."""
    host_group_name: str
    guest_group_name: str
    host_gid: int


def _host_gid(name: str) -> int:
    return grp.getgrnam(name).gr_gid


class GroupIdReconciler:
    """Align guest group GIDs with the host's for a fixed table of groups."""

    def __init__(
        self,
        guest_group_path: str | Path,
        table: Iterable[tuple[str, str]],
        host_lookup: Callable[[str], int] = _host_gid,
    ) -> None:
        self._path = Path(guest_group_path)
        self._table = list(table)
        self._host_lookup = host_lookup

    def plan(self) -> list[GroupMapping]:
        """Resolve host GIDs. Host groups that don't exist are skipped."""
        mappings = []
        for host_name, guest_name in self._table:
            try:
                gid = self._host_lookup(host_name)
            except KeyError:
                logger.debug(f"Host group '{host_name}' does not exist, skipping")
                continue
            mappings.append(GroupMapping(host_name, guest_name, gid))
        return mappings

    def reconcile(self) -> bool:
        """
        Apply every mapping to the guest group file.

        Returns:
            True if the group file was changed.
        """
        mappings = self.plan()
        if not mappings:
            return False

        lines = read_group_lines(self._path)
        groups = [line for line in lines if isinstance(line, GroupEntry)]
        reserved = {m.host_gid for m in mappings}
        changed = False
        for mapping in mappings:
            if self._apply(groups, mapping, reserved):
                changed = True

        if changed:
            # Groups created above go after every existing line
            present = {id(line) for line in lines}
            lines.extend(g for g in groups if id(g) not in present)
            write_group(self._path, lines)
            logger.info(f"Updated guest group IDs in {self._path}")
        return changed

    def _apply(self, groups: list[GroupEntry], mapping: GroupMapping, reserved: set[int]) -> bool:
        target = _find(groups, mapping.guest_group_name)
        if target is not None and target.gid == mapping.host_gid:
            return False

        occupant = next((g for g in groups if g.gid == mapping.host_gid), None)
        if occupant is not None:
            new_gid = _next_free_gid(groups, mapping.host_gid + 1, reserved)
            logger.info(
                f"Moving guest group '{occupant.name}' from GID {occupant.gid} to {new_gid} "
                f"to make room for '{mapping.guest_group_name}'"
            )
            occupant.gid = new_gid

        if target is None:
            logger.info(f"Creating guest group '{mapping.guest_group_name}' with GID {mapping.host_gid}")
            groups.append(GroupEntry(name=mapping.guest_group_name, password="x", gid=mapping.host_gid))
        else:
            logger.info(
                f"Changing guest group '{target.name}' GID {target.gid} -> {mapping.host_gid}"
            )
            target.gid = mapping.host_gid
        return True


def _find(groups: list[GroupEntry], name: str) -> Optional[GroupEntry]:
    return next((g for g in groups if g.name == name), None)


def _next_free_gid(groups: list[GroupEntry], start: int, reserved: set[int]) -> int:
    used = {g.gid for g in groups} | reserved
    gid = start
    while gid in used:
        gid += 1
        if gid > MAX_PROBE_GID:
            raise ValueError(f"No free GID above {start - 1}")
    return gid
