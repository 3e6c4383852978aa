"""
Services package for chrootenv.

Contains guest-side services: chroot location, passwd/group data access
and hardware group reconciliation. Session orchestration lives in
chrootenv.services.enter.
"""
from .groups import GroupIdReconciler, GroupMapping
from .locator import ChrootEnvironment, locate_chroot, validate_chroot
from .passwd import GroupEntry, PasswdEntry, read_group, read_group_lines, read_passwd

__all__ = [
    "GroupIdReconciler",
    "GroupMapping",
    "ChrootEnvironment",
    "locate_chroot",
    "validate_chroot",
    "GroupEntry",
    "PasswdEntry",
    "read_group",
    "read_group_lines",
    "read_passwd",
]
