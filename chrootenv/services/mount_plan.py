"""
Mount plan assembly.

Turns the configured mount list into concrete MountSpecs for one chroot:
placeholders are substituted and testing overrides appended. Order is kept
exactly as configured, since later mounts depend on earlier ones.
"""
import logging
import os
from typing import Optional

from chrootenv.core.config import ChrootEnvSettings
from chrootenv.core.mounts import MountSpec

logger = logging.getLogger(__name__)

WEAK_RANDOM_MOUNT = MountSpec(source="/dev/urandom", target="/dev/random")


def plan_placeholders(name: str, kernel_release: Optional[str] = None) -> dict[str, str]:
    return {
        "name": name,
        "kernel_release": kernel_release or os.uname().release,
    }


def build_mount_plan(
    settings: ChrootEnvSettings,
    placeholders: dict[str, str],
) -> list[MountSpec]:
    """
    Build the ordered mount plan for a session.

    Args:
        settings: Loaded settings (mount list and testing flags).
        placeholders: Values for {placeholder} tokens in mount paths.

    Returns:
        MountSpecs in application order.
    """
    plan = [mount.resolve(placeholders) for mount in settings.mounts]
    if settings.weak_random:
        # Must follow the /dev bind so it lands on the guest's view of /dev
        logger.warning("Weak randomness enabled: /dev/random is bound to /dev/urandom")
        plan.append(WEAK_RANDOM_MOUNT)
    logger.debug(f"Mount plan has {len(plan)} entries")
    return plan
