"""
Best-effort guest services started on entry.

Nothing here may abort a session: failures are logged as warnings and the
session continues.
"""
import logging
import os

from chrootenv.core.launch import CommandLauncher
from chrootenv.core.path_resolver import ChrootPathResolver
from chrootenv.core.session import scrubbed_environment

logger = logging.getLogger(__name__)

NAME_MARKER_PATH = "/etc/chrootenv/name"
DBUS_DAEMON_PATH = "/usr/bin/dbus-daemon"
DBUS_PID_PATH = "/var/run/dbus/pid"
RC_LOCAL_PATH = "/etc/rc.local"


def write_name_marker(resolver: ChrootPathResolver, name: str) -> None:
    """Record the active chroot's name inside the guest."""
    marker = resolver.resolve(NAME_MARKER_PATH)
    marker.parent.mkdir(parents=True, exist_ok=True)
    marker.write_text(f"{name}\n", encoding="utf-8")
    logger.debug(f"Wrote name marker {marker}")


def start_system_dbus(resolver: ChrootPathResolver, launcher: CommandLauncher) -> bool:
    """
    Start the guest's system bus unless it is already running.

    Returns:
        True if the daemon was started.
    """
    if not resolver.resolve(DBUS_DAEMON_PATH).exists():
        logger.debug("No dbus-daemon in the chroot")
        return False
    if resolver.resolve(DBUS_PID_PATH).exists():
        logger.debug("Guest system D-Bus already running")
        return False

    resolver.resolve(os.path.dirname(DBUS_PID_PATH)).mkdir(parents=True, exist_ok=True)
    code = launcher.launch([DBUS_DAEMON_PATH, "--system", "--fork"], scrubbed_environment())
    if code != 0:
        logger.warning(f"Failed to start the guest system D-Bus (exit {code})")
        return False
    logger.info("Started guest system D-Bus")
    return True


def run_rc_local(resolver: ChrootPathResolver, launcher: CommandLauncher) -> bool:
    """Run the guest's /etc/rc.local if it is executable."""
    rc_local = resolver.resolve(RC_LOCAL_PATH)
    if not (rc_local.is_file() and os.access(rc_local, os.X_OK)):
        return False
    code = launcher.launch([RC_LOCAL_PATH], scrubbed_environment())
    if code != 0:
        logger.warning(f"{RC_LOCAL_PATH} failed in the chroot (exit {code})")
        return False
    return True
