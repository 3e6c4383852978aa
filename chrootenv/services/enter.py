"""
Session orchestration: locate, mount, enter, tear down.

ChrootSession.run() performs one complete session:

1. Require root, locate and validate the chroot.
2. Install the TrapStack and register, in order, terminal restoration and
   (unless disabled) unmount-everything. Both fire together on every exit
   path, terminal first.
3. Apply the mount plan in dependency order, write the name marker, then
   the best-effort steps (group IDs, D-Bus, rc.local).
4. Run the SessionExecutor with the foreground or background launcher.
5. Fire the TrapStack. After a background fork the parent's stack is empty
   and the child fires the relocated one when its command exits.
"""
from __future__ import annotations

import logging
import os
import sys
import termios
from typing import Optional

from chrootenv.core.config import ChrootEnvSettings
from chrootenv.core.errors import ChrootEnvError, PreconditionError
from chrootenv.core.launch import BackgroundExecutor, CommandLauncher, ForegroundExecutor
from chrootenv.core.mounts import MountOperator, MountTable
from chrootenv.core.path_resolver import ChrootPathResolver
from chrootenv.core.session import SessionExecutor, SessionRequest
from chrootenv.core.traps import TrapStack
from chrootenv.services.groups import GroupIdReconciler
from chrootenv.services.host_services import run_rc_local, start_system_dbus, write_name_marker
from chrootenv.services.locator import ChrootEnvironment, locate_chroot, validate_chroot
from chrootenv.services.mount_plan import build_mount_plan, plan_placeholders

logger = logging.getLogger(__name__)


def require_root() -> None:
    if os.geteuid() != 0:
        raise PreconditionError("This command must be run as root")


def terminal_restorer(fd: Optional[int] = None):
    """
    Snapshot terminal attributes and return a callable restoring them.

    Returns a no-op when fd is not a terminal.
    """
    if fd is None:
        try:
            fd = sys.stdin.fileno()
        except (AttributeError, ValueError, OSError):
            fd = -1
    try:
        saved = termios.tcgetattr(fd) if fd >= 0 and os.isatty(fd) else None
    except termios.error:
        saved = None

    def restore() -> None:
        if saved is not None:
            termios.tcsetattr(fd, termios.TCSADRAIN, saved)

    return restore


class ChrootSession:
    """One enter-chroot invocation."""

    def __init__(
        self,
        settings: ChrootEnvSettings,
        request: SessionRequest,
        name: Optional[str] = None,
        traps: Optional[TrapStack] = None,
        mount_table: Optional[MountTable] = None,
        mount_runner=None,
    ) -> None:
        self._settings = settings
        self._request = request
        self._name = name
        self._traps = traps if traps is not None else TrapStack()
        self._mount_table = mount_table
        self._mount_runner = mount_runner
        self.environment: Optional[ChrootEnvironment] = None
        self.launcher: Optional[CommandLauncher] = None

    @property
    def traps(self) -> TrapStack:
        return self._traps

    def _mount_operator(self, resolver: ChrootPathResolver) -> MountOperator:
        kwargs = {"table": self._mount_table}
        if self._mount_runner is not None:
            kwargs["runner"] = self._mount_runner
        return MountOperator(resolver, **kwargs)

    def run(self) -> int:
        """
        Run the whole session.

        Returns:
            Guest exit code (0 in background mode once forked).
        """
        require_root()
        self.environment = locate_chroot(self._settings.chroots_dir, self._name)
        validate_chroot(self.environment)
        resolver = ChrootPathResolver(self.environment.root_path)
        operator = self._mount_operator(resolver)

        self._traps.install()
        try:
            self._traps.register("restore terminal state", terminal_restorer())
            if self._settings.no_unmount:
                logger.info("Automatic unmount disabled; mounts stay in place on exit")
            else:
                self._traps.register(
                    f"unmount chroot '{self.environment.name}'",
                    lambda: operator.unmount_all(retries=self._settings.unmount_retries),
                )

            self._prepare(resolver, operator)

            foreground = ForegroundExecutor(self.environment.root_path, self._traps)
            self._start_services(resolver, foreground)

            if self._request.background:
                self.launcher = BackgroundExecutor(self.environment.root_path, self._traps)
            else:
                self.launcher = foreground
            executor = SessionExecutor(
                resolver,
                self.launcher,
                setup_script=self._settings.setup_script,
            )
            return executor.run(self._request, max_setup_passes=self._settings.setup_max_passes)
        finally:
            self._traps.fire()
            self._traps.uninstall()

    def _prepare(self, resolver: ChrootPathResolver, operator: MountOperator) -> None:
        plan = build_mount_plan(
            self._settings,
            plan_placeholders(self.environment.name),
        )
        operator.apply_all(plan)
        write_name_marker(resolver, self.environment.name)

        try:
            reconciler = GroupIdReconciler(
                resolver.resolve("/etc/group"),
                [(m.host, m.guest) for m in self._settings.group_mappings],
            )
            reconciler.reconcile()
        except (OSError, ValueError, ChrootEnvError) as e:
            logger.warning(f"Group ID reconciliation failed: {e}")

    def _start_services(self, resolver: ChrootPathResolver, launcher: CommandLauncher) -> None:
        if self._settings.start_dbus:
            start_system_dbus(resolver, launcher)
        if self._settings.run_rc_local:
            run_rc_local(resolver, launcher)
