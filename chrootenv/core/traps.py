"""
Cleanup trap stack.

A TrapStack owns the cleanup actions of one process: terminal restoration,
unmounting the chroot, and anything else acquired during a session. It is
fired exactly once, whichever way the process ends:

- normal return           (explicit fire() / context manager / atexit)
- error exit              (same paths, the exception still propagates)
- terminating signal      (handler fires, then exits with 128 + signum)

While a foreground command runs inside the chroot, terminating signals are
deferred (see deferred_signals) so the mounts are not torn down under the
running command; the signal is acted on once the command has returned.

When the session forks into the background, relocate() moves every action
into a new stack owned by the child and leaves the parent's stack empty.
"""
from __future__ import annotations

import atexit
import contextlib
import logging
import signal
import sys
from dataclasses import dataclass
from typing import Callable, Iterator, Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_SIGNALS = (signal.SIGINT, signal.SIGHUP, signal.SIGTERM)


@dataclass
class TrapAction:
    """A single cleanup action. Must be safe to run even if its resource was never acquired."""
    description: str
    callback: Callable[[], object]


class TrapStack:
    """Ordered cleanup actions fired at most once."""

    def __init__(self) -> None:
        self._actions: list[TrapAction] = []
        self._fired = False
        self._installed_signals: list[int] = []
        self._previous_handlers: dict[int, object] = {}
        self._atexit_registered = False
        self._deferring = False
        self._pending_signals: list[int] = []
        self._forward: Optional[Callable[[int], None]] = None

    def __enter__(self) -> "TrapStack":
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> None:
        self.fire()

    def __len__(self) -> int:
        return len(self._actions)

    @property
    def fired(self) -> bool:
        return self._fired

    @property
    def actions(self) -> list[TrapAction]:
        return list(self._actions)

    def register(self, description: str, callback: Callable[[], object]) -> None:
        """Append a cleanup action. Actions fire in registration order."""
        if self._fired:
            logger.warning(f"Trap already fired, running '{description}' immediately")
            self._run(TrapAction(description, callback))
            return
        self._actions.append(TrapAction(description, callback))
        logger.debug(f"Registered cleanup action: {description}")

    def fire(self) -> None:
        """
        Run every registered action once.

        The action list is detached before anything runs, so a re-entrant
        call (e.g. a signal arriving mid-cleanup) finds nothing left to do.
        """
        if self._fired:
            return
        self._fired = True
        actions, self._actions = self._actions, []
        for action in actions:
            self._run(action)

    @staticmethod
    def _run(action: TrapAction) -> None:
        try:
            logger.debug(f"Cleanup: {action.description}")
            action.callback()
        except Exception as e:
            logger.error(f"Cleanup action '{action.description}' failed: {e}")

    def relocate(self) -> "TrapStack":
        """
        Move all actions into a new, uninstalled stack.

        This stack is left empty and uninstalled, so firing it afterwards is
        a no-op; cleanup now belongs to whoever installs the returned stack.
        """
        relocated = TrapStack()
        relocated._actions, self._actions = self._actions, []
        self.uninstall()
        logger.debug(f"Relocated {len(relocated)} cleanup action(s)")
        return relocated

    # -------------------------------------------------------------------------
    # Process exit integration
    # -------------------------------------------------------------------------

    def install(
        self,
        signals: Sequence[int] = DEFAULT_SIGNALS,
        use_atexit: bool = True,
    ) -> None:
        """Make this stack the process exit handler."""
        for signum in signals:
            self._previous_handlers[signum] = signal.getsignal(signum)
            signal.signal(signum, self._handle_signal)
            self._installed_signals.append(signum)
        if use_atexit and not self._atexit_registered:
            atexit.register(self.fire)
            self._atexit_registered = True

    def uninstall(self) -> None:
        """Restore the signal handlers replaced by install() and drop the atexit hook."""
        for signum in self._installed_signals:
            previous = self._previous_handlers.get(signum)
            signal.signal(signum, previous if previous is not None else signal.SIG_DFL)
        self._installed_signals = []
        self._previous_handlers = {}
        if self._atexit_registered:
            atexit.unregister(self.fire)
            self._atexit_registered = False

    def _handle_signal(self, signum: int, frame) -> None:
        if self._deferring:
            logger.debug(f"Deferring signal {signum} until the command exits")
            if signum not in self._pending_signals:
                self._pending_signals.append(signum)
            if self._forward is not None:
                self._forward(signum)
            return
        self._terminate(signum)

    def _terminate(self, signum: int) -> None:
        logger.warning(f"Received signal {signum}, cleaning up")
        self.fire()
        sys.exit(128 + signum)

    @contextlib.contextmanager
    def deferred_signals(
        self,
        forward: Optional[Callable[[int], None]] = None,
    ) -> Iterator[None]:
        """
        Hold terminating signals while a foreground command runs.

        On leaving the block the first signal still pending, if any, fires
        the stack and exits. Signals dropped with discard_pending() inside
        the block are not acted on.

        Args:
            forward: Called with each deferred signal number, e.g. to pass
                it on to the running command.
        """
        self._deferring = True
        self._pending_signals = []
        self._forward = forward
        try:
            yield
        finally:
            self._deferring = False
            self._forward = None
            pending, self._pending_signals = self._pending_signals, []
        if pending:
            self._terminate(pending[0])

    def discard_pending(self, signum: int) -> bool:
        """Forget a deferred signal. Returns True if it was pending."""
        if signum not in self._pending_signals:
            return False
        self._pending_signals.remove(signum)
        logger.debug(f"Dropping deferred signal {signum}")
        return True
