"""
Command launch strategies for the mount-isolated root.

Both strategies expose the same capability, launch(argv, env) -> int:

ForegroundExecutor
    Spawns the command with its root changed to the chroot and waits for
    it. Terminating signals are deferred on the session's TrapStack while
    the command runs.

BackgroundExecutor
    Forks a detached supervisor that owns the relocated TrapStack, re-binds
    the caller's original standard input, silences terminal outputs and
    runs the command through a ForegroundExecutor. The parent returns at
    once; cleanup happens in the child when the command exits.
"""
from __future__ import annotations

import logging
import os
import signal
import subprocess
from typing import Callable, Mapping, Optional, Protocol, Sequence

from chrootenv.core.traps import TrapStack

logger = logging.getLogger(__name__)

# Signals passed on to a running foreground command. SIGINT is not
# forwarded: the terminal already delivers it to the whole process group.
FORWARDED_SIGNALS = {signal.SIGHUP, signal.SIGTERM}


class CommandLauncher(Protocol):
    def launch(self, argv: Sequence[str], env: Mapping[str, str]) -> int:
        ...


def chroot_preexec(root: str) -> Callable[[], None]:
    """Create preexec_fn that enters the chroot before exec."""

    def enter_root() -> None:
        os.chroot(root)
        os.chdir("/")

    return enter_root


def _exit_code(returncode: int) -> int:
    if returncode < 0:
        return 128 + (-returncode)
    return returncode


class ForegroundExecutor:
    """Run a command inside the chroot and wait for it."""

    def __init__(self, root: str | os.PathLike, traps: TrapStack) -> None:
        self._root = os.fspath(root)
        self._traps = traps

    def launch(self, argv: Sequence[str], env: Mapping[str, str]) -> int:
        logger.info(f"CHROOT EXEC ({self._root}): {' '.join(argv)}")
        try:
            process = subprocess.Popen(
                list(argv),
                env=dict(env),
                preexec_fn=chroot_preexec(self._root),
            )
        except OSError as e:
            logger.error(f"Failed to launch {argv[0]} in {self._root}: {e}")
            return 127

        def forward(signum: int) -> None:
            if signum in FORWARDED_SIGNALS and process.poll() is None:
                process.send_signal(signum)

        with self._traps.deferred_signals(forward=forward):
            returncode = process.wait()
            # Ctrl-C reaches the whole process group; it only ends the
            # session if the command itself died of it
            if returncode != -signal.SIGINT:
                self._traps.discard_pending(signal.SIGINT)

        exit_code = _exit_code(returncode)
        logger.info(f"CHROOT RESULT: exit={exit_code}")
        return exit_code


class BackgroundExecutor:
    """Fork a detached supervisor that runs the command and owns cleanup."""

    def __init__(
        self,
        root: str | os.PathLike,
        traps: TrapStack,
        stdin_fd: int = 0,
        stdout_fd: int = 1,
        stderr_fd: int = 2,
    ) -> None:
        self._root = os.fspath(root)
        self._traps = traps
        self._stdin_fd = stdin_fd
        self._stdout_fd = stdout_fd
        self._stderr_fd = stderr_fd
        self._child_pid: Optional[int] = None

    @property
    def child_pid(self) -> Optional[int]:
        return self._child_pid

    def launch(self, argv: Sequence[str], env: Mapping[str, str]) -> int:
        """
        Fork and return immediately.

        Returns:
            0 once the child exists. The command's own exit code is only
            available through wait().
        """
        saved_stdin = os.dup(self._stdin_fd)
        stdout_tty = os.isatty(self._stdout_fd)
        stderr_tty = os.isatty(self._stderr_fd)
        relocated = self._traps.relocate()

        pid = os.fork()
        if pid:
            os.close(saved_stdin)
            self._child_pid = pid
            logger.info(f"Launched background session (pid {pid}): {' '.join(argv)}")
            return 0

        exit_code = 1
        try:
            signal.signal(signal.SIGINT, signal.SIG_IGN)
            signal.signal(signal.SIGHUP, signal.SIG_IGN)
            relocated.install(signals=(signal.SIGTERM,), use_atexit=False)
            os.dup2(saved_stdin, 0)
            os.close(saved_stdin)
            self._redirect_outputs(stdout_tty, stderr_tty)
            exit_code = ForegroundExecutor(self._root, relocated).launch(argv, env)
        except SystemExit as e:
            # Deferred SIGTERM: the trap stack already fired and chose the code
            exit_code = e.code if isinstance(e.code, int) else 1
        except BaseException as e:
            logger.error(f"Background session failed: {e}")
        finally:
            relocated.fire()
            os._exit(exit_code)

    def _redirect_outputs(self, stdout_tty: bool, stderr_tty: bool) -> None:
        if not (stdout_tty or stderr_tty):
            return
        devnull = os.open(os.devnull, os.O_WRONLY)
        try:
            if stdout_tty:
                os.dup2(devnull, self._stdout_fd)
            if stderr_tty:
                os.dup2(self._stdout_fd if stdout_tty else devnull, self._stderr_fd)
        finally:
            os.close(devnull)

    def wait(self) -> int:
        """Reap the background child and return its exit code."""
        if self._child_pid is None:
            raise RuntimeError("No background session has been launched")
        _, status = os.waitpid(self._child_pid, 0)
        self._child_pid = None
        return _exit_code(os.waitstatus_to_exitcode(status))
