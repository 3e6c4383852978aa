"""
Session execution inside the mount-isolated root.

A session runs in exactly one of three modes:

INTERACTIVE_LOGIN
    Scrubbed environment (TERM only), then `su` to the target user. No
    command means the user's login shell; a command is passed through the
    login so profile sourcing applies.

DIRECT_EXEC
    Scrubbed environment, command vector executed as root with no privilege
    switch and no login shell. Used for host-privileged setup operations.

SETUP_SCRIPT
    Like DIRECT_EXEC with the fixed command `/bin/sh -e /prepare.sh`.
    Exit 0 with the script still present means "run me again"; a non-zero
    exit is fatal and never retried.

The actual process launch is delegated to a CommandLauncher strategy
(foreground or background) chosen by the caller.
"""
from __future__ import annotations

import logging
import os
import shlex
from enum import Enum
from typing import Mapping, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from chrootenv.core.errors import ChrootEnvError, ExitCode, PreconditionError, UsageError
from chrootenv.core.launch import CommandLauncher
from chrootenv.core.path_resolver import ChrootPathResolver
from chrootenv.services.passwd import PasswdEntry, find_user, read_passwd

logger = logging.getLogger(__name__)

SETUP_SCRIPT_PATH = "/prepare.sh"
LOGIN_SHELL = "/bin/sh"

# Accounts considered when no user is given
REGULAR_UID_MIN = 1000
REGULAR_UID_MAX = 59999


class SetupScriptError(ChrootEnvError):
    """Raised when the setup script exits non-zero."""

    exit_code = ExitCode.SETUP_SCRIPT


class SessionMode(Enum):
    INTERACTIVE_LOGIN = "login"
    DIRECT_EXEC = "exec"
    SETUP_SCRIPT = "setup"


class SessionRequest(BaseModel):
    """Caller intent for one session. Immutable once built."""

    model_config = ConfigDict(frozen=True)

    mode: SessionMode = SessionMode.INTERACTIVE_LOGIN
    user: Optional[Union[int, str]] = Field(default=None, description="Name or uid")
    command: tuple[str, ...] = Field(default_factory=tuple)
    background: bool = False

    @field_validator("user", mode="before")
    @classmethod
    def normalize_user(cls, value):
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @model_validator(mode="after")
    def validate_combination(self) -> "SessionRequest":
        if self.mode == SessionMode.DIRECT_EXEC and not self.command:
            raise ValueError("direct execution needs a command")
        if self.mode == SessionMode.SETUP_SCRIPT:
            if self.command:
                raise ValueError("the setup script takes no command")
            if self.background:
                raise ValueError("the setup script cannot run in the background")
        if self.background and self.mode == SessionMode.INTERACTIVE_LOGIN and not self.command:
            raise ValueError("an interactive shell cannot run in the background")
        return self

    @classmethod
    def build(cls, **kwargs) -> "SessionRequest":
        """Construct a request, reporting bad combinations as UsageError."""
        try:
            return cls(**kwargs)
        except ValidationError as e:
            messages = "; ".join(err["msg"].removeprefix("Value error, ") for err in e.errors())
            raise UsageError(messages) from e


def scrubbed_environment(term: Optional[str] = None) -> dict[str, str]:
    """Empty environment except for the terminal type."""
    term = term if term is not None else os.environ.get("TERM")
    return {"TERM": term} if term else {}


class SessionExecutor:
    """Build and run the guest command for a SessionRequest."""

    def __init__(
        self,
        resolver: ChrootPathResolver,
        launcher: CommandLauncher,
        setup_script: str = SETUP_SCRIPT_PATH,
        term: Optional[str] = None,
    ) -> None:
        self._resolver = resolver
        self._launcher = launcher
        self._setup_script = setup_script
        self._term = term

    def resolve_user(self, user: Optional[Union[int, str]]) -> PasswdEntry:
        """
        Find the target account in the guest's /etc/passwd.

        Args:
            user: Name, uid, or None for the first regular account.

        Raises:
            PreconditionError: If no matching account exists.
        """
        passwd_path = self._resolver.resolve("/etc/passwd")
        try:
            entries = read_passwd(passwd_path)
        except OSError as e:
            raise PreconditionError(f"Cannot read guest passwd file {passwd_path}: {e}") from e

        if user is None:
            entry = next(
                (e for e in entries if REGULAR_UID_MIN <= e.uid <= REGULAR_UID_MAX),
                None,
            )
            if entry is None:
                raise PreconditionError(
                    "No regular user found in the chroot; specify one explicitly"
                )
        else:
            entry = find_user(entries, user)
            if entry is None:
                raise PreconditionError(f"User '{user}' does not exist in the chroot")

        if not self._resolver.resolve(entry.home).is_dir():
            logger.warning(f"Home directory {entry.home} of {entry.name} is missing in the chroot")
        if entry.shell and not self._resolver.resolve(entry.shell).exists():
            logger.warning(f"Login shell {entry.shell} of {entry.name} is missing in the chroot")
        return entry

    def build_argv(self, request: SessionRequest) -> list[str]:
        if request.mode == SessionMode.SETUP_SCRIPT:
            return ["/bin/sh", "-e", self._setup_script]
        if request.mode == SessionMode.DIRECT_EXEC:
            return list(request.command)

        account = self.resolve_user(request.user)
        if not request.command:
            return ["su", "-", account.name]
        # su only accepts a single command string; this is the one place
        # where arguments are shell-quoted.
        return [
            "su", "-s", LOGIN_SHELL,
            "-c", "exec " + shlex.join(request.command),
            "-", account.name,
        ]

    def environment(self) -> Mapping[str, str]:
        return scrubbed_environment(self._term)

    def run(self, request: SessionRequest, max_setup_passes: Optional[int] = None) -> int:
        """
        Run the session.

        Returns:
            The guest command's exit code (0 once forked in background mode,
            0 after a completed setup-script loop).
        """
        logger.info(f"Starting {request.mode.value} session (background={request.background})")
        if request.mode == SessionMode.SETUP_SCRIPT:
            self.run_setup_script(max_passes=max_setup_passes)
            return int(ExitCode.OK)
        return self._launcher.launch(self.build_argv(request), self.environment())

    def run_setup_script(self, max_passes: Optional[int] = None) -> int:
        """
        Run the setup script until it removes itself.

        Args:
            max_passes: Optional upper bound on the number of passes.

        Returns:
            Number of passes run (0 if no script was present).

        Raises:
            SetupScriptError: On a non-zero exit, or when max_passes is hit.
        """
        script = self._resolver.resolve(self._setup_script)
        argv = self.build_argv(SessionRequest(mode=SessionMode.SETUP_SCRIPT))
        passes = 0
        while script.is_file():
            if max_passes is not None and passes >= max_passes:
                raise SetupScriptError(
                    f"Setup script {self._setup_script} still present after {passes} passes"
                )
            passes += 1
            logger.info(f"Running setup script {self._setup_script} (pass {passes})")
            code = self._launcher.launch(argv, self.environment())
            if code != 0:
                raise SetupScriptError(
                    f"Setup script {self._setup_script} failed with exit code {code}"
                )
            if script.is_file():
                logger.info("Setup script requested another pass")
        if passes == 0:
            logger.debug(f"No setup script at {script}")
        return passes
