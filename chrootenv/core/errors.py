"""
Error taxonomy and process exit codes for chrootenv.

Every error raised by this package derives from ChrootEnvError and carries
the exit code the CLI reports for it. A guest command that exits non-zero
is not an error of this package: its code is passed through unchanged.
"""
from enum import IntEnum


class ExitCode(IntEnum):
    """Process exit codes, one per error category."""
    OK = 0
    PRECONDITION = 1
    USAGE = 2
    MOUNT = 3
    SETUP_SCRIPT = 4
    INTERRUPTED = 130


class ChrootEnvError(Exception):
    """Base class for chrootenv failures."""

    exit_code: ExitCode = ExitCode.PRECONDITION


class UsageError(ChrootEnvError):
    """Bad arguments or an incompatible flag combination.

    Raised before anything is mutated, so no cleanup is needed.
    """

    exit_code = ExitCode.USAGE


class PreconditionError(ChrootEnvError):
    """Missing privilege, chroot not found, or invalid/corrupt chroot."""

    exit_code = ExitCode.PRECONDITION
