#!/usr/bin/env python3
"""CLI tool for entering a chroot environment.

Mounts the host devices and services into the chroot, runs a login shell or
a command inside it, and unmounts everything again when the session ends.

Usage:
    enter-chroot [-n NAME] [-u USER] [command ...]     login as USER
    enter-chroot -x [-n NAME] command ...              run as root, no login
    enter-chroot -X [-n NAME]                          run the setup script
    enter-chroot -b [-n NAME] command ...              run detached

Environment:
    CHROOTENV_NO_UNMOUNT    leave mounts in place on exit
    CHROOTENV_WEAK_RANDOM   bind /dev/urandom over /dev/random (testing)
    CHROOTENV_CONFIG        settings file
"""
import argparse
import logging
import sys
from pathlib import Path

from chrootenv.core.config import load_settings
from chrootenv.core.errors import ChrootEnvError, ExitCode
from chrootenv.core.session import SessionMode, SessionRequest
from chrootenv.services.enter import ChrootSession

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="enter-chroot",
        description="Enter a chroot environment layered on the host",
    )
    parser.add_argument("-n", "--name", help="Chroot name (default: first chroot found)")
    parser.add_argument("-c", "--chroots", help="Directory holding the chroots")
    parser.add_argument("-u", "--user", help="User name or uid to log in as")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument(
        "-x", "--exec",
        dest="direct_exec",
        action="store_true",
        help="Run the command as root without a login shell",
    )
    mode.add_argument(
        "-X", "--setup",
        action="store_true",
        help="Run the chroot setup script until it completes",
    )
    parser.add_argument(
        "-b", "--background",
        action="store_true",
        help="Fork the session into the background",
    )
    parser.add_argument("--config", type=Path, help="Path to chrootenv.yaml")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    parser.add_argument("command", nargs=argparse.REMAINDER, help="Command to run")
    return parser


def request_from_args(args: argparse.Namespace) -> SessionRequest:
    if args.setup:
        mode = SessionMode.SETUP_SCRIPT
    elif args.direct_exec:
        mode = SessionMode.DIRECT_EXEC
    else:
        mode = SessionMode.INTERACTIVE_LOGIN

    command = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    return SessionRequest.build(
        mode=mode,
        user=args.user,
        command=command,
        background=args.background,
    )


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s: %(message)s")

    try:
        request = request_from_args(args)
        settings = load_settings(args.config)
        if args.chroots:
            settings = settings.model_copy(update={"chroots_dir": args.chroots})
        return ChrootSession(settings, request, name=args.name).run()
    except ChrootEnvError as e:
        logger.error(str(e))
        return int(e.exit_code)
    except KeyboardInterrupt:
        return int(ExitCode.INTERRUPTED)


if __name__ == "__main__":
    sys.exit(main())
