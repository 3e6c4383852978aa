#!/usr/bin/env python3
"""CLI tool for unmounting a chroot environment.

Unmounts everything mounted below a chroot's root (deepest first), or lists
the active mounts with --list.

Usage:
    unmount-chroot [-n NAME] [-c CHROOTS_DIR] [--list]
"""
import argparse
import logging
import sys
from pathlib import Path

from rich.console import Console
from rich.table import Table

from chrootenv.core.config import load_settings
from chrootenv.core.errors import ChrootEnvError, ExitCode
from chrootenv.core.mounts import MountOperator, MountTable
from chrootenv.core.path_resolver import ChrootPathResolver
from chrootenv.services.enter import require_root
from chrootenv.services.locator import ChrootEnvironment, locate_chroot

logger = logging.getLogger(__name__)

console = Console()


def mounts_table(environment: ChrootEnvironment, table: MountTable) -> Table:
    """Active mounts of a chroot as a rich table, guest paths first."""
    resolver = ChrootPathResolver(environment.root_path)
    out = Table(title=f"Mounts in chroot '{environment.name}'")
    out.add_column("Guest path", style="cyan")
    out.add_column("Host path", style="dim")
    for point in reversed(table.mounts_under(environment.root_path)):
        out.add_row(resolver.to_guest(point), str(point))
    return out


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        prog="unmount-chroot",
        description="Unmount everything mounted inside a chroot",
    )
    parser.add_argument("-n", "--name", help="Chroot name (default: first chroot found)")
    parser.add_argument("-c", "--chroots", help="Directory holding the chroots")
    parser.add_argument("--list", action="store_true", help="List active mounts and exit")
    parser.add_argument("--config", type=Path, help="Path to chrootenv.yaml")
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level",
    )
    args = parser.parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level), format="%(levelname)s: %(message)s")

    try:
        settings = load_settings(args.config)
        environment = locate_chroot(args.chroots or settings.chroots_dir, args.name)
        table = MountTable()

        if args.list:
            console.print(mounts_table(environment, table))
            return int(ExitCode.OK)

        require_root()
        operator = MountOperator(ChrootPathResolver(environment.root_path), table)
        failed = operator.unmount_all(retries=settings.unmount_retries)
        return int(ExitCode.MOUNT) if failed else int(ExitCode.OK)
    except ChrootEnvError as e:
        logger.error(str(e))
        return int(e.exit_code)


if __name__ == "__main__":
    sys.exit(main())
