import argparse
import importlib.metadata as imeta
import logging
import re
import subprocess
import sys

import backupmountcore.version
from backupmountcore.utils import MountError

from .options import GlobalOptions, MountOptions
from .shutdown import ShutdownHooks
from .version import __version__

logger = logging.getLogger(__name__)


def print_versions() -> None:
    print("backupmount", __version__)
    print("backupmountcore", backupmountcore.version.__version__)

    print()
    print("System Software:")
    print()
    print("Python", sys.version.split(' ', maxsplit=1)[0])

    try:
        fusermountVersion = subprocess.run(
            ["fusermount", "--version"], stdout=subprocess.PIPE, stderr=subprocess.PIPE, check=False
        ).stdout.strip()
        print("fusermount", re.sub('.* ([0-9][.][0-9.]+).*', r'\1', fusermountVersion.decode()))
    except OSError:
        pass

    for moduleName in ["mfusepy", "fusepy", "rich", "argcomplete"]:
        try:
            print(moduleName, imeta.version(moduleName))
        except imeta.PackageNotFoundError:
            pass

    try:
        from .fuse import fuse  # pylint: disable=import-outside-toplevel
    except ImportError:
        return
    if hasattr(fuse, 'fuse_version_major') and hasattr(fuse, 'fuse_version_minor'):
        print(f"FUSE: {fuse.fuse_version_major}.{fuse.fuse_version_minor}")


def unmount_list_checked(mountPoints: list[str]) -> int:
    if not mountPoints:
        raise argparse.ArgumentTypeError("Unmounting requires a path to the mount point!")

    # Import late to avoid the overhead during argcomplete!
    from .session import unmount  # pylint: disable=import-outside-toplevel

    failed = False
    for mountPoint in mountPoints:
        try:
            unmount(mountPoint)
        except MountError as exception:
            logger.error("%s", exception)
            failed = True

    if failed:
        logger.error(
            "Alternatively, the process providing the mount point can be looked for and killed, "
            "e.g., with: pkill --full 'backupmount.*mount' -G \"$( id -g )\" --newest"
        )
    return 1 if failed else 0


def process_parsed_arguments(args) -> int:
    if args.command == 'unmount':
        return unmount_list_checked([mountPoint for mountPoint in args.mount_point or [] if mountPoint])

    if args.command != 'mount':
        raise argparse.ArgumentTypeError("Please specify a command: mount or unmount. See --help.")

    globalOptions = GlobalOptions.from_args(args)
    mountOptions = MountOptions.from_args(args)

    # Import late to avoid the overhead during argcomplete!
    from .mount import run_mount  # pylint: disable=import-outside-toplevel

    with ShutdownHooks() as hooks:
        run_mount(mountOptions, globalOptions, [args.mount_point] if args.mount_point else [], hooks)

    return 0
