#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# PYTHON_ARGCOMPLETE_OK

# We explicitly do want to import everything as late as possible here in order to speed up calls by argcomplete!
# pylint: disable=import-outside-toplevel

import argparse
import logging
import os
import sys
import traceback
from typing import Optional

from backupmountcore.utils import BackupMountError

try:
    import argcomplete
except ImportError:
    pass

from .options import REPOSITORY_ENVIRONMENT_VARIABLE


class _CustomFormatter(argparse.ArgumentDefaultsHelpFormatter, argparse.RawDescriptionHelpFormatter):
    def add_arguments(self, actions):
        actions = sorted(actions, key=lambda x: getattr(x, 'option_strings'))
        super().add_arguments(actions)


class PrintVersionAction(argparse.Action):
    def __call__(self, parser, args, values, option_string=None):
        from .actions import print_versions

        print_versions()
        parser.exit()


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='backupmount',
        formatter_class=_CustomFormatter,
        add_help=False,
        description='''\
With backupmount, you can browse the snapshots of a backup repository:
  - Mount all snapshots of a repository read-only to a folder
  - Only show snapshots of one host, with given tags, or containing given paths
''',
        # The examples should be kept synchronized with the README.md!
        epilog='''\
Examples:

 - backupmount -r /srv/backups mount mountpoint
 - backupmount -r /srv/backups mount --tag daily --host laptop mountpoint
 - BACKUPMOUNT_REPOSITORY=/srv/backups backupmount mount --path /home/user mountpoint
 - backupmount unmount mountpoint
''',
    )

    # fmt: off
    parser.add_argument(
        '-h', '--help', action='help', default=argparse.SUPPRESS,
        help='Show this help message and exit.')

    parser.add_argument(
        '-v', '--version', action=PrintVersionAction, nargs=0, default=argparse.SUPPRESS,
        help='Print version information and exit.')

    parser.add_argument(
        '-d', '--debug', type=int, default=1,
        help='Sets the debugging level. Higher means more output. Currently, 3 is the highest.')

    parser.add_argument(
        '-r', '--repo', type=str, default='',
        help=f'Repository to read the snapshots from. Defaults to ${REPOSITORY_ENVIRONMENT_VARIABLE}.')

    subparsers = parser.add_subparsers(dest='command', metavar='command')

    mountParser = subparsers.add_parser(
        'mount', formatter_class=_CustomFormatter,
        help='Mount the repository via FUSE to a directory. This is a read-only mount.',
        description='''\
The "mount" command mounts the repository via FUSE to a directory. This is a
read-only mount. It blocks until the directory is unmounted, e.g., with
"backupmount unmount <mountpoint>" or "fusermount -u <mountpoint>".
''')

    mountParser.add_argument(
        '--owner-root', action='store_true', default=False,
        help="Use 'root' as the owner of files and dirs.")

    mountParser.add_argument(
        '--allow-root', action='store_true', default=False,
        help='Allow root user to access the data in the mounted directory.')

    mountParser.add_argument(
        '--allow-other', action='store_true', default=False,
        help='Allow other users to access the data in the mounted directory.')

    mountParser.add_argument(
        '-H', '--host', type=str, default='',
        help='Only consider snapshots for this host.')

    mountParser.add_argument(
        '--tag', type=str, action='append', metavar='TAG',
        help='Only consider snapshots which include this tag. Can be specified multiple times '
             'or as comma-separated list, in which case snapshots must have all of the tags.')

    mountParser.add_argument(
        '--path', type=str, action='append', metavar='PATH',
        help='Only consider snapshots which include this (absolute) path. Can be specified multiple times '
             'or as comma-separated list, in which case snapshots must include all of the paths.')

    mountParser.add_argument(
        'mount_point', nargs='?',
        help='The folder to mount the snapshots into. It will be created if it does not exist.')

    unmountParser = subparsers.add_parser(
        'unmount', aliases=['umount'], formatter_class=_CustomFormatter,
        help='Unmount the given mount point(s). Equivalent to calling "fusermount -u" for each mount point.')

    unmountParser.add_argument('mount_point', nargs='*', help='The mount point(s) to unmount.')
    # fmt: on

    return parser


def _parse_args(rawArgs: Optional[list[str]] = None):
    parser = create_parser()
    if 'argcomplete' in sys.modules:
        argcomplete.autocomplete(parser)
    args = parser.parse_args(rawArgs)
    if args.command == 'umount':
        args.command = 'unmount'
    return args


def setup_logging(debug: int) -> None:
    from rich.logging import RichHandler

    levels = {0: logging.ERROR, 1: logging.WARNING, 2: logging.INFO}
    logging.basicConfig(
        level=levels.get(max(0, debug), logging.DEBUG),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(show_path=debug >= 3, rich_tracebacks=debug >= 3)],
        force=True,
    )


def cli(rawArgs: Optional[list[str]] = None) -> int:
    """
    Command line interface for backupmount. Call with args = [ '--help' ] for a description.

    rawArgs: In general, rawArgs is None, meaning sys.argv is used. When used programmatically with a custom
             list of arguments, the first argument should not be the path to the script / the executable,
             i.e., call either cli() or cli(sys.argv[1:])!
    """

    # Manually parse --debug argument in case argument parsing with argparse itself goes wrong.
    tmpArgs = rawArgs if rawArgs else sys.argv
    debug = 1
    for i in range(len(tmpArgs) - 1):
        if tmpArgs[i] in ['-d', '--debug'] and tmpArgs[i + 1].isdecimal():
            debug = int(tmpArgs[i + 1])

    if "_ARGCOMPLETE" not in os.environ:
        setup_logging(debug)

    try:
        args = _parse_args(rawArgs)
        from .actions import process_parsed_arguments

        return process_parsed_arguments(args)
    except (BackupMountError, OSError, argparse.ArgumentTypeError, ValueError) as exception:
        print("[Error]", exception)
        if debug >= 3:
            traceback.print_exc()
    except KeyboardInterrupt:
        print("[Error] Interrupted")

    return 1
