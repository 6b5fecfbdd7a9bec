import argparse
import dataclasses
import os
from collections.abc import Iterable
from typing import Any

# Shown as the source of the mount, e.g., in /proc/mounts and the output of 'mount'.
FILESYSTEM_NAME = 'backupmount'

REPOSITORY_ENVIRONMENT_VARIABLE = 'BACKUPMOUNT_REPOSITORY'


def _split_list_argument(values: Iterable[str]) -> tuple[str, ...]:
    """Flattens repeated and comma-separated option values into a tuple, e.g., --tag a,b --tag c."""
    return tuple(part for value in values or () for part in value.split(',') if part)


@dataclasses.dataclass(frozen=True)
class GlobalOptions:
    # fmt: off
    repository : str = ''
    debug      : int = 1
    # fmt: on

    @staticmethod
    def from_args(args: argparse.Namespace) -> 'GlobalOptions':
        return GlobalOptions(
            repository=args.repo or os.environ.get(REPOSITORY_ENVIRONMENT_VARIABLE, ''),
            debug=int(args.debug),
        )


@dataclasses.dataclass(frozen=True)
class MountOptions:
    """
    Immutable user-selected mount behavior and snapshot filters.
    Empty filters mean "no filtering", not "match nothing".
    """

    # fmt: off
    ownerRoot  : bool            = False
    allowRoot  : bool            = False
    allowOther : bool            = False
    host       : str             = ''
    tags       : tuple[str, ...] = ()
    paths      : tuple[str, ...] = ()
    # fmt: on

    @staticmethod
    def from_args(args: argparse.Namespace) -> 'MountOptions':
        paths = _split_list_argument(args.path)
        for path in paths:
            if not os.path.isabs(path):
                raise argparse.ArgumentTypeError(f"Snapshot path filters must be absolute but got: {path}")

        return MountOptions(
            ownerRoot=bool(args.owner_root),
            allowRoot=bool(args.allow_root),
            allowOther=bool(args.allow_other),
            host=args.host or '',
            tags=_split_list_argument(args.tag),
            paths=paths,
        )


def translate_mount_flags(options: MountOptions) -> dict[str, Any]:
    """Returns the FUSE mount options as keyword arguments for fusepy's FUSE class."""
    flags: dict[str, Any] = {'ro': True, 'fsname': FILESYSTEM_NAME}
    if options.allowRoot:
        flags['allow_root'] = True
    if options.allowOther:
        flags['allow_other'] = True
    return flags
