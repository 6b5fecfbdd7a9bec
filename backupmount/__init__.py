"""Backupmount

This is the frontend for backupmount, which mounts the snapshots of a backup repository
as a read-only FUSE file system. It is normally not intended to be used as a library.

The installed backupmount script will load this module and call its 'cli' function,
which could also be done programmatically:

    from backupmount.cli import cli

    cli(["--repo", "/srv/backups", "mount", "--tag", "daily", "/mnt/backups"])

For library use, see the backupmountcore package.
"""

from .version import __version__
