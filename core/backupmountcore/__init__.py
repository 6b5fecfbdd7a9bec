"""Backupmount Core

This is the backend of backupmount. It is intended to be used as a library.

It reads the snapshots of a backup repository and offers them through the
MountSource interface, which is sufficient to work with FUSE for read-only access.

Example:

    from backupmountcore.repository import open_repository
    from backupmountcore.snapshots import SnapshotsMountSource

    with open_repository("/srv/backups") as repository:
        repository.load_index()
        snapshots = SnapshotsMountSource(repository, tags=("daily",))
        print(list(snapshots.list("/")))
"""

from .version import __version__
