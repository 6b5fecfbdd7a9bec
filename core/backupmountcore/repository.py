"""
Read-only access to a backup repository stored in a directory:

    <repository>/config              {"version": 1, "id": "<hex id>"}
    <repository>/snapshots/<id>      one JSON record per snapshot
    <repository>/trees/<tree id>/    the backed-up files referenced by a snapshot

Opening a repository only checks its config. The snapshot records are read by load_index
and may be re-read at any time with the same method, e.g., when a mounted snapshots folder
is listed again.
"""

import dataclasses
import datetime
import json
import logging
import os
import threading
from collections.abc import Iterable
from typing import Any, Optional

from .utils import RepositoryError, parse_timestamp

logger = logging.getLogger(__name__)

SUPPORTED_REPOSITORY_VERSIONS = (1,)


@dataclasses.dataclass(frozen=True)
class Snapshot:
    # fmt: off
    id       : str
    time     : datetime.datetime
    hostname : str
    username : str
    uid      : int
    gid      : int
    tags     : tuple[str, ...]
    paths    : tuple[str, ...]
    tree     : str
    # fmt: on

    @staticmethod
    def from_record(snapshotId: str, record: dict[str, Any]) -> 'Snapshot':
        try:
            # fmt: off
            return Snapshot(
                id       = snapshotId,
                time     = parse_timestamp(record['time']),
                hostname = str(record.get('hostname', '')),
                username = str(record.get('username', '')),
                uid      = int(record.get('uid', 0)),
                gid      = int(record.get('gid', 0)),
                tags     = tuple(str(tag) for tag in record.get('tags') or ()),
                paths    = tuple(str(path) for path in record.get('paths') or ()),
                tree     = str(record['tree']),
            )
            # fmt: on
        except (KeyError, TypeError, ValueError) as exception:
            raise RepositoryError(f"Invalid snapshot record '{snapshotId}': {exception}") from exception

    def has_tags(self, tags: Iterable[str]) -> bool:
        """Returns true if the snapshot has all of the given tags. No tags matches all snapshots."""
        return all(tag in self.tags for tag in tags)

    def has_paths(self, paths: Iterable[str]) -> bool:
        """Returns true if all of the given paths have been backed up by the snapshot."""
        return all(path in self.paths for path in paths)

    def matches_host(self, host: str) -> bool:
        return not host or self.hostname == host


class Repository:
    """
    Handle to an opened repository. The handle only reads and can be shared between threads.
    """

    def __init__(self, path: str) -> None:
        self.path = os.path.realpath(path)
        self.id = ""
        self._snapshots: dict[str, Snapshot] = {}
        self._trees: set[str] = set()
        self._lock = threading.Lock()

        configPath = os.path.join(self.path, 'config')
        try:
            with open(configPath, 'rb') as file:
                config = json.load(file)
        except FileNotFoundError as exception:
            raise RepositoryError(f"Unable to open repository at {path}: no config file found") from exception
        except (OSError, ValueError) as exception:
            raise RepositoryError(f"Unable to read repository config at {configPath}: {exception}") from exception

        if not isinstance(config, dict) or config.get('version') not in SUPPORTED_REPOSITORY_VERSIONS:
            raise RepositoryError(
                f"Unsupported repository version in {configPath}. "
                f"Supported versions: {', '.join(map(str, SUPPORTED_REPOSITORY_VERSIONS))}"
            )
        self.id = str(config.get('id', ''))
        logger.debug("Opened repository %s at %s", self.id, self.path)

    def __enter__(self):
        return self

    def __exit__(self, exception_type, exception_value, exception_traceback):
        self.close()

    def close(self) -> None:
        with self._lock:
            self._snapshots = {}
            self._trees = set()

    def load_index(self) -> None:
        """(Re)reads the available trees and all snapshot records."""
        trees = set(self._list_directory('trees'))
        snapshots: dict[str, Snapshot] = {}
        for snapshotId in sorted(self._list_directory('snapshots')):
            snapshot = self._load_snapshot(snapshotId)
            if snapshot.tree not in trees:
                logger.warning("Skipping snapshot %s because its tree %s is missing.", snapshotId, snapshot.tree)
                continue
            snapshots[snapshotId] = snapshot

        with self._lock:
            self._trees = trees
            self._snapshots = snapshots
        logger.debug("Loaded index with %d snapshots and %d trees.", len(snapshots), len(trees))

    def _list_directory(self, name: str) -> list[str]:
        try:
            return [entry for entry in os.listdir(os.path.join(self.path, name)) if not entry.startswith('.')]
        except FileNotFoundError:
            return []

    def _load_snapshot(self, snapshotId: str) -> Snapshot:
        path = os.path.join(self.path, 'snapshots', snapshotId)
        try:
            with open(path, 'rb') as file:
                record = json.load(file)
        except (OSError, ValueError) as exception:
            raise RepositoryError(f"Unable to read snapshot record {path}: {exception}") from exception
        if not isinstance(record, dict):
            raise RepositoryError(f"Snapshot record {path} must contain a JSON object!")
        return Snapshot.from_record(snapshotId, record)

    def snapshots(self) -> list[Snapshot]:
        with self._lock:
            return sorted(self._snapshots.values(), key=lambda snapshot: (snapshot.time, snapshot.id))

    def find_snapshot(self, snapshotId: str) -> Optional[Snapshot]:
        with self._lock:
            return self._snapshots.get(snapshotId)

    def tree_path(self, tree: str) -> str:
        with self._lock:
            if tree not in self._trees:
                raise RepositoryError(f"Tree {tree} is not part of the loaded index!")
        return os.path.join(self.path, 'trees', tree)


def open_repository(globalOptions) -> Repository:
    """Opens the repository specified by GlobalOptions.repository."""
    location = getattr(globalOptions, 'repository', '')
    if not location:
        raise RepositoryError("Please specify repository location (-r or BACKUPMOUNT_REPOSITORY)")
    return Repository(location)
