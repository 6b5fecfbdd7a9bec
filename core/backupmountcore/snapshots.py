import builtins
import logging
import stat
import threading
from collections.abc import Iterable
from typing import IO, Any, Optional, Union

from backupmountcore.mountsource import FileInfo, MountSource, create_root_file_info
from backupmountcore.mountsource.formats.folder import FolderMountSource
from backupmountcore.repository import Repository, Snapshot
from backupmountcore.utils import format_timestamp, overrides

logger = logging.getLogger(__name__)


class SnapshotsMountSource(MountSource):
    """
    Folder containing one subfolder per snapshot in the repository, named after the snapshot time.
    Only snapshots matching all of the given filters are shown:

     - host  : The snapshot was taken on this host. An empty string matches all hosts.
     - tags  : The snapshot has all of these tags. No tags match all snapshots.
     - paths : The snapshot contains all of these backed-up paths. No paths match all snapshots.

    The snapshot list is re-read from the repository each time the top-level folder is listed, so that
    snapshots created while mounted show up. All methods may be called from multiple threads.
    """

    def __init__(
        self,
        repository: Repository,
        ownerRoot: bool = False,
        paths: Iterable[str] = (),
        tags: Iterable[str] = (),
        host: str = "",
    ) -> None:
        self.repository = repository
        self.ownerRoot = ownerRoot
        self.paths = tuple(paths)
        self.tags = tuple(tags)
        self.host = host

        self.rootFileInfo = create_root_file_info(userdata=[None])
        self._statfs = FolderMountSource(repository.path).statfs()
        self._lock = threading.Lock()
        # Maps folder names to snapshots and the mount source for the snapshot tree.
        self._snapshots: dict[str, tuple[Snapshot, FolderMountSource]] = {}
        self._trees: dict[str, FolderMountSource] = {}

        self._update(reload=False)

    def is_visible(self, snapshot: Snapshot) -> bool:
        return snapshot.matches_host(self.host) and snapshot.has_tags(self.tags) and snapshot.has_paths(self.paths)

    def _update(self, reload: bool = True) -> None:
        if reload:
            self.repository.load_index()

        with self._lock:
            snapshots: dict[str, tuple[Snapshot, FolderMountSource]] = {}
            trees: dict[str, FolderMountSource] = {}
            for snapshot in self.repository.snapshots():
                if not self.is_visible(snapshot):
                    continue

                name = format_timestamp(snapshot.time)
                suffix = 1
                while name in snapshots:
                    name = f"{format_timestamp(snapshot.time)}-{suffix}"
                    suffix += 1

                tree = self._trees.get(snapshot.tree) or trees.get(snapshot.tree)
                if tree is None:
                    tree = FolderMountSource(self.repository.tree_path(snapshot.tree))
                trees[snapshot.tree] = tree
                snapshots[name] = (snapshot, tree)

            self._snapshots = snapshots
            self._trees = trees
        logger.debug("Showing %d snapshots.", len(snapshots))

    def _get(self, name: str) -> Optional[tuple[Snapshot, FolderMountSource]]:
        with self._lock:
            result = self._snapshots.get(name)
        if result is None:
            # The snapshot might have been created after the last listing.
            self._update()
            with self._lock:
                result = self._snapshots.get(name)
        return result

    @staticmethod
    def _snapshot_file_info(snapshot: Snapshot) -> FileInfo:
        # fmt: off
        return FileInfo(
            size     = 0,
            mtime    = snapshot.time.timestamp(),
            mode     = 0o555 | stat.S_IFDIR,
            linkname = "",
            uid      = snapshot.uid,
            gid      = snapshot.gid,
            userdata = [None],
        )
        # fmt: on

    def _apply_owner(self, fileInfo: FileInfo) -> FileInfo:
        if self.ownerRoot:
            fileInfo.uid = 0
            fileInfo.gid = 0
        return fileInfo

    @staticmethod
    def _split(path: str) -> tuple[str, str]:
        name, _, subpath = path.strip('/').partition('/')
        return name, '/' + subpath

    @overrides(MountSource)
    def lookup(self, path: str) -> Optional[FileInfo]:
        name, subpath = self._split(path)
        if not name:
            return self._apply_owner(self.rootFileInfo.clone())

        result = self._get(name)
        if result is None:
            return None

        snapshot, tree = result
        if subpath == '/':
            return self._apply_owner(self._snapshot_file_info(snapshot))

        fileInfo = tree.lookup(subpath)
        if fileInfo is None:
            return None
        fileInfo.userdata.append(name)
        return self._apply_owner(fileInfo)

    def _list(self, path: str, onlyMode: bool) -> Optional[Union[Iterable[str], dict[str, Any]]]:
        name, subpath = self._split(path)
        if not name:
            self._update()
            with self._lock:
                snapshots = dict(self._snapshots)
            return {
                name: (
                    self._snapshot_file_info(snapshot).mode
                    if onlyMode
                    else self._apply_owner(self._snapshot_file_info(snapshot))
                )
                for name, (snapshot, _tree) in snapshots.items()
            }

        result = self._get(name)
        if result is None:
            return None

        _snapshot, tree = result
        if onlyMode:
            return tree.list_mode(subpath)

        files = tree.list(subpath)
        if isinstance(files, dict):
            for fileInfo in files.values():
                fileInfo.userdata.append(name)
                self._apply_owner(fileInfo)
        return files

    @overrides(MountSource)
    def list(self, path: str) -> Optional[Union[Iterable[str], dict[str, FileInfo]]]:
        return self._list(path, onlyMode=False)

    @overrides(MountSource)
    def list_mode(self, path: str) -> Optional[Union[Iterable[str], dict[str, int]]]:
        return self._list(path, onlyMode=True)

    def _resolve_tree(self, name: Optional[str]) -> FolderMountSource:
        result = self._get(name) if name else None
        if result is None:
            raise ValueError(f"Snapshot '{name}' does not exist (anymore)!")
        return result[1]

    @overrides(MountSource)
    def open(self, fileInfo: FileInfo, buffering=-1) -> IO[bytes]:
        name = fileInfo.userdata.pop()
        try:
            return self._resolve_tree(name).open(fileInfo, buffering=buffering)
        finally:
            fileInfo.userdata.append(name)

    @overrides(MountSource)
    def read(self, fileInfo: FileInfo, size: int, offset: int) -> bytes:
        name = fileInfo.userdata.pop()
        try:
            return self._resolve_tree(name).read(fileInfo, size, offset)
        finally:
            fileInfo.userdata.append(name)

    @overrides(MountSource)
    def statfs(self) -> dict[str, Any]:
        return self._statfs.copy()

    @overrides(MountSource)
    def list_xattr(self, fileInfo: FileInfo) -> builtins.list[str]:
        name = fileInfo.userdata.pop()
        try:
            return [] if name is None else self._resolve_tree(name).list_xattr(fileInfo)
        finally:
            fileInfo.userdata.append(name)

    @overrides(MountSource)
    def get_xattr(self, fileInfo: FileInfo, key: str) -> Optional[bytes]:
        name = fileInfo.userdata.pop()
        try:
            return None if name is None else self._resolve_tree(name).get_xattr(fileInfo, key)
        finally:
            fileInfo.userdata.append(name)

    @overrides(MountSource)
    def __exit__(self, exception_type, exception_value, exception_traceback):
        with self._lock:
            self._snapshots = {}
            self._trees = {}
