import builtins
import os
from collections.abc import Iterable
from typing import IO, Any, Optional, Union

from backupmountcore.mountsource import FileInfo, MountSource, create_root_file_info, merge_statfs
from backupmountcore.utils import BackupMountError, overrides


class SubvolumesMountSource(MountSource):
    def __init__(self, mountSources: dict[str, MountSource]) -> None:
        """
        mountSources : Mount sources to expose as subfolders keyed by their path.
        """
        # Recursive dictionary representing folders. Keys are folder names, i.e., may not contain slashes.
        self.mountSources: dict[str, Any] = {}
        self.rootFileInfo = create_root_file_info(userdata=[None])

        for path, target in mountSources.items():
            self._mount(path, target)

    def _mount(self, path: str, target: MountSource) -> None:
        """Adds a mount source at the specified path. Must not overlap with existing mounts."""

        # Ensuring a leading slash before calling normpath has the effect of eating all leading '/..'.
        parts = os.path.normpath('/' + path).strip('/').split('/')
        if not parts[-1]:
            raise BackupMountError("Mount points may not be empty!")

        folder = self.mountSources
        for part in parts[:-1]:
            folder = folder.setdefault(part, {})
            if not isinstance(folder, dict):
                raise BackupMountError(f"Cannot mount '{path}' because one of its parents is a mount point!")

        if parts[-1] in folder:
            raise BackupMountError("Mount point already exists!")
        folder[parts[-1]] = target

    def _find_mount_source(self, path: str) -> Optional[tuple[str, str, Union[MountSource, dict[str, Any]]]]:
        """
        Implements recursive lookup in self.mountSources.
        Returns (mount point path, path in mount source, mount source).
        If the path points to a parent mount folder, then will return (path, "", folder dictionary)
        """

        folder = self.mountSources
        parts = path.strip('/').split('/')
        for i, part in enumerate(parts):
            if not part:
                continue
            if part not in folder:
                return None
            folder = folder[part]
            if isinstance(folder, MountSource):
                return ('/'.join(parts[: i + 1]), '/' + '/'.join(parts[i + 1 :]), folder)
        return (path, "", folder)

    def _resolve_subvolume(self, subvolume: Optional[str]) -> MountSource:
        if subvolume is None:
            raise ValueError("Found subvolume is None for file info!")
        result = self._find_mount_source(subvolume)
        if result is None or not isinstance(result[2], MountSource):
            raise ValueError(f"Subvolume '{subvolume}' does not exist!")
        return result[2]

    @overrides(MountSource)
    def lookup(self, path: str) -> Optional[FileInfo]:
        result = self._find_mount_source(path)
        if result is None:
            return None

        subvolume, subpath, mounted = result
        if not isinstance(mounted, MountSource):
            return self.rootFileInfo.clone()

        fileInfo = mounted.lookup(subpath)
        if isinstance(fileInfo, FileInfo):
            fileInfo.userdata.append(subvolume)
            return fileInfo
        return None

    def _list(self, path: str, onlyMode: bool) -> Optional[Union[Iterable[str], dict[str, FileInfo]]]:
        result = self._find_mount_source(path)
        if result is None:
            return None

        _subvolume, subpath, mounted = result
        if not isinstance(mounted, MountSource):
            return {name: self.rootFileInfo.mode if onlyMode else self.rootFileInfo.clone() for name in mounted}

        return mounted.list_mode(subpath) if onlyMode else mounted.list(subpath)

    @overrides(MountSource)
    def list(self, path: str) -> Optional[Union[Iterable[str], dict[str, FileInfo]]]:
        return self._list(path, onlyMode=False)

    @overrides(MountSource)
    def list_mode(self, path: str) -> Optional[Union[Iterable[str], dict[str, int]]]:
        return self._list(path, onlyMode=True)

    @overrides(MountSource)
    def open(self, fileInfo: FileInfo, buffering=-1) -> IO[bytes]:
        subvolume = fileInfo.userdata.pop()
        try:
            return self._resolve_subvolume(subvolume).open(fileInfo, buffering=buffering)
        finally:
            fileInfo.userdata.append(subvolume)

    @overrides(MountSource)
    def read(self, fileInfo: FileInfo, size: int, offset: int) -> bytes:
        subvolume = fileInfo.userdata.pop()
        try:
            return self._resolve_subvolume(subvolume).read(fileInfo, size, offset)
        finally:
            fileInfo.userdata.append(subvolume)

    @overrides(MountSource)
    def statfs(self) -> dict[str, Any]:
        return merge_statfs(mountSource.statfs() for mountSource in self._iterate_mount_sources(self.mountSources))

    @overrides(MountSource)
    def list_xattr(self, fileInfo: FileInfo) -> builtins.list[str]:
        subvolume = fileInfo.userdata.pop()
        try:
            return [] if subvolume is None else self._resolve_subvolume(subvolume).list_xattr(fileInfo)
        finally:
            fileInfo.userdata.append(subvolume)

    @overrides(MountSource)
    def get_xattr(self, fileInfo: FileInfo, key: str) -> Optional[bytes]:
        subvolume = fileInfo.userdata.pop()
        try:
            return None if subvolume is None else self._resolve_subvolume(subvolume).get_xattr(fileInfo, key)
        finally:
            fileInfo.userdata.append(subvolume)

    @staticmethod
    def _iterate_mount_sources(folder: dict[str, Any]) -> Iterable[MountSource]:
        for value in folder.values():
            if isinstance(value, MountSource):
                yield value
            else:
                yield from SubvolumesMountSource._iterate_mount_sources(value)

    @overrides(MountSource)
    def __exit__(self, exception_type, exception_value, exception_traceback):
        for mountSource in self._iterate_mount_sources(self.mountSources):
            mountSource.__exit__(exception_type, exception_value, exception_traceback)
