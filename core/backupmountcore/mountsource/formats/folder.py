import builtins
import os
import stat
from collections.abc import Iterable
from typing import IO, Any, Optional, Union

from backupmountcore.mountsource import FileInfo, MountSource
from backupmountcore.utils import overrides


class FolderMountSource(MountSource):
    """
    This class manages one folder as mount source offering methods for listing folders, reading files, and others.
    It is used to expose the files of a snapshot tree. Symbolic links are reported as they are and never
    followed, so nothing outside of the folder becomes reachable.
    """

    def __init__(self, path: Union[str, os.PathLike]) -> None:
        self.root = str(path)
        self._statfs = FolderMountSource._get_statfs_for_folder(self.root)

    @staticmethod
    def _get_statfs_for_folder(path: str):
        result = os.statvfs(path)
        return {
            'f_bsize': result.f_bsize,
            'f_frsize': result.f_frsize,
            'f_blocks': result.f_blocks,
            'f_bfree': 0,
            'f_bavail': 0,
            'f_files': result.f_files,
            'f_ffree': 0,
            'f_favail': 0,
            'f_namemax': result.f_namemax,
        }

    def _realpath(self, path: str) -> str:
        """Path given relative to folder root. Leading '/' is acceptable"""
        return os.path.join(self.root, *path.strip('/').split('/'))

    @staticmethod
    def _stats_to_file_info(stats: os.stat_result, path: str, linkname: str):
        # fmt: off
        return FileInfo(
            size     = stats.st_size,
            mtime    = stats.st_mtime,
            mode     = stats.st_mode,
            linkname = linkname,
            uid      = stats.st_uid,
            gid      = stats.st_gid,
            userdata = [path],
        )
        # fmt: on

    @staticmethod
    def _dir_entry_to_file_info(dirEntry: os.DirEntry, path: str):
        try:
            linkname = os.readlink(dirEntry.path) if dirEntry.is_symlink() else ""
        except OSError:
            linkname = ""

        return FolderMountSource._stats_to_file_info(
            dirEntry.stat(follow_symlinks=False), '/'.join([path.strip('/'), dirEntry.name]).lstrip('/'), linkname
        )

    @overrides(MountSource)
    def lookup(self, path: str) -> Optional[FileInfo]:
        """All returned file infos contain a file path string at the back of FileInfo.userdata."""
        realpath = self._realpath(path)
        try:
            stats = os.lstat(realpath)
        except FileNotFoundError:
            return None

        linkname = os.readlink(realpath) if stat.S_ISLNK(stats.st_mode) else ""
        return self._stats_to_file_info(stats, path.strip('/'), linkname)

    @overrides(MountSource)
    def list(self, path: str) -> Optional[Union[Iterable[str], dict[str, FileInfo]]]:
        realpath = self._realpath(path)
        if not os.path.isdir(realpath) or os.path.islink(realpath):
            return None

        with os.scandir(realpath) as entries:
            return {
                os.fsdecode(dirEntry.name): FolderMountSource._dir_entry_to_file_info(dirEntry, path)
                for dirEntry in entries
            }

    @overrides(MountSource)
    def list_mode(self, path: str) -> Optional[Union[Iterable[str], dict[str, int]]]:
        realpath = self._realpath(path)
        if not os.path.isdir(realpath) or os.path.islink(realpath):
            return None

        # https://docs.python.org/3/library/os.html#os.scandir
        # > All os.DirEntry methods may perform a system call, but is_dir() and is_file() usually
        # > only require a system call for symbolic links.
        def make_mode(dirEntry):
            mode = stat.S_IFDIR if dirEntry.is_dir(follow_symlinks=False) else stat.S_IFREG
            if dirEntry.is_symlink():
                mode = stat.S_IFLNK
            return mode

        with os.scandir(realpath) as entries:
            return {os.fsdecode(dirEntry.name): make_mode(dirEntry) for dirEntry in entries}

    @overrides(MountSource)
    def open(self, fileInfo: FileInfo, buffering=-1) -> IO[bytes]:
        realpath = self.get_file_path(fileInfo)
        try:
            return open(realpath, 'rb', buffering=buffering)
        except Exception as e:
            raise ValueError(f"Specified path '{realpath}' is not a file that can be read!") from e

    @overrides(MountSource)
    def statfs(self) -> dict[str, Any]:
        return self._statfs.copy()

    @overrides(MountSource)
    def list_xattr(self, fileInfo: FileInfo) -> builtins.list[str]:
        return os.listxattr(self.get_file_path(fileInfo), follow_symlinks=False) if hasattr(os, 'listxattr') else []

    @overrides(MountSource)
    def get_xattr(self, fileInfo: FileInfo, key: str) -> Optional[bytes]:
        if not hasattr(os, 'getxattr'):
            return None
        try:
            return os.getxattr(self.get_file_path(fileInfo), key, follow_symlinks=False)
        except OSError:
            return None

    @overrides(MountSource)
    def __exit__(self, exception_type, exception_value, exception_traceback):
        pass

    def get_file_path(self, fileInfo: FileInfo) -> str:
        path = fileInfo.userdata[-1]
        assert isinstance(path, str)
        return self._realpath(path)
