import builtins
import dataclasses
import logging
import os
import stat
import time
from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import IO, Any, Optional, Union

logger = logging.getLogger(__name__)


@dataclasses.dataclass
class FileInfo:
    """Metadata of one node as served by FUSE getattr."""

    # fmt: off
    size     : int
    mtime    : float
    mode     : int
    linkname : str
    uid      : int
    gid      : int
    # Stack of routing information, one element per layer. A folder source pushes the path inside its tree,
    # the snapshots directory pushes the snapshot name on top, and the root tree pushes the subvolume name last.
    # Each layer pops its own element before delegating downwards and pushes it back afterwards.
    userdata : list[Any]
    # fmt: on

    def clone(self) -> 'FileInfo':
        # Only the userdata stack is copied, its elements are shared.
        return dataclasses.replace(self, userdata=self.userdata[:])


class MountSource(ABC):
    """
    Read-only directory tree that can be served by FuseMount or browsed directly.

    Paths are absolute inside the tree, e.g., '/2024-01-02T03:04:05Z/home/user'. A missing leading
    slash is treated as if it were there. Nodes that do not exist are reported as None, not raised.
    Sources reachable from a FUSE mount get called from several threads at once.
    """

    @abstractmethod
    def lookup(self, path: str) -> Optional[FileInfo]:
        pass

    @abstractmethod
    def list(self, path: str) -> Optional[Union[Iterable[str], dict[str, FileInfo]]]:
        """Returns the folder contents keyed by name or None if path is not a folder."""

    @abstractmethod
    def list_mode(self, path: str) -> Optional[Union[Iterable[str], dict[str, int]]]:
        """Like list, but only returns the file type bits for each name, which is all readdir needs."""

    @abstractmethod
    def open(self, fileInfo: FileInfo, buffering=-1) -> IO[bytes]:
        """Opens the file described by fileInfo, which must have been returned by lookup or list of this source."""

    def read(self, fileInfo: FileInfo, size: int, offset: int) -> bytes:
        with self.open(fileInfo, buffering=0) as file:
            file.seek(offset)
            return file.read(size)

    @abstractmethod
    def statfs(self) -> dict[str, Any]:
        """Keys are named like the members of struct statvfs, e.g., f_bsize and f_namemax."""

    @abstractmethod
    def list_xattr(self, fileInfo: FileInfo) -> builtins.list[str]:
        pass

    @abstractmethod
    def get_xattr(self, fileInfo: FileInfo, key: str) -> Optional[bytes]:
        """Returns None if the attribute does not exist."""

    def __enter__(self):
        return self

    @abstractmethod
    def __exit__(self, exception_type, exception_value, exception_traceback):
        pass


def create_root_file_info(userdata: list[Any]) -> FileInfo:
    """Metadata for synthesized read-only folders, which belong to the user serving the mount."""
    # fmt: off
    return FileInfo(
        size     = 0,
        mtime    = time.time(),
        mode     = stat.S_IFDIR | 0o555,
        linkname = "",
        uid      = os.getuid(),
        gid      = os.getgid(),
        userdata = userdata,
    )
    # fmt: on


def merge_statfs(values: Iterable[dict[str, Any]]) -> dict[str, Any]:
    """
    Combines the statfs results of several sources. Block sizes take the largest value and the name length
    limit the smallest one so that the result holds for all of them. Other keys keep the first value.
    """
    combine = {'f_bsize': max, 'f_frsize': max, 'f_namemax': min}
    result: dict[str, Any] = {}
    for statfs in values:
        for key, value in statfs.items():
            if key not in result:
                result[key] = value
            elif key in combine:
                result[key] = combine[key](result[key], value)
            elif result[key] != value:
                logger.debug("Keeping %s=%s for the combined statfs instead of %s.", key, result[key], value)
    return result
