import errno
import logging
import os
import threading
from typing import IO, Any, Optional

from backupmountcore.mountsource import FileInfo, MountSource
from backupmountcore.utils import ceil_div, overrides

from .fuse import fuse

logger = logging.getLogger(__name__)


class FuseMount(fuse.Operations):
    """
    This class implements the fusepy interface in order to create a read-only mounted file system view
    to a MountSource. It is a thin wrapper, all file system semantics are implemented by the mount sources.

    Documentation for FUSE methods can be found in the fusepy or libfuse headers. There seems to be no complete
    rendered documentation aside from the header comments.

    https://github.com/fusepy/fusepy/blob/master/fuse.py
    https://github.com/libfuse/libfuse/blob/master/include/fuse.h

    All path arguments for overridden fusepy methods do have a leading slash ('/')!
    fusepy calls these methods from multiple threads.
    """

    # Use a relatively large minimum 256 KiB block size to get filesystem users to use larger reads
    # because reads have a relative large overhead because of the fusepy, libfuse, and kernel FUSE layers.
    MINIMUM_BLOCK_SIZE = 256 * 1024

    use_ns = True

    def __init__(self, mountSource: MountSource, session=None) -> None:
        self.mountSource = mountSource
        # Notified when the kernel has initialized the file system. May be None, e.g., for tests.
        self.session = session

        self._lock = threading.Lock()
        # Maps handles to opened I/O objects.
        self.openedFiles: dict[int, IO[bytes]] = {}
        self.lastFileHandle: int = 0  # It will be incremented before being returned. It can't hurt to never return 0.

    def _lookup(self, path: str) -> FileInfo:
        fileInfo = self.mountSource.lookup(path)
        if fileInfo is None:
            raise fuse.FuseOSError(errno.ENOENT)
        return fileInfo

    @overrides(fuse.Operations)
    def init(self, path: str) -> None:
        if self.session is not None:
            self.session.notify_ready()

    @overrides(fuse.Operations)
    def destroy(self, path: str) -> None:
        logger.debug("FUSE session is being destroyed.")

    @overrides(fuse.Operations)
    def getattr(self, path: str, fh=None) -> dict[str, Any]:
        fileInfo = self._lookup(path)
        return {
            # dictionary keys: https://pubs.opengroup.org/onlinepubs/007904875/basedefs/sys/stat.h.html
            'st_size': fileInfo.size,
            'st_mode': fileInfo.mode,
            'st_uid': fileInfo.uid,
            'st_gid': fileInfo.gid,
            'st_mtime': int(fileInfo.mtime * 1e9),
            'st_nlink': 1,
            'st_blksize': FuseMount.MINIMUM_BLOCK_SIZE,
            # Number of 512 B (!) blocks irrespective of st_blksize! https://linux.die.net/man/2/stat
            'st_blocks': ceil_div(fileInfo.size, 512),
        }

    @overrides(fuse.Operations)
    def readdir(self, path: str, fh):
        '''
        Can return either a list of names, or a list of (name, attrs, offset)
        tuples. attrs is a dict as in getattr.
        '''

        files = self.mountSource.list_mode(path)
        if files is None:
            raise fuse.FuseOSError(errno.ENOENT)

        # We only need to return these special directories. FUSE automatically expands these and will not ask
        # for paths like /../foo/./../bar, so we don't need to worry about cleaning such paths.
        yield '.'
        yield '..'

        if isinstance(files, dict):
            for name, mode in files.items():
                yield name, {'st_mode': mode}, 0
        else:
            yield from files

    @overrides(fuse.Operations)
    def readlink(self, path: str) -> str:
        return self._lookup(path).linkname

    @overrides(fuse.Operations)
    def open(self, path: str, flags: int) -> int:
        """Returns file handle of opened path."""

        if flags & (os.O_WRONLY | os.O_RDWR | os.O_APPEND | os.O_TRUNC):
            raise fuse.FuseOSError(errno.EROFS)

        fileInfo = self._lookup(path)
        try:
            return self._add_new_handle(self.mountSource.open(fileInfo, buffering=0))
        except Exception as exception:
            logger.error(
                "Caught exception when trying to open file: %s", fileInfo, exc_info=logger.isEnabledFor(logging.DEBUG)
            )
            raise fuse.FuseOSError(errno.EIO) from exception

    def _add_new_handle(self, handle) -> int:
        # Note that fh in fuse_common.h is 64-bit and Python also supports 64-bit (long integers) out of the box.
        # So, there should practically be no overflow and file handle reuse possible.
        with self._lock:
            self.lastFileHandle += 1
            self.openedFiles[self.lastFileHandle] = handle
            return self.lastFileHandle

    @overrides(fuse.Operations)
    def release(self, path: str, fh) -> int:
        openedFile = self.openedFiles.pop(fh, None)
        if openedFile is None:
            raise fuse.FuseOSError(errno.ESTALE)
        openedFile.close()
        return 0

    @overrides(fuse.Operations)
    def read(self, path: str, size: int, offset: int, fh) -> bytes:
        openedFile = self.openedFiles.get(fh)
        if openedFile is not None:
            return self._read_at(openedFile, size, offset)

        # As far as I understand FUSE, this should never happen. But you never know.
        logger.warning("Given file handle does not exist. Will open file before reading which might be slow.")

        fileInfo = self._lookup(path)
        try:
            return self.mountSource.read(fileInfo, size, offset)
        except Exception as exception:
            logger.error(
                "Caught exception %s when trying to read data from snapshot! Returning errno.EIO.",
                exception,
                exc_info=logger.isEnabledFor(logging.DEBUG),
            )
            raise fuse.FuseOSError(errno.EIO) from exception

    def _read_at(self, openedFile: IO[bytes], size: int, offset: int) -> bytes:
        try:
            fileno = openedFile.fileno()
        except (AttributeError, OSError, ValueError):
            fileno = None
        if fileno is not None:
            return os.pread(fileno, size, offset)

        # Seek and read must not be interleaved with other threads reading from the same handle.
        with self._lock:
            openedFile.seek(offset)
            return openedFile.read(size)

    @overrides(fuse.Operations)
    def statfs(self, path: str) -> dict[str, Any]:
        result = self.mountSource.statfs()
        for key in ['f_bsize', 'f_frsize']:
            result[key] = max(result.get(key, 0), FuseMount.MINIMUM_BLOCK_SIZE)
        return result

    @overrides(fuse.Operations)
    def listxattr(self, path: str):
        # Beware, keys not prefixed with "user." will not be listed by getfattr by default.
        return self.mountSource.list_xattr(self._lookup(path))

    @overrides(fuse.Operations)
    def getxattr(self, path: str, name, position=0):
        if position:
            # Specifically do not raise ENOSYS because libfuse will then disable getxattr calls wholly from now on.
            raise fuse.FuseOSError(errno.EOPNOTSUPP)

        value: Optional[bytes] = self.mountSource.get_xattr(self._lookup(path), name)
        if value is None:
            # See https://man7.org/linux/man-pages/man2/getxattr.2.html#ERRORS
            raise fuse.FuseOSError(errno.ENODATA)
        return value
