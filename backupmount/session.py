import concurrent.futures
import errno
import inspect
import logging
import os
import shutil
import subprocess
import sys
import threading
from typing import Any, Optional

from backupmountcore.mountsource import MountSource
from backupmountcore.utils import MountError

from .shutdown import default_termination_signals

logger = logging.getLogger(__name__)


def is_inside_fuse_context() -> bool:
    # Import late so that unmounting works without a loadable libfuse.
    from .fuse import fuse  # pylint: disable=import-outside-toplevel

    for frame_info in inspect.stack():
        frame = frame_info.frame
        cls = frame.f_locals.get('cls', type(frame.f_locals.get('self', None)))
        if inspect.isclass(cls) and issubclass(cls, fuse.Operations):
            return True
    return False


def unmount(mountPoint: str) -> None:
    """Unmounts a FUSE mount point. Raises MountError if it could not be unmounted, e.g., if it is not mounted."""

    # Do not test with os.path.ismount or anything other before calling fusermount because if the FUSE process
    # was killed without unmounting, then any file system query might return with errors.
    # https://github.com/python/cpython/issues/96328#issuecomment-2027458283
    errors: list[str] = []
    commands = [["fusermount", "-u", mountPoint], ["fusermount3", "-u", mountPoint]]
    for command in commands:
        if shutil.which(command[0]) is None:
            continue
        try:
            subprocess.run(command, check=True, capture_output=True)
            logger.info("Successfully called %s -u '%s'.", command[0], mountPoint)
            return
        except subprocess.CalledProcessError as exception:
            message = exception.stderr.decode(errors='replace').strip() if exception.stderr else str(exception)
            errors.append(message)
            logger.info("%s -u %s failed with: %s", command[0], mountPoint, message)
        except OSError as exception:
            errors.append(str(exception))
            logger.info("%s -u %s failed with: %s", command[0], mountPoint, exception)

    # fusermount might not be installed, e.g., on macOS, or might lack permissions while we are root.
    if os.path.ismount(mountPoint):
        try:
            subprocess.run(["umount", mountPoint], check=True, capture_output=True)
            logger.info("Successfully called umount '%s'.", mountPoint)
            return
        except (OSError, subprocess.CalledProcessError) as exception:
            errors.append(str(exception))
            logger.info("umount %s failed with: %s", mountPoint, exception)

    if not errors:
        errors.append("no unmount program found")
    raise MountError(f"Failed to unmount '{mountPoint}': {'; '.join(errors)}")


class MountSession:
    """
    One FUSE session for one mount point. Created by FuseMounter.mount. The session is served exactly once
    with 'serve', which blocks until the mount point is unmounted. Afterwards, 'wait' returns the final
    outcome of the session or raises the recorded error.
    """

    def __init__(self, mountPoint: str, fuseOptions: dict[str, Any], mounter: Optional['FuseMounter'] = None):
        self.mountPoint = mountPoint
        self.fuseOptions = dict(fuseOptions)
        # Set when the kernel has initialized the file system, i.e., when the mount point became usable.
        self.ready = threading.Event()
        self._completion: concurrent.futures.Future = concurrent.futures.Future()
        self._mounter = mounter

    def notify_ready(self) -> None:
        logger.debug("FUSE file system at %s has been initialized.", self.mountPoint)
        self.ready.set()

    def record_error(self, error: BaseException) -> None:
        """Records the final outcome of the session unless one has already been recorded."""
        if not self._completion.done():
            self._completion.set_exception(error)

    def serve(self, root: MountSource) -> None:
        # pylint: disable=import-outside-toplevel
        from .fuse import fuse
        from .FuseMount import FuseMount

        if self._completion.done():
            raise MountError(f"The session for '{self.mountPoint}' has already been served!")

        logger.debug("serving mount at %s", self.mountPoint)
        try:
            # On SIGTERM or SIGHUP, libfuse leaves the session loop and the shutdown hooks run afterwards.
            with default_termination_signals():
                fuse.FUSE(
                    operations=FuseMount(root, self),
                    mountpoint=self.mountPoint,
                    foreground=True,
                    nothreads=False,
                    **self.fuseOptions,
                )
        except RuntimeError as exception:
            error = MountError(
                f"FUSE failed to serve '{self.mountPoint}' with error code {exception}. "
                "See previous output for more information."
            )
            self.record_error(error)
            raise error from exception
        finally:
            if self._mounter is not None:
                self._mounter.release(self.mountPoint)

        if not self.ready.is_set():
            self.record_error(MountError(f"FUSE returned without ever mounting '{self.mountPoint}'!"))
        if not self._completion.done():
            self._completion.set_result(None)

    def wait(self, timeout: Optional[float] = None) -> None:
        """Returns after the session has finished or raises the error recorded for it."""
        return self._completion.result(timeout=timeout)


class FuseMounter:
    """Establishes FUSE sessions and unmounts FUSE mount points. Only one live session per mount point."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._mountPoints: set[str] = set()

    def mount(self, mountPoint: str, fuseOptions: dict[str, Any]) -> MountSession:
        try:
            if is_inside_fuse_context():
                raise MountError(
                    "A FUSE mount must not be created from another FUSE mount. Start a new subprocess!", errno.EDEADLK
                )
        except ImportError as exception:
            raise MountError(f"FUSE is not available: {exception}", errno.ENODEV) from exception

        if sys.platform.startswith('linux') and not os.path.exists('/dev/fuse'):
            raise MountError("The FUSE kernel module is not loaded: /dev/fuse does not exist!", errno.ENODEV)

        path = os.path.realpath(mountPoint)
        if not os.path.isdir(path):
            raise MountError(f"Mount point '{mountPoint}' is not a directory!", errno.ENOTDIR)
        if os.path.ismount(path):
            raise MountError(f"Mount point '{mountPoint}' is already mounted!", errno.EBUSY)
        if os.getuid() != 0 and not os.access(path, os.W_OK | os.X_OK):
            raise MountError(f"Permission denied to mount onto '{mountPoint}'!", errno.EACCES)

        with self._lock:
            if path in self._mountPoints:
                raise MountError(f"Mount point '{mountPoint}' is already served by this process!", errno.EBUSY)
            self._mountPoints.add(path)

        logger.debug("Established FUSE session for %s with options: %s", path, fuseOptions)
        return MountSession(path, fuseOptions, self)

    def release(self, mountPoint: str) -> None:
        with self._lock:
            self._mountPoints.discard(mountPoint)

    def unmount(self, mountPoint: str) -> None:
        unmount(mountPoint)
