import contextlib
import logging
import signal
import threading
from typing import Any, Callable

from backupmountcore.utils import MountError

logger = logging.getLogger(__name__)

# Termination signals which should still unwind the stack so that registered hooks run.
# SIGINT already raises KeyboardInterrupt.
TERMINATION_SIGNALS = (signal.SIGTERM, signal.SIGHUP)


class ShutdownHooks:
    """
    Collection of cleanup handlers which are run exactly once when the owning scope is left,
    be it by returning, by an exception, or by a termination signal.

        with ShutdownHooks() as hooks:
            hooks.register(lambda: print("Bye"))
            ...

    Exceptions raised by handlers are logged and do not prevent the other handlers from running.
    """

    def __init__(self) -> None:
        self._handlers: list[Callable[[], Any]] = []
        self._lock = threading.Lock()
        self._previousSignalHandlers: dict[int, Any] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._handlers)

    def register(self, handler: Callable[[], Any]) -> None:
        with self._lock:
            self._handlers.append(handler)

    def run(self) -> None:
        with self._lock:
            handlers = self._handlers
            self._handlers = []

        for handler in handlers:
            try:
                handler()
            except Exception as exception:
                logger.warning(
                    "Shutdown handler %s failed with: %s",
                    getattr(handler, '__name__', handler),
                    exception,
                    exc_info=logger.isEnabledFor(logging.DEBUG),
                )

    @staticmethod
    def _raise_system_exit(signum, _frame):
        logger.info("Received signal %s, shutting down.", signal.Signals(signum).name)
        raise SystemExit(128 + signum)

    def __enter__(self):
        # Signal handlers can only be installed from the main thread, e.g., not when called from tests in threads.
        if threading.current_thread() is threading.main_thread():
            for signum in TERMINATION_SIGNALS:
                self._previousSignalHandlers[signum] = signal.signal(signum, self._raise_system_exit)
        return self

    def __exit__(self, exception_type, exception_value, exception_traceback):
        try:
            for signum, handler in self._previousSignalHandlers.items():
                if handler is not None:
                    signal.signal(signum, handler)
            self._previousSignalHandlers.clear()
        finally:
            self.run()


@contextlib.contextmanager
def default_termination_signals():
    """
    Resets the termination signals to their default disposition for the duration of the block.

    libfuse only installs its own handlers, which end the session loop, for signals with the default
    disposition. Python handlers would never run while the main thread is blocked inside libfuse.
    """
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    previousHandlers = {signum: signal.signal(signum, signal.SIG_DFL) for signum in TERMINATION_SIGNALS}
    try:
        yield
    finally:
        for signum, handler in previousHandlers.items():
            if handler is not None:
                signal.signal(signum, handler)


def make_unmount_handler(mountPoint: str, mounter) -> Callable[[], None]:
    """
    Returns a shutdown handler which tries to unmount the given mount point. Failing to do so only results
    in a warning because the mount point is usually already unmounted by the time the handler runs.
    """

    def unmount_on_shutdown() -> None:
        logger.debug("Running unmount cleanup handler for mount at %s", mountPoint)
        try:
            mounter.unmount(mountPoint)
        except (MountError, OSError) as exception:
            logger.warning("unable to umount (maybe already umounted?): %s", exception)

    return unmount_on_shutdown
