"""
Lifecycle of one mount: open the repository, prepare the mount point, establish the FUSE session,
register the unmount cleanup, and serve the snapshots until the mount point is unmounted.
"""

import argparse
import logging
import os
from typing import Callable, Optional

from backupmountcore.mountsource.compositing.subvolumes import SubvolumesMountSource
from backupmountcore.repository import Repository, open_repository
from backupmountcore.snapshots import SnapshotsMountSource

from .options import GlobalOptions, MountOptions, translate_mount_flags
from .shutdown import ShutdownHooks, make_unmount_handler

logger = logging.getLogger(__name__)


def prepare_mount_point(mountPoint: str) -> None:
    """Creates the mount point with owner-only permissions if it does not exist. Existing paths are left as is."""
    try:
        os.stat(mountPoint)
    except FileNotFoundError:
        print(f"Mountpoint {mountPoint} doesn't exist, creating it")
        os.mkdir(mountPoint, 0o700)


def build_root_tree(repository: Repository, options: MountOptions) -> SubvolumesMountSource:
    return SubvolumesMountSource(
        {
            'snapshots': SnapshotsMountSource(
                repository, ownerRoot=options.ownerRoot, paths=options.paths, tags=options.tags, host=options.host
            )
        }
    )


def mount(
    options: MountOptions,
    globalOptions: GlobalOptions,
    mountPoint: str,
    hooks: ShutdownHooks,
    mounter=None,
    openRepository: Callable[[GlobalOptions], Repository] = open_repository,
) -> None:
    """
    Mounts the snapshots of the repository at mountPoint and serves them until the mount point is unmounted.
    Returns after a clean shutdown and raises on any error. An unmount handler is registered in hooks
    as soon as the FUSE session has been established.
    """
    logger.debug("start mount")

    with openRepository(globalOptions) as repository:
        repository.load_index()

        prepare_mount_point(mountPoint)

        if mounter is None:
            # Import late so that errors in the repository are reported even without a working FUSE installation.
            from .session import FuseMounter  # pylint: disable=import-outside-toplevel

            mounter = FuseMounter()
        session = mounter.mount(mountPoint, translate_mount_flags(options))

        hooks.register(make_unmount_handler(mountPoint, mounter))

        print(f"Now serving the repository at {mountPoint}")
        print("Don't forget to umount after quitting!")

        with build_root_tree(repository, options) as root:
            session.serve(root)
        session.wait()

    logger.debug("finish mount")


def run_mount(
    options: MountOptions,
    globalOptions: GlobalOptions,
    args: list[str],
    hooks: ShutdownHooks,
    mounter=None,
    openRepository: Optional[Callable[[GlobalOptions], Repository]] = None,
) -> None:
    if not args:
        raise argparse.ArgumentTypeError("wrong number of parameters")

    mount(
        options,
        globalOptions,
        args[0],
        hooks,
        mounter=mounter,
        openRepository=openRepository or open_repository,
    )
