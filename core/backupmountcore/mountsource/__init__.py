"""
This module offers a MountSource interface, which has methods for listing paths
and getting file metadata and contents. File lookup returns a FileInfo object,
which uniquely identifies the file, similar to a filesystem inode, and can be
used to open the file.

The implementations are split into two submodules: "formats" and "compositing".

"formats" are MountSource implementations that expose an existing file structure:

 - FolderMountSource: Exposes the files of one snapshot tree stored as a folder.

The "compositing" submodule contains MountSource implementations that combine
other MountSource implementations:

 - SubvolumesMountSource: Takes multiple MountSource implementations and mounts
                          each in separate subfolders with specified names.

The snapshots directory, which combines one FolderMountSource per snapshot, lives
in backupmountcore.snapshots because it also depends on the repository.

Example:

    from backupmountcore.mountsource.formats.folder import FolderMountSource
    from backupmountcore.mountsource.compositing.subvolumes import SubvolumesMountSource

    root = SubvolumesMountSource({"data": FolderMountSource("/srv/data")})
    root.list("/data")
    info = root.lookup("/data/bar")

    with root.open(info) as file:
        print(file.read())
"""

from .MountSource import FileInfo, MountSource, create_root_file_info, merge_statfs
