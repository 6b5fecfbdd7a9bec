# pylint: disable=wrong-import-position
# pylint: disable=protected-access

import datetime
import os
import stat
import sys
import threading
from pathlib import Path

from helpers import add_snapshot, create_repository

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

import pytest  # noqa: E402
from backupmountcore.mountsource.compositing.subvolumes import SubvolumesMountSource  # noqa: E402
from backupmountcore.repository import Repository  # noqa: E402
from backupmountcore.snapshots import SnapshotsMountSource  # noqa: E402


@pytest.fixture(name="repository")
def fixture_repository(tmp_path):
    path = create_repository(tmp_path / "repo")
    # fmt: off
    add_snapshot(path, "a1", "2024-01-01T03:00:00Z", "t1", tags=("daily",),
                 files={"home/user/notes.txt": b"monday\n"})
    add_snapshot(path, "a2", "2024-01-07T03:00:00Z", "t2", tags=("daily", "weekly"),
                 files={"home/user/notes.txt": b"sunday\n", "home/user/todo.txt": b"relax\n"})
    add_snapshot(path, "a3", "2024-01-08T03:00:00Z", "t3", tags=("daily",), hostname="server",
                 paths=("/etc",), uid=0, gid=0, files={"etc/hostname": b"server\n"})
    # fmt: on
    with Repository(str(path)) as repository:
        repository.load_index()
        yield repository


def _names(mountSource):
    return sorted(mountSource.list("/").keys())


class TestSnapshotsMountSource:
    @staticmethod
    def test_list_all(repository):
        snapshots = SnapshotsMountSource(repository)
        assert _names(snapshots) == ["2024-01-01T03:00:00Z", "2024-01-07T03:00:00Z", "2024-01-08T03:00:00Z"]
        assert sorted(snapshots.list_mode("/").keys()) == _names(snapshots)
        assert all(stat.S_ISDIR(mode) for mode in snapshots.list_mode("/").values())

    @staticmethod
    @pytest.mark.parametrize(
        'tags, expected',
        [
            ((), ["2024-01-01T03:00:00Z", "2024-01-07T03:00:00Z", "2024-01-08T03:00:00Z"]),
            (("daily",), ["2024-01-01T03:00:00Z", "2024-01-07T03:00:00Z", "2024-01-08T03:00:00Z"]),
            (("weekly",), ["2024-01-07T03:00:00Z"]),
            (("daily", "weekly"), ["2024-01-07T03:00:00Z"]),
            (("monthly",), []),
        ],
    )
    def test_tag_filter(repository, tags, expected):
        assert _names(SnapshotsMountSource(repository, tags=tags)) == expected

    @staticmethod
    def test_host_filter(repository):
        assert _names(SnapshotsMountSource(repository, host="server")) == ["2024-01-08T03:00:00Z"]
        assert len(_names(SnapshotsMountSource(repository, host="laptop"))) == 2
        assert not _names(SnapshotsMountSource(repository, host="desktop"))

    @staticmethod
    def test_path_filter(repository):
        assert _names(SnapshotsMountSource(repository, paths=["/etc"])) == ["2024-01-08T03:00:00Z"]
        assert len(_names(SnapshotsMountSource(repository, paths=["/home/user"]))) == 2
        assert not _names(SnapshotsMountSource(repository, paths=["/etc", "/home/user"]))

    @staticmethod
    def test_combined_filters(repository):
        snapshots = SnapshotsMountSource(repository, tags=["daily"], host="laptop", paths=["/home/user"])
        assert _names(snapshots) == ["2024-01-01T03:00:00Z", "2024-01-07T03:00:00Z"]

    @staticmethod
    def test_duplicate_names(repository):
        add_snapshot(Path(repository.path), "a0", "2024-01-01T03:00:00Z", "t0")
        add_snapshot(Path(repository.path), "a9", "2024-01-01T03:00:00.500Z", "t9")
        repository.load_index()

        names = _names(SnapshotsMountSource(repository))
        assert names[:3] == ["2024-01-01T03:00:00Z", "2024-01-01T03:00:00Z-1", "2024-01-01T03:00:00Z-2"]

    @staticmethod
    def test_snapshot_folder(repository):
        snapshots = SnapshotsMountSource(repository)

        fileInfo = snapshots.lookup("/2024-01-07T03:00:00Z")
        assert fileInfo
        assert fileInfo.mode == stat.S_IFDIR | 0o555
        assert fileInfo.mtime == datetime.datetime(2024, 1, 7, 3, tzinfo=datetime.timezone.utc).timestamp()
        assert fileInfo.uid == 1000
        assert fileInfo.gid == 1000

        assert list(snapshots.list("/2024-01-07T03:00:00Z").keys()) == ["home"]
        assert sorted(snapshots.list("/2024-01-07T03:00:00Z/home/user").keys()) == ["notes.txt", "todo.txt"]
        assert stat.S_ISREG(snapshots.list_mode("/2024-01-07T03:00:00Z/home/user")["todo.txt"])

        assert snapshots.lookup("/2024-01-07T03:00:00Z/non-existing") is None
        assert snapshots.lookup("/2000-01-01T00:00:00Z") is None
        assert snapshots.list("/2000-01-01T00:00:00Z") is None

    @staticmethod
    def test_read_files(repository):
        snapshots = SnapshotsMountSource(repository)
        for name, contents in [("2024-01-01T03:00:00Z", b"monday\n"), ("2024-01-07T03:00:00Z", b"sunday\n")]:
            fileInfo = snapshots.lookup(f"/{name}/home/user/notes.txt")
            assert fileInfo
            assert fileInfo.size == len(contents)
            with snapshots.open(fileInfo) as file:
                assert file.read() == contents
            assert snapshots.read(fileInfo, size=3, offset=0) == contents[:3]
            assert fileInfo.userdata[-1] == name

    @staticmethod
    def test_owner_root(repository):
        snapshots = SnapshotsMountSource(repository, ownerRoot=True)

        assert snapshots.lookup("/").uid == 0
        for path in ["", "/home", "/home/user/notes.txt"]:
            fileInfo = snapshots.lookup("/2024-01-01T03:00:00Z" + path)
            assert fileInfo.uid == 0
            assert fileInfo.gid == 0

        assert all(fileInfo.uid == 0 for fileInfo in snapshots.list("/").values())
        assert all(fileInfo.uid == 0 for fileInfo in snapshots.list("/2024-01-01T03:00:00Z/home/user").values())

        fileInfo = SnapshotsMountSource(repository).lookup("/2024-01-01T03:00:00Z/home/user/notes.txt")
        assert fileInfo.uid == os.getuid()

    @staticmethod
    def test_new_snapshots_show_up(repository):
        snapshots = SnapshotsMountSource(repository, tags=["weekly"])
        assert _names(snapshots) == ["2024-01-07T03:00:00Z"]

        path = Path(repository.path)
        add_snapshot(path, "b1", "2024-01-14T03:00:00Z", "t4", tags=("weekly",), files={"new": b"new\n"})
        add_snapshot(path, "b2", "2024-01-15T03:00:00Z", "t5", tags=("daily",))

        # Looking up a snapshot that is not known yet should reload the index even without listing first.
        assert snapshots.lookup("/2024-01-14T03:00:00Z")
        assert _names(snapshots) == ["2024-01-07T03:00:00Z", "2024-01-14T03:00:00Z"]
        with snapshots.open(snapshots.lookup("/2024-01-14T03:00:00Z/new")) as file:
            assert file.read() == b"new\n"

    @staticmethod
    def test_concurrent_access(repository):
        snapshots = SnapshotsMountSource(repository)
        errors = []

        def list_and_read():
            try:
                for _ in range(20):
                    assert len(snapshots.list("/")) == 3
                    with snapshots.open(snapshots.lookup("/2024-01-01T03:00:00Z/home/user/notes.txt")) as file:
                        assert file.read() == b"monday\n"
            except Exception as exception:  # pylint: disable=broad-exception-caught
                errors.append(exception)

        threads = [threading.Thread(target=list_and_read) for _ in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert not errors

    @staticmethod
    def test_xattr(repository):
        snapshots = SnapshotsMountSource(repository)
        assert snapshots.list_xattr(snapshots.lookup("/2024-01-01T03:00:00Z")) == []
        assert snapshots.get_xattr(snapshots.lookup("/2024-01-01T03:00:00Z"), "user.foo") is None
        assert snapshots.get_xattr(snapshots.lookup("/2024-01-01T03:00:00Z/home/user/notes.txt"), "user.foo") is None

    @staticmethod
    def test_as_subvolume(repository):
        root = SubvolumesMountSource({'snapshots': SnapshotsMountSource(repository, tags=["weekly"])})
        assert list(root.list("/").keys()) == ["snapshots"]
        assert list(root.list("/snapshots").keys()) == ["2024-01-07T03:00:00Z"]

        fileInfo = root.lookup("/snapshots/2024-01-07T03:00:00Z/home/user/todo.txt")
        with root.open(fileInfo) as file:
            assert file.read() == b"relax\n"
        root.__exit__(None, None, None)
