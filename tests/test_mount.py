# pylint: disable=wrong-import-position
# pylint: disable=protected-access

import argparse
import json
import os
import stat
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../core')))

from backupmount.mount import build_root_tree, mount, prepare_mount_point, run_mount  # noqa: E402
from backupmount.options import FILESYSTEM_NAME, GlobalOptions, MountOptions  # noqa: E402
from backupmount.shutdown import ShutdownHooks  # noqa: E402
from backupmountcore.repository import Repository, open_repository  # noqa: E402
from backupmountcore.utils import MountError, RepositoryError  # noqa: E402


def _create_repository(path):
    os.makedirs(os.path.join(path, "trees", "t1", "home"))
    os.makedirs(os.path.join(path, "trees", "t2", "home"))
    os.makedirs(os.path.join(path, "snapshots"))
    with open(os.path.join(path, "config"), 'wt', encoding='utf-8') as file:
        json.dump({'version': 1, 'id': "abcd"}, file)

    for snapshotId, time, tree, tags in [
        ("s1", "2024-01-01T03:00:00Z", "t1", ["daily"]),
        ("s2", "2024-01-07T03:00:00Z", "t2", ["daily", "weekly"]),
    ]:
        record = {'time': time, 'hostname': "laptop", 'tags': tags, 'paths': ["/home"], 'tree': tree}
        with open(os.path.join(path, "snapshots", snapshotId), 'wt', encoding='utf-8') as file:
            json.dump(record, file)
    return str(path)


class FakeSession:
    def __init__(self, mountPoint, fuseOptions, serveError=None, finalError=None):
        self.mountPoint = mountPoint
        self.fuseOptions = fuseOptions
        self.serveError = serveError
        self.finalError = finalError
        self.servedTrees = []
        self.waited = False

    def serve(self, root):
        # Record what would be visible to users of the mount point while serving.
        self.servedTrees.append(
            {
                'root': sorted(root.list("/").keys()),
                'snapshots': sorted(root.list("/snapshots").keys()),
                'snapshotsInfo': root.lookup("/snapshots"),
            }
        )
        if self.serveError is not None:
            raise self.serveError

    def wait(self):
        self.waited = True
        if self.finalError is not None:
            raise self.finalError


class FakeMounter:
    def __init__(self, mountError=None, unmountError=None, **sessionArguments):
        self.mountError = mountError
        self.unmountError = unmountError
        self.sessionArguments = sessionArguments
        self.sessions = []
        self.unmounted = []

    def mount(self, mountPoint, fuseOptions):
        if self.mountError is not None:
            raise self.mountError
        session = FakeSession(mountPoint, fuseOptions, **self.sessionArguments)
        self.sessions.append(session)
        return session

    def unmount(self, mountPoint):
        self.unmounted.append(mountPoint)
        if self.unmountError is not None:
            raise self.unmountError


@pytest.fixture(name="repository")
def fixture_repository(tmp_path):
    return _create_repository(tmp_path / "repo")


class TestPrepareMountPoint:
    @staticmethod
    def test_creates_missing_folder(tmp_path, capsys):
        mountPoint = str(tmp_path / "mountpoint")
        prepare_mount_point(mountPoint)
        assert f"Mountpoint {mountPoint} doesn't exist, creating it" in capsys.readouterr().out
        assert os.path.isdir(mountPoint)
        assert stat.S_IMODE(os.stat(mountPoint).st_mode) == 0o700 & ~_umask()

    @staticmethod
    def test_existing_folder_is_unchanged(tmp_path, capsys):
        mountPoint = tmp_path / "mountpoint"
        mountPoint.mkdir()
        os.chmod(mountPoint, 0o751)
        (mountPoint / "file").write_bytes(b"data")

        prepare_mount_point(str(mountPoint))
        assert "creating it" not in capsys.readouterr().out
        assert stat.S_IMODE(os.stat(mountPoint).st_mode) == 0o751
        assert (mountPoint / "file").read_bytes() == b"data"

    @staticmethod
    def test_existing_file_is_unchanged(tmp_path):
        mountPoint = tmp_path / "mountpoint"
        mountPoint.write_bytes(b"not a folder")
        prepare_mount_point(str(mountPoint))
        assert mountPoint.read_bytes() == b"not a folder"

    @staticmethod
    def test_missing_parent(tmp_path):
        with pytest.raises(FileNotFoundError):
            prepare_mount_point(str(tmp_path / "missing" / "mountpoint"))


def _umask():
    mask = os.umask(0)
    os.umask(mask)
    return mask


class TestMount:
    @staticmethod
    def test_zero_arguments():
        def open_repository_unexpectedly(globalOptions):
            raise AssertionError("The repository should not be opened without a mount point!")

        mounter = FakeMounter()
        hooks = ShutdownHooks()
        with pytest.raises(argparse.ArgumentTypeError, match="wrong number of parameters"):
            run_mount(
                MountOptions(), GlobalOptions(), [], hooks, mounter=mounter, openRepository=open_repository_unexpectedly
            )
        assert not mounter.sessions
        assert len(hooks) == 0

    @staticmethod
    def test_successful_mount(tmp_path, repository, capsys):
        mountPoint = str(tmp_path / "mountpoint")
        mounter = FakeMounter()
        hooks = ShutdownHooks()

        run_mount(MountOptions(allowOther=True), GlobalOptions(repository=repository), [mountPoint], hooks, mounter)

        assert os.path.isdir(mountPoint)
        assert len(mounter.sessions) == 1
        session = mounter.sessions[0]
        assert session.mountPoint == mountPoint
        assert session.fuseOptions == {'ro': True, 'fsname': FILESYSTEM_NAME, 'allow_other': True}
        assert session.waited

        assert session.servedTrees[0]['root'] == ["snapshots"]
        assert session.servedTrees[0]['snapshots'] == ["2024-01-01T03:00:00Z", "2024-01-07T03:00:00Z"]
        assert stat.S_ISDIR(session.servedTrees[0]['snapshotsInfo'].mode)

        output = capsys.readouterr().out
        assert f"Now serving the repository at {mountPoint}" in output
        assert "Don't forget to umount after quitting!" in output

        # Exactly one cleanup handler, which unmounts the mount point once.
        assert len(hooks) == 1
        hooks.run()
        assert mounter.unmounted == [mountPoint]
        hooks.run()
        assert mounter.unmounted == [mountPoint]

    @staticmethod
    def test_filters_are_passed_through(tmp_path, repository):
        mounter = FakeMounter()
        options = MountOptions(tags=("weekly",), host="laptop", paths=("/home",))
        mount(options, GlobalOptions(repository=repository), str(tmp_path), ShutdownHooks(), mounter)
        assert mounter.sessions[0].servedTrees[0]['snapshots'] == ["2024-01-07T03:00:00Z"]

    @staticmethod
    def test_build_root_tree(repository):
        options = MountOptions(ownerRoot=True, tags=("daily", "weekly"), host="laptop", paths=("/home",))
        with Repository(repository) as opened:
            opened.load_index()
            root = build_root_tree(opened, options)

        assert list(root.mountSources.keys()) == ["snapshots"]
        snapshots = root.mountSources["snapshots"]
        assert snapshots.ownerRoot
        assert snapshots.tags == ("daily", "weekly")
        assert snapshots.host == "laptop"
        assert snapshots.paths == ("/home",)

    @staticmethod
    def test_repository_error(tmp_path):
        mountPoint = str(tmp_path / "mountpoint")
        mounter = FakeMounter()
        hooks = ShutdownHooks()

        with pytest.raises(RepositoryError):
            mount(MountOptions(), GlobalOptions(repository=str(tmp_path / "missing")), mountPoint, hooks, mounter)
        with pytest.raises(RepositoryError, match="repository location"):
            mount(MountOptions(), GlobalOptions(), mountPoint, hooks, mounter, openRepository=open_repository)

        assert not os.path.exists(mountPoint)
        assert not mounter.sessions
        assert len(hooks) == 0

    @staticmethod
    def test_mount_point_error(tmp_path, repository):
        mounter = FakeMounter()
        hooks = ShutdownHooks()
        with pytest.raises(FileNotFoundError):
            mount(MountOptions(), GlobalOptions(repository=repository), str(tmp_path / "a" / "b"), hooks, mounter)
        assert not mounter.sessions
        assert len(hooks) == 0

    @staticmethod
    def test_session_establishment_error(tmp_path, repository, capsys):
        mounter = FakeMounter(mountError=MountError("permission denied", 13))
        hooks = ShutdownHooks()
        with pytest.raises(MountError, match="permission denied") as exception:
            mount(MountOptions(), GlobalOptions(repository=repository), str(tmp_path), hooks, mounter)

        assert exception.value.errno == 13
        assert len(hooks) == 0
        assert "Now serving" not in capsys.readouterr().out

    @staticmethod
    def test_serve_error(tmp_path, repository):
        mounter = FakeMounter(serveError=MountError("lost connection"))
        hooks = ShutdownHooks()
        with pytest.raises(MountError, match="lost connection"):
            mount(MountOptions(), GlobalOptions(repository=repository), str(tmp_path), hooks, mounter)

        assert len(hooks) == 1
        assert not mounter.sessions[0].waited

    @staticmethod
    def test_final_session_error(tmp_path, repository):
        mounter = FakeMounter(finalError=MountError("session failed"))
        hooks = ShutdownHooks()
        with pytest.raises(MountError, match="session failed"):
            mount(MountOptions(), GlobalOptions(repository=repository), str(tmp_path), hooks, mounter)
        assert len(hooks) == 1

    @staticmethod
    def test_unmount_error_during_cleanup_is_not_propagated(tmp_path, repository):
        mounter = FakeMounter(unmountError=MountError("not mounted"))
        with ShutdownHooks() as hooks:
            mount(MountOptions(), GlobalOptions(repository=repository), str(tmp_path), hooks, mounter)
        assert mounter.unmounted == [str(tmp_path)]
