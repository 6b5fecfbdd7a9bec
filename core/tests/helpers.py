import json
from pathlib import Path
from typing import Optional


def add_snapshot(
    repository: Path,
    snapshotId: str,
    time: str,
    tree: str,
    files: Optional[dict[str, bytes]] = None,
    hostname: str = "laptop",
    username: str = "user",
    uid: int = 1000,
    gid: int = 1000,
    tags: tuple[str, ...] = (),
    paths: tuple[str, ...] = ("/home/user",),
) -> Path:
    """Writes a snapshot record and creates its tree folder with the given files. Returns the tree folder."""
    treePath = repository / "trees" / tree
    treePath.mkdir(parents=True, exist_ok=True)
    for name, contents in (files or {}).items():
        filePath = treePath / name.strip('/')
        filePath.parent.mkdir(parents=True, exist_ok=True)
        filePath.write_bytes(contents)

    # fmt: off
    record = {
        'time'     : time,
        'hostname' : hostname,
        'username' : username,
        'uid'      : uid,
        'gid'      : gid,
        'tags'     : list(tags),
        'paths'    : list(paths),
        'tree'     : tree,
    }
    # fmt: on
    (repository / "snapshots").mkdir(parents=True, exist_ok=True)
    (repository / "snapshots" / snapshotId).write_text(json.dumps(record), encoding='utf-8')
    return treePath


def create_repository(path: Path, repositoryId: str = "5e1f0c2a") -> Path:
    path.mkdir(parents=True, exist_ok=True)
    (path / "config").write_text(json.dumps({'version': 1, 'id': repositoryId}), encoding='utf-8')
    (path / "snapshots").mkdir(exist_ok=True)
    (path / "trees").mkdir(exist_ok=True)
    return path
