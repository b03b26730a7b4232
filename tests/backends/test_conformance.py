"""Client conformance suite -- the shared contract checked against every protocol."""

from __future__ import annotations

import json
import os
from typing import TYPE_CHECKING

import pytest

from backup_remote._client import CloudClient
from backup_remote._errors import (
    ConflictError,
    InvalidPath,
    NotConnectedError,
    NotFoundError,
    RemoteClientError,
    SourceNotFoundError,
    UnsupportedOperationError,
)
from backup_remote._models import DirChildren
from backup_remote._path import parent_path

if TYPE_CHECKING:
    from pathlib import Path


def _local_file(directory: Path, name: str, data: bytes) -> str:
    path = directory / name
    path.write_bytes(data)
    return str(path)


def _block_delete(request: pytest.FixtureRequest, client: CloudClient, path: str) -> None:
    """Make the server refuse to delete the file at ``path``."""
    parts = path.split("/")
    if client.name == "sftp":
        from tests.backends.sftp_server import DirSFTPServer

        root = request.getfixturevalue("sftp_server")[2]
        local = os.path.join(root, client._base_path.lstrip("/"), *parts)  # type: ignore[attr-defined]
        request.getfixturevalue("monkeypatch").setattr(DirSFTPServer, "undeletable", frozenset({local}))
    elif client.name == "smb":
        smb = request.getfixturevalue("smb")
        smb.undeletable.add(smb.local("Backups", *parts))
    elif client.name == "webdav":
        request.getfixturevalue("dav_server").undeletable.add(f"/dav/Backups/{path}")
    else:
        drive = request.getfixturevalue("drive")
        drive.undeletable.add(drive.find("DataBackup", *parts)["id"])


class _Recorder:
    def __init__(self) -> None:
        self.samples: list[tuple[int, int]] = []

    def __call__(self, transferred: int, total: int) -> None:
        self.samples.append((transferred, total))


class TestClientIdentity:
    def test_is_cloud_client(self, client: CloudClient) -> None:
        assert isinstance(client, CloudClient)

    def test_name_is_protocol_tag(self, client: CloudClient) -> None:
        assert client.name in {"gdrive", "smb", "sftp", "webdav"}

    def test_connected_fixture(self, client: CloudClient) -> None:
        assert client.is_connected is True

    def test_connect_twice_is_noop(self, client: CloudClient) -> None:
        client.connect()
        assert client.is_connected is True

    def test_unwrap_unknown_type_raises(self, client: CloudClient) -> None:
        with pytest.raises(UnsupportedOperationError):
            client.unwrap(dict)


class TestSession:
    def test_operations_fail_fast_after_disconnect(self, client: CloudClient, tmp_path: Path) -> None:
        client.disconnect()
        assert client.is_connected is False
        with pytest.raises(NotConnectedError):
            client.list_files("")
        with pytest.raises(NotConnectedError):
            client.exists("a.txt")
        with pytest.raises(NotConnectedError):
            client.upload(_local_file(tmp_path, "a.txt", b"x"), "")

    def test_disconnect_is_idempotent(self, client: CloudClient) -> None:
        client.disconnect()
        client.disconnect()
        assert client.is_connected is False

    def test_reconnect(self, client: CloudClient) -> None:
        client.mkdir_recursively("kept")
        client.disconnect()
        client.connect()
        assert [d.name for d in client.list_files("").directories] == ["kept"]

    def test_test_connection_releases_session(self, client: CloudClient) -> None:
        client.disconnect()
        client.test_connection()
        assert client.is_connected is False


class TestMkdir:
    def test_creates_leaf(self, client: CloudClient) -> None:
        client.mkdir("photos")
        assert [d.name for d in client.list_files("").directories] == ["photos"]

    def test_creates_missing_immediate_parent(self, client: CloudClient) -> None:
        client.mkdir("a/b")
        assert [d.name for d in client.list_files("a").directories] == ["b"]

    def test_missing_grandparent_raises(self, client: CloudClient) -> None:
        with pytest.raises(NotFoundError):
            client.mkdir("x/y/z")
        assert len(client.list_files("")) == 0

    def test_existing_leaf_raises(self, client: CloudClient) -> None:
        client.mkdir("dup")
        with pytest.raises(ConflictError):
            client.mkdir("dup")

    def test_recursive_is_idempotent(self, client: CloudClient) -> None:
        client.mkdir_recursively("Archives/2024/q1")
        first = client.walk_file_tree("")
        client.mkdir_recursively("Archives/2024/q1")
        assert client.walk_file_tree("") == first
        assert first == ["Archives", "Archives/2024", "Archives/2024/q1"]

    def test_recursive_accepts_messy_path(self, client: CloudClient) -> None:
        client.mkdir_recursively("/one//two/")
        assert client.walk_file_tree("") == ["one", "one/two"]


class TestTransfers:
    def test_round_trip_with_progress(self, client: CloudClient, tmp_path: Path) -> None:
        data = bytes(range(256)) * 400
        src = _local_file(tmp_path, "img.tar", data)
        up = _Recorder()
        client.upload(src, "Archives/2024", on_progress=up)

        out = tmp_path / "restore"
        down = _Recorder()
        client.download("Archives/2024/img.tar", str(out), on_progress=down)

        assert (out / "img.tar").read_bytes() == data
        assert up.samples[-1] == (len(data), len(data))
        assert down.samples[-1] == (len(data), len(data))

    def test_progress_is_monotonic(self, client: CloudClient, tmp_path: Path) -> None:
        src = _local_file(tmp_path, "big.bin", b"\x01" * 200_000)
        up = _Recorder()
        client.upload(src, "", on_progress=up)
        transferred = [t for t, _ in up.samples]
        assert transferred == sorted(transferred)
        assert len(set(up.samples)) == len(up.samples)

    def test_empty_file_round_trip(self, client: CloudClient, tmp_path: Path) -> None:
        src = _local_file(tmp_path, "empty.txt", b"")
        client.upload(src, "d")
        assert client.exists("d/empty.txt") is True
        assert client.size("d/empty.txt") == 0
        client.download("d/empty.txt", str(tmp_path / "out"))
        assert (tmp_path / "out" / "empty.txt").read_bytes() == b""

    def test_upload_replaces_same_name(self, client: CloudClient, tmp_path: Path) -> None:
        client.upload(_local_file(tmp_path, "f.txt", b"old"), "d")
        (tmp_path / "new").mkdir()
        client.upload(_local_file(tmp_path / "new", "f.txt", b"newer"), "d")
        children = client.list_files("d")
        assert [f.name for f in children.files] == ["f.txt"]
        assert client.size("d/f.txt") == 5

    def test_upload_missing_source_raises(self, client: CloudClient, tmp_path: Path) -> None:
        with pytest.raises(SourceNotFoundError):
            client.upload(str(tmp_path / "nope.txt"), "d")

    def test_download_missing_raises(self, client: CloudClient, tmp_path: Path) -> None:
        with pytest.raises(NotFoundError):
            client.download("nope.txt", str(tmp_path))

    def test_download_creates_local_parents(self, client: CloudClient, tmp_path: Path) -> None:
        client.upload(_local_file(tmp_path, "f.txt", b"abc"), "")
        target = tmp_path / "deep" / "er"
        client.download("f.txt", str(target))
        assert (target / "f.txt").read_bytes() == b"abc"

    def test_download_into_local_file_conflicts(self, client: CloudClient, tmp_path: Path) -> None:
        client.upload(_local_file(tmp_path, "f.txt", b"abc"), "")
        blocker = tmp_path / "blocker"
        blocker.write_bytes(b"not a directory")
        with pytest.raises(ConflictError):
            client.download("f.txt", str(blocker))
        with pytest.raises(ConflictError):
            client.download("f.txt", str(blocker / "below"))
        assert blocker.read_bytes() == b"not a directory"

    def test_download_onto_local_directory_conflicts(self, client: CloudClient, tmp_path: Path) -> None:
        client.upload(_local_file(tmp_path, "f.txt", b"abc"), "")
        target = tmp_path / "out"
        (target / "f.txt").mkdir(parents=True)
        with pytest.raises(ConflictError):
            client.download("f.txt", str(target))
        assert (target / "f.txt").is_dir()


class TestQueries:
    def test_list_separates_files_and_directories(self, client: CloudClient, tmp_path: Path) -> None:
        client.mkdir_recursively("root/sub")
        client.upload(_local_file(tmp_path, "a.txt", b"12345"), "root")
        children = client.list_files("root")
        assert [d.name for d in children.directories] == ["sub"]
        assert [(f.name, f.size) for f in children.files] == [("a.txt", 5)]
        assert children.directories[0].is_directory

    def test_list_missing_is_empty(self, client: CloudClient) -> None:
        assert client.list_files("nowhere/at/all") == DirChildren()

    def test_exists_matches_files_only(self, client: CloudClient, tmp_path: Path) -> None:
        client.mkdir_recursively("dir")
        client.upload(_local_file(tmp_path, "f.txt", b"x"), "dir")
        assert client.exists("dir/f.txt") is True
        assert client.exists("dir") is False

    def test_resolution_failure_boundary(self, client: CloudClient, tmp_path: Path) -> None:
        client.mkdir_recursively("a/b")
        assert client.exists("/a/b/c") is False
        with pytest.raises(NotFoundError):
            client.download("/a/b/c", str(tmp_path))

    def test_path_through_a_file_does_not_resolve(self, client: CloudClient, tmp_path: Path) -> None:
        client.upload(_local_file(tmp_path, "f.txt", b"abc"), "")
        assert client.exists("f.txt/x") is False
        assert client.size("f.txt/x") == 0
        with pytest.raises(NotFoundError):
            client.download("f.txt/x", str(tmp_path / "out"))

    def test_size(self, client: CloudClient, tmp_path: Path) -> None:
        client.upload(_local_file(tmp_path, "f.bin", b"x" * 1234), "")
        assert client.size("f.bin") == 1234
        assert client.size("missing.bin") == 0

    def test_walk_completeness(self, client: CloudClient, tmp_path: Path) -> None:
        client.mkdir_recursively("a/b")
        client.mkdir_recursively("c")
        client.upload(_local_file(tmp_path, "f1.txt", b"1"), "a/b")
        client.upload(_local_file(tmp_path, "f2.txt", b"2"), "")
        walked = client.walk_file_tree("")
        assert sorted(walked) == ["a", "a/b", "a/b/f1.txt", "c", "f2.txt"]
        assert len(walked) == len(set(walked))
        for path in walked:
            parent = parent_path(path)
            if parent:
                assert walked.index(parent) < walked.index(path)

    def test_walk_subtree(self, client: CloudClient, tmp_path: Path) -> None:
        client.mkdir_recursively("a/b")
        client.upload(_local_file(tmp_path, "f.txt", b"1"), "a/b")
        assert client.walk_file_tree("a") == ["a/b", "a/b/f.txt"]

    def test_walk_missing_is_empty(self, client: CloudClient) -> None:
        assert client.walk_file_tree("missing") == []


class TestDeletion:
    def test_missing_targets_are_tolerated(self, client: CloudClient) -> None:
        client.delete_file("ghost.txt")
        client.remove_directory("ghost")
        client.delete_recursively("ghost/deeper")

    def test_delete_file(self, client: CloudClient, tmp_path: Path) -> None:
        client.upload(_local_file(tmp_path, "f.txt", b"x"), "d")
        client.delete_file("d/f.txt")
        assert client.exists("d/f.txt") is False
        assert [d.name for d in client.list_files("").directories] == ["d"]

    def test_delete_file_on_directory_conflicts(self, client: CloudClient) -> None:
        client.mkdir_recursively("d/e")
        with pytest.raises(ConflictError):
            client.delete_file("d")
        assert [d.name for d in client.list_files("d").directories] == ["e"]

    def test_remove_empty_directory(self, client: CloudClient) -> None:
        client.mkdir_recursively("d/e")
        client.remove_directory("d/e")
        assert client.list_files("d") == DirChildren()

    def test_delete_recursively(self, client: CloudClient, tmp_path: Path) -> None:
        client.mkdir_recursively("tree/x/y")
        client.upload(_local_file(tmp_path, "a.txt", b"a"), "tree")
        client.upload(_local_file(tmp_path, "b.txt", b"b"), "tree/x/y")
        client.mkdir_recursively("other")

        client.delete_recursively("tree")

        assert client.exists("tree/a.txt") is False
        assert client.exists("tree/x/y/b.txt") is False
        assert client.list_files("tree") == DirChildren()
        assert client.walk_file_tree("") == ["other"]

    def test_delete_recursively_stops_at_refused_child(
        self, client: CloudClient, tmp_path: Path, request: pytest.FixtureRequest
    ) -> None:
        client.upload(_local_file(tmp_path, "blocked.bin", b"keep"), "t/sub")
        client.upload(_local_file(tmp_path, "a.txt", b"a"), "t")
        _block_delete(request, client, "t/sub/blocked.bin")

        with pytest.raises(RemoteClientError):
            client.delete_recursively("t")

        assert client.exists("t/sub/blocked.bin") is True
        assert [d.name for d in client.list_files("").directories] == ["t"]
        assert [d.name for d in client.list_files("t").directories] == ["sub"]

    @pytest.mark.parametrize("path", ["", "/", "."])
    def test_root_cannot_be_removed(self, client: CloudClient, path: str) -> None:
        with pytest.raises(InvalidPath):
            client.remove_directory(path)
        with pytest.raises(InvalidPath):
            client.delete_recursively(path)

    def test_clear_empty_directories(self, client: CloudClient, tmp_path: Path) -> None:
        client.mkdir_recursively("x/y/z")
        client.mkdir_recursively("keep/empty")
        client.upload(_local_file(tmp_path, "f.txt", b"1"), "keep")

        removed = client.clear_empty_directories_recursively("")

        assert removed == ["x/y/z", "x/y", "x", "keep/empty"] or removed == ["keep/empty", "x/y/z", "x/y", "x"]
        assert client.walk_file_tree("") == ["keep", "keep/f.txt"]

    def test_clear_empty_keeps_start_directory(self, client: CloudClient) -> None:
        client.mkdir_recursively("only/empty")
        assert client.clear_empty_directories_recursively("only") == ["only/empty"]
        assert [d.name for d in client.list_files("").directories] == ["only"]


class TestRename:
    def test_move_file_into_new_directory(self, client: CloudClient, tmp_path: Path) -> None:
        client.upload(_local_file(tmp_path, "f.txt", b"data"), "src")
        client.rename_to("src/f.txt", "dst/g.txt")
        assert client.exists("src/f.txt") is False
        assert client.exists("dst/g.txt") is True
        assert client.size("dst/g.txt") == 4

    def test_rename_in_place(self, client: CloudClient, tmp_path: Path) -> None:
        client.upload(_local_file(tmp_path, "f.txt", b"data"), "d")
        client.rename_to("d/f.txt", "d/h.txt")
        assert [f.name for f in client.list_files("d").files] == ["h.txt"]

    def test_rename_directory(self, client: CloudClient, tmp_path: Path) -> None:
        client.upload(_local_file(tmp_path, "f.txt", b"data"), "old/inner")
        client.rename_to("old", "new")
        assert client.exists("new/inner/f.txt") is True
        assert client.list_files("old") == DirChildren()

    def test_missing_source_raises(self, client: CloudClient) -> None:
        with pytest.raises(NotFoundError):
            client.rename_to("ghost.txt", "other.txt")

    def test_existing_destination_raises(self, client: CloudClient, tmp_path: Path) -> None:
        client.upload(_local_file(tmp_path, "a.txt", b"a"), "")
        client.upload(_local_file(tmp_path, "b.txt", b"b"), "")
        with pytest.raises(ConflictError):
            client.rename_to("a.txt", "b.txt")
        assert client.size("b.txt") == 1


class TestSetRemote:
    def test_reports_prefix_and_extra_json(self, client: CloudClient) -> None:
        calls: list[tuple[str, str]] = []
        client.set_remote(lambda prefix, extra: calls.append((prefix, extra)))
        assert len(calls) == 1
        prefix, extra = calls[0]
        assert isinstance(prefix, str)
        assert isinstance(json.loads(extra), dict)
