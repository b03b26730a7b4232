"""WebDAV client tests against the in-memory DAV server."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import httpx
import pytest

from backup_remote._config import ConnectionProfile, Protocol, WebDAVExtra
from backup_remote._errors import AuthenticationError, ConflictError, RemoteUnavailableError
from backup_remote._factory import create_client
from backup_remote._models import EntryKind
from backup_remote.clients._webdav import WebDAVClient, _parse_http_date, _parse_multistatus
from tests.backends import webdav_server
from tests.backends.webdav_server import DAVServer

if TYPE_CHECKING:
    from pathlib import Path


def _client(server: DAVServer, url: str = "http://dav.test/dav", **kwargs: object) -> WebDAVClient:
    options: dict[str, object] = {
        "username": webdav_server.USERNAME,
        "password": webdav_server.PASSWORD,
        "transport": server.transport(),
    }
    options.update(kwargs)
    return WebDAVClient(url, **options)  # type: ignore[arg-type]


# region: construction
class TestWebDAVConstruction:
    def test_name_is_webdav(self) -> None:
        assert WebDAVClient("https://dav.example.com").name == "webdav"

    def test_requires_http_url(self) -> None:
        with pytest.raises(ValueError, match="http"):
            WebDAVClient("dav.example.com")

    def test_from_profile_reads_extra(self) -> None:
        profile = ConnectionProfile(
            name="cloud",
            protocol=Protocol.WEBDAV,
            host="https://cloud.example.com/remote.php/dav/files/me/",
            username="me",
            password="pw",
            remote="Backups",
            extra=WebDAVExtra(verify_ssl=False, timeout=5.0).to_json(),
        )
        client = create_client(profile)
        assert isinstance(client, WebDAVClient)
        assert client._base_url == "https://cloud.example.com/remote.php/dav/files/me"
        assert client._base_path == "Backups"
        assert client._verify_ssl is False
        assert client._timeout == 5.0


# endregion


# region: connection
class TestWebDAVConnection:
    def test_connect_creates_base_collection(self, dav_server: DAVServer) -> None:
        with _client(dav_server, base_path="Backups/laptop"):
            assert "/dav/Backups" in dav_server.collections
            assert "/dav/Backups/laptop" in dav_server.collections

    def test_every_request_is_authenticated(self, webdav_client: WebDAVClient, dav_server: DAVServer) -> None:
        webdav_client.mkdir_recursively("a/b")
        assert dav_server.requests
        assert all("Authorization" in r.headers for r in dav_server.requests)

    def test_wrong_password_raises_authentication_error(self, dav_server: DAVServer) -> None:
        client = _client(dav_server, password="wrong")
        with pytest.raises(AuthenticationError):
            client.connect()
        assert client.is_connected is False

    def test_missing_collection_raises_unavailable(self, dav_server: DAVServer) -> None:
        with pytest.raises(RemoteUnavailableError):
            _client(dav_server, url="http://dav.test/elsewhere").connect()

    def test_server_error_raises_unavailable(self, dav_server: DAVServer) -> None:
        dav_server.fail_with = 503
        with pytest.raises(RemoteUnavailableError):
            _client(dav_server).connect()

    def test_transport_error_raises_unavailable(self) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = WebDAVClient("http://dav.test/dav", transport=httpx.MockTransport(refuse))
        with pytest.raises(RemoteUnavailableError):
            client.connect()
        assert client.is_connected is False

    def test_forbidden_operation_maps_to_authentication_error(
        self, webdav_client: WebDAVClient, dav_server: DAVServer
    ) -> None:
        dav_server.fail_with = 403
        with pytest.raises(AuthenticationError):
            webdav_client.mkdir_recursively("x")


# endregion


# region: protocol details
class TestWebDAVProtocol:
    def test_upload_sends_content_length(
        self, webdav_client: WebDAVClient, dav_server: DAVServer, tmp_path: Path
    ) -> None:
        (tmp_path / "f.bin").write_bytes(b"z" * 70_000)
        webdav_client.upload(str(tmp_path / "f.bin"), "d")
        put = [r for r in dav_server.requests if r.method == "PUT"][-1]
        assert put.headers["Content-Length"] == "70000"
        assert dav_server.files["/dav/Backups/d/f.bin"] == b"z" * 70_000

    def test_move_refuses_overwrite(self, webdav_client: WebDAVClient, dav_server: DAVServer, tmp_path: Path) -> None:
        (tmp_path / "f.txt").write_bytes(b"x")
        webdav_client.upload(str(tmp_path / "f.txt"), "")
        webdav_client.rename_to("f.txt", "sub/g.txt")
        move = [r for r in dav_server.requests if r.method == "MOVE"][-1]
        assert move.headers["Overwrite"] == "F"
        assert move.headers["Destination"] == "http://dav.test/dav/Backups/sub/g.txt"

    def test_names_are_percent_encoded(
        self, webdav_client: WebDAVClient, dav_server: DAVServer, tmp_path: Path
    ) -> None:
        name = "my report #1 100%.txt"
        (tmp_path / name).write_bytes(b"r")
        webdav_client.upload(str(tmp_path / name), "Q1 2024")
        assert f"/dav/Backups/Q1 2024/{name}" in dav_server.files
        assert webdav_client.exists(f"Q1 2024/{name}") is True
        assert [f.name for f in webdav_client.list_files("Q1 2024").files] == [name]

    def test_remove_directory_deletes_non_empty_collection(
        self, webdav_client: WebDAVClient, tmp_path: Path
    ) -> None:
        (tmp_path / "f.txt").write_bytes(b"x")
        webdav_client.upload(str(tmp_path / "f.txt"), "full/inner")
        webdav_client.remove_directory("full")
        assert webdav_client.walk_file_tree("") == []

    def test_delete_recursively_removes_children_first(
        self, webdav_client: WebDAVClient, dav_server: DAVServer, tmp_path: Path
    ) -> None:
        (tmp_path / "f.txt").write_bytes(b"x")
        webdav_client.upload(str(tmp_path / "f.txt"), "t/u")
        dav_server.requests.clear()
        webdav_client.delete_recursively("t")
        deleted = [r.url.path for r in dav_server.requests if r.method == "DELETE"]
        assert deleted == ["/dav/Backups/t/u/f.txt", "/dav/Backups/t/u", "/dav/Backups/t"]

    def test_mkdir_over_file_conflicts(self, webdav_client: WebDAVClient, tmp_path: Path) -> None:
        (tmp_path / "f").write_bytes(b"x")
        webdav_client.upload(str(tmp_path / "f"), "")
        with pytest.raises(ConflictError):
            webdav_client.mkdir_recursively("f/g")

    def test_listing_reports_modified_time(self, webdav_client: WebDAVClient, tmp_path: Path) -> None:
        (tmp_path / "f").write_bytes(b"x")
        webdav_client.upload(str(tmp_path / "f"), "")
        entry = webdav_client.list_files("").files[0]
        assert entry.modified_at is not None


# endregion


# region: session surface
class TestWebDAVSession:
    def test_set_remote(self, webdav_client: WebDAVClient) -> None:
        calls: list[tuple[str, str]] = []
        webdav_client.set_remote(lambda prefix, extra: calls.append((prefix, extra)))
        assert calls[0][0] == "Backups"
        assert json.loads(calls[0][1]) == {"timeout": 30.0, "verify_ssl": True}

    def test_unwrap_http_client(self, webdav_client: WebDAVClient) -> None:
        assert isinstance(webdav_client.unwrap(httpx.Client), httpx.Client)


# endregion


# region: multistatus parsing
class TestMultistatusParsing:
    def test_skips_props_with_non_200_status(self) -> None:
        body = b"""<?xml version="1.0"?>
<d:multistatus xmlns:d="DAV:">
  <d:response>
    <d:href>/dav/a%20b.txt</d:href>
    <d:propstat>
      <d:prop><d:getcontentlength/></d:prop>
      <d:status>HTTP/1.1 404 Not Found</d:status>
    </d:propstat>
    <d:propstat>
      <d:prop><d:resourcetype/><d:getcontentlength>12</d:getcontentlength></d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
  <d:response>
    <d:href>https://host/dav/folder/</d:href>
    <d:propstat>
      <d:prop><d:resourcetype><d:collection/></d:resourcetype></d:prop>
      <d:status>HTTP/1.1 200 OK</d:status>
    </d:propstat>
  </d:response>
</d:multistatus>"""
        (file_href, file_entry), (dir_href, dir_entry) = _parse_multistatus(body)
        assert file_href == "/dav/a b.txt"
        assert file_entry.name == "a b.txt"
        assert file_entry.kind is EntryKind.FILE
        assert file_entry.size == 12
        assert dir_href == "/dav/folder"
        assert dir_entry.kind is EntryKind.DIRECTORY

    def test_http_date(self) -> None:
        parsed = _parse_http_date("Wed, 01 May 2024 12:00:00 GMT")
        assert parsed is not None
        assert (parsed.year, parsed.month, parsed.hour) == (2024, 5, 12)
        assert _parse_http_date("yesterday-ish") is None
        assert _parse_http_date(None) is None


# endregion
