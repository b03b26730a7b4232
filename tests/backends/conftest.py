"""Client test fixtures -- parameterized for conformance testing."""

from __future__ import annotations

import shutil
import tempfile
import uuid
from typing import TYPE_CHECKING

import pytest

from tests.backends import fake_smb, sftp_server as sftp_stub, webdav_server
from tests.backends.fake_drive import FakeDrive

if TYPE_CHECKING:
    from collections.abc import Iterator

    from backup_remote._client import CloudClient


@pytest.fixture(scope="session")
def sftp_server() -> Iterator[tuple[int, str, str]]:
    """Start an in-process SFTP server for the test session.

    Yields ``(port, known_hosts_entry, served_root)``.
    """
    tmpdir = tempfile.mkdtemp(prefix="sftp_test_")
    server = sftp_stub.SFTPTestServer(tmpdir)
    server.start()
    yield server.port, server.known_hosts_entry, tmpdir
    server.stop()
    shutil.rmtree(tmpdir, ignore_errors=True)


@pytest.fixture
def sftp_client(sftp_server: tuple[int, str, str]) -> Iterator[CloudClient]:
    from backup_remote.clients._sftp import SFTPClient

    port, host_key_entry, _root = sftp_server
    client = SFTPClient(
        "127.0.0.1",
        port=port,
        username=sftp_stub.USERNAME,
        password=sftp_stub.PASSWORD,
        base_path=f"/test_{uuid.uuid4().hex[:8]}",
        known_host_keys=host_key_entry,
        connect_kwargs={"allow_agent": False, "look_for_keys": False},
    )
    client.connect()
    yield client
    client.disconnect()


@pytest.fixture
def dav_server() -> webdav_server.DAVServer:
    return webdav_server.DAVServer()


@pytest.fixture
def webdav_client(dav_server: webdav_server.DAVServer) -> Iterator[CloudClient]:
    from backup_remote.clients._webdav import WebDAVClient

    client = WebDAVClient(
        "http://dav.test/dav",
        username=webdav_server.USERNAME,
        password=webdav_server.PASSWORD,
        base_path="Backups",
        transport=dav_server.transport(),
    )
    client.connect()
    yield client
    client.disconnect()


@pytest.fixture
def drive() -> FakeDrive:
    return FakeDrive()


@pytest.fixture
def gdrive_client(drive: FakeDrive) -> Iterator[CloudClient]:
    from backup_remote.clients._gdrive import GoogleDriveClient

    client = GoogleDriveClient(service=drive, account_email=drive.email)
    client.connect()
    yield client
    client.disconnect()


@pytest.fixture
def smb(tmp_path_factory: pytest.TempPathFactory, monkeypatch: pytest.MonkeyPatch) -> fake_smb.FakeSMB:
    from backup_remote.clients import _smb

    server = fake_smb.FakeSMB(str(tmp_path_factory.mktemp("smb")))
    monkeypatch.setattr(_smb, "smbclient", server)
    return server


@pytest.fixture
def smb_client(smb: fake_smb.FakeSMB) -> Iterator[CloudClient]:
    from backup_remote.clients._smb import SMBClient

    client = SMBClient(
        smb.host,
        smb.share,
        username=fake_smb.USERNAME,
        password=fake_smb.PASSWORD,
        base_path="Backups",
    )
    client.connect()
    yield client
    client.disconnect()


@pytest.fixture(params=["sftp", "webdav", "gdrive", "smb"])
def client(request: pytest.FixtureRequest) -> CloudClient:
    """Parameterized connected client. Add new protocols here."""
    return request.getfixturevalue(f"{request.param}_client")
