"""WebDAV client over httpx."""

from __future__ import annotations

import logging
import os
import xml.etree.ElementTree as ET
from contextlib import contextmanager
from email.utils import parsedate_to_datetime
from typing import TYPE_CHECKING, Any, TypeVar
from urllib.parse import quote, unquote, urlsplit

import httpx

from backup_remote._client import CloudClient
from backup_remote._config import WebDAVExtra
from backup_remote._errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    RemoteClientError,
    RemoteUnavailableError,
    SourceNotFoundError,
    UnsupportedOperationError,
)
from backup_remote._models import DirChildren, DirEntry, EntryKind
from backup_remote._path import file_name, join, normalize, parent_path, split
from backup_remote._progress import CHUNK_SIZE, ProgressTracker

if TYPE_CHECKING:
    from collections.abc import Iterator
    from datetime import datetime

    from backup_remote._client import SetRemoteSink
    from backup_remote._config import ConnectionProfile
    from backup_remote._progress import ProgressCallback

T = TypeVar("T")

log = logging.getLogger(__name__)

_DAV = "{DAV:}"

_PROPFIND_BODY = (
    b'<?xml version="1.0" encoding="utf-8"?>'
    b'<d:propfind xmlns:d="DAV:"><d:prop>'
    b"<d:resourcetype/><d:getcontentlength/><d:getlastmodified/>"
    b"</d:prop></d:propfind>"
)


class WebDAVClient(CloudClient):
    """WebDAV client; every request carries its own credentials.

    :param base_url: Server URL of the WebDAV collection, e.g. ``https://host/dav``.
    :param username: Login name for HTTP basic auth.
    :param password: Password for HTTP basic auth.
    :param base_path: Root collection below ``base_url``.
    :param verify_ssl: Verify the server certificate.
    :param timeout: Per-request timeout in seconds.
    :param transport: Optional httpx transport (e.g. ``httpx.MockTransport``).
    """

    def __init__(
        self,
        base_url: str,
        *,
        username: str | None = None,
        password: str | None = None,
        base_path: str = "",
        verify_ssl: bool = True,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not base_url.startswith(("http://", "https://")):
            raise ValueError(f"base_url must be an http(s) URL, got {base_url!r}")
        self._base_url = base_url.rstrip("/")
        self._auth = httpx.BasicAuth(username, password or "") if username else None
        self._base_path = normalize(base_path)
        self._verify_ssl = verify_ssl
        self._timeout = timeout
        self._transport = transport
        self._http: httpx.Client | None = None
        if not verify_ssl:
            log.warning("TLS certificate verification disabled for %s", self._base_url)

    @classmethod
    def from_profile(cls, profile: ConnectionProfile, **kwargs: Any) -> WebDAVClient:
        extra = profile.extra_for(WebDAVExtra)
        options: dict[str, Any] = {
            "username": profile.username or None,
            "password": profile.password or None,
            "base_path": profile.remote,
            "verify_ssl": extra.verify_ssl,
            "timeout": extra.timeout,
        }
        options.update(kwargs)
        return cls(profile.host, **options)

    @property
    def name(self) -> str:
        return "webdav"

    @property
    def is_connected(self) -> bool:
        return self._http is not None

    @property
    def _client(self) -> httpx.Client:
        self._ensure_connected()
        assert self._http is not None
        return self._http

    # region: session lifecycle

    def connect(self) -> None:
        """Open the HTTP client and check credentials against the root collection."""
        if self.is_connected:
            return
        self._http = httpx.Client(
            auth=self._auth,
            verify=self._verify_ssl,
            timeout=self._timeout,
            transport=self._transport,
        )
        log.info("Connecting to %s", self._base_url)
        try:
            with self._errors(""):
                if self._propfind("", depth=0, root=True) is None:
                    raise RemoteUnavailableError(f"No WebDAV collection at {self._base_url}", backend=self.name)
                self._ensure_dirs("", root=True)
        except Exception:
            self.disconnect()
            raise
        log.info("WebDAV endpoint reachable.")

    def disconnect(self) -> None:
        if self._http is None:
            return
        http, self._http = self._http, None
        http.close()
        log.info("Disconnected from %s", self._base_url)

    def _ping(self) -> None:
        with self._errors(""):
            self._propfind("", depth=0)

    # endregion

    # region: HTTP helpers

    def _url(self, path: str, *, root: bool = False) -> str:
        parts = split(path) if root else split(self._base_path) + split(path)
        if not parts:
            return self._base_url + "/"
        return self._base_url + "/" + "/".join(quote(p, safe="") for p in parts)

    def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        response = self._client.request(method, url, **kwargs)
        response.raise_for_status()
        return response

    def _propfind(self, path: str, *, depth: int, root: bool = False) -> list[tuple[str, DirEntry]] | None:
        """PROPFIND ``path``; ``None`` when it does not exist.

        :returns: ``(decoded href path, entry)`` pairs, the target itself included.
        """
        response = self._client.request(
            "PROPFIND",
            self._url(path, root=root),
            headers={"Depth": str(depth), "Content-Type": "application/xml; charset=utf-8"},
            content=_PROPFIND_BODY,
        )
        if response.status_code == 404:
            return None
        response.raise_for_status()
        return _parse_multistatus(response.content)

    def _stat(self, path: str, *, root: bool = False) -> DirEntry | None:
        result = self._propfind(path, depth=0, root=root)
        if not result:
            return None
        return result[0][1]

    def _ensure_dirs(self, path: str, *, root: bool = False) -> None:
        parts = split(self._base_path) if root else split(path)
        current = ""
        for part in parts:
            current = f"{current}/{part}" if current else part
            entry = self._stat(current, root=root)
            if entry is None:
                log.debug("MKCOL %s", current)
                self._request("MKCOL", self._url(current, root=root))
            elif not entry.is_directory:
                raise ConflictError(f"Not a collection: {current}", path=current, backend=self.name)

    # endregion

    # region: error mapping

    @contextmanager
    def _errors(self, path: str = "") -> Iterator[None]:
        """Map httpx exceptions to backup_remote errors."""
        try:
            yield
        except RemoteClientError:
            raise
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            if status in (401, 403):
                raise AuthenticationError(
                    f"Server rejected credentials ({status})", path=path, backend=self.name
                ) from None
            if status == 404:
                raise NotFoundError(f"Not found: {path}", path=path, backend=self.name) from None
            if status in (405, 409, 412):
                raise ConflictError(f"Conflict ({status}): {path}", path=path, backend=self.name) from None
            if status >= 500:
                raise RemoteUnavailableError(f"Server error ({status})", path=path, backend=self.name) from None
            raise RemoteClientError(f"HTTP {status}: {exc}", path=path, backend=self.name) from None
        except httpx.TransportError as exc:
            raise RemoteUnavailableError(str(exc), path=path, backend=self.name) from None
        except OSError as exc:
            raise RemoteClientError(str(exc), path=path, backend=self.name) from None

    # endregion

    # region: directories

    def mkdir(self, path: str) -> None:
        with self._errors(path):
            path = normalize(path)
            parent = parent_path(path)
            if parent:
                ancestor = self._stat(parent_path(parent))
                if ancestor is None or not ancestor.is_directory:
                    raise NotFoundError(f"Ancestor not found: {parent_path(parent)}", path=path, backend=self.name)
                self._ensure_dirs(parent)
            if self._stat(path) is not None:
                raise ConflictError(f"Already exists: {path}", path=path, backend=self.name)
            self._request("MKCOL", self._url(path))

    def mkdir_recursively(self, path: str) -> None:
        with self._errors(path):
            self._ensure_dirs(path)

    def remove_directory(self, path: str) -> None:
        """Remove a collection; WebDAV DELETE on a collection removes its members too."""
        self._reject_root(path)
        with self._errors(path):
            entry = self._stat(path)
            if entry is None:
                return
            if not entry.is_directory:
                raise ConflictError(f"Not a collection: {path}", path=path, backend=self.name)
            self._request("DELETE", self._url(path))

    def delete_recursively(self, path: str) -> None:
        self._reject_root(path)
        with self._errors(path):
            path = normalize(path)
            entry = self._stat(path)
            if entry is None:
                return
            if entry.is_directory:
                self._rmtree(path)
            else:
                self._request("DELETE", self._url(path))
            log.info("Deleted recursively: %s", path)

    def _rmtree(self, path: str) -> None:
        """Delete members one by one, children before the collection itself."""
        children = self.list_files(path)
        for entry in children.directories:
            self._rmtree(join(path, entry.name))
        for entry in children.files:
            log.debug("DELETE %s", join(path, entry.name))
            self._request("DELETE", self._url(join(path, entry.name)))
        self._request("DELETE", self._url(path))

    # endregion

    # region: files

    def rename_to(self, src: str, dst: str) -> None:
        with self._errors(src):
            if self._stat(src) is None:
                raise NotFoundError(f"Source not found: {src}", path=src, backend=self.name)
            if self._stat(dst) is not None:
                raise ConflictError(f"Destination already exists: {dst}", path=dst, backend=self.name)
            self._ensure_dirs(parent_path(dst))
            self._request("MOVE", self._url(src), headers={"Destination": self._url(dst), "Overwrite": "F"})

    def upload(self, local_path: str, remote_dir: str, on_progress: ProgressCallback | None = None) -> None:
        self._ensure_connected()
        if not os.path.isfile(local_path):
            raise SourceNotFoundError(f"Source file does not exist: {local_path}", path=local_path, backend=self.name)
        target = normalize(f"{remote_dir}/{file_name(local_path)}")
        size = os.path.getsize(local_path)
        tracker = ProgressTracker(on_progress, size)

        def body() -> Iterator[bytes]:
            with open(local_path, "rb") as f:
                while chunk := f.read(CHUNK_SIZE):
                    yield chunk
                    tracker.advance(len(chunk))

        with self._errors(target):
            self._ensure_dirs(remote_dir)
            self._request("PUT", self._url(target), content=body(), headers={"Content-Length": str(size)})
        tracker.finish(size)
        log.info("Uploaded: %s -> %s", local_path, target)

    def download(self, remote_path: str, local_dir: str, on_progress: ProgressCallback | None = None) -> None:
        with self._errors(remote_path):
            entry = self._stat(remote_path)
            if entry is None or entry.is_directory:
                raise NotFoundError(f"File not found: {remote_path}", path=remote_path, backend=self.name)
            tracker = ProgressTracker(on_progress, entry.size)
            written = 0
            with self._client.stream("GET", self._url(remote_path)) as response:
                response.raise_for_status()
                with self._local_target(local_dir, remote_path) as f:
                    for chunk in response.iter_bytes(CHUNK_SIZE):
                        f.write(chunk)
                        written += len(chunk)
                        tracker.update(written)
        tracker.finish(written)
        log.info("Downloaded: %s -> %s", remote_path, f.name)

    def delete_file(self, path: str) -> None:
        with self._errors(path):
            entry = self._stat(path)
            if entry is None:
                return
            if entry.is_directory:
                raise ConflictError(f"Is a collection: {path}", path=path, backend=self.name)
            self._request("DELETE", self._url(path))

    # endregion

    # region: queries

    def list_files(self, path: str = "") -> DirChildren:
        with self._errors(path):
            result = self._propfind(path, depth=1)
            if result is None:
                return DirChildren()
            target = "/" + "/".join(split(unquote(urlsplit(self._url(path)).path)))
            entries = [entry for href, entry in result if href != target]
            return DirChildren.from_entries(entries)

    def exists(self, path: str) -> bool:
        with self._errors(path):
            entry = self._stat(path)
            return entry is not None and entry.is_file

    def size(self, path: str) -> int:
        with self._errors(path):
            entry = self._stat(path)
            if entry is None or entry.is_directory:
                return 0
            return entry.size

    # endregion

    def set_remote(self, on_set: SetRemoteSink) -> None:
        extra = WebDAVExtra(verify_ssl=self._verify_ssl, timeout=self._timeout)
        on_set(self._base_path, extra.to_json())

    def unwrap(self, type_hint: type[T]) -> T:
        if type_hint is httpx.Client:
            return self._client  # type: ignore[return-value]
        raise UnsupportedOperationError(
            f"Client 'webdav' does not expose native handle of type {type_hint.__name__}.",
            operation="unwrap",
            backend=self.name,
        )


# region: multistatus parsing


def _parse_multistatus(content: bytes) -> list[tuple[str, DirEntry]]:
    """Parse a ``207 Multi-Status`` body into ``(href path, entry)`` pairs.

    Href paths are percent-decoded, slash-normalized and start with ``/``.
    """
    root = ET.fromstring(content)
    result: list[tuple[str, DirEntry]] = []
    for response in root.iter(f"{_DAV}response"):
        href = response.findtext(f"{_DAV}href", default="")
        href_path = "/" + "/".join(split(unquote(urlsplit(href).path)))
        prop = _ok_prop(response)
        is_dir = prop is not None and prop.find(f"{_DAV}resourcetype/{_DAV}collection") is not None
        length = prop.findtext(f"{_DAV}getcontentlength") if prop is not None else None
        modified = prop.findtext(f"{_DAV}getlastmodified") if prop is not None else None
        name = href_path.rstrip("/").rsplit("/", 1)[-1]
        result.append(
            (
                href_path,
                DirEntry(
                    name=name,
                    kind=EntryKind.DIRECTORY if is_dir else EntryKind.FILE,
                    size=0 if is_dir or not length else int(length),
                    modified_at=_parse_http_date(modified),
                ),
            )
        )
    return result


def _ok_prop(response: ET.Element) -> ET.Element | None:
    """The ``prop`` element of the first propstat whose status is 200."""
    for propstat in response.iter(f"{_DAV}propstat"):
        status = propstat.findtext(f"{_DAV}status", default="")
        if " 200 " in f"{status} ":
            return propstat.find(f"{_DAV}prop")
    return None


def _parse_http_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None


# endregion
