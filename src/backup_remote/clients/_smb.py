"""SMB client using smbprotocol's high-level ``smbclient`` API."""

from __future__ import annotations

import errno
import logging
import os
import stat
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

import smbclient
from smbprotocol.exceptions import LogonFailure, SMBAuthenticationError, SMBException

from backup_remote._client import CloudClient
from backup_remote._config import SMBExtra
from backup_remote._errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    RemoteClientError,
    RemoteUnavailableError,
    SourceNotFoundError,
)
from backup_remote._models import DirChildren, DirEntry, EntryKind
from backup_remote._path import file_name, normalize, parent_path, split
from backup_remote._progress import CHUNK_SIZE, ProgressTracker

if TYPE_CHECKING:
    from collections.abc import Iterator

    from backup_remote._client import SetRemoteSink
    from backup_remote._config import ConnectionProfile
    from backup_remote._progress import ProgressCallback

log = logging.getLogger(__name__)


class SMBClient(CloudClient):
    """SMB2/3 client for one share.

    The session lives in a connection cache private to this instance, so
    several clients against the same server never share a session.

    :param host: Server hostname or address.
    :param share: Share name on the server.
    :param username: Login name.
    :param password: Login password.
    :param domain: Optional NT domain, prefixed to the username.
    :param port: SMB port (default: 445).
    :param base_path: Root directory inside the share.
    :param connection_timeout: Seconds to wait for the TCP handshake.
    """

    def __init__(
        self,
        host: str,
        share: str,
        *,
        username: str | None = None,
        password: str | None = None,
        domain: str = "",
        port: int = 445,
        base_path: str = "",
        connection_timeout: int = 30,
    ) -> None:
        if not host or not host.strip():
            raise ValueError("host must be a non-empty string")
        if not share or not share.strip("\\/"):
            raise ValueError("share must be a non-empty string")
        self._host = host
        self._share = share.strip("\\/")
        self._username = f"{domain}\\{username}" if domain and username else username
        self._password = password
        self._domain = domain
        self._port = port
        self._base_path = normalize(base_path)
        self._connection_timeout = connection_timeout
        self._cache: dict[str, Any] | None = None

    @classmethod
    def from_profile(cls, profile: ConnectionProfile, **kwargs: Any) -> SMBClient:
        extra = profile.extra_for(SMBExtra)
        options: dict[str, Any] = {
            "username": profile.username or None,
            "password": profile.password or None,
            "domain": extra.domain,
            "port": extra.port,
            "base_path": profile.remote,
        }
        options.update(kwargs)
        return cls(profile.host, extra.share, **options)

    @property
    def name(self) -> str:
        return "smb"

    @property
    def is_connected(self) -> bool:
        return self._cache is not None

    @property
    def _session_kwargs(self) -> dict[str, Any]:
        self._ensure_connected()
        return {
            "username": self._username,
            "password": self._password,
            "port": self._port,
            "connection_cache": self._cache,
        }

    # region: session lifecycle

    def connect(self) -> None:
        if self.is_connected:
            return
        cache: dict[str, Any] = {}
        log.info("Connecting to \\\\%s\\%s as %s", self._host, self._share, self._username)
        try:
            smbclient.register_session(
                self._host,
                username=self._username,
                password=self._password,
                port=self._port,
                connection_timeout=self._connection_timeout,
                connection_cache=cache,
            )
        except (SMBAuthenticationError, LogonFailure) as exc:
            smbclient.reset_connection_cache(fail_on_error=False, connection_cache=cache)
            raise AuthenticationError(f"SMB authentication failed: {exc}", backend=self.name) from exc
        except (SMBException, ValueError, OSError) as exc:
            smbclient.reset_connection_cache(fail_on_error=False, connection_cache=cache)
            raise RemoteUnavailableError(f"Cannot reach {self._host}:{self._port}: {exc}", backend=self.name) from exc
        self._cache = cache
        log.info("SMB session established.")
        try:
            with self._errors(""):
                self._ensure_dirs("", root=True)
        except Exception:
            self.disconnect()
            raise

    def disconnect(self) -> None:
        if self._cache is None:
            return
        cache, self._cache = self._cache, None
        smbclient.reset_connection_cache(fail_on_error=False, connection_cache=cache)
        log.info("Disconnected from %s", self._host)

    def _ping(self) -> None:
        with self._errors(""):
            smbclient.stat(self._unc(""), **self._session_kwargs)

    # endregion

    # region: path helpers

    def _unc(self, path: str, *, root: bool = False) -> str:
        """Build the UNC path for virtual ``path`` (share-relative when ``root``)."""
        parts = split(path) if root else split(self._base_path) + split(path)
        return "\\".join([f"\\\\{self._host}", self._share, *parts])

    def _stat(self, unc: str) -> os.stat_result | None:
        try:
            return smbclient.stat(unc, **self._session_kwargs)
        except OSError as exc:
            if _is_missing(exc):
                return None
            raise

    def _ensure_dirs(self, path: str, *, root: bool = False) -> None:
        """Create every missing directory along ``path``.

        With ``root`` set, ``path`` is ignored and the base path inside the
        share is created instead.
        """
        parts = split(self._base_path) if root else split(path)
        current = ""
        for part in parts:
            current = f"{current}/{part}" if current else part
            unc = self._unc(current, root=root)
            st = self._stat(unc)
            if st is None:
                log.debug("mkdir %s", unc)
                smbclient.mkdir(unc, **self._session_kwargs)
            elif not stat.S_ISDIR(st.st_mode):
                raise ConflictError(f"Not a directory: {current}", path=current, backend=self.name)

    # endregion

    # region: error mapping

    @contextmanager
    def _errors(self, path: str = "") -> Iterator[None]:
        """Map smbprotocol/OS exceptions to backup_remote errors."""
        try:
            yield
        except RemoteClientError:
            raise
        except (SMBAuthenticationError, LogonFailure) as exc:
            raise AuthenticationError(str(exc), path=path, backend=self.name) from None
        except OSError as exc:
            code = getattr(exc, "errno", None)
            if _is_missing(exc):
                raise NotFoundError(f"Not found: {path}", path=path, backend=self.name) from None
            if code == errno.EEXIST:
                raise ConflictError(f"Already exists: {path}", path=path, backend=self.name) from None
            if code == errno.ENOTEMPTY:
                raise ConflictError(f"Directory not empty: {path}", path=path, backend=self.name) from None
            if isinstance(exc, (ConnectionError, TimeoutError)):
                raise RemoteUnavailableError(str(exc), path=path, backend=self.name) from None
            raise RemoteClientError(str(exc), path=path, backend=self.name) from None
        except SMBException as exc:
            raise RemoteUnavailableError(str(exc), path=path, backend=self.name) from None

    # endregion

    # region: directories

    def mkdir(self, path: str) -> None:
        with self._errors(path):
            path = normalize(path)
            parent = parent_path(path)
            if parent:
                st = self._stat(self._unc(parent_path(parent)))
                if st is None or not stat.S_ISDIR(st.st_mode):
                    raise NotFoundError(f"Ancestor not found: {parent_path(parent)}", path=path, backend=self.name)
                self._ensure_dirs(parent)
            unc = self._unc(path)
            if self._stat(unc) is not None:
                raise ConflictError(f"Already exists: {path}", path=path, backend=self.name)
            smbclient.mkdir(unc, **self._session_kwargs)

    def mkdir_recursively(self, path: str) -> None:
        with self._errors(path):
            self._ensure_dirs(path)

    def remove_directory(self, path: str) -> None:
        self._reject_root(path)
        with self._errors(path):
            unc = self._unc(path)
            st = self._stat(unc)
            if st is None:
                return
            if not stat.S_ISDIR(st.st_mode):
                raise ConflictError(f"Not a directory: {path}", path=path, backend=self.name)
            smbclient.rmdir(unc, **self._session_kwargs)

    def delete_recursively(self, path: str) -> None:
        self._reject_root(path)
        with self._errors(path):
            unc = self._unc(path)
            st = self._stat(unc)
            if st is None:
                return
            if stat.S_ISDIR(st.st_mode):
                self._rmtree(unc)
            else:
                smbclient.remove(unc, **self._session_kwargs)
            log.info("Deleted recursively: %s", path)

    def _rmtree(self, unc: str) -> None:
        """Remove a directory tree, children before parents."""
        for entry in list(smbclient.scandir(unc, **self._session_kwargs)):
            if entry.name in (".", ".."):
                continue
            child = f"{unc}\\{entry.name}"
            if entry.is_dir():
                self._rmtree(child)
            else:
                log.debug("remove %s", child)
                smbclient.remove(child, **self._session_kwargs)
        smbclient.rmdir(unc, **self._session_kwargs)

    # endregion

    # region: files

    def rename_to(self, src: str, dst: str) -> None:
        with self._errors(src):
            src_unc = self._unc(src)
            dst_unc = self._unc(dst)
            if self._stat(src_unc) is None:
                raise NotFoundError(f"Source not found: {src}", path=src, backend=self.name)
            if self._stat(dst_unc) is not None:
                raise ConflictError(f"Destination already exists: {dst}", path=dst, backend=self.name)
            self._ensure_dirs(parent_path(dst))
            smbclient.rename(src_unc, dst_unc, **self._session_kwargs)

    def upload(self, local_path: str, remote_dir: str, on_progress: ProgressCallback | None = None) -> None:
        self._ensure_connected()
        if not os.path.isfile(local_path):
            raise SourceNotFoundError(f"Source file does not exist: {local_path}", path=local_path, backend=self.name)
        target = normalize(f"{remote_dir}/{file_name(local_path)}")
        size = os.path.getsize(local_path)
        tracker = ProgressTracker(on_progress, size)
        with self._errors(target):
            self._ensure_dirs(remote_dir)
            with open(local_path, "rb") as src, smbclient.open_file(
                self._unc(target), mode="wb", **self._session_kwargs
            ) as dst:
                while chunk := src.read(CHUNK_SIZE):
                    dst.write(chunk)
                    tracker.advance(len(chunk))
        tracker.finish(size)
        log.info("Uploaded: %s -> %s", local_path, target)

    def download(self, remote_path: str, local_dir: str, on_progress: ProgressCallback | None = None) -> None:
        with self._errors(remote_path):
            unc = self._unc(remote_path)
            st = self._stat(unc)
            if st is None or stat.S_ISDIR(st.st_mode):
                raise NotFoundError(f"File not found: {remote_path}", path=remote_path, backend=self.name)
            tracker = ProgressTracker(on_progress, st.st_size)
            written = 0
            with smbclient.open_file(unc, mode="rb", **self._session_kwargs) as src, self._local_target(
                local_dir, remote_path
            ) as dst:
                while chunk := src.read(CHUNK_SIZE):
                    dst.write(chunk)
                    written += len(chunk)
                    tracker.update(written)
        tracker.finish(written)
        log.info("Downloaded: %s -> %s", remote_path, dst.name)

    def delete_file(self, path: str) -> None:
        with self._errors(path):
            unc = self._unc(path)
            st = self._stat(unc)
            if st is None:
                return
            if stat.S_ISDIR(st.st_mode):
                raise ConflictError(f"Is a directory: {path}", path=path, backend=self.name)
            smbclient.remove(unc, **self._session_kwargs)

    # endregion

    # region: queries

    def list_files(self, path: str = "") -> DirChildren:
        with self._errors(path):
            unc = self._unc(path)
            try:
                entries = [e for e in smbclient.scandir(unc, **self._session_kwargs) if e.name not in (".", "..")]
            except NotADirectoryError:
                return DirChildren()
            except OSError as exc:
                if _is_missing(exc):
                    return DirChildren()
                raise
            return DirChildren.from_entries([_scandir_to_entry(e) for e in entries])

    def exists(self, path: str) -> bool:
        with self._errors(path):
            st = self._stat(self._unc(path))
            return st is not None and stat.S_ISREG(st.st_mode)

    def size(self, path: str) -> int:
        with self._errors(path):
            st = self._stat(self._unc(path))
            if st is None or not stat.S_ISREG(st.st_mode):
                return 0
            return int(st.st_size)

    # endregion

    def set_remote(self, on_set: SetRemoteSink) -> None:
        extra = SMBExtra(share=self._share, port=self._port, domain=self._domain)
        on_set(self._base_path, extra.to_json())


def _is_missing(exc: OSError) -> bool:
    return isinstance(exc, FileNotFoundError) or getattr(exc, "errno", None) == errno.ENOENT


def _scandir_to_entry(entry: Any) -> DirEntry:
    st = entry.stat()
    is_dir = entry.is_dir()
    return DirEntry(
        name=entry.name,
        kind=EntryKind.DIRECTORY if is_dir else EntryKind.FILE,
        size=0 if is_dir else int(st.st_size),
        modified_at=datetime.fromtimestamp(st.st_mtime, tz=timezone.utc),
    )
