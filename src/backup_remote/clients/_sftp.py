"""SFTP client using pure paramiko."""

from __future__ import annotations

import contextlib
import errno
import logging
import os
import re
import socket
import stat
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from io import StringIO
from typing import TYPE_CHECKING, Any, TypeVar

import paramiko

from backup_remote._client import CloudClient
from backup_remote._config import SFTPExtra
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
from backup_remote._path import file_name, normalize, parent_path, split
from backup_remote._progress import ProgressTracker

if TYPE_CHECKING:
    from collections.abc import Iterator

    from backup_remote._client import SetRemoteSink
    from backup_remote._config import ConnectionProfile
    from backup_remote._progress import ProgressCallback

T = TypeVar("T")

log = logging.getLogger(__name__)


# region: host key policy


class HostKeyPolicy(Enum):
    """Controls how unknown remote host keys are handled.

    :cvar STRICT: Reject unknown hosts (production default).
    :cvar TRUST_ON_FIRST_USE: Save on first connect, verify after.
    :cvar AUTO_ADD: Accept any key (dev/testing ONLY).
    """

    STRICT = "strict"
    TRUST_ON_FIRST_USE = "tofu"
    AUTO_ADD = "auto"


# endregion

# region: PEM handling

_NON_BASE64_PATTERN = re.compile(r"[^A-Za-z\d+/=]")
_PEM_SEPARATOR = "-----"


def _sanitize_pem(pem_content: str) -> str:
    """Normalize PEM line separators mangled into blanks by key stores and text fields."""
    parts = pem_content.split(_PEM_SEPARATOR)
    if len(parts) != 5:
        raise ValueError("Invalid PEM structure (expected 5 parts).")

    payload = parts[2]
    non_base64_chars = list(set(re.findall(_NON_BASE64_PATTERN, payload)))
    if len(non_base64_chars) != 1:
        raise ValueError(f"Unexpected PEM characters: {non_base64_chars}")

    parts[2] = payload.replace(non_base64_chars[0], "\n")
    return _PEM_SEPARATOR.join(parts)


def load_private_key(source: str, *, from_file: bool = False) -> paramiko.PKey:
    """Load a private key from a file path or a PEM string.

    Args:
        source: File path (if from_file=True) or PEM-encoded string.
        from_file: If True, treat source as a file path.

    Returns:
        paramiko.PKey
    """
    if from_file:
        return paramiko.PKey.from_path(source)
    with StringIO(_sanitize_pem(source)) as buf:
        return paramiko.RSAKey.from_private_key(buf)


def _load_host_keys_from_string(ssh: paramiko.SSHClient, keys_content: str) -> None:
    """Parse a known_hosts-formatted string into an SSHClient's host keys."""
    host_keys = ssh.get_host_keys()
    for line in keys_content.splitlines():
        entry = paramiko.hostkeys.HostKeyEntry.from_line(line)
        if entry is None:
            continue
        for hostname in entry.hostnames:
            host_keys.add(hostname, entry.key.get_name(), entry.key)


class _RejectUnknownHost(paramiko.MissingHostKeyPolicy):
    """Like ``RejectPolicy`` but raises an :class:`AuthenticationError`."""

    def missing_host_key(self, client: paramiko.SSHClient, hostname: str, key: paramiko.PKey) -> None:
        raise AuthenticationError(f"Host key for {hostname} is not in known_hosts", backend="sftp")


# endregion


class SFTPClient(CloudClient):
    """SFTP client using pure paramiko.

    :param host: SFTP server hostname (required, non-empty).
    :param port: SSH port (default: 22).
    :param username: SSH username.
    :param password: SSH password.
    :param pkey: paramiko.PKey instance for key-based auth.
    :param base_path: Root path on the remote server (default: ``/``).
    :param host_key_policy: Host key verification policy.
    :param known_host_keys: Known hosts string.
    :param host_keys_path: Path to known_hosts file (default: ``~/.ssh/known_hosts``).
    :param timeout: SSH connection timeout in seconds.
    :param connect_kwargs: Extra kwargs passed to ``SSHClient.connect()``.
    """

    def __init__(
        self,
        host: str,
        *,
        port: int = 22,
        username: str | None = None,
        password: str | None = None,
        pkey: paramiko.PKey | None = None,
        base_path: str = "/",
        host_key_policy: HostKeyPolicy = HostKeyPolicy.STRICT,
        known_host_keys: str | None = None,
        host_keys_path: str | None = None,
        timeout: int = 10,
        connect_kwargs: dict[str, Any] | None = None,
    ) -> None:
        if not host or not host.strip():
            raise ValueError("host must be a non-empty string")
        self._host = host
        self._port = port
        self._username = username
        self._password = password
        self._pkey = pkey
        self._base_path = "/" + normalize(base_path) if normalize(base_path) else "/"
        self._host_key_policy = host_key_policy
        self._known_host_keys = known_host_keys or os.environ.get("SFTP_KNOWN_HOST_KEYS")
        self._host_keys_path = host_keys_path
        self._timeout = timeout
        self._connect_kwargs = connect_kwargs or {}
        self._extra: SFTPExtra | None = None

        self._ssh_client: paramiko.SSHClient | None = None
        self._sftp_client: paramiko.SFTPClient | None = None

    @classmethod
    def from_profile(cls, profile: ConnectionProfile, **kwargs: Any) -> SFTPClient:
        extra = profile.extra_for(SFTPExtra)
        pkey = None
        if extra.private_key:
            pkey = load_private_key(extra.private_key)
        elif extra.private_key_path:
            pkey = load_private_key(extra.private_key_path, from_file=True)
        options: dict[str, Any] = {
            "port": extra.port,
            "username": profile.username or None,
            "password": profile.password or None,
            "pkey": pkey,
            "base_path": profile.remote or "/",
            "host_key_policy": HostKeyPolicy(extra.host_key_policy),
            "known_host_keys": extra.known_host_keys or None,
        }
        options.update(kwargs)
        client = cls(profile.host, **options)
        client._extra = extra
        return client

    @property
    def name(self) -> str:
        return "sftp"

    @property
    def is_connected(self) -> bool:
        return self._sftp_client is not None

    # region: session lifecycle

    @property
    def _sftp(self) -> paramiko.SFTPClient:
        self._ensure_connected()
        assert self._sftp_client is not None
        return self._sftp_client

    def connect(self) -> None:
        """Establish the SSH + SFTP session."""
        if self.is_connected:
            return
        ssh = self._create_ssh_client()
        log.info("Connecting to %s:%d as %s", self._host, self._port, self._username)
        try:
            ssh.connect(
                hostname=self._host,
                port=self._port,
                username=self._username,
                password=self._password,
                pkey=self._pkey,
                timeout=self._timeout,
                banner_timeout=self._timeout,
                auth_timeout=self._timeout,
                channel_timeout=self._timeout,
                **self._connect_kwargs,
            )
            sftp = ssh.open_sftp()
        except AuthenticationError:
            ssh.close()
            raise
        except paramiko.AuthenticationException as exc:
            ssh.close()
            raise AuthenticationError(f"SSH authentication failed: {exc}", backend=self.name) from exc
        except paramiko.BadHostKeyException as exc:
            ssh.close()
            raise AuthenticationError(f"Host key mismatch for {self._host}: {exc}", backend=self.name) from exc
        except (paramiko.SSHException, OSError, EOFError) as exc:
            ssh.close()
            raise RemoteUnavailableError(
                f"Cannot reach {self._host}:{self._port}: {exc}", backend=self.name
            ) from exc
        self._ssh_client = ssh
        self._sftp_client = sftp
        log.info("SFTP connection established.")
        try:
            with self._errors(""):
                self._ensure_root()
        except Exception:
            self.disconnect()
            raise

    def _ensure_root(self) -> None:
        """Create the base path on the server when it does not exist yet."""
        current = ""
        for part in split(self._base_path):
            current = f"{current}/{part}"
            if self._stat(current) is None:
                log.info("Creating root directory %s", current)
                self._sftp.mkdir(current)

    def _create_ssh_client(self) -> paramiko.SSHClient:
        """Create and configure an SSHClient with host key policy."""
        ssh = paramiko.SSHClient()

        if self._known_host_keys:
            _load_host_keys_from_string(ssh, self._known_host_keys)
        elif self._host_key_policy in (HostKeyPolicy.STRICT, HostKeyPolicy.TRUST_ON_FIRST_USE):
            keys_path = self._host_keys_path or os.path.expanduser("~/.ssh/known_hosts")
            if os.path.isfile(keys_path):
                ssh.load_host_keys(keys_path)

        if self._host_key_policy == HostKeyPolicy.TRUST_ON_FIRST_USE:
            ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        elif self._host_key_policy == HostKeyPolicy.AUTO_ADD:
            log.warning("AUTO_ADD host key policy -- NOT safe for production.")
            ssh.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        else:
            ssh.set_missing_host_key_policy(_RejectUnknownHost())

        return ssh

    def disconnect(self) -> None:
        if self._sftp_client is not None:
            with contextlib.suppress(Exception):
                self._sftp_client.close()
            self._sftp_client = None
        if self._ssh_client is not None:
            with contextlib.suppress(Exception):
                self._ssh_client.close()
            self._ssh_client = None
            log.info("Disconnected from %s", self._host)

    def _ping(self) -> None:
        with self._errors(""):
            self._sftp.stat(self._base_path)

    # endregion

    # region: path helpers

    def _sftp_path(self, path: str) -> str:
        """Convert a virtual path to an absolute SFTP path."""
        path = normalize(path)
        if path:
            if self._base_path == "/":
                return f"/{path}"
            return f"{self._base_path}/{path}"
        return self._base_path

    def _stat(self, sftp_path: str) -> paramiko.SFTPAttributes | None:
        """``stat`` that returns ``None`` for a missing path."""
        try:
            return self._sftp.stat(sftp_path)
        except OSError as exc:
            if _is_missing(exc):
                return None
            raise

    def _ensure_dirs(self, path: str) -> None:
        """Create every missing directory along virtual ``path``."""
        current = ""
        for part in split(path):
            current = f"{current}/{part}" if current else part
            sftp_path = self._sftp_path(current)
            attrs = self._stat(sftp_path)
            if attrs is None:
                log.debug("mkdir %s", sftp_path)
                self._sftp.mkdir(sftp_path)
            elif not stat.S_ISDIR(attrs.st_mode or 0):
                raise ConflictError(f"Not a directory: {current}", path=current, backend=self.name)

    # endregion

    # region: error mapping

    @contextmanager
    def _errors(self, path: str = "") -> Iterator[None]:
        """Map paramiko/OS exceptions to backup_remote errors."""
        try:
            yield
        except RemoteClientError:
            raise
        except FileNotFoundError:
            raise NotFoundError(f"Not found: {path}", path=path, backend=self.name) from None
        except (paramiko.SSHException, EOFError, ConnectionError, socket.timeout) as exc:
            raise RemoteUnavailableError(str(exc), path=path, backend=self.name) from None
        except OSError as exc:
            code = getattr(exc, "errno", None)
            if code == errno.ENOENT:
                raise NotFoundError(f"Not found: {path}", path=path, backend=self.name) from None
            if code == errno.EEXIST:
                raise ConflictError(f"Already exists: {path}", path=path, backend=self.name) from None
            raise RemoteClientError(str(exc), path=path, backend=self.name) from None

    # endregion

    # region: directories

    def mkdir(self, path: str) -> None:
        with self._errors(path):
            path = normalize(path)
            parent = parent_path(path)
            grandparent = parent_path(parent)
            if parent:
                attrs = self._stat(self._sftp_path(grandparent))
                if attrs is None or not stat.S_ISDIR(attrs.st_mode or 0):
                    raise NotFoundError(f"Ancestor not found: {grandparent}", path=path, backend=self.name)
                self._ensure_dirs(parent)
            sftp_path = self._sftp_path(path)
            if self._stat(sftp_path) is not None:
                raise ConflictError(f"Already exists: {path}", path=path, backend=self.name)
            self._sftp.mkdir(sftp_path)

    def mkdir_recursively(self, path: str) -> None:
        with self._errors(path):
            self._ensure_dirs(path)

    def remove_directory(self, path: str) -> None:
        self._reject_root(path)
        with self._errors(path):
            sftp_path = self._sftp_path(path)
            attrs = self._stat(sftp_path)
            if attrs is None:
                return
            if not stat.S_ISDIR(attrs.st_mode or 0):
                raise ConflictError(f"Not a directory: {path}", path=path, backend=self.name)
            if self._sftp.listdir(sftp_path):
                raise ConflictError(f"Directory not empty: {path}", path=path, backend=self.name)
            self._sftp.rmdir(sftp_path)

    def delete_recursively(self, path: str) -> None:
        self._reject_root(path)
        with self._errors(path):
            sftp_path = self._sftp_path(path)
            attrs = self._stat(sftp_path)
            if attrs is None:
                return
            if stat.S_ISDIR(attrs.st_mode or 0):
                self._rmtree(sftp_path)
            else:
                self._sftp.remove(sftp_path)
            log.info("Deleted recursively: %s", path)

    def _rmtree(self, sftp_path: str) -> None:
        """Recursively remove a directory tree, bottom-up."""
        for attr in self._sftp.listdir_attr(sftp_path):
            child = f"{sftp_path}/{attr.filename}"
            if stat.S_ISDIR(attr.st_mode or 0):
                self._rmtree(child)
            else:
                log.debug("remove %s", child)
                self._sftp.remove(child)
        self._sftp.rmdir(sftp_path)

    # endregion

    # region: files

    def rename_to(self, src: str, dst: str) -> None:
        with self._errors(src):
            src_sftp = self._sftp_path(src)
            dst_sftp = self._sftp_path(dst)
            if self._stat(src_sftp) is None:
                raise NotFoundError(f"Source not found: {src}", path=src, backend=self.name)
            if self._stat(dst_sftp) is not None:
                raise ConflictError(f"Destination already exists: {dst}", path=dst, backend=self.name)
            self._ensure_dirs(parent_path(dst))
            self._sftp.rename(src_sftp, dst_sftp)

    def upload(self, local_path: str, remote_dir: str, on_progress: ProgressCallback | None = None) -> None:
        self._ensure_connected()
        if not os.path.isfile(local_path):
            raise SourceNotFoundError(f"Source file does not exist: {local_path}", path=local_path, backend=self.name)
        target = normalize(f"{remote_dir}/{file_name(local_path)}")
        size = os.path.getsize(local_path)
        tracker = ProgressTracker(on_progress, size)
        with self._errors(target):
            self._ensure_dirs(remote_dir)
            self._sftp.put(local_path, self._sftp_path(target), callback=tracker, confirm=True)
        tracker.finish(size)
        log.info("Uploaded: %s -> %s", local_path, target)

    def download(self, remote_path: str, local_dir: str, on_progress: ProgressCallback | None = None) -> None:
        with self._errors(remote_path):
            sftp_path = self._sftp_path(remote_path)
            attrs = self._stat(sftp_path)
            if attrs is None or not stat.S_ISREG(attrs.st_mode or 0):
                raise NotFoundError(f"File not found: {remote_path}", path=remote_path, backend=self.name)
            size = attrs.st_size or 0
            tracker = ProgressTracker(on_progress, size)
            with self._local_target(local_dir, remote_path) as fh:
                self._sftp.getfo(sftp_path, fh, callback=tracker)
        tracker.finish(size)
        log.info("Downloaded: %s -> %s", remote_path, fh.name)

    def delete_file(self, path: str) -> None:
        with self._errors(path):
            sftp_path = self._sftp_path(path)
            attrs = self._stat(sftp_path)
            if attrs is None:
                return
            if stat.S_ISDIR(attrs.st_mode or 0):
                raise ConflictError(f"Is a directory: {path}", path=path, backend=self.name)
            self._sftp.remove(sftp_path)

    # endregion

    # region: queries

    def list_files(self, path: str = "") -> DirChildren:
        with self._errors(path):
            sftp_path = self._sftp_path(path)
            try:
                entries = self._sftp.listdir_attr(sftp_path)
            except OSError as exc:
                if _is_missing(exc):
                    return DirChildren()
                raise
            return DirChildren.from_entries([_attr_to_entry(attr) for attr in entries])

    def exists(self, path: str) -> bool:
        with self._errors(path):
            attrs = self._stat(self._sftp_path(path))
            return attrs is not None and stat.S_ISREG(attrs.st_mode or 0)

    def size(self, path: str) -> int:
        with self._errors(path):
            attrs = self._stat(self._sftp_path(path))
            if attrs is None or not stat.S_ISREG(attrs.st_mode or 0):
                return 0
            return int(attrs.st_size or 0)

    # endregion

    def set_remote(self, on_set: SetRemoteSink) -> None:
        extra = self._extra or SFTPExtra(port=self._port, host_key_policy=self._host_key_policy.value)
        on_set(self._base_path, extra.to_json())

    def unwrap(self, type_hint: type[T]) -> T:
        if type_hint is paramiko.SFTPClient:
            return self._sftp  # type: ignore[return-value]
        raise UnsupportedOperationError(
            f"Client 'sftp' does not expose native handle of type {type_hint.__name__}.",
            operation="unwrap",
            backend=self.name,
        )


def _is_missing(exc: OSError) -> bool:
    return isinstance(exc, FileNotFoundError) or getattr(exc, "errno", None) == errno.ENOENT


def _attr_to_entry(attr: paramiko.SFTPAttributes) -> DirEntry:
    """Convert paramiko SFTPAttributes to a DirEntry."""
    is_dir = stat.S_ISDIR(attr.st_mode or 0)
    modified = (
        datetime.fromtimestamp(attr.st_mtime, tz=timezone.utc) if attr.st_mtime is not None else None
    )
    return DirEntry(
        name=attr.filename,
        kind=EntryKind.DIRECTORY if is_dir else EntryKind.FILE,
        size=0 if is_dir else int(attr.st_size or 0),
        modified_at=modified,
    )
