"""Configuration model: connection profiles and backend-private Extra records."""

from __future__ import annotations

import dataclasses
import enum
import json
from typing import Any, TypeVar

E = TypeVar("E", bound="Extra")


class Protocol(enum.Enum):
    """Closed set of supported backend protocols."""

    GDRIVE = "gdrive"
    SMB = "smb"
    SFTP = "sftp"
    WEBDAV = "webdav"


@dataclasses.dataclass(frozen=True)
class Extra:
    """Base for backend-private data stored as JSON inside a profile."""

    @classmethod
    def from_json(cls: type[E], raw: str | None) -> E:
        """Decode an Extra record, ignoring keys this backend does not read.

        :raises ValueError: If ``raw`` is not a JSON object.
        """
        if not raw:
            return cls()
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Extra for {cls.__name__} is not valid JSON: {exc}") from exc
        if not isinstance(data, dict):
            raise ValueError(f"Extra for {cls.__name__} must be a JSON object")
        known = {f.name for f in dataclasses.fields(cls)}
        return cls(**{k: v for k, v in data.items() if k in known})

    def to_json(self) -> str:
        return json.dumps(dataclasses.asdict(self), sort_keys=True)


@dataclasses.dataclass(frozen=True)
class GoogleDriveExtra(Extra):
    """Google Drive Extra.

    :param account_email: Account the profile was set up with; empty disables the check.
    :param folder_id: Drive id of the root folder, ``"root"`` until discovered.
    """

    account_email: str = ""
    folder_id: str = "root"


@dataclasses.dataclass(frozen=True)
class SMBExtra(Extra):
    share: str = ""
    port: int = 445
    domain: str = ""


@dataclasses.dataclass(frozen=True)
class SFTPExtra(Extra):
    """SFTP Extra.

    :param private_key: PEM-encoded private key (takes precedence over the path).
    :param private_key_path: Path to a private key file.
    :param host_key_policy: ``strict``, ``tofu`` or ``auto``.
    :param known_host_keys: known_hosts formatted string.
    """

    port: int = 22
    private_key: str = ""
    private_key_path: str = ""
    host_key_policy: str = "strict"
    known_host_keys: str = ""


@dataclasses.dataclass(frozen=True)
class WebDAVExtra(Extra):
    verify_ssl: bool = True
    timeout: float = 30.0


_EXTRA_TYPES: dict[Protocol, type[Extra]] = {
    Protocol.GDRIVE: GoogleDriveExtra,
    Protocol.SMB: SMBExtra,
    Protocol.SFTP: SFTPExtra,
    Protocol.WEBDAV: WebDAVExtra,
}


@dataclasses.dataclass(frozen=True)
class ConnectionProfile:
    """Describes one configured remote.

    :param name: Display name.
    :param protocol: Backend protocol tag.
    :param host: Hostname, or base URL for WebDAV. Unused by Google Drive.
    :param username: Login name.
    :param password: Password, or for Google Drive the authorized-user token JSON.
    :param remote: Root path on the backend; for Google Drive the root folder name.
    :param extra: Backend-private JSON record.
    """

    name: str
    protocol: Protocol
    host: str = ""
    username: str = ""
    password: str = dataclasses.field(default="", repr=False)
    remote: str = ""
    extra: str = ""

    def extra_for(self, cls: type[E]) -> E:
        """Decode :attr:`extra` as ``cls``."""
        return cls.from_json(self.extra)

    def validate(self) -> None:
        """Check that the fields the selected backend needs are present.

        :raises ValueError: If the profile is malformed.
        """
        if not isinstance(self.protocol, Protocol):
            raise ValueError(f"Unknown protocol {self.protocol!r}. Supported: {[p.value for p in Protocol]}")
        extra = self.extra_for(_EXTRA_TYPES[self.protocol])
        if self.protocol is not Protocol.GDRIVE and not self.host.strip():
            raise ValueError(f"Profile '{self.name}' ({self.protocol.value}) requires a host")
        if self.protocol is Protocol.WEBDAV and not self.host.startswith(("http://", "https://")):
            raise ValueError(f"Profile '{self.name}': WebDAV host must be an http(s) URL, got {self.host!r}")
        if isinstance(extra, SMBExtra) and not extra.share:
            raise ValueError(f"Profile '{self.name}': SMB Extra requires a 'share'")
        port = getattr(extra, "port", None)
        if port is not None and (not isinstance(port, int) or not 1 <= port <= 65535):
            raise ValueError(f"Profile '{self.name}': port must be an integer between 1 and 65535")
        if isinstance(extra, SFTPExtra) and extra.host_key_policy not in ("strict", "tofu", "auto"):
            raise ValueError(f"Profile '{self.name}': unknown host_key_policy {extra.host_key_policy!r}")

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ConnectionProfile:
        """Construct from a plain dict (e.g. a stored configuration record).

        ``extra`` may be given either as a JSON string or as a dict.
        """
        if "protocol" not in data:
            raise ValueError("Connection profile requires a 'protocol' field")
        try:
            protocol = Protocol(str(data["protocol"]).lower())
        except ValueError:
            raise ValueError(
                f"Unknown protocol {data['protocol']!r}. Supported: {[p.value for p in Protocol]}"
            ) from None
        raw_extra = data.get("extra", "")
        if isinstance(raw_extra, dict):
            raw_extra = json.dumps(raw_extra, sort_keys=True)
        return cls(
            name=str(data.get("name", "")),
            protocol=protocol,
            host=str(data.get("host", "")),
            username=str(data.get("username", "")),
            password=str(data.get("password", "")),
            remote=str(data.get("remote", "")),
            extra=str(raw_extra or ""),
        )
