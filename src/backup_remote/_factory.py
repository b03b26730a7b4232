"""Client factory: selects the backend client from a profile's protocol tag."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from backup_remote._config import Protocol

if TYPE_CHECKING:
    from backup_remote._client import CloudClient
    from backup_remote._config import ConnectionProfile

# Global client registry: maps protocol tags to client classes.
_CLIENT_FACTORIES: dict[Protocol, type[CloudClient]] = {}


def register_client(protocol: Protocol, cls: type[CloudClient]) -> None:
    """Register a client class for a protocol tag.

    :param protocol: The protocol the class implements.
    :param cls: The client class; must provide ``from_profile``.
    """
    _CLIENT_FACTORIES[protocol] = cls


def _register_builtin_clients() -> None:
    """Register the built-in clients, importing each backend lazily."""
    if Protocol.GDRIVE not in _CLIENT_FACTORIES:
        from backup_remote.clients._gdrive import GoogleDriveClient

        register_client(Protocol.GDRIVE, GoogleDriveClient)
    if Protocol.SMB not in _CLIENT_FACTORIES:
        from backup_remote.clients._smb import SMBClient

        register_client(Protocol.SMB, SMBClient)
    if Protocol.SFTP not in _CLIENT_FACTORIES:
        from backup_remote.clients._sftp import SFTPClient

        register_client(Protocol.SFTP, SFTPClient)
    if Protocol.WEBDAV not in _CLIENT_FACTORIES:
        from backup_remote.clients._webdav import WebDAVClient

        register_client(Protocol.WEBDAV, WebDAVClient)


def create_client(profile: ConnectionProfile, **kwargs: Any) -> CloudClient:
    """Instantiate the client for ``profile``. No network I/O happens here.

    :param profile: A validated or unvalidated connection profile.
    :param kwargs: Backend-specific construction arguments, e.g. ``credentials``
        for Google Drive.
    :raises ValueError: If the profile is invalid or its protocol has no client.
    """
    _register_builtin_clients()
    profile.validate()
    if profile.protocol not in _CLIENT_FACTORIES:
        raise ValueError(
            f"No client registered for protocol '{profile.protocol.value}'. "
            f"Registered: {sorted(p.value for p in _CLIENT_FACTORIES)}"
        )
    factory = _CLIENT_FACTORIES[profile.protocol]
    try:
        return factory.from_profile(profile, **kwargs)
    except TypeError as exc:
        raise ValueError(
            f"Invalid options for profile '{profile.name}' (protocol={profile.protocol.value!r}): {exc}. "
            f"Provided options: {sorted(kwargs.keys())}"
        ) from exc
