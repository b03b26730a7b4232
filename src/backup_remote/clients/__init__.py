"""Client implementations, one per storage protocol."""

from backup_remote.clients._gdrive import GoogleDriveClient
from backup_remote.clients._sftp import HostKeyPolicy, SFTPClient
from backup_remote.clients._smb import SMBClient
from backup_remote.clients._webdav import WebDAVClient

__all__ = ["GoogleDriveClient", "HostKeyPolicy", "SFTPClient", "SMBClient", "WebDAVClient"]
