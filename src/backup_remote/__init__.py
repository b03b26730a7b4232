"""Remote storage clients for a backup tool: Google Drive, SMB, SFTP and WebDAV."""

from backup_remote._client import CloudClient, SetRemoteSink
from backup_remote._config import (
    ConnectionProfile,
    Extra,
    GoogleDriveExtra,
    Protocol,
    SFTPExtra,
    SMBExtra,
    WebDAVExtra,
)
from backup_remote._errors import (
    AuthenticationError,
    ConflictError,
    InvalidPath,
    NotConnectedError,
    NotFoundError,
    RemoteClientError,
    RemoteUnavailableError,
    SourceNotFoundError,
    UnsupportedOperationError,
)
from backup_remote._factory import create_client, register_client
from backup_remote._models import DirChildren, DirEntry, EntryKind, TransferProgress
from backup_remote._path import RemotePath, file_name, join, normalize, parent_path, split
from backup_remote._progress import CHUNK_SIZE, ProgressCallback, ProgressTracker

__version__ = "0.1.0"

__all__ = [
    # Core
    "CloudClient",
    "create_client",
    "register_client",
    "SetRemoteSink",
    # Path & Models
    "RemotePath",
    "normalize",
    "split",
    "join",
    "file_name",
    "parent_path",
    "DirEntry",
    "DirChildren",
    "EntryKind",
    "TransferProgress",
    # Progress
    "ProgressCallback",
    "ProgressTracker",
    "CHUNK_SIZE",
    # Config
    "Protocol",
    "ConnectionProfile",
    "Extra",
    "GoogleDriveExtra",
    "SMBExtra",
    "SFTPExtra",
    "WebDAVExtra",
    # Errors
    "RemoteClientError",
    "AuthenticationError",
    "RemoteUnavailableError",
    "NotFoundError",
    "SourceNotFoundError",
    "ConflictError",
    "UnsupportedOperationError",
    "NotConnectedError",
    "InvalidPath",
    # Version
    "__version__",
]
