"""Google Drive client over the Drive v3 API.

Drive has no path syntax: every item is addressed by an opaque id and may
have same-named siblings. Virtual paths are resolved by walking from the
root folder id one ``files.list`` query per segment; nothing is cached
between operations except the root id itself.
"""

from __future__ import annotations

import json
import logging
import os
from contextlib import contextmanager
from datetime import datetime
from typing import TYPE_CHECKING, Any, TypeVar

import httplib2
from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from googleapiclient.discovery import Resource, build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaFileUpload, MediaIoBaseDownload

from backup_remote._client import CloudClient
from backup_remote._config import GoogleDriveExtra
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
from backup_remote._progress import ProgressTracker

if TYPE_CHECKING:
    from collections.abc import Iterator

    from backup_remote._client import SetRemoteSink
    from backup_remote._config import ConnectionProfile
    from backup_remote._progress import ProgressCallback

T = TypeVar("T")

log = logging.getLogger(__name__)

FOLDER_MIME = "application/vnd.google-apps.folder"
SCOPES = [
    "https://www.googleapis.com/auth/drive.file",
    "https://www.googleapis.com/auth/drive.appdata",
]
DEFAULT_ROOT_NAME = "DataBackup"

# Resumable upload chunks must be multiples of 256 KiB
_TRANSFER_CHUNK = 4 * 256 * 1024
_ENTRY_FIELDS = "id, name, mimeType, size, modifiedTime, parents"
# 403 reasons that mean "slow down", not "forbidden"
_THROTTLE_REASONS = frozenset(
    {
        "rateLimitExceeded",
        "userRateLimitExceeded",
        "sharingRateLimitExceeded",
        "quotaExceeded",
        "dailyLimitExceeded",
        "storageQuotaExceeded",
    }
)


def _escape(value: str) -> str:
    """Escape a string for use inside a single-quoted Drive query literal."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _error_reasons(exc: HttpError) -> set[str]:
    """Return the ``error.errors[].reason`` values of a Drive error body."""
    try:
        body = json.loads(exc.content)
    except (TypeError, ValueError):
        return set()
    error = body.get("error") if isinstance(body, dict) else None
    if not isinstance(error, dict):
        return set()
    return {item.get("reason", "") for item in error.get("errors", []) if isinstance(item, dict)}


class GoogleDriveClient(CloudClient):
    """Google Drive client rooted at one folder of the user's My Drive.

    :param credentials: OAuth credentials produced by the sign-in flow.
    :param account_email: Expected account; a different signed-in account is rejected.
    :param folder_id: Previously discovered root folder id, ``"root"`` if unknown.
    :param root_name: Name of the root folder under My Drive.
    :param service: Pre-built Drive ``Resource``; skips credential handling.
    """

    def __init__(
        self,
        credentials: Credentials | None = None,
        *,
        account_email: str = "",
        folder_id: str = "root",
        root_name: str = DEFAULT_ROOT_NAME,
        service: Resource | None = None,
    ) -> None:
        if credentials is None and service is None:
            raise ValueError("either credentials or service is required")
        self._credentials = credentials
        self._account_email = account_email
        self._folder_id = folder_id or "root"
        self._root_name = normalize(root_name) or DEFAULT_ROOT_NAME
        self._injected_service = service
        self._service: Resource | None = None
        self._root_id: str | None = None

    @classmethod
    def from_profile(cls, profile: ConnectionProfile, **kwargs: Any) -> GoogleDriveClient:
        """Build from a profile whose ``password`` holds the authorized-user token JSON.

        ``credentials`` or ``service`` passed as keyword arguments take precedence.
        """
        extra = profile.extra_for(GoogleDriveExtra)
        if "credentials" not in kwargs and "service" not in kwargs:
            if not profile.password:
                raise ValueError(f"Profile '{profile.name}' has no Google account token")
            try:
                info = json.loads(profile.password)
            except json.JSONDecodeError as exc:
                raise ValueError(f"Profile '{profile.name}': token is not valid JSON: {exc}") from exc
            kwargs["credentials"] = Credentials.from_authorized_user_info(info, SCOPES)
        options: dict[str, Any] = {
            "account_email": extra.account_email,
            "folder_id": extra.folder_id,
            "root_name": profile.remote or DEFAULT_ROOT_NAME,
        }
        options.update(kwargs)
        return cls(**options)

    @property
    def name(self) -> str:
        return "gdrive"

    @property
    def is_connected(self) -> bool:
        return self._service is not None and self._root_id is not None

    @property
    def root_id(self) -> str | None:
        """Drive id of the root folder for the current session."""
        return self._root_id

    @property
    def _files(self) -> Any:
        self._ensure_connected()
        assert self._service is not None
        return self._service.files()

    # region: session lifecycle

    def connect(self) -> None:
        if self.is_connected:
            return
        with self._errors(""):
            service = self._injected_service or self._build_service()
            self._check_account(service)
            self._service = service
            try:
                self._root_id = self._find_root()
            except Exception:
                self._service = None
                raise
            self._folder_id = self._root_id
        log.info("Connected to Google Drive, root folder %s", self._root_id)

    def _build_service(self) -> Resource:
        assert self._credentials is not None
        if not self._credentials.valid:
            if not self._credentials.refresh_token:
                raise AuthenticationError("Google credentials expired and cannot be refreshed", backend=self.name)
            self._credentials.refresh(Request())
        return build("drive", "v3", credentials=self._credentials, cache_discovery=False)

    def _check_account(self, service: Resource) -> None:
        if not self._account_email:
            return
        about = service.about().get(fields="user(emailAddress)").execute()
        email = about.get("user", {}).get("emailAddress", "")
        if email.lower() != self._account_email.lower():
            raise AuthenticationError(
                f"Signed-in account ({email}) does not match configured account ({self._account_email})",
                backend=self.name,
            )

    def _find_root(self) -> str:
        """Reuse the stored root folder id, else find or create the root folder by name."""
        if self._folder_id != "root":
            try:
                meta = self._service.files().get(fileId=self._folder_id, fields="id, mimeType, trashed").execute()  # type: ignore[union-attr]
            except HttpError as exc:
                if exc.resp.status != 404:
                    raise
                meta = None
            if meta and meta.get("mimeType") == FOLDER_MIME and not meta.get("trashed"):
                log.info("Using stored root folder: %s", meta["id"])
                return str(meta["id"])
            log.info("Stored root folder %s is gone, looking up %r", self._folder_id, self._root_name)

        folder_id = "root"
        for part in split(self._root_name):
            found = self._query(self._child_query(folder_id, part, folder=True), fields="id, name")
            if found:
                log.info("Found existing %s folder: %s", part, found[0]["id"])
                folder_id = found[0]["id"]
            else:
                folder_id = self._create_folder(part, folder_id)
                log.info("Created new %s folder: %s", part, folder_id)
        return folder_id

    def disconnect(self) -> None:
        if self._service is None and self._root_id is None:
            return
        if self._service is not None and self._injected_service is None:
            self._service.close()
        self._service = None
        self._root_id = None
        log.info("Disconnected from Google Drive")

    def _ping(self) -> None:
        with self._errors(""):
            self._files.get(fileId=self._root_id, fields="id").execute()

    # endregion

    # region: error mapping

    @contextmanager
    def _errors(self, path: str = "") -> Iterator[None]:
        """Map googleapiclient/google-auth exceptions to backup_remote errors."""
        try:
            yield
        except RemoteClientError:
            raise
        except HttpError as exc:
            status = exc.resp.status
            detail = exc.reason if hasattr(exc, "reason") else str(exc)
            if status == 401:
                raise AuthenticationError(f"Drive rejected credentials: {detail}", path=path, backend=self.name) from None
            if status == 403:
                if _error_reasons(exc) & _THROTTLE_REASONS:
                    raise RemoteUnavailableError(f"Drive quota or rate limit: {detail}", path=path, backend=self.name) from None
                raise AuthenticationError(f"Drive denied access: {detail}", path=path, backend=self.name) from None
            if status == 404:
                raise NotFoundError(f"Not found: {path}", path=path, backend=self.name) from None
            if status == 409:
                raise ConflictError(f"Conflict: {detail}", path=path, backend=self.name) from None
            if status == 429 or status >= 500:
                raise RemoteUnavailableError(f"Drive unavailable ({status}): {detail}", path=path, backend=self.name) from None
            raise RemoteClientError(f"Drive error ({status}): {detail}", path=path, backend=self.name) from None
        except RefreshError as exc:
            raise AuthenticationError(f"Token refresh failed: {exc}", path=path, backend=self.name) from None
        except (TransportError, httplib2.HttpLib2Error, OSError) as exc:
            raise RemoteUnavailableError(str(exc), path=path, backend=self.name) from None

    # endregion

    # region: resolution helpers

    @staticmethod
    def _child_query(parent_id: str, name: str, *, folder: bool | None) -> str:
        """Query for children of ``parent_id`` named ``name``.

        ``folder`` selects folders only (``True``), non-folders only (``False``)
        or either (``None``).
        """
        q = f"name = '{_escape(name)}' and '{parent_id}' in parents and trashed = false"
        if folder is True:
            q += f" and mimeType = '{FOLDER_MIME}'"
        elif folder is False:
            q += f" and mimeType != '{FOLDER_MIME}'"
        return q

    def _query(self, q: str, *, fields: str = _ENTRY_FIELDS) -> list[dict[str, Any]]:
        """Run a ``files.list`` query across all result pages."""
        service_files = self._service.files()  # type: ignore[union-attr]
        result: list[dict[str, Any]] = []
        page_token = None
        while True:
            response = service_files.list(
                q=q,
                spaces="drive",
                fields=f"nextPageToken, files({fields})",
                pageToken=page_token,
            ).execute()
            result.extend(response.get("files", []))
            page_token = response.get("nextPageToken")
            if not page_token:
                return result

    def _children(self, folder_id: str) -> list[dict[str, Any]]:
        return self._query(f"'{folder_id}' in parents and trashed = false")

    def _lookup(self, path: str, *, folder: bool | None) -> dict[str, Any] | None:
        """Resolve ``path`` to its Drive metadata, failing closed on the first miss.

        Intermediate segments match folders only; ``folder`` filters the last one.
        The first match returned by Drive wins when siblings share a name.
        """
        self._ensure_connected()
        parts = split(path)
        if not parts:
            return {"id": self._root_id, "name": "", "mimeType": FOLDER_MIME} if folder is not False else None
        current = self._root_id
        for index, part in enumerate(parts):
            last = index == len(parts) - 1
            found = self._query(self._child_query(current, part, folder=folder if last else True))  # type: ignore[arg-type]
            if not found:
                log.debug("Unresolved segment %r of %r", part, path)
                return None
            if last:
                return found[0]
            current = found[0]["id"]
        return None

    def _resolve(self, path: str, *, folder: bool | None) -> str | None:
        meta = self._lookup(path, folder=folder)
        return None if meta is None else str(meta["id"])

    def _create_folder(self, name: str, parent_id: str) -> str:
        body = {"name": name, "mimeType": FOLDER_MIME, "parents": [parent_id]}
        created = self._service.files().create(body=body, fields="id").execute()  # type: ignore[union-attr]
        return str(created["id"])

    def _resolve_or_create(self, path: str, *, start_id: str | None = None) -> str:
        """Walk ``path`` from ``start_id`` (default: root), creating missing folders."""
        self._ensure_connected()
        current = start_id or self._root_id
        for part in split(path):
            found = self._query(self._child_query(current, part, folder=True), fields="id")  # type: ignore[arg-type]
            if found:
                current = found[0]["id"]
            else:
                conflicting = self._query(self._child_query(current, part, folder=False), fields="id")  # type: ignore[arg-type]
                if conflicting:
                    raise ConflictError(f"A file named {part!r} is in the way", path=path, backend=self.name)
                current = self._create_folder(part, current)  # type: ignore[arg-type]
                log.debug("Created folder %r (%s)", part, current)
        return current  # type: ignore[return-value]

    # endregion

    # region: directories

    def mkdir(self, path: str) -> None:
        with self._errors(path):
            path = normalize(path)
            if not path:
                raise ConflictError("The connection root already exists", path=path, backend=self.name)
            parent = parent_path(path)
            grandparent_id = self._resolve(parent_path(parent), folder=True)
            if grandparent_id is None:
                raise NotFoundError(f"Ancestor not found: {parent_path(parent)}", path=path, backend=self.name)
            parent_id = self._resolve_or_create(file_name(parent), start_id=grandparent_id) if parent else grandparent_id
            leaf = file_name(path)
            if self._query(self._child_query(parent_id, leaf, folder=None), fields="id"):
                raise ConflictError(f"Already exists: {path}", path=path, backend=self.name)
            self._create_folder(leaf, parent_id)

    def mkdir_recursively(self, path: str) -> None:
        with self._errors(path):
            self._resolve_or_create(path)

    def remove_directory(self, path: str) -> None:
        """Trash-free delete of a folder; Drive removes its descendants with it."""
        self._reject_root(path)
        with self._errors(path):
            folder_id = self._resolve(path, folder=True)
            if folder_id is None:
                return
            self._files.delete(fileId=folder_id).execute()

    def delete_recursively(self, path: str) -> None:
        self._reject_root(path)
        with self._errors(path):
            meta = self._lookup(path, folder=None)
            if meta is None:
                return
            if meta.get("mimeType") == FOLDER_MIME:
                self._delete_tree(str(meta["id"]))
            else:
                self._files.delete(fileId=meta["id"]).execute()
            log.info("Deleted recursively: %s", path)

    def _delete_tree(self, folder_id: str) -> None:
        for child in self._children(folder_id):
            if child.get("mimeType") == FOLDER_MIME:
                self._delete_tree(child["id"])
            else:
                log.debug("Deleting %s (%s)", child.get("name"), child["id"])
                self._files.delete(fileId=child["id"]).execute()
        self._files.delete(fileId=folder_id).execute()

    # endregion

    # region: files

    def rename_to(self, src: str, dst: str) -> None:
        with self._errors(src):
            meta = self._lookup(src, folder=None)
            if meta is None or not split(src):
                raise NotFoundError(f"Source not found: {src}", path=src, backend=self.name)
            if self._lookup(dst, folder=None) is not None:
                raise ConflictError(f"Destination already exists: {dst}", path=dst, backend=self.name)
            new_parent = self._resolve_or_create(parent_path(dst))
            old_parents = [p for p in meta.get("parents", []) if p != new_parent]
            request_args: dict[str, Any] = {
                "fileId": meta["id"],
                "body": {"name": file_name(normalize(dst))},
                "fields": "id, parents",
            }
            if old_parents:
                request_args["addParents"] = new_parent
                request_args["removeParents"] = ",".join(old_parents)
            self._files.update(**request_args).execute()

    def upload(self, local_path: str, remote_dir: str, on_progress: ProgressCallback | None = None) -> None:
        self._ensure_connected()
        if not os.path.isfile(local_path):
            raise SourceNotFoundError(f"Source file does not exist: {local_path}", path=local_path, backend=self.name)
        name = file_name(local_path)
        target = join(remote_dir, name)
        size = os.path.getsize(local_path)
        tracker = ProgressTracker(on_progress, size)
        with self._errors(target):
            folder_id = self._resolve_or_create(remote_dir)
            existing = self._query(self._child_query(folder_id, name, folder=False), fields="id")
            media = MediaFileUpload(
                local_path,
                mimetype="application/octet-stream",
                chunksize=_TRANSFER_CHUNK,
                resumable=size > 0,
            )
            if existing:
                request = self._files.update(fileId=existing[0]["id"], media_body=media, fields="id")
            else:
                body = {"name": name, "parents": [folder_id]}
                request = self._files.create(body=body, media_body=media, fields="id")
            if size > 0:
                response = None
                while response is None:
                    status, response = request.next_chunk()
                    if status is not None:
                        tracker.update(status.resumable_progress, status.total_size)
            else:
                request.execute()
        tracker.finish(size)
        log.info("Uploaded: %s -> %s", local_path, target)

    def download(self, remote_path: str, local_dir: str, on_progress: ProgressCallback | None = None) -> None:
        with self._errors(remote_path):
            meta = self._lookup(remote_path, folder=False)
            if meta is None:
                raise NotFoundError(f"File not found: {remote_path}", path=remote_path, backend=self.name)
            size = int(meta.get("size", 0) or 0)
            tracker = ProgressTracker(on_progress, size)
            with self._local_target(local_dir, remote_path) as fh:
                if size > 0:
                    downloader = MediaIoBaseDownload(fh, self._files.get_media(fileId=meta["id"]), chunksize=_TRANSFER_CHUNK)
                    done = False
                    while not done:
                        status, done = downloader.next_chunk()
                        tracker.update(status.resumable_progress, status.total_size)
        tracker.finish(os.path.getsize(fh.name))
        log.info("Downloaded: %s -> %s", remote_path, fh.name)

    def delete_file(self, path: str) -> None:
        with self._errors(path):
            file_id = self._resolve(path, folder=False)
            if file_id is None:
                if self._resolve(path, folder=True) is not None:
                    raise ConflictError(f"Is a directory: {path}", path=path, backend=self.name)
                return
            self._files.delete(fileId=file_id).execute()
            log.debug("Deleted file: %s", path)

    # endregion

    # region: queries

    def list_files(self, path: str = "") -> DirChildren:
        with self._errors(path):
            folder_id = self._resolve(path, folder=True)
            if folder_id is None:
                return DirChildren()
            return DirChildren.from_entries([_meta_to_entry(m) for m in self._children(folder_id)])

    def walk_file_tree(self, path: str = "") -> list[str]:
        """Walk by folder id so each folder is listed exactly once."""
        with self._errors(path):
            path = normalize(path)
            folder_id = self._resolve(path, folder=True)
            result: list[str] = []
            if folder_id is not None:
                self._walk_ids(path, folder_id, result)
            return result

    def _walk_ids(self, path: str, folder_id: str, result: list[str]) -> None:
        for child in self._children(folder_id):
            child_path = join(path, child["name"])
            result.append(child_path)
            if child.get("mimeType") == FOLDER_MIME:
                self._walk_ids(child_path, child["id"], result)

    def exists(self, path: str) -> bool:
        with self._errors(path):
            return self._resolve(path, folder=False) is not None

    def size(self, path: str) -> int:
        with self._errors(path):
            meta = self._lookup(path, folder=False)
            if meta is None:
                return 0
            return int(meta.get("size", 0) or 0)

    # endregion

    def set_remote(self, on_set: SetRemoteSink) -> None:
        """Report the root folder id found or created by the last ``connect``, even after disconnect."""
        extra = GoogleDriveExtra(account_email=self._account_email, folder_id=self._folder_id)
        on_set("", extra.to_json())

    def unwrap(self, type_hint: type[T]) -> T:
        if type_hint is Resource:
            self._ensure_connected()
            return self._service  # type: ignore[return-value]
        raise UnsupportedOperationError(
            f"Client 'gdrive' does not expose native handle of type {type_hint.__name__}.",
            operation="unwrap",
            backend=self.name,
        )


def _meta_to_entry(meta: dict[str, Any]) -> DirEntry:
    is_dir = meta.get("mimeType") == FOLDER_MIME
    modified = meta.get("modifiedTime")
    return DirEntry(
        name=meta["name"],
        kind=EntryKind.DIRECTORY if is_dir else EntryKind.FILE,
        size=0 if is_dir else int(meta.get("size", 0) or 0),
        modified_at=datetime.fromisoformat(modified.replace("Z", "+00:00")) if modified else None,
    )
