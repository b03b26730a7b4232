"""CloudClient abstract base class: the contract every backend satisfies."""

from __future__ import annotations

import abc
import logging
import os
from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, BinaryIO, Callable, TypeVar

from backup_remote._errors import (
    ConflictError,
    InvalidPath,
    NotConnectedError,
    RemoteClientError,
    UnsupportedOperationError,
)
from backup_remote._path import file_name, join, normalize, split

if TYPE_CHECKING:
    from collections.abc import Iterator
    from types import TracebackType

    from backup_remote._config import ConnectionProfile
    from backup_remote._models import DirChildren
    from backup_remote._progress import ProgressCallback

T = TypeVar("T")
C = TypeVar("C", bound="CloudClient")

log = logging.getLogger(__name__)

SetRemoteSink = Callable[[str, str], None]
"""Receives ``(remote_prefix, extra_json)`` from :meth:`CloudClient.set_remote`."""


class CloudClient(abc.ABC):
    """Abstract base class for all remote-storage clients.

    A client owns exactly one backend session between :meth:`connect` and
    :meth:`disconnect`. Paths are virtual: slash-separated and relative to
    the connection root, with ``""`` naming the root. Backend-native
    exceptions must never leak; they are mapped to ``backup_remote`` errors.
    Instances are not thread-safe.
    """

    @classmethod
    @abc.abstractmethod
    def from_profile(cls: type[C], profile: ConnectionProfile, **kwargs: Any) -> C:
        """Build a client from a stored connection profile."""

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Backend type identifier (e.g. ``'sftp'``)."""

    @property
    @abc.abstractmethod
    def is_connected(self) -> bool:
        """Whether a session is currently held."""

    # region: session lifecycle

    @abc.abstractmethod
    def connect(self) -> None:
        """Establish the session.

        :raises AuthenticationError: If credentials are invalid, expired or mismatched.
        :raises RemoteUnavailableError: If the endpoint cannot be reached.
        """

    @abc.abstractmethod
    def disconnect(self) -> None:
        """Release the session. Calling it on a disconnected client is a no-op."""

    def test_connection(self) -> None:
        """Connect, perform a lightweight round-trip, then disconnect.

        The original failure propagates unchanged; the session is released
        even when the round-trip fails.
        """
        self.connect()
        try:
            self._ping()
        finally:
            self.disconnect()

    @abc.abstractmethod
    def _ping(self) -> None:
        """Fetch root metadata to prove the session works."""

    def _ensure_connected(self) -> None:
        if not self.is_connected:
            raise NotConnectedError(f"{self.name} client is not connected", backend=self.name)

    def _reject_root(self, path: str) -> None:
        if not split(path):
            raise InvalidPath("Cannot remove the connection root", path=path, backend=self.name)

    @contextmanager
    def _local_target(self, local_dir: str, remote_path: str) -> Iterator[BinaryIO]:
        """Open ``local_dir/<file name>`` for writing, creating ``local_dir``.

        :raises ConflictError: If a file or directory on the local side is in the way.
        :raises RemoteClientError: For any other local I/O failure while opening.
        """
        local_file = os.path.join(local_dir, file_name(remote_path))
        try:
            os.makedirs(local_dir, exist_ok=True)
            fh = open(local_file, "wb")  # noqa: SIM115
        except (FileExistsError, NotADirectoryError, IsADirectoryError) as exc:
            raise ConflictError(f"Local path is blocked: {exc}", path=local_file, backend=self.name) from exc
        except OSError as exc:
            raise RemoteClientError(f"Cannot write local file: {exc}", path=local_file, backend=self.name) from exc
        with fh:
            yield fh

    # endregion

    # region: directories

    @abc.abstractmethod
    def mkdir(self, path: str) -> None:
        """Create exactly the leaf directory of ``path``.

        The immediate parent is created when missing.

        :raises NotFoundError: If an ancestor above the immediate parent is missing.
        :raises ConflictError: If the leaf already exists.
        """

    @abc.abstractmethod
    def mkdir_recursively(self, path: str) -> None:
        """Create every missing directory along ``path``. Never fails on existing ones."""

    @abc.abstractmethod
    def remove_directory(self, path: str) -> None:
        """Remove a directory. No-op if it does not exist.

        :raises InvalidPath: If ``path`` names the connection root.
        """

    @abc.abstractmethod
    def delete_recursively(self, path: str) -> None:
        """Remove a directory and all descendants, children before parents.

        No-op if ``path`` does not exist. A failing child deletion propagates.

        :raises InvalidPath: If ``path`` names the connection root.
        """

    def clear_empty_directories_recursively(self, path: str = "") -> list[str]:
        """Remove empty directories strictly below ``path``, deepest first.

        A directory whose children were all pruned is itself pruned.

        :returns: The virtual paths that were removed.
        """
        self._ensure_connected()
        removed: list[str] = []
        self._prune(normalize(path), removed)
        if removed:
            log.info("Pruned %d empty directories under %r", len(removed), path)
        return removed

    def _prune(self, path: str, removed: list[str]) -> bool:
        children = self.list_files(path)
        emptied = 0
        for entry in children.directories:
            child = join(path, entry.name)
            if self._prune(child, removed):
                self.remove_directory(child)
                removed.append(child)
                emptied += 1
        return not children.files and emptied == len(children.directories)

    # endregion

    # region: files

    @abc.abstractmethod
    def rename_to(self, src: str, dst: str) -> None:
        """Move/rename ``src`` to ``dst``, creating the destination parent.

        :raises NotFoundError: If ``src`` does not exist.
        :raises ConflictError: If ``dst`` already exists.
        """

    @abc.abstractmethod
    def upload(self, local_path: str, remote_dir: str, on_progress: ProgressCallback | None = None) -> None:
        """Copy a local file to ``remote_dir/<file name>``, creating ``remote_dir``.

        An existing remote file of the same name is replaced.

        :raises SourceNotFoundError: If ``local_path`` is not an existing file.
        """

    @abc.abstractmethod
    def download(self, remote_path: str, local_dir: str, on_progress: ProgressCallback | None = None) -> None:
        """Copy a remote file to ``local_dir/<file name>``, creating local parents.

        :raises NotFoundError: If ``remote_path`` does not resolve to a file.
        :raises ConflictError: If a local file or directory blocks the target.
        """

    @abc.abstractmethod
    def delete_file(self, path: str) -> None:
        """Remove a single file. No-op if it does not exist.

        :raises ConflictError: If ``path`` is a directory.
        """

    # endregion

    # region: queries

    @abc.abstractmethod
    def list_files(self, path: str = "") -> DirChildren:
        """Immediate children of ``path``; empty when ``path`` does not resolve."""

    def walk_file_tree(self, path: str = "") -> list[str]:
        """Every descendant of ``path``, depth-first with parents before children."""
        self._ensure_connected()
        result: list[str] = []
        self._walk(normalize(path), result)
        return result

    def _walk(self, path: str, result: list[str]) -> None:
        children = self.list_files(path)
        for entry in children.directories:
            child = join(path, entry.name)
            result.append(child)
            self._walk(child, result)
        for entry in children.files:
            result.append(join(path, entry.name))

    @abc.abstractmethod
    def exists(self, path: str) -> bool:
        """``True`` iff ``path`` resolves to a file. Directories never match."""

    @abc.abstractmethod
    def size(self, path: str) -> int:
        """Byte size of the file at ``path``, ``0`` if it does not resolve."""

    # endregion

    @abc.abstractmethod
    def set_remote(self, on_set: SetRemoteSink) -> None:
        """Hand ``(remote_prefix, extra_json)`` for this session to ``on_set``.

        Nothing is persisted here; storing the pair is the caller's job.
        """

    def unwrap(self, type_hint: type[T]) -> T:
        """Return the native session handle if it matches the requested type.

        :raises UnsupportedOperationError: If the client cannot provide that type.
        """
        raise UnsupportedOperationError(
            f"Client '{self.name}' does not expose native handle of type {type_hint.__name__}.",
            operation="unwrap",
            backend=self.name,
        )

    def __enter__(self: C) -> C:
        self.connect()
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.disconnect()
