"""Listing and transfer value objects."""

from __future__ import annotations

import dataclasses
import enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from datetime import datetime


class EntryKind(enum.Enum):
    """Kind of a directory listing entry."""

    FILE = "file"
    DIRECTORY = "directory"


@dataclasses.dataclass(frozen=True)
class DirEntry:
    """Immutable snapshot of one child of a remote directory.

    :param name: Entry name (final path component).
    :param kind: File or directory.
    :param size: Size in bytes; ``0`` for directories.
    :param modified_at: Last modification time, if the backend reports one.
    """

    name: str
    kind: EntryKind
    size: int = 0
    modified_at: datetime | None = None

    @property
    def is_file(self) -> bool:
        return self.kind is EntryKind.FILE

    @property
    def is_directory(self) -> bool:
        return self.kind is EntryKind.DIRECTORY


@dataclasses.dataclass(frozen=True)
class DirChildren:
    """Immediate children of a directory, partitioned by kind."""

    files: list[DirEntry] = dataclasses.field(default_factory=list)
    directories: list[DirEntry] = dataclasses.field(default_factory=list)

    @classmethod
    def from_entries(cls, entries: list[DirEntry]) -> DirChildren:
        return cls(
            files=[e for e in entries if e.is_file],
            directories=[e for e in entries if e.is_directory],
        )

    def __len__(self) -> int:
        return len(self.files) + len(self.directories)

    @property
    def names(self) -> list[str]:
        return [e.name for e in self.directories] + [e.name for e in self.files]


@dataclasses.dataclass(frozen=True)
class TransferProgress:
    """One progress sample of an upload or download."""

    transferred: int
    total: int

    @property
    def done(self) -> bool:
        return self.transferred >= self.total
