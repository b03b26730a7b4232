"""Virtual path helpers and the RemotePath value object.

A virtual path is a slash-separated string relative to the connection root.
The empty string denotes the root itself.
"""

from __future__ import annotations

from backup_remote._errors import InvalidPath


def normalize(raw: str) -> str:
    """Normalize a virtual path.

    Backslashes become slashes, empty and ``.`` segments are dropped and the
    result carries no leading or trailing slash.

    :raises InvalidPath: If the path contains a null byte or a ``..`` segment.
    """
    if "\0" in raw:
        raise InvalidPath("Path contains null byte", path=raw)
    parts: list[str] = []
    for segment in raw.replace("\\", "/").split("/"):
        if segment == "" or segment == ".":
            continue
        if segment == "..":
            raise InvalidPath("Path contains '..' segment", path=raw)
        parts.append(segment)
    return "/".join(parts)


def split(path: str) -> list[str]:
    """Split a virtual path into its segments. The root yields ``[]``."""
    normalized = normalize(path)
    return normalized.split("/") if normalized else []


def join(*parts: str) -> str:
    """Join path fragments, skipping empty ones, and normalize the result."""
    return normalize("/".join(p for p in parts if p))


def file_name(path: str) -> str:
    """Final component of ``path``, or ``""`` for the root.

    Accepts local OS paths too, so ``file_name("C:\\tmp\\a.tar") == "a.tar"``.
    """
    normalized = path.replace("\\", "/").rstrip("/")
    return normalized.rsplit("/", 1)[-1]


def parent_path(path: str) -> str:
    """Parent of ``path``; a top-level entry's parent is the root ``""``."""
    normalized = normalize(path)
    if "/" not in normalized:
        return ""
    return normalized.rsplit("/", 1)[0]


class RemotePath:
    """An immutable, normalized virtual path.

    Compares and hashes by its segments; ``str()`` gives the virtual path string.

    :raises InvalidPath: If ``raw`` is malformed or unsafe.
    """

    __slots__ = ("_parts",)

    def __init__(self, raw: str = "") -> None:
        object.__setattr__(self, "_parts", tuple(split(raw)))

    @classmethod
    def _from_parts(cls, parts: tuple[str, ...]) -> RemotePath:
        path = object.__new__(cls)
        object.__setattr__(path, "_parts", parts)
        return path

    @property
    def parts(self) -> tuple[str, ...]:
        return self._parts

    @property
    def is_root(self) -> bool:
        return not self._parts

    @property
    def name(self) -> str:
        return self._parts[-1] if self._parts else ""

    @property
    def parent(self) -> RemotePath:
        """The parent of a top-level entry, and of the root, is the root."""
        return RemotePath._from_parts(self._parts[:-1])

    def __truediv__(self, other: str) -> RemotePath:
        return RemotePath._from_parts(self._parts + tuple(split(other)))

    def __str__(self) -> str:
        return "/".join(self._parts)

    def __repr__(self) -> str:
        return f"RemotePath({str(self)!r})"

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, RemotePath):
            return NotImplemented
        return self._parts == other._parts

    def __hash__(self) -> int:
        return hash(self._parts)

    def __setattr__(self, name: str, value: object) -> None:
        raise AttributeError(f"RemotePath is immutable: cannot set '{name}'")

    def __delattr__(self, name: str) -> None:
        raise AttributeError(f"RemotePath is immutable: cannot delete '{name}'")
