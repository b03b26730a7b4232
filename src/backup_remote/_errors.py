"""Normalized error hierarchy for backup_remote."""

from __future__ import annotations

from typing import Optional


class RemoteClientError(Exception):
    """Base class for all backup_remote errors.

    :param message: Human-readable error description.
    :param path: The virtual path involved in the error, if any.
    :param backend: The backend name involved, if any.
    """

    def __init__(self, message: str = "", *, path: Optional[str] = None, backend: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.path = path
        self.backend = backend

    def _context(self) -> list[tuple[str, str]]:
        return [(key, value) for key, value in (("path", self.path), ("backend", self.backend)) if value is not None]

    def __str__(self) -> str:
        fields = [f"{key}={value!r}" for key, value in self._context()]
        return " | ".join(part for part in [self.message, *fields] if part)

    def __repr__(self) -> str:
        fields = [f"{key}={value!r}" for key, value in self._context()]
        return f"{type(self).__name__}({', '.join([repr(self.message), *fields])})"


class AuthenticationError(RemoteClientError):
    """Raised when credentials are rejected, expired, or belong to another account."""


class RemoteUnavailableError(RemoteClientError):
    """Raised when the endpoint cannot be reached or the session broke."""


class NotFoundError(RemoteClientError):
    """Raised when a remote path does not resolve where existence was required."""


class SourceNotFoundError(RemoteClientError):
    """Raised when the local file given to ``upload`` does not exist."""


class ConflictError(RemoteClientError):
    """Raised when a create or move targets something that already exists."""


class UnsupportedOperationError(RemoteClientError):
    """Raised when an operation cannot be implemented on this backend.

    :param operation: The name of the unsupported operation.
    """

    def __init__(
        self,
        message: str = "",
        *,
        path: Optional[str] = None,
        backend: Optional[str] = None,
        operation: str = "",
    ) -> None:
        self.operation = operation
        super().__init__(message, path=path, backend=backend)

    def _context(self) -> list[tuple[str, str]]:
        context = super()._context()
        if self.operation:
            context.append(("operation", self.operation))
        return context


class NotConnectedError(RemoteClientError):
    """Raised when an operation is invoked before ``connect`` or after ``disconnect``."""


class InvalidPath(RemoteClientError):
    """Raised for malformed or unsafe virtual paths."""
