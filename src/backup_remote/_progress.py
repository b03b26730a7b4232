"""Transfer progress channel."""

from __future__ import annotations

from typing import Callable

from backup_remote._models import TransferProgress

ProgressCallback = Callable[[int, int], None]
"""Called as ``callback(transferred, total)`` during uploads and downloads."""

# Read/write block size for streamed transfers
CHUNK_SIZE = 32768


class ProgressTracker:
    """Feeds a :data:`ProgressCallback` with monotonic samples.

    Samples never go backwards in either field, duplicates are dropped and
    :meth:`finish` guarantees a final ``(total, total)`` sample.
    Instances are also usable directly as a paramiko transfer callback.

    :param callback: Caller-supplied sink, may be ``None``.
    :param total: Expected byte count of the transfer.
    """

    def __init__(self, callback: ProgressCallback | None, total: int) -> None:
        self._callback = callback
        self._total = max(int(total), 0)
        self._last: TransferProgress | None = None

    @property
    def total(self) -> int:
        return self._total

    @property
    def last(self) -> TransferProgress | None:
        return self._last

    def update(self, transferred: int, total: int | None = None) -> None:
        """Report ``transferred`` bytes so far, optionally revising the total."""
        if total is not None and total > self._total:
            self._total = int(total)
        transferred = int(transferred)
        if self._last is not None:
            transferred = max(transferred, self._last.transferred)
        sample = TransferProgress(transferred=transferred, total=max(self._total, transferred))
        if sample == self._last:
            return
        self._last = sample
        if self._callback is not None:
            self._callback(sample.transferred, sample.total)

    def advance(self, n: int) -> None:
        """Report ``n`` more bytes."""
        done = self._last.transferred if self._last is not None else 0
        self.update(done + n)

    def finish(self, size: int | None = None) -> None:
        """Emit the final ``(size, size)`` sample."""
        final = self._total if size is None else int(size)
        self._total = final
        self.update(final, final)

    def __call__(self, bytes_transferred: int, total_bytes: int) -> None:
        self.update(bytes_transferred, total_bytes)
