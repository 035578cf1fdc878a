from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Protocol

from fias_enricher.reconcile.store import DictionaryEntry, DictionaryKind

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 5000


class BulkUpdater(Protocol):
    def bulk_update(self, entries_by_kind: dict[DictionaryKind, list[DictionaryEntry]]) -> int: ...


class StagingBuffer:
    """Annotated rows of both dictionary kinds awaiting the next flush.

    A flush is due once ``chunk_size`` raw records have been seen since the
    last flush, or once ``chunk_size`` rows are staged.
    """

    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        self.chunk_size = chunk_size
        self.records_since_flush = 0
        self._entries: dict[DictionaryKind, list[DictionaryEntry]] = {
            kind: [] for kind in DictionaryKind
        }

    def __len__(self) -> int:
        return sum(len(entries) for entries in self._entries.values())

    def entries(self, kind: DictionaryKind) -> list[DictionaryEntry]:
        return list(self._entries[kind])

    def add(self, entry: DictionaryEntry) -> None:
        self._entries[entry.kind].append(entry)

    def record_processed(self) -> None:
        self.records_since_flush += 1

    @property
    def is_full(self) -> bool:
        return len(self) >= self.chunk_size

    @property
    def is_due(self) -> bool:
        return self.is_full or self.records_since_flush >= self.chunk_size

    def drain(self) -> dict[DictionaryKind, list[DictionaryEntry]]:
        """Hand over staged rows and reset the buffer."""
        drained = self._entries
        self._entries = {kind: [] for kind in DictionaryKind}
        self.records_since_flush = 0
        return drained


class BatchWriter:
    """Persist a staging buffer through one transaction per flush."""

    def __init__(self, store: BulkUpdater, *, label: str = "") -> None:
        self._store = store
        self._label = label
        self.flushes = 0
        self.written = 0

    def stage(self, buffer: StagingBuffer, entries: Iterable[DictionaryEntry]) -> None:
        """Add entries to ``buffer``, flushing whenever it fills up."""
        for entry in entries:
            buffer.add(entry)
            if buffer.is_full:
                self.flush(buffer)

    def flush(self, buffer: StagingBuffer) -> int:
        """Write every staged row of both kinds atomically, then empty ``buffer``.

        A failed write propagates without clearing the buffer or retrying;
        earlier flushes stay committed.
        """
        if not len(buffer):
            buffer.drain()
            return 0

        batch = {kind: buffer.entries(kind) for kind in DictionaryKind}
        written = self._store.bulk_update(batch)
        buffer.drain()

        self.flushes += 1
        self.written += written
        logger.debug(
            "%sFlushed %d street and %d settlement row(s)",
            f"{self._label}: " if self._label else "",
            len(batch[DictionaryKind.STREET]),
            len(batch[DictionaryKind.SETTLEMENT]),
        )
        return written
