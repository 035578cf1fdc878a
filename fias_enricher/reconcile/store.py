"""Dictionary store on DuckDB.

Street and settlement dictionaries share one entry type; the kind selects a
``TableBinding`` that names the table and columns to query. Each worker
thread works through its own ``StoreSession`` (a DuckDB cursor) while write
transactions are serialized across sessions.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

import duckdb

from fias_enricher._exceptions import StoreError

logger = logging.getLogger(__name__)


class DictionaryKind(str, Enum):
    STREET = "street"
    SETTLEMENT = "settlement"


@dataclass
class DictionaryEntry:
    """A dictionary row; only ``external_code`` is ever changed by a run."""

    kind: DictionaryKind
    id: int
    key_code: str
    external_code: str | None = None


@dataclass(frozen=True)
class TableBinding:
    """Table and column names holding one dictionary kind."""

    table: str
    id_column: str
    key_column: str = "kladr"
    external_column: str = "external_id"


DEFAULT_BINDINGS: dict[DictionaryKind, TableBinding] = {
    DictionaryKind.STREET: TableBinding(table="sprav_kladr_street", id_column="id"),
    DictionaryKind.SETTLEMENT: TableBinding(table="sprav_kladr", id_column="id_kladr"),
}


class StoreSession:
    """Per-thread view of the store: lookups plus the atomic batch update."""

    def __init__(
        self,
        cursor: duckdb.DuckDBPyConnection,
        bindings: Mapping[DictionaryKind, TableBinding],
        write_lock: threading.Lock,
    ) -> None:
        self._cursor = cursor
        self._bindings = bindings
        self._write_lock = write_lock

    def _select(self, kind: DictionaryKind, where: str, value: str) -> list[DictionaryEntry]:
        b = self._bindings[kind]
        rows = self._cursor.execute(
            f"""
            SELECT {b.id_column}, {b.key_column}, {b.external_column}
            FROM {b.table}
            WHERE {where.format(key=b.key_column)}
            ORDER BY {b.id_column}
            """,
            [value],
        ).fetchall()
        return [
            DictionaryEntry(kind=kind, id=row[0], key_code=row[1], external_code=row[2])
            for row in rows
        ]

    def find_by_key(self, kind: DictionaryKind, key_code: str) -> list[DictionaryEntry]:
        """Return every row whose key code equals ``key_code``."""
        return self._select(kind, "{key} = ?", key_code)

    def find_by_prefix(self, kind: DictionaryKind, prefix: str) -> list[DictionaryEntry]:
        """Return every row whose key code starts with ``prefix``."""
        return self._select(kind, "starts_with({key}, ?)", prefix)

    def bulk_update(self, entries_by_kind: Mapping[DictionaryKind, Iterable[DictionaryEntry]]) -> int:
        """Write ``external_code`` for all given entries in one transaction.

        One ``executemany`` is issued per kind. On failure the transaction is
        rolled back and the error re-raised; nothing is retried.

        Returns:
            Number of distinct rows written.
        """
        batches = {kind: list(entries) for kind, entries in entries_by_kind.items()}
        written = 0
        with self._write_lock:
            self._cursor.begin()
            try:
                for kind, entries in batches.items():
                    if not entries:
                        continue
                    b = self._bindings[kind]
                    # a row staged twice keeps its last value
                    values = {entry.id: entry.external_code for entry in entries}
                    self._cursor.executemany(
                        f"UPDATE {b.table} SET {b.external_column} = ? WHERE {b.id_column} = ?",
                        [(external_code, row_id) for row_id, external_code in values.items()],
                    )
                    written += len(values)
                self._cursor.commit()
            except BaseException:
                self._cursor.rollback()
                raise
        return written

    def close(self) -> None:
        self._cursor.close()


class DictionaryStore:
    """Shared handle on the dictionary database."""

    def __init__(
        self,
        connection: duckdb.DuckDBPyConnection,
        bindings: Mapping[DictionaryKind, TableBinding] | None = None,
    ) -> None:
        self._connection = connection
        self.bindings = dict(bindings or DEFAULT_BINDINGS)
        self._write_lock = threading.Lock()
        self._verify_bindings()

    @classmethod
    def open(
        cls,
        database_path: Path,
        bindings: Mapping[DictionaryKind, TableBinding] | None = None,
    ) -> DictionaryStore:
        if not Path(database_path).exists():
            raise StoreError(f"Dictionary database not found: {database_path}")
        logger.info("Opening dictionary database %s", database_path)
        connection = duckdb.connect(str(database_path))
        try:
            return cls(connection, bindings)
        except StoreError:
            connection.close()
            raise

    def _verify_bindings(self) -> None:
        for kind, b in self.bindings.items():
            rows = self._connection.execute(
                """
                SELECT column_name
                FROM information_schema.columns
                WHERE table_name = ?
                """,
                [b.table],
            ).fetchall()
            if not rows:
                raise StoreError(f"Table {b.table} for {kind.value} dictionary does not exist")
            columns = {row[0].lower() for row in rows}
            missing = [
                col
                for col in (b.id_column, b.key_column, b.external_column)
                if col.lower() not in columns
            ]
            if missing:
                raise StoreError(f"Table {b.table} is missing column(s): {', '.join(missing)}")

    @contextmanager
    def session(self) -> Iterator[StoreSession]:
        """Yield a session bound to a fresh cursor, closed on exit."""
        store_session = StoreSession(self._connection.cursor(), self.bindings, self._write_lock)
        try:
            yield store_session
        finally:
            store_session.close()

    def close(self) -> None:
        self._connection.close()
