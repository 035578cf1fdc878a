from __future__ import annotations

import struct
import zipfile
from collections.abc import Generator, Sequence
from pathlib import Path

import duckdb
import pytest

from fias_enricher.reconcile.store import DictionaryKind, DictionaryStore

# Leading columns of a FIAS ADDROB table, in file order
ADDROB_FIELDS = [
    "ACTSTATUS",
    "AOGUID",
    "AOID",
    "AOLEVEL",
    "AREACODE",
    "AUTOCODE",
    "CENTSTATUS",
    "CITYCODE",
    "CODE",
    "FORMALNAME",
]

FIELD_WIDTH = 40

DDL = [
    "CREATE TABLE sprav_kladr_street (id INTEGER, kladr VARCHAR, external_id VARCHAR)",
    "CREATE TABLE sprav_kladr (id_kladr INTEGER, kladr VARCHAR, external_id VARCHAR)",
]

TABLES = {
    DictionaryKind.STREET: ("sprav_kladr_street", "id"),
    DictionaryKind.SETTLEMENT: ("sprav_kladr", "id_kladr"),
}


def write_dbf(
    path: Path,
    rows: Sequence[dict[str, str]],
    *,
    fields: Sequence[str] = ADDROB_FIELDS,
    encoding: str = "cp866",
) -> Path:
    """Write a minimal dBase III table with character columns only."""
    header_len = 32 + 32 * len(fields) + 1
    record_len = 1 + FIELD_WIDTH * len(fields)

    out = bytearray(
        struct.pack("<BBBBLHH20x", 0x03, 124, 1, 1, len(rows), header_len, record_len)
    )
    for name in fields:
        out += struct.pack("<11sc4xBB14x", name.encode("ascii"), b"C", FIELD_WIDTH, 0)
    out += b"\r"

    for row in rows:
        out += b" "
        for name in fields:
            value = row.get(name, "").encode(encoding)[:FIELD_WIDTH]
            out += value.ljust(FIELD_WIDTH, b" ")
    out += b"\x1a"

    path.write_bytes(bytes(out))
    return path


def addrob_row(external_code: str, key_code: str, name: str = "") -> dict[str, str]:
    return {"ACTSTATUS": "1", "AOGUID": external_code, "CODE": key_code, "FORMALNAME": name}


def write_archive(archive_path: Path, members: dict[str, bytes]) -> Path:
    with zipfile.ZipFile(archive_path, "w") as zf:
        for name, payload in members.items():
            zf.writestr(name, payload)
    return archive_path


def create_dictionary_tables(con: duckdb.DuckDBPyConnection) -> None:
    for statement in DDL:
        con.execute(statement)


def insert_rows(
    con: duckdb.DuckDBPyConnection,
    kind: DictionaryKind,
    rows: Sequence[tuple[int, str, str | None]],
) -> None:
    table, _ = TABLES[kind]
    con.executemany(f"INSERT INTO {table} VALUES (?, ?, ?)", list(rows))


def external_codes(con: duckdb.DuckDBPyConnection, kind: DictionaryKind) -> dict[int, str | None]:
    table, id_column = TABLES[kind]
    return dict(
        con.execute(f"SELECT {id_column}, external_id FROM {table} ORDER BY {id_column}").fetchall()
    )


@pytest.fixture
def connection(tmp_path: Path) -> Generator[duckdb.DuckDBPyConnection, None, None]:
    con = duckdb.connect(str(tmp_path / "dictionaries.duckdb"))
    create_dictionary_tables(con)
    yield con
    con.close()


@pytest.fixture
def store(connection: duckdb.DuckDBPyConnection) -> DictionaryStore:
    return DictionaryStore(connection)
