"""Record source for extracted FIAS address object tables.

Each ``ADDROB*.DBF`` table is read lazily with ``dbfread`` one record at a
time. Only two columns are consumed, bound by position through a
``RecordSchema`` that is checked against the table header once, when the
file is opened.
"""

from __future__ import annotations

import logging
import struct
from collections.abc import Iterator
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from dbfread import DBF

from fias_enricher._exceptions import RecordFormatError

logger = logging.getLogger(__name__)

SOURCE_ENCODING = "cp866"


@dataclass(frozen=True)
class FieldSpec:
    """Position of a consumed column, with the column name expected there."""

    position: int
    expected_name: str | None = None


@dataclass(frozen=True)
class RecordSchema:
    """Named binding of the consumed columns to their positions."""

    external_code: FieldSpec
    key_code: FieldSpec

    def fields(self) -> dict[str, FieldSpec]:
        return {"external_code": self.external_code, "key_code": self.key_code}

    def validate(self, field_names: list[str], *, source: str = "<unknown>") -> None:
        """Check that every bound position exists and carries the expected column.

        Raises:
            RecordFormatError: On the first mismatch.
        """
        for name, spec in self.fields().items():
            if spec.position >= len(field_names):
                raise RecordFormatError(
                    f"{source}: field '{name}' expects position {spec.position}, "
                    f"but the table has only {len(field_names)} column(s)"
                )
            actual = field_names[spec.position]
            if spec.expected_name and actual.upper() != spec.expected_name.upper():
                raise RecordFormatError(
                    f"{source}: field '{name}' expects column {spec.expected_name} "
                    f"at position {spec.position}, found {actual}"
                )


# ACTSTATUS, AOGUID, AOID, AOLEVEL, AREACODE, AUTOCODE, CENTSTATUS, CITYCODE, CODE, ...
ADDROB_SCHEMA = RecordSchema(
    external_code=FieldSpec(position=1, expected_name="AOGUID"),
    key_code=FieldSpec(position=8, expected_name="CODE"),
)


@dataclass(frozen=True)
class ExternalRecord:
    """One source row reduced to the two consumed values, whitespace-trimmed."""

    external_code: str
    key_code: str

    @classmethod
    def from_values(cls, external_code: Any, key_code: Any) -> ExternalRecord:
        return cls(
            external_code=_as_text(external_code),
            key_code=_as_text(key_code),
        )


def _as_text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


class DbfRecordSource:
    """Lazy, forward-only reader over one extracted DBF table."""

    def __init__(
        self,
        path: Path,
        *,
        encoding: str = SOURCE_ENCODING,
        schema: RecordSchema = ADDROB_SCHEMA,
    ) -> None:
        self.path = Path(path)
        self.schema = schema
        try:
            # records come back as ((name, value), ...) in column order
            self._table = DBF(
                str(self.path),
                encoding=encoding,
                load=False,
                recfactory=tuple,
                char_decode_errors="strict",
            )
        except (struct.error, ValueError) as exc:
            raise RecordFormatError(f"{self.path.name}: unreadable table header: {exc}") from exc

        schema.validate(self._table.field_names, source=self.path.name)
        self._external_position = schema.external_code.position
        self._key_position = schema.key_code.position
        logger.debug(
            "Opened %s (%d columns, encoding %s)",
            self.path.name,
            len(self._table.field_names),
            encoding,
        )

    def __iter__(self) -> Iterator[ExternalRecord]:
        records = iter(self._table)
        record_number = 0
        while True:
            record_number += 1
            try:
                items = next(records)
            except StopIteration:
                return
            except (UnicodeDecodeError, ValueError, struct.error) as exc:
                raise RecordFormatError(
                    f"{self.path.name}: cannot decode record {record_number}: {exc}"
                ) from exc

            yield ExternalRecord.from_values(
                items[self._external_position][1],
                items[self._key_position][1],
            )
