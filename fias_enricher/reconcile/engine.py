"""Matching of FIAS records against the KLADR dictionaries.

A KLADR code of 17 characters identifies a street; any other non-empty code
identifies a settlement. A record is matched by its full code first. Only
when that finds nothing, every row sharing the code without its last two
characters (the parent level) receives the FIAS code instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Literal, Protocol

from fias_enricher.reconcile.records import ExternalRecord
from fias_enricher.reconcile.store import DictionaryEntry, DictionaryKind

logger = logging.getLogger(__name__)

STREET_KEY_LENGTH = 17
PARENT_SUFFIX_LENGTH = 2

MatchStrategy = Literal["exact", "prefix", "unmatched", "skipped"]


class DictionaryLookup(Protocol):
    def find_by_key(self, kind: DictionaryKind, key_code: str) -> list[DictionaryEntry]: ...

    def find_by_prefix(self, kind: DictionaryKind, prefix: str) -> list[DictionaryEntry]: ...


def classify_key(key_code: str) -> DictionaryKind:
    """Pick the dictionary a non-empty key code belongs to."""
    if len(key_code) == STREET_KEY_LENGTH:
        return DictionaryKind.STREET
    return DictionaryKind.SETTLEMENT


def parent_prefix(key_code: str) -> str | None:
    """Return the key code without its last two characters.

    None for keys shorter than two characters. A two-character key yields
    the empty prefix, which every row starts with.
    """
    if len(key_code) < PARENT_SUFFIX_LENGTH:
        return None
    return key_code[:-PARENT_SUFFIX_LENGTH]


@dataclass
class MatchStats:
    matched: int = 0
    exact: int = 0
    prefix: int = 0
    unmatched: int = 0
    ambiguous: int = 0

    def merge(self, other: MatchStats) -> None:
        for name in self.__dataclass_fields__:
            setattr(self, name, getattr(self, name) + getattr(other, name))


@dataclass
class MatchOutcome:
    strategy: MatchStrategy
    kind: DictionaryKind | None = None
    entries: list[DictionaryEntry] = field(default_factory=list)


class ReconciliationEngine:
    """Stateful matcher for one file; not shared between threads."""

    def __init__(self, lookup: DictionaryLookup) -> None:
        self._lookup = lookup
        self.stats = MatchStats()

    def reconcile(self, record: ExternalRecord) -> MatchOutcome:
        """Match one record and annotate the rows it hits.

        Returned entries already carry the record's external code; staging
        and persisting them is up to the caller. Records without a key code are
        skipped without a lookup and leave the counters untouched.
        """
        key_code = record.key_code.strip()
        external_code = record.external_code.strip()

        if not key_code:
            return MatchOutcome(strategy="skipped")

        kind = classify_key(key_code)

        entries = self._lookup.find_by_key(kind, key_code)
        if entries:
            if len(entries) > 1:
                self.stats.ambiguous += 1
                logger.warning(
                    "Key %s matched %d %s rows exactly; updating all of them",
                    key_code,
                    len(entries),
                    kind.value,
                )
            self.stats.exact += 1
            return self._annotate("exact", kind, entries, external_code)

        prefix = parent_prefix(key_code)
        if prefix is not None:
            entries = self._lookup.find_by_prefix(kind, prefix)
            if entries:
                self.stats.prefix += 1
                return self._annotate("prefix", kind, entries, external_code)

        self.stats.unmatched += 1
        return MatchOutcome(strategy="unmatched", kind=kind)

    def _annotate(
        self,
        strategy: MatchStrategy,
        kind: DictionaryKind,
        entries: list[DictionaryEntry],
        external_code: str,
    ) -> MatchOutcome:
        for entry in entries:
            entry.external_code = external_code
        self.stats.matched += len(entries)
        return MatchOutcome(strategy=strategy, kind=kind, entries=entries)
