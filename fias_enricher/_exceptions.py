from __future__ import annotations


class PipelineError(Exception):
    """Base error for pipeline failures."""


class ArchiveError(PipelineError):
    """The source archive or the staging directory could not be used."""


class RecordFormatError(PipelineError):
    """A source file does not match the expected record layout or encoding."""


class StoreError(PipelineError):
    """The dictionary store is missing a bound table or column."""
