"""
Row extractor protocol and result DTO.

Contract:
    RowExtractor.extract() turns raw bytes into data rows under a dialect.
    Row numbers are 1-based over data rows; blank lines do not consume one.
    A structural problem (undecodable bytes, missing header) raises
    DialectError; a malformed data row is reported in ``failures`` and the
    rest of the file is still extracted.

Architecture: ledger_ingestion/adapters. Byte parsing only, no DB.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from ledger_ingestion.domain.types import Dialect, RowFailure, SourceRowData


@dataclass(frozen=True)
class ExtractionResult:
    rows: tuple[SourceRowData, ...]
    failures: tuple[RowFailure, ...] = ()
    columns: tuple[str, ...] = ()

    @property
    def rows_total(self) -> int:
        return len(self.rows) + len(self.failures)


@runtime_checkable
class RowExtractor(Protocol):
    """Protocol for splitting raw file content into source rows."""

    def extract(self, content: bytes, dialect: Dialect) -> ExtractionResult:
        ...
