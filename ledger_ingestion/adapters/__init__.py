"""Row extractors for parse runs (byte parsing only, no DB)."""

from ledger_ingestion.adapters.base import ExtractionResult, RowExtractor
from ledger_ingestion.adapters.csv_adapter import CsvRowExtractor
from ledger_ingestion.adapters.xlsx_adapter import XlsxRowExtractor
from ledger_ingestion.domain.types import Dialect


def extractor_for(dialect: Dialect) -> RowExtractor:
    if dialect.format == "xlsx":
        return XlsxRowExtractor()
    return CsvRowExtractor()


__all__ = [
    "CsvRowExtractor",
    "ExtractionResult",
    "RowExtractor",
    "XlsxRowExtractor",
    "extractor_for",
]
