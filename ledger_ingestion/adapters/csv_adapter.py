"""
CSV row extractor.

Uses csv.reader over the decoded text. Configurable: delimiter, quote_char,
encoding, has_header, skip_rows, columns. Handles BOM via utf-8-sig when
encoding is utf-8.
"""

from __future__ import annotations

import csv
import io

from ledger_ingestion.adapters.base import ExtractionResult
from ledger_ingestion.domain.types import Dialect, FailureKind, RowFailure, SourceRowData
from ledger_kernel.exceptions import DialectError


def _get_encoding(dialect: Dialect) -> str:
    if dialect.encoding.lower().replace("_", "-") in ("utf-8", "utf8"):
        return "utf-8-sig"  # Strip BOM if present
    return dialect.encoding


def _is_blank(record: list[str]) -> bool:
    return all(not cell.strip() for cell in record)


class CsvRowExtractor:
    """Split delimited text into data rows keyed by column name."""

    def extract(self, content: bytes, dialect: Dialect) -> ExtractionResult:
        try:
            text = content.decode(_get_encoding(dialect))
        except (UnicodeDecodeError, LookupError) as exc:
            raise DialectError(f"cannot decode file as {dialect.encoding}: {exc}") from exc

        reader = csv.reader(
            io.StringIO(text, newline=""),
            delimiter=dialect.delimiter,
            quotechar=dialect.quote_char,
        )
        try:
            records = list(reader)
        except csv.Error as exc:
            raise DialectError(f"unreadable CSV at line {reader.line_num}: {exc}") from exc

        records = records[dialect.skip_rows:]
        columns = self._columns(records, dialect)
        if dialect.has_header:
            records = records[1:]

        rows: list[SourceRowData] = []
        failures: list[RowFailure] = []
        row_number = 0
        for record in records:
            if _is_blank(record):
                continue
            row_number += 1
            if len(record) != len(columns):
                failures.append(
                    RowFailure(
                        row_number=row_number,
                        kind=FailureKind.DIALECT,
                        code=DialectError.code,
                        message=(
                            f"expected {len(columns)} fields, found {len(record)}"
                        ),
                    )
                )
                continue
            rows.append(SourceRowData(row_number=row_number, values=dict(zip(columns, record))))

        return ExtractionResult(rows=tuple(rows), failures=tuple(failures), columns=columns)

    def _columns(self, records: list[list[str]], dialect: Dialect) -> tuple[str, ...]:
        if not dialect.has_header:
            return tuple(dialect.columns)
        # Leading blank lines before the header are dropped.
        while records and _is_blank(records[0]):
            records.pop(0)
        if not records:
            raise DialectError("file has no header row")
        header = tuple(cell.strip() for cell in records[0])
        if any(not name for name in header):
            raise DialectError(f"header has an empty column name: {list(header)}")
        if len(set(header)) != len(header):
            raise DialectError(f"header has duplicate column names: {list(header)}")
        return header
