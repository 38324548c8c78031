"""
XLSX row extractor for spreadsheet exports.

Supports:
  - sheet by index (0-based) or name; default is the active sheet
  - skip_rows before the header
  - normalizes cell values to text (strip, blank -> empty string, integral
    floats without a trailing ".0", dates as ISO strings)

Cells are converted to text so that spreadsheet rows and CSV rows reach the
schema coercion step in the same shape.
"""

from __future__ import annotations

import io
import zipfile
from datetime import date, datetime, time
from typing import Any

import openpyxl
from openpyxl.utils.exceptions import InvalidFileException

from ledger_ingestion.adapters.base import ExtractionResult
from ledger_ingestion.domain.types import Dialect, SourceRowData
from ledger_kernel.exceptions import DialectError


def _cell_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        if value.time() == time(0, 0):
            return value.date().isoformat()
        return value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


class XlsxRowExtractor:
    """Read one worksheet as data rows keyed by the header row."""

    def extract(self, content: bytes, dialect: Dialect) -> ExtractionResult:
        try:
            wb = openpyxl.load_workbook(io.BytesIO(content), read_only=True, data_only=True)
        except (InvalidFileException, zipfile.BadZipFile, KeyError, OSError) as exc:
            raise DialectError(f"not a readable xlsx workbook: {exc}") from exc
        try:
            sheet = self._get_sheet(wb, dialect)
            records = [
                [_cell_text(v) for v in row]
                for row in sheet.iter_rows(min_row=1 + dialect.skip_rows, values_only=True)
            ]
        finally:
            wb.close()

        records = [r for r in records if any(r)]
        if dialect.has_header:
            if not records:
                raise DialectError("worksheet has no header row")
            header = records[0]
            while header and not header[-1]:
                header = header[:-1]
            if not header or any(not name for name in header):
                raise DialectError(f"header has an empty column name: {header}")
            if len(set(header)) != len(header):
                raise DialectError(f"header has duplicate column names: {header}")
            columns = tuple(header)
            records = records[1:]
        else:
            columns = tuple(dialect.columns)

        rows = []
        for number, record in enumerate(records, start=1):
            cells = (record + [""] * len(columns))[: len(columns)]
            rows.append(SourceRowData(row_number=number, values=dict(zip(columns, cells))))
        return ExtractionResult(rows=tuple(rows), columns=columns)

    def _get_sheet(self, wb: Any, dialect: Dialect) -> Any:
        ref = dialect.sheet
        try:
            if ref is None:
                return wb.active
            if isinstance(ref, int):
                return wb.worksheets[ref]
            return wb[ref]
        except (IndexError, KeyError) as exc:
            raise DialectError(f"worksheet {ref!r} not found") from exc
