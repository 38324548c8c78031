"""
Mapping engine: pure coercion from a raw source row to a typed mapped row.

Text cells are coerced to the declared field type, missing-value tokens and
defaults are applied, then constraints are checked. ZERO I/O and no clock
reads, so the same row always maps to the same values.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from ledger_ingestion.domain.types import (
    FailureKind,
    FieldSpec,
    FieldType,
    MappedRow,
    RowFailure,
    SourceRowData,
    TableSchema,
)
from ledger_kernel.domain.amounts import parse_locale_decimal
from ledger_kernel.exceptions import SchemaViolation

_FALLBACK_DATE_FORMATS = ("%Y-%m-%d", "%Y/%m/%d", "%m/%d/%Y", "%d/%m/%Y", "%m/%d/%y")


# -----------------------------------------------------------------------------
# Result types
# -----------------------------------------------------------------------------


@dataclass(frozen=True)
class CoercionResult:
    """Result of coercing a string to a target type."""

    success: bool
    value: Any = None
    code: str | None = None
    message: str | None = None


@dataclass(frozen=True)
class MappingResult:
    """Result of applying a table schema to one source row."""

    success: bool
    row: MappedRow | None = None
    errors: tuple[RowFailure, ...] = field(default_factory=tuple)


def _fail(code: str, message: str) -> CoercionResult:
    return CoercionResult(success=False, code=code, message=message)


# -----------------------------------------------------------------------------
# Coercion: string -> typed
# -----------------------------------------------------------------------------


def coerce_from_string(
    value: str,
    field_type: FieldType,
    format_str: str | None = None,
) -> CoercionResult:
    """Coerce a non-missing text cell to ``field_type``. Pure function."""
    s = value.strip()

    if field_type == FieldType.STRING:
        return CoercionResult(success=True, value=s)

    if field_type == FieldType.INTEGER:
        try:
            number = Decimal(s.replace(",", ""))
        except InvalidOperation:
            return _fail("INVALID_INTEGER", f"Cannot coerce to integer: {s!r}")
        if number != number.to_integral_value():
            return _fail("INVALID_INTEGER", f"Not a whole number: {s!r}")
        return CoercionResult(success=True, value=int(number))

    if field_type == FieldType.NUMBER:
        try:
            number = Decimal(s.replace(",", ""))
        except InvalidOperation:
            return _fail("INVALID_NUMBER", f"Cannot coerce to number: {s!r}")
        if not number.is_finite():
            return _fail("INVALID_NUMBER", f"Not a finite number: {s!r}")
        return CoercionResult(success=True, value=number)

    if field_type == FieldType.CURRENCY:
        amount = parse_locale_decimal(s)
        if amount is None:
            return _fail("INVALID_CURRENCY_AMOUNT", f"Cannot parse amount: {s!r}")
        return CoercionResult(success=True, value=amount)

    if field_type == FieldType.BOOLEAN:
        low = s.lower()
        if low in ("true", "yes", "y", "1", "on"):
            return CoercionResult(success=True, value=True)
        if low in ("false", "no", "n", "0", "off"):
            return CoercionResult(success=True, value=False)
        return _fail("INVALID_BOOLEAN", f"Cannot coerce to boolean: {s!r}")

    if field_type == FieldType.DATE:
        formats = (format_str,) if format_str else _FALLBACK_DATE_FORMATS
        for try_fmt in formats:
            try:
                return CoercionResult(success=True, value=datetime.strptime(s, try_fmt).date())
            except ValueError:
                continue
        return _fail("INVALID_DATE_FORMAT", f"Cannot parse date: {s!r}")

    if field_type == FieldType.DATETIME:
        try:
            if format_str:
                parsed = datetime.strptime(s, format_str)
            else:
                parsed = datetime.fromisoformat(s.replace("Z", "+00:00"))
        except ValueError:
            return _fail("INVALID_DATETIME_FORMAT", f"Cannot parse datetime: {s!r}")
        return CoercionResult(success=True, value=parsed)

    return _fail("UNSUPPORTED_TYPE", f"Unsupported field_type: {field_type}")


# -----------------------------------------------------------------------------
# Constraints
# -----------------------------------------------------------------------------


def _bound(bound: Any, like: Any) -> Any:
    """Bring a descriptor bound to the type of the coerced value."""
    if isinstance(like, Decimal | int) and not isinstance(like, bool):
        return Decimal(str(bound))
    if isinstance(like, date) and isinstance(bound, str):
        return date.fromisoformat(bound)
    return bound


def check_constraints(value: Any, spec: FieldSpec) -> str | None:
    """Return a failure message, or None when every constraint holds."""
    c = spec.constraints
    compared = Decimal(value) if isinstance(value, int) and not isinstance(value, bool) else value
    if c.minimum is not None and compared < _bound(c.minimum, value):
        return f"{value!r} is below minimum {c.minimum!r}"
    if c.maximum is not None and compared > _bound(c.maximum, value):
        return f"{value!r} is above maximum {c.maximum!r}"
    if isinstance(value, str):
        if c.min_length is not None and len(value) < c.min_length:
            return f"length {len(value)} is below min_length {c.min_length}"
        if c.max_length is not None and len(value) > c.max_length:
            return f"length {len(value)} is above max_length {c.max_length}"
        if c.pattern is not None and re.fullmatch(c.pattern, value) is None:
            return f"{value!r} does not match pattern {c.pattern!r}"
    if c.enum is not None and str(value) not in {str(e) for e in c.enum}:
        return f"{value!r} is not one of {list(c.enum)!r}"
    return None


# -----------------------------------------------------------------------------
# Apply schema (pure)
# -----------------------------------------------------------------------------


def _violation(row_number: int, spec: FieldSpec, detail: str) -> RowFailure:
    return RowFailure(
        row_number=row_number,
        kind=FailureKind.SCHEMA,
        code=SchemaViolation.code,
        message=f"{spec.name}: {detail}",
        step=spec.name,
    )


def map_row(source: SourceRowData, schema: TableSchema) -> MappingResult:
    """
    Apply a table schema to one extracted row. Pure function.

    Every declared field appears in the mapped row; a missing optional field
    takes its default (or None). Undeclared columns are dropped; a schema
    with no fields passes every column through as stripped text.
    """
    if not schema.fields:
        return MappingResult(
            success=True,
            row=MappedRow(
                row_number=source.row_number,
                values={k: v.strip() for k, v in source.values.items()},
            ),
        )

    errors: list[RowFailure] = []
    mapped: dict[str, Any] = {}

    for spec in schema.fields:
        raw = source.values.get(spec.source_column)
        text = raw.strip() if isinstance(raw, str) else raw

        if text is None or text in spec.missing_values:
            if spec.constraints.required and spec.default is None:
                errors.append(
                    _violation(
                        source.row_number,
                        spec,
                        f"MISSING_REQUIRED_FIELD: column {spec.source_column!r} is empty",
                    )
                )
                continue
            mapped[spec.name] = _coerce_default(spec)
            continue

        coerced = coerce_from_string(text, spec.field_type, spec.format)
        if not coerced.success:
            errors.append(
                _violation(source.row_number, spec, f"{coerced.code}: {coerced.message}")
            )
            continue

        problem = check_constraints(coerced.value, spec)
        if problem is not None:
            errors.append(_violation(source.row_number, spec, f"CONSTRAINT_VIOLATED: {problem}"))
            continue

        mapped[spec.name] = coerced.value

    if errors:
        return MappingResult(success=False, errors=tuple(errors))
    return MappingResult(
        success=True,
        row=MappedRow(row_number=source.row_number, values=mapped),
    )


def _coerce_default(spec: FieldSpec) -> Any:
    if isinstance(spec.default, str) and spec.field_type != FieldType.STRING:
        coerced = coerce_from_string(spec.default, spec.field_type, spec.format)
        if coerced.success:
            return coerced.value
    return spec.default
