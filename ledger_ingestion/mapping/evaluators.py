"""
Transform and validation evaluator contracts, with built-in implementations.

The step and rule *languages* are pluggable: a parse run only depends on the
two protocols below.  The built-ins cover the named steps and rules a plan
descriptor can use without custom code.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol, runtime_checkable

from ledger_ingestion.domain.types import MappedRow, TransformStep, ValidationRule
from ledger_kernel.domain.amounts import parse_locale_decimal


@dataclass(frozen=True)
class RuleOutcome:
    row_number: int
    passed: bool
    message: str = ""


@runtime_checkable
class TransformEvaluator(Protocol):
    def evaluate(self, row: dict[str, Any], step: TransformStep) -> dict[str, Any]:
        """Return the transformed row. Raises on failure."""
        ...


@runtime_checkable
class ValidationEvaluator(Protocol):
    def evaluate(
        self, rows: Sequence[MappedRow], rule: ValidationRule
    ) -> list[RuleOutcome]:
        """One outcome per row that the rule checked."""
        ...


def _is_empty(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


# -----------------------------------------------------------------------------
# Transforms
# -----------------------------------------------------------------------------


class BuiltinTransformEvaluator:
    """Named transform steps: strip/trim, upper, lower, to_decimal, negate,
    normalize_date, copy, set_default, regex_extract, map_values."""

    def evaluate(self, row: dict[str, Any], step: TransformStep) -> dict[str, Any]:
        handler = getattr(self, f"_step_{step.kind.strip().lower()}", None)
        if handler is None:
            raise ValueError(f"unknown transform kind {step.kind!r}")
        result = dict(row)
        handler(result, step, step.target_field or step.params.get("field"))
        return result

    def _step_strip(self, row: dict[str, Any], step: TransformStep, target: str) -> None:
        value = row.get(target)
        if isinstance(value, str):
            row[target] = value.strip()

    _step_trim = _step_strip

    def _step_upper(self, row: dict[str, Any], step: TransformStep, target: str) -> None:
        value = row.get(target)
        if isinstance(value, str):
            row[target] = value.upper()

    def _step_lower(self, row: dict[str, Any], step: TransformStep, target: str) -> None:
        value = row.get(target)
        if isinstance(value, str):
            row[target] = value.lower()

    def _step_to_decimal(self, row: dict[str, Any], step: TransformStep, target: str) -> None:
        value = row.get(target)
        if _is_empty(value):
            row[target] = None
            return
        if isinstance(value, Decimal | int) and not isinstance(value, bool):
            row[target] = Decimal(value)
            return
        parsed = parse_locale_decimal(value)
        if parsed is None:
            raise ValueError(f"{target}: cannot convert {value!r} to a decimal")
        row[target] = parsed

    def _step_negate(self, row: dict[str, Any], step: TransformStep, target: str) -> None:
        value = row.get(target)
        if value is None:
            return
        if not isinstance(value, Decimal):
            try:
                value = Decimal(str(value))
            except InvalidOperation:
                raise ValueError(f"{target}: cannot negate {value!r}") from None
        row[target] = -value

    def _step_normalize_date(self, row: dict[str, Any], step: TransformStep, target: str) -> None:
        value = row.get(target)
        if _is_empty(value):
            row[target] = None
            return
        if isinstance(value, datetime):
            row[target] = value.date()
            return
        if isinstance(value, date):
            return
        formats = step.params.get("formats") or ["%Y-%m-%d", "%m/%d/%Y", "%d/%m/%Y", "%Y/%m/%d"]
        text = str(value).strip()
        for fmt in formats:
            try:
                row[target] = datetime.strptime(text, fmt).date()
                return
            except ValueError:
                continue
        raise ValueError(f"{target}: cannot parse date {value!r}")

    def _step_copy(self, row: dict[str, Any], step: TransformStep, target: str) -> None:
        source = step.params["from"]
        row[target] = row.get(source)

    def _step_set_default(self, row: dict[str, Any], step: TransformStep, target: str) -> None:
        if _is_empty(row.get(target)):
            row[target] = step.params.get("value")

    def _step_regex_extract(self, row: dict[str, Any], step: TransformStep, target: str) -> None:
        source = step.params.get("source", target)
        value = row.get(source)
        match = re.search(step.params["pattern"], value) if isinstance(value, str) else None
        if match is None:
            if step.params.get("required", False):
                raise ValueError(f"{source}: {value!r} does not match {step.params['pattern']!r}")
            row[target] = None
            return
        row[target] = match.group(step.params.get("group", 1))

    def _step_map_values(self, row: dict[str, Any], step: TransformStep, target: str) -> None:
        mapping = step.params["mapping"]
        value = row.get(target)
        key = str(value) if value is not None else None
        if key in mapping:
            row[target] = mapping[key]
        elif not step.params.get("passthrough", True):
            raise ValueError(f"{target}: no mapping for {value!r}")


# -----------------------------------------------------------------------------
# Validation rules
# -----------------------------------------------------------------------------


class BuiltinValidationEvaluator:
    """Named validation rules: required, range, pattern, unique, one_of."""

    def evaluate(
        self, rows: Sequence[MappedRow], rule: ValidationRule
    ) -> list[RuleOutcome]:
        handler = getattr(self, f"_rule_{rule.kind.strip().lower()}", None)
        if handler is None:
            raise ValueError(f"unknown validation rule kind {rule.kind!r}")
        return handler(rows, rule)

    def _rule_required(self, rows: Sequence[MappedRow], rule: ValidationRule) -> list[RuleOutcome]:
        return [
            RuleOutcome(
                row.row_number,
                not _is_empty(row.values.get(rule.target_field)),
                rule.message or f"{rule.target_field} is required",
            )
            for row in rows
        ]

    def _rule_range(self, rows: Sequence[MappedRow], rule: ValidationRule) -> list[RuleOutcome]:
        low = rule.params.get("min")
        high = rule.params.get("max")
        outcomes = []
        for row in rows:
            value = row.values.get(rule.target_field)
            if value is None:
                continue
            try:
                number = Decimal(str(value))
            except InvalidOperation:
                outcomes.append(
                    RuleOutcome(row.row_number, False, f"{rule.target_field}={value!r} is not numeric")
                )
                continue
            passed = (low is None or number >= Decimal(str(low))) and (
                high is None or number <= Decimal(str(high))
            )
            outcomes.append(
                RuleOutcome(
                    row.row_number,
                    passed,
                    rule.message or f"{rule.target_field}={value} outside [{low}, {high}]",
                )
            )
        return outcomes

    def _rule_pattern(self, rows: Sequence[MappedRow], rule: ValidationRule) -> list[RuleOutcome]:
        regex = re.compile(rule.params["regex"])
        outcomes = []
        for row in rows:
            value = row.values.get(rule.target_field)
            if value is None:
                continue
            outcomes.append(
                RuleOutcome(
                    row.row_number,
                    regex.fullmatch(str(value)) is not None,
                    rule.message or f"{rule.target_field}={value!r} does not match {regex.pattern!r}",
                )
            )
        return outcomes

    def _rule_unique(self, rows: Sequence[MappedRow], rule: ValidationRule) -> list[RuleOutcome]:
        fields = tuple(rule.params.get("fields") or (rule.target_field,))
        first_seen: dict[tuple[Any, ...], int] = {}
        outcomes = []
        for row in rows:
            key = tuple(row.values.get(f) for f in fields)
            if all(v is None for v in key):
                continue
            if key in first_seen:
                outcomes.append(
                    RuleOutcome(
                        row.row_number,
                        False,
                        rule.message
                        or f"duplicate {'/'.join(fields)} (first seen in row {first_seen[key]})",
                    )
                )
            else:
                first_seen[key] = row.row_number
                outcomes.append(RuleOutcome(row.row_number, True))
        return outcomes

    def _rule_one_of(self, rows: Sequence[MappedRow], rule: ValidationRule) -> list[RuleOutcome]:
        allowed = {str(v) for v in rule.params["values"]}
        outcomes = []
        for row in rows:
            value = row.values.get(rule.target_field)
            if value is None:
                continue
            outcomes.append(
                RuleOutcome(
                    row.row_number,
                    str(value) in allowed,
                    rule.message or f"{rule.target_field}={value!r} not in {sorted(allowed)}",
                )
            )
        return outcomes
