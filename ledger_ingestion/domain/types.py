"""
ledger_ingestion.domain.types -- Pure frozen dataclasses for parse plans and runs.

ZERO I/O. Imports only from ledger_kernel and the pure ledger_engines
materialization values (roles and grouping).

A plan definition is the versioned content of a parse plan: how to read the
file (``Dialect``), how to type each column (``TableSchema``), which
transform steps and validation rules to run, and how mapped rows become
ledger transactions (``FieldRoles`` + ``GroupingSpec``).
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from ledger_engines.materialization import FieldRoles, GroupingSpec, GroupingStrategy
from ledger_kernel.domain.amounts import content_hash
from ledger_kernel.exceptions import LedgerError, MalformedDescriptorError

# =============================================================================
# Dialect
# =============================================================================


@dataclass(frozen=True)
class Dialect:
    """How the raw bytes are split into rows and cells."""

    format: str = "csv"  # "csv" | "xlsx"
    delimiter: str = ","
    quote_char: str = '"'
    has_header: bool = True
    encoding: str = "utf-8"
    skip_rows: int = 0
    columns: tuple[str, ...] = ()  # Required when has_header is False
    sheet: str | int | None = None  # xlsx only

    @property
    def fingerprint(self) -> str:
        return content_hash(_dialect_to_dict(self))


# =============================================================================
# Table schema
# =============================================================================


class FieldType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    DATE = "date"
    DATETIME = "datetime"
    CURRENCY = "currency"  # Locale-formatted money text -> Decimal


DEFAULT_MISSING_VALUES: tuple[str, ...] = ("", "NA", "N/A", "null")


@dataclass(frozen=True)
class FieldConstraints:
    required: bool = False
    minimum: Any = None
    maximum: Any = None
    min_length: int | None = None
    max_length: int | None = None
    pattern: str | None = None
    enum: tuple[Any, ...] | None = None


@dataclass(frozen=True)
class FieldSpec:
    """One typed field: ``source`` column -> ``name`` in the mapped row."""

    name: str
    field_type: FieldType = FieldType.STRING
    source: str | None = None  # Defaults to ``name``
    format: str | None = None  # strptime format for date fields
    constraints: FieldConstraints = field(default_factory=FieldConstraints)
    missing_values: tuple[str, ...] = DEFAULT_MISSING_VALUES
    default: Any = None

    @property
    def source_column(self) -> str:
        return self.source or self.name


@dataclass(frozen=True)
class TableSchema:
    fields: tuple[FieldSpec, ...] = ()

    def field_named(self, name: str) -> FieldSpec | None:
        for spec in self.fields:
            if spec.name == name:
                return spec
        return None


# =============================================================================
# Transform steps and validation rules
# =============================================================================


@dataclass(frozen=True)
class TransformStep:
    """
    One transform applied to every mapped row, in plan order.

    ``output_fields`` is the step's declared output schema: the evaluator's
    result must be a mapping containing each of them.
    """

    name: str
    kind: str
    target_field: str | None = None
    params: dict[str, Any] = field(default_factory=dict)
    output_fields: tuple[str, ...] = ()


class RuleSeverity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class ValidationRule:
    name: str
    kind: str
    target_field: str | None = None
    params: dict[str, Any] = field(default_factory=dict)
    severity: RuleSeverity = RuleSeverity.ERROR
    message: str = ""


# =============================================================================
# Plan definition
# =============================================================================


@dataclass(frozen=True)
class PlanDefinition:
    """The versioned, content-addressed body of a parse plan."""

    account_id: str
    currency: str = "USD"
    dialect: Dialect = field(default_factory=Dialect)
    schema: TableSchema = field(default_factory=TableSchema)
    transform_steps: tuple[TransformStep, ...] = ()
    validation_rules: tuple[ValidationRule, ...] = ()
    roles: FieldRoles = field(default_factory=FieldRoles)
    grouping: GroupingSpec = field(default_factory=GroupingSpec)

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "currency": self.currency,
            "dialect": _dialect_to_dict(self.dialect),
            "schema": {
                "fields": [_field_to_dict(f) for f in self.schema.fields],
            },
            "transform_steps": [
                {
                    "name": s.name,
                    "kind": s.kind,
                    "target_field": s.target_field,
                    "params": dict(s.params),
                    "output_fields": list(s.output_fields),
                }
                for s in self.transform_steps
            ],
            "validation_rules": [
                {
                    "name": r.name,
                    "kind": r.kind,
                    "field": r.target_field,
                    "params": dict(r.params),
                    "severity": r.severity.value,
                    "message": r.message,
                }
                for r in self.validation_rules
            ],
            "roles": {
                "date": self.roles.date,
                "action": self.roles.action,
                "symbol": self.roles.symbol,
                "quantity": self.roles.quantity,
                "amount": self.roles.amount,
                "balance": self.roles.balance,
                "description": self.roles.description,
            },
            "grouping": {
                "strategy": self.grouping.strategy.value,
                "adjacency_window": self.grouping.adjacency_window,
            },
        }

    @property
    def content_hash(self) -> str:
        return content_hash(self.to_dict())

    @classmethod
    def from_dict(cls, data: Any) -> PlanDefinition:
        """
        Parse a descriptor mapping.

        Raises:
            MalformedDescriptorError: naming the offending section.
        """
        if not isinstance(data, dict):
            raise MalformedDescriptorError("plan", "descriptor must be a mapping")
        account_id = data.get("account_id")
        if not isinstance(account_id, str) or not account_id:
            raise MalformedDescriptorError("account_id", "a non-empty account_id is required")
        currency = data.get("currency", "USD")
        if not isinstance(currency, str) or len(currency) != 3:
            raise MalformedDescriptorError("currency", f"expected an ISO 4217 code, got {currency!r}")

        return cls(
            account_id=account_id,
            currency=currency.upper(),
            dialect=_parse_section("dialect", data.get("dialect") or {}, _parse_dialect),
            schema=_parse_section("schema", data.get("schema") or {}, _parse_schema),
            transform_steps=_parse_section(
                "transform_steps", data.get("transform_steps") or [], _parse_steps
            ),
            validation_rules=_parse_section(
                "validation_rules", data.get("validation_rules") or [], _parse_rules
            ),
            roles=_parse_section("roles", data.get("roles") or {}, lambda d: FieldRoles(**d)),
            grouping=_parse_section("grouping", data.get("grouping") or {}, _parse_grouping),
        )

    def with_patch(self, patch: dict[str, Any]) -> PlanDefinition:
        """New definition with top-level sections of ``patch`` replacing ours."""
        merged = self.to_dict()
        merged.update(patch)
        return PlanDefinition.from_dict(merged)


def _parse_section(section: str, value: Any, parser) -> Any:
    try:
        return parser(value)
    except LedgerError:
        raise
    except (KeyError, TypeError, ValueError, AttributeError) as exc:
        raise MalformedDescriptorError(section, str(exc)) from exc


def _dialect_to_dict(d: Dialect) -> dict[str, Any]:
    return {
        "format": d.format,
        "delimiter": d.delimiter,
        "quote_char": d.quote_char,
        "has_header": d.has_header,
        "encoding": d.encoding,
        "skip_rows": d.skip_rows,
        "columns": list(d.columns),
        "sheet": d.sheet,
    }


def _parse_dialect(data: dict[str, Any]) -> Dialect:
    dialect = Dialect(
        format=str(data.get("format", "csv")).lower(),
        delimiter=data.get("delimiter", ","),
        quote_char=data.get("quote_char", '"'),
        has_header=bool(data.get("has_header", True)),
        encoding=data.get("encoding", "utf-8"),
        skip_rows=int(data.get("skip_rows", 0)),
        columns=tuple(data.get("columns") or ()),
        sheet=data.get("sheet"),
    )
    if dialect.format not in ("csv", "xlsx"):
        raise ValueError(f"unsupported format {dialect.format!r}")
    if not isinstance(dialect.delimiter, str) or len(dialect.delimiter) != 1:
        raise ValueError("delimiter must be a single character")
    if dialect.skip_rows < 0:
        raise ValueError("skip_rows must not be negative")
    if not dialect.has_header and not dialect.columns:
        raise ValueError("columns are required when has_header is false")
    return dialect


def _field_to_dict(f: FieldSpec) -> dict[str, Any]:
    c = f.constraints
    return {
        "name": f.name,
        "type": f.field_type.value,
        "source": f.source,
        "format": f.format,
        "constraints": {
            "required": c.required,
            "minimum": c.minimum,
            "maximum": c.maximum,
            "min_length": c.min_length,
            "max_length": c.max_length,
            "pattern": c.pattern,
            "enum": list(c.enum) if c.enum is not None else None,
        },
        "missing_values": list(f.missing_values),
        "default": f.default,
    }


def _parse_schema(data: dict[str, Any]) -> TableSchema:
    specs = []
    seen: set[str] = set()
    for raw in data.get("fields") or []:
        name = raw["name"]
        if name in seen:
            raise ValueError(f"duplicate field {name!r}")
        seen.add(name)
        c = raw.get("constraints") or {}
        enum = c.get("enum")
        specs.append(
            FieldSpec(
                name=name,
                field_type=FieldType(raw.get("type", "string")),
                source=raw.get("source"),
                format=raw.get("format"),
                constraints=FieldConstraints(
                    required=bool(c.get("required", False)),
                    minimum=c.get("minimum"),
                    maximum=c.get("maximum"),
                    min_length=c.get("min_length"),
                    max_length=c.get("max_length"),
                    pattern=c.get("pattern"),
                    enum=tuple(enum) if enum is not None else None,
                ),
                missing_values=tuple(raw.get("missing_values", DEFAULT_MISSING_VALUES)),
                default=raw.get("default"),
            )
        )
    return TableSchema(fields=tuple(specs))


def _parse_steps(data: list[dict[str, Any]]) -> tuple[TransformStep, ...]:
    return tuple(
        TransformStep(
            name=raw["name"],
            kind=raw.get("kind", raw["name"]),
            target_field=raw.get("target_field"),
            params=dict(raw.get("params") or {}),
            output_fields=tuple(raw.get("output_fields") or ()),
        )
        for raw in data
    )


def _parse_rules(data: list[dict[str, Any]]) -> tuple[ValidationRule, ...]:
    return tuple(
        ValidationRule(
            name=raw["name"],
            kind=raw.get("kind", raw["name"]),
            target_field=raw.get("field"),
            params=dict(raw.get("params") or {}),
            severity=RuleSeverity(raw.get("severity", "error")),
            message=raw.get("message", ""),
        )
        for raw in data
    )


def _parse_grouping(data: dict[str, Any]) -> GroupingSpec:
    window = int(data.get("adjacency_window", 3))
    if window < 1:
        raise ValueError("adjacency_window must be at least 1")
    return GroupingSpec(
        strategy=GroupingStrategy(data.get("strategy", "action_settlement")),
        adjacency_window=window,
    )


# =============================================================================
# Draft vs committed
# =============================================================================


@dataclass(frozen=True)
class PlanDraft:
    """The mutable working copy of a plan, as of one revision. Has no version number."""

    plan_id: UUID
    name: str
    revision: int
    definition: PlanDefinition
    forked_from_version_id: UUID | None = None


@dataclass(frozen=True)
class CommittedPlanVersion:
    """An immutable, content-addressed snapshot of a plan definition."""

    version_id: UUID
    plan_id: UUID
    parent_version_id: UUID | None
    version_number: int
    definition: PlanDefinition
    content_hash: str
    commit_message: str
    committed_at: datetime


# =============================================================================
# Runs
# =============================================================================


@dataclass(frozen=True)
class ParseMode:
    kind: str  # "preview" | "commit"
    sample_size: int | None = None

    @classmethod
    def preview(cls, sample_size: int = 20) -> ParseMode:
        if sample_size < 1:
            raise ValueError("sample_size must be at least 1")
        return cls(kind="preview", sample_size=sample_size)

    @classmethod
    def commit(cls) -> ParseMode:
        return cls(kind="commit")

    @property
    def is_commit(self) -> bool:
        return self.kind == "commit"


class FailureKind(str, Enum):
    DIALECT = "dialect"
    SCHEMA = "schema"
    TRANSFORM = "transform"
    VALIDATION = "validation"


@dataclass(frozen=True)
class RowFailure:
    """One per-row failure collected into the run report."""

    row_number: int
    kind: FailureKind
    code: str
    message: str
    step: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "row_number": self.row_number,
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
            "step": self.step,
        }


@dataclass(frozen=True)
class SourceRowData:
    """One extracted data row: 1-based ``row_number`` over data rows."""

    row_number: int
    values: dict[str, str]


@dataclass(frozen=True)
class MappedRow:
    row_number: int
    values: dict[str, Any]
    steps_applied: tuple[str, ...] = ()

    def with_values(self, values: dict[str, Any], step: str) -> MappedRow:
        return replace(self, values=values, steps_applied=self.steps_applied + (step,))


@dataclass(frozen=True)
class RowLineage:
    row_number: int
    plan_version_id: UUID | None
    transform_steps_applied: tuple[str, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "plan_version_id": str(self.plan_version_id) if self.plan_version_id else None,
            "transform_steps_applied": list(self.transform_steps_applied),
        }


@dataclass(frozen=True)
class ParseProgress:
    rows_processed: int
    rows_total: int
    estimated_completion: datetime | None = None


@dataclass(frozen=True)
class ParseRunResult:
    run_id: UUID
    status: str
    mode: str
    plan_version_id: UUID | None
    rows_total: int
    rows_processed: int
    rows_failed: int
    mapped_rows: tuple[MappedRow, ...]
    failures: tuple[RowFailure, ...]
    lineage: dict[int, RowLineage]
    mapped_rows_digest: str
    groups: tuple[Any, ...] = ()  # would-be transaction plans (preview)
    groups_committed: int = 0
    transactions_created: int = 0
    transactions_skipped: int = 0
    checkpoints_created: int = 0


class CancelToken:
    """Cooperative cancellation flag checked between commit chunks."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()
