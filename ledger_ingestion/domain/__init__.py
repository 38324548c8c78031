"""
ledger_ingestion.domain -- Pure types and value objects for parse plans and runs.

ZERO I/O. Imports only from ledger_kernel and the pure ledger_engines values.
"""

from ledger_ingestion.domain.types import (
    CancelToken,
    CommittedPlanVersion,
    Dialect,
    FailureKind,
    FieldConstraints,
    FieldRoles,
    FieldSpec,
    FieldType,
    GroupingSpec,
    GroupingStrategy,
    MappedRow,
    ParseMode,
    ParseProgress,
    ParseRunResult,
    PlanDefinition,
    PlanDraft,
    RowFailure,
    RowLineage,
    RuleSeverity,
    SourceRowData,
    TableSchema,
    TransformStep,
    ValidationRule,
)

__all__ = [
    "CancelToken",
    "CommittedPlanVersion",
    "Dialect",
    "FailureKind",
    "FieldConstraints",
    "FieldRoles",
    "FieldSpec",
    "FieldType",
    "GroupingSpec",
    "GroupingStrategy",
    "MappedRow",
    "ParseMode",
    "ParseProgress",
    "ParseRunResult",
    "PlanDefinition",
    "PlanDraft",
    "RowFailure",
    "RowLineage",
    "RuleSeverity",
    "SourceRowData",
    "TableSchema",
    "TransformStep",
    "ValidationRule",
]
