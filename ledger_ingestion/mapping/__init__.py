"""Row mapping: schema coercion, transform steps and validation rules (pure)."""

from ledger_ingestion.mapping.adapter import AdapterResult, TransformValidateAdapter
from ledger_ingestion.mapping.engine import (
    CoercionResult,
    MappingResult,
    check_constraints,
    coerce_from_string,
    map_row,
)
from ledger_ingestion.mapping.evaluators import (
    BuiltinTransformEvaluator,
    BuiltinValidationEvaluator,
    RuleOutcome,
    TransformEvaluator,
    ValidationEvaluator,
)

__all__ = [
    "AdapterResult",
    "BuiltinTransformEvaluator",
    "BuiltinValidationEvaluator",
    "CoercionResult",
    "MappingResult",
    "RuleOutcome",
    "TransformEvaluator",
    "TransformValidateAdapter",
    "ValidationEvaluator",
    "check_constraints",
    "coerce_from_string",
    "map_row",
]
