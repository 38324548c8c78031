"""
Transform/validate adapter.

Drives the per-row pipeline of a parse run:

    SourceRowData --map_row--> MappedRow --steps[0..n]--> MappedRow
                                                    |
                          all surviving rows --rules--> kept / failed

Each transform step runs in a worker thread under a wall-clock quota.
An evaluator that raises, overruns its quota, or returns output that does
not match the step's declared output fields produces a TransformError row
failure; the row is dropped and the run goes on.

Validation runs over the whole transformed set (rules such as ``unique``
need every row), one rule at a time under the same quota.  Failed outcomes
of severity ``error`` exclude the row and become ValidationFailure row
failures; ``warning`` outcomes are reported and the row is kept.  A rule
whose evaluator raises or overruns fails every row it was given.
"""

from __future__ import annotations

from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass
from typing import Any

from ledger_ingestion.domain.types import (
    FailureKind,
    MappedRow,
    PlanDefinition,
    RowFailure,
    RuleSeverity,
    SourceRowData,
    TransformStep,
    ValidationRule,
)
from ledger_ingestion.mapping.engine import map_row
from ledger_ingestion.mapping.evaluators import (
    BuiltinTransformEvaluator,
    BuiltinValidationEvaluator,
    RuleOutcome,
    TransformEvaluator,
    ValidationEvaluator,
)
from ledger_kernel.exceptions import TransformError, ValidationFailure
from ledger_kernel.logging_config import get_logger

logger = get_logger("ingestion.adapter")


@dataclass(frozen=True)
class AdapterResult:
    mapped_rows: tuple[MappedRow, ...]
    failures: tuple[RowFailure, ...]
    warnings: tuple[RowFailure, ...] = ()


class TransformValidateAdapter:
    """Schema coercion, transform steps and validation rules for a row set."""

    def __init__(
        self,
        transform_evaluator: TransformEvaluator | None = None,
        validation_evaluator: ValidationEvaluator | None = None,
        step_timeout_seconds: float = 2.0,
    ):
        self._transforms = transform_evaluator or BuiltinTransformEvaluator()
        self._validations = validation_evaluator or BuiltinValidationEvaluator()
        self._timeout = step_timeout_seconds
        self._executor: ThreadPoolExecutor | None = None

    def run(
        self, rows: Sequence[SourceRowData], definition: PlanDefinition
    ) -> AdapterResult:
        failures: list[RowFailure] = []
        transformed: list[MappedRow] = []

        try:
            for source in rows:
                mapping = map_row(source, definition.schema)
                if not mapping.success:
                    failures.extend(mapping.errors)
                    continue
                row = mapping.row
                for step in definition.transform_steps:
                    try:
                        row = row.with_values(self._run_step(row, step), step.name)
                    except TransformError as exc:
                        failures.append(
                            RowFailure(
                                row_number=source.row_number,
                                kind=FailureKind.TRANSFORM,
                                code=exc.code,
                                message=exc.reason,
                                step=step.name,
                            )
                        )
                        row = None
                        break
                if row is not None:
                    transformed.append(row)
            kept, rule_failures, warnings = self._validate(transformed, definition)
        finally:
            self._shutdown()

        failures.extend(rule_failures)
        failures.sort(key=lambda f: (f.row_number, f.kind.value, f.step or ""))
        return AdapterResult(
            mapped_rows=tuple(kept),
            failures=tuple(failures),
            warnings=tuple(warnings),
        )

    # -- transforms ----------------------------------------------------------

    def _run_step(self, row: MappedRow, step: TransformStep) -> dict[str, Any]:
        future = self._pool().submit(self._transforms.evaluate, dict(row.values), step)
        try:
            output = future.result(timeout=self._timeout)
        except FuturesTimeout:
            future.cancel()
            # The worker may still be running; leave it behind.
            self._shutdown()
            logger.warning(
                "transform_step_timeout",
                extra={
                    "step": step.name,
                    "row_number": row.row_number,
                    "timeout_seconds": self._timeout,
                },
            )
            raise TransformError(
                step.name, f"exceeded {self._timeout}s quota", row.row_number
            ) from None
        except Exception as exc:
            raise TransformError(
                step.name, f"{type(exc).__name__}: {exc}", row.row_number
            ) from exc

        if not isinstance(output, dict) or not all(isinstance(k, str) for k in output):
            raise TransformError(
                step.name, "output is not a mapping with string keys", row.row_number
            )
        missing = [name for name in step.output_fields if name not in output]
        if missing:
            raise TransformError(
                step.name, f"output is missing declared fields {missing}", row.row_number
            )
        return output

    def _run_rule(self, rows: list[MappedRow], rule: ValidationRule) -> Sequence[RuleOutcome]:
        """Evaluate ``rule`` under the step quota; failures fail every row it covers."""
        future = self._pool().submit(self._validations.evaluate, list(rows), rule)
        try:
            return future.result(timeout=self._timeout)
        except FuturesTimeout:
            future.cancel()
            self._shutdown()
            logger.warning(
                "validation_rule_timeout",
                extra={"rule": rule.name, "rows": len(rows), "timeout_seconds": self._timeout},
            )
            raise ValidationFailure(
                rule.name, f"rule {rule.name!r} exceeded {self._timeout}s quota"
            ) from None
        except Exception as exc:
            logger.warning(
                "validation_rule_failed",
                extra={"rule": rule.name, "rows": len(rows), "error": f"{type(exc).__name__}: {exc}"},
            )
            raise ValidationFailure(
                rule.name, f"rule {rule.name!r} could not be evaluated: {type(exc).__name__}: {exc}"
            ) from exc

    def _pool(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=1, thread_name_prefix="evaluator"
            )
        return self._executor

    def _shutdown(self) -> None:
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None

    # -- validation ----------------------------------------------------------

    def _validate(
        self, rows: list[MappedRow], definition: PlanDefinition
    ) -> tuple[list[MappedRow], list[RowFailure], list[RowFailure]]:
        failures: list[RowFailure] = []
        warnings: list[RowFailure] = []
        rejected: set[int] = set()

        for rule in definition.validation_rules:
            try:
                outcomes = self._run_rule(rows, rule)
            except ValidationFailure as exc:
                outcomes = [RuleOutcome(row.row_number, False, exc.reason) for row in rows]
            for outcome in outcomes:
                if outcome.passed:
                    continue
                entry = RowFailure(
                    row_number=outcome.row_number,
                    kind=FailureKind.VALIDATION,
                    code=ValidationFailure.code,
                    message=outcome.message,
                    step=rule.name,
                )
                if rule.severity == RuleSeverity.ERROR:
                    failures.append(entry)
                    rejected.add(outcome.row_number)
                else:
                    warnings.append(entry)

        kept = [row for row in rows if row.row_number not in rejected]
        return kept, failures, warnings
