"""
ledger_services.assistant -- Gateway to the external investigation Assistant.

Responsibility:
    Builds the investigation request for one discrepancy, calls the
    Assistant under a wall-clock ceiling, and parses its reply strictly into
    frozen values.  The Assistant is untrusted: nothing it returns is used
    until it has passed this parser, the fix applicator's validation and an
    independent dry-run.

Architecture position:
    Services -- outbound adapter.  No database access; the reconciliation
    orchestrator persists what this module returns.

Response schema (JSON object, optionally wrapped in a markdown fence):

    {
      "hypothesis": str,
      "evidence_analysis": str,
      "proposed_fixes": [                      # at most 3
        {
          "description": str,
          "confidence": number in [0, 1],
          "reasoning": str,
          "assumptions": [str],
          "supporting_evidence": [str],
          "transactions": [
            {
              "date": "YYYY-MM-DD",
              "description": str,
              "transaction_type": str,         # a TransactionType value
              "source_row_numbers": [int],
              "lines": [
                {"side": "debit"|"credit", "account_id": str,
                 "asset_id": str, "amount": number|str, "quantity": number|str|null}
              ]
            }
          ],
          "predicted_impact": {
            "balance_change": number|str,
            "transactions_created": int,
            "checkpoints_resolved": int,
            "warnings": [str]
          }
        }
      ],
      "uncertainties": [str],
      "needs_more_data": bool
    }

Failure modes:
    - AssistantResponseError: the reply does not match the schema.
    - AssistantTimeoutError: no reply within the ceiling.
    Both are caught by ``AssistantGateway.investigate`` and returned as a
    failed ``AssistantReply``; the session goes on.
"""

from __future__ import annotations

import json
import re
from collections.abc import Sequence
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FuturesTimeout
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any, Protocol, runtime_checkable

from ledger_engines.materialization import CorrectionLine, CorrectionSpec, MaterializationRow
from ledger_engines.reconciliation.detector import Discrepancy
from ledger_engines.reconciliation.dry_run import PredictedImpact
from ledger_kernel.domain.amounts import to_json_safe
from ledger_kernel.domain.dtos import (
    EntrySide,
    LedgerTransactionView,
    SourceRowView,
    TransactionType,
)
from ledger_kernel.exceptions import AssistantResponseError, AssistantTimeoutError
from ledger_kernel.logging_config import get_logger

logger = get_logger("services.assistant")

MAX_PROPOSED_FIXES = 3
MAX_CONTEXT_ROWS = 200

_FENCE_RE = re.compile(r"^\s*```(?:json)?\s*\n(.*?)\n?```\s*$", re.DOTALL)


# =============================================================================
# Request
# =============================================================================


@dataclass(frozen=True)
class InvestigationRequest:
    """Everything the Assistant sees about one discrepancy."""

    account_id: str
    currency: str
    discrepancy: Discrepancy
    window_start: date
    window_end: date
    source_rows: tuple[SourceRowView, ...] = ()
    transactions: tuple[LedgerTransactionView, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "currency": self.currency,
            "discrepancy": self.discrepancy.to_dict(),
            "window": {
                "start": self.window_start.isoformat(),
                "end": self.window_end.isoformat(),
            },
            "source_rows": [
                {"row_number": r.row_number, "values": to_json_safe(r.raw_values)}
                for r in self.source_rows[:MAX_CONTEXT_ROWS]
            ],
            "transactions": [
                {
                    "id": str(t.id),
                    "date": t.effective_date.isoformat(),
                    "type": t.transaction_type,
                    "description": t.description,
                    "source_row_numbers": sorted({e.origin_row_number for e in t.entries}),
                    "balanced": t.total_debits == t.total_credits,
                    "flags": list(t.flags),
                    "lines": [
                        {
                            "side": e.side.value,
                            "account_id": e.account_id,
                            "asset_id": e.asset_id,
                            "amount": format(e.amount, "f"),
                            "quantity": format(e.quantity, "f") if e.quantity is not None else None,
                        }
                        for e in t.entries
                    ],
                }
                for t in self.transactions
            ],
        }


@runtime_checkable
class Assistant(Protocol):
    """External investigator.  Returns JSON text or an already-decoded mapping."""

    def investigate(self, request: InvestigationRequest) -> str | dict[str, Any]:
        ...


# =============================================================================
# Parsed response
# =============================================================================


@dataclass(frozen=True)
class ProposedLine:
    side: EntrySide
    account_id: str
    asset_id: str
    amount: Decimal
    quantity: Decimal | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "side": self.side.value,
            "account_id": self.account_id,
            "asset_id": self.asset_id,
            "amount": format(self.amount, "f"),
            "quantity": format(self.quantity, "f") if self.quantity is not None else None,
        }


@dataclass(frozen=True)
class ProposedTransaction:
    effective_date: date
    description: str
    transaction_type: TransactionType
    source_row_numbers: tuple[int, ...]
    lines: tuple[ProposedLine, ...]

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.effective_date.isoformat(),
            "description": self.description,
            "transaction_type": self.transaction_type.value,
            "source_row_numbers": list(self.source_row_numbers),
            "lines": [line.to_dict() for line in self.lines],
        }

    def to_correction(self, rows: Sequence[MaterializationRow]) -> CorrectionSpec:
        return CorrectionSpec(
            effective_date=self.effective_date,
            description=self.description,
            transaction_type=self.transaction_type,
            rows=tuple(rows),
            lines=tuple(
                CorrectionLine(
                    side=line.side,
                    account_id=line.account_id,
                    asset_id=line.asset_id,
                    amount=line.amount,
                    quantity=line.quantity,
                )
                for line in self.lines
            ),
        )


@dataclass(frozen=True)
class ProposedFix:
    description: str
    confidence: float
    reasoning: str
    transactions: tuple[ProposedTransaction, ...]
    predicted_impact: PredictedImpact
    assumptions: tuple[str, ...] = ()
    supporting_evidence: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "description": self.description,
            "confidence": self.confidence,
            "reasoning": self.reasoning,
            "assumptions": list(self.assumptions),
            "supporting_evidence": list(self.supporting_evidence),
            "transactions": [t.to_dict() for t in self.transactions],
            "predicted_impact": self.predicted_impact.to_dict(),
        }


@dataclass(frozen=True)
class InvestigationResponse:
    hypothesis: str
    evidence_analysis: str
    proposed_fixes: tuple[ProposedFix, ...] = ()
    uncertainties: tuple[str, ...] = ()
    needs_more_data: bool = False

    @property
    def confidences(self) -> tuple[float, ...]:
        return tuple(f.confidence for f in self.proposed_fixes)


@dataclass(frozen=True)
class AssistantReply:
    """Outcome of one Assistant call: a parsed response or a failure reason."""

    raw_text: str | None
    response: InvestigationResponse | None = None
    failure_reason: str | None = None
    error_code: str | None = None

    @property
    def ok(self) -> bool:
        return self.response is not None


# =============================================================================
# Strict parser
# =============================================================================


def _require(data: dict[str, Any], key: str, path: str) -> Any:
    if key not in data:
        raise AssistantResponseError(f"{path}.{key}", "field is required")
    return data[key]


def _string(value: Any, path: str, *, allow_empty: bool = True) -> str:
    if not isinstance(value, str):
        raise AssistantResponseError(path, f"expected a string, got {type(value).__name__}")
    if not allow_empty and not value.strip():
        raise AssistantResponseError(path, "must not be empty")
    return value


def _strings(value: Any, path: str) -> tuple[str, ...]:
    if value is None:
        return ()
    if not isinstance(value, list):
        raise AssistantResponseError(path, "expected a list of strings")
    return tuple(_string(v, f"{path}[{i}]") for i, v in enumerate(value))


def _integer(value: Any, path: str, *, minimum: int = 0) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise AssistantResponseError(path, f"expected an integer, got {value!r}")
    if value < minimum:
        raise AssistantResponseError(path, f"must be >= {minimum}")
    return value


def _decimal(value: Any, path: str) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, (int, float, str, Decimal)):
        raise AssistantResponseError(path, f"expected a number, got {value!r}")
    try:
        result = Decimal(str(value).strip())
    except InvalidOperation:
        raise AssistantResponseError(path, f"not a number: {value!r}") from None
    if not result.is_finite():
        raise AssistantResponseError(path, "must be finite")
    return result


def _confidence(value: Any, path: str) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
        raise AssistantResponseError(path, f"expected a number, got {value!r}")
    confidence = float(value)
    if not 0.0 <= confidence <= 1.0:
        raise AssistantResponseError(path, f"must be within [0, 1], got {confidence}")
    return confidence


def _mapping(value: Any, path: str) -> dict[str, Any]:
    if not isinstance(value, dict):
        raise AssistantResponseError(path, "expected an object")
    return value


def _parse_line(data: Any, path: str) -> ProposedLine:
    data = _mapping(data, path)
    side_text = _string(_require(data, "side", path), f"{path}.side").lower()
    try:
        side = EntrySide(side_text)
    except ValueError:
        raise AssistantResponseError(f"{path}.side", f"unknown side {side_text!r}") from None
    quantity = data.get("quantity")
    return ProposedLine(
        side=side,
        account_id=_string(_require(data, "account_id", path), f"{path}.account_id", allow_empty=False),
        asset_id=_string(_require(data, "asset_id", path), f"{path}.asset_id", allow_empty=False),
        amount=_decimal(_require(data, "amount", path), f"{path}.amount"),
        quantity=None if quantity is None else _decimal(quantity, f"{path}.quantity"),
    )


def _parse_transaction(data: Any, path: str) -> ProposedTransaction:
    data = _mapping(data, path)
    date_text = _string(_require(data, "date", path), f"{path}.date")
    try:
        effective_date = date.fromisoformat(date_text)
    except ValueError:
        raise AssistantResponseError(f"{path}.date", f"not an ISO date: {date_text!r}") from None
    type_text = _string(data.get("transaction_type", "adjustment"), f"{path}.transaction_type")
    try:
        txn_type = TransactionType(type_text.lower())
    except ValueError:
        raise AssistantResponseError(
            f"{path}.transaction_type", f"unknown transaction type {type_text!r}"
        ) from None
    rows = _require(data, "source_row_numbers", path)
    if not isinstance(rows, list):
        raise AssistantResponseError(f"{path}.source_row_numbers", "expected a list")
    lines = _require(data, "lines", path)
    if not isinstance(lines, list):
        raise AssistantResponseError(f"{path}.lines", "expected a list")
    return ProposedTransaction(
        effective_date=effective_date,
        description=_string(data.get("description", ""), f"{path}.description"),
        transaction_type=txn_type,
        source_row_numbers=tuple(
            _integer(n, f"{path}.source_row_numbers[{i}]", minimum=1) for i, n in enumerate(rows)
        ),
        lines=tuple(_parse_line(line, f"{path}.lines[{i}]") for i, line in enumerate(lines)),
    )


def _parse_impact(data: Any, path: str) -> PredictedImpact:
    data = _mapping(data, path)
    return PredictedImpact(
        balance_change=_decimal(_require(data, "balance_change", path), f"{path}.balance_change"),
        transactions_created=_integer(
            _require(data, "transactions_created", path), f"{path}.transactions_created"
        ),
        checkpoints_resolved=_integer(
            _require(data, "checkpoints_resolved", path), f"{path}.checkpoints_resolved"
        ),
        warnings=_strings(data.get("warnings"), f"{path}.warnings"),
    )


def _parse_fix(data: Any, path: str) -> ProposedFix:
    data = _mapping(data, path)
    transactions = _require(data, "transactions", path)
    if not isinstance(transactions, list):
        raise AssistantResponseError(f"{path}.transactions", "expected a list")
    return ProposedFix(
        description=_string(_require(data, "description", path), f"{path}.description"),
        confidence=_confidence(_require(data, "confidence", path), f"{path}.confidence"),
        reasoning=_string(data.get("reasoning", ""), f"{path}.reasoning"),
        transactions=tuple(
            _parse_transaction(t, f"{path}.transactions[{i}]") for i, t in enumerate(transactions)
        ),
        predicted_impact=_parse_impact(
            _require(data, "predicted_impact", path), f"{path}.predicted_impact"
        ),
        assumptions=_strings(data.get("assumptions"), f"{path}.assumptions"),
        supporting_evidence=_strings(data.get("supporting_evidence"), f"{path}.supporting_evidence"),
    )


def parse_proposed_fix(data: dict[str, Any], path: str = "$") -> ProposedFix:
    """Parse one fix, e.g. as stored on an investigation record."""
    return _parse_fix(data, path)


def strip_fences(text: str) -> str:
    match = _FENCE_RE.match(text)
    return match.group(1) if match else text.strip()


def parse_investigation_response(raw: str | dict[str, Any]) -> InvestigationResponse:
    """
    Parse and validate an Assistant reply.

    Raises:
        AssistantResponseError: naming the first offending path.
    """
    if isinstance(raw, str):
        try:
            data = json.loads(strip_fences(raw), parse_float=Decimal)
        except json.JSONDecodeError as exc:
            raise AssistantResponseError("$", f"not valid JSON: {exc.msg}") from None
    else:
        data = raw
    data = _mapping(data, "$")

    fixes = data.get("proposed_fixes") or []
    if not isinstance(fixes, list):
        raise AssistantResponseError("$.proposed_fixes", "expected a list")
    if len(fixes) > MAX_PROPOSED_FIXES:
        raise AssistantResponseError(
            "$.proposed_fixes", f"at most {MAX_PROPOSED_FIXES} fixes allowed, got {len(fixes)}"
        )
    needs_more = data.get("needs_more_data", False)
    if not isinstance(needs_more, bool):
        raise AssistantResponseError("$.needs_more_data", "expected a boolean")

    return InvestigationResponse(
        hypothesis=_string(_require(data, "hypothesis", "$"), "$.hypothesis"),
        evidence_analysis=_string(data.get("evidence_analysis", ""), "$.evidence_analysis"),
        proposed_fixes=tuple(
            _parse_fix(f, f"$.proposed_fixes[{i}]") for i, f in enumerate(fixes)
        ),
        uncertainties=_strings(data.get("uncertainties"), "$.uncertainties"),
        needs_more_data=needs_more,
    )


# =============================================================================
# Gateway
# =============================================================================


@dataclass
class AssistantGateway:
    """Calls an ``Assistant`` under a wall-clock ceiling and parses the reply."""

    assistant: Assistant
    timeout_seconds: float = 10.0
    _calls: int = field(default=0, init=False, repr=False)

    def investigate(self, request: InvestigationRequest) -> AssistantReply:
        self._calls += 1
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="assistant")
        future = executor.submit(self.assistant.investigate, request)
        try:
            raw = future.result(timeout=self.timeout_seconds)
        except FuturesTimeout:
            error = AssistantTimeoutError(self.timeout_seconds)
            logger.warning(
                "assistant_timeout",
                extra={
                    "account_id": request.account_id,
                    "timeout_seconds": self.timeout_seconds,
                },
            )
            return AssistantReply(raw_text=None, failure_reason=str(error), error_code=error.code)
        except Exception as exc:
            logger.warning(
                "assistant_call_failed",
                extra={"account_id": request.account_id},
                exc_info=exc,
            )
            return AssistantReply(
                raw_text=None,
                failure_reason=f"{type(exc).__name__}: {exc}",
                error_code="ASSISTANT_CALL_FAILED",
            )
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        raw_text = raw if isinstance(raw, str) else json.dumps(to_json_safe(raw), sort_keys=True)
        try:
            response = parse_investigation_response(raw)
        except AssistantResponseError as exc:
            logger.warning(
                "assistant_response_invalid",
                extra={"account_id": request.account_id, "path": exc.path, "reason": exc.reason},
            )
            return AssistantReply(raw_text=raw_text, failure_reason=str(exc), error_code=exc.code)

        logger.info(
            "assistant_response_received",
            extra={
                "account_id": request.account_id,
                "fix_count": len(response.proposed_fixes),
                "needs_more_data": response.needs_more_data,
            },
        )
        return AssistantReply(raw_text=raw_text, response=response)

    @property
    def calls(self) -> int:
        return self._calls
