"""
ledger_services.audit_trail -- Append-only writer for the reconciliation record.

Responsibility:
    Persists what the reconciliation loop saw and did: each investigation
    exactly as received (or the reason it failed), the routing decision
    for every proposed fix, and each applied fix as a TransactionDelta.
    Reads go through ``ledger_kernel.selectors.audit_selector``.

Architecture position:
    Services -- imperative shell, called by the fix applicator and the
    reconciliation orchestrator.

Invariants enforced:
    - Investigations, decisions and deltas are inserted once and never
      updated (ORM immutability listeners back this up).
    - A delta lists every checkpoint the fix resolved, not only the one
      that triggered the investigation.

Non-goals:
    - Does NOT call ``session.commit()``; the caller owns the transaction.
"""

from __future__ import annotations

from collections.abc import Sequence
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy.orm import Session

from ledger_engines.reconciliation.detector import Discrepancy
from ledger_engines.reconciliation.dry_run import DryRunResult
from ledger_kernel.domain.amounts import to_json_safe
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.reconciliation import (
    ApprovalSource,
    FixDecision,
    FixDecisionModel,
    InvestigationModel,
    InvestigationStatus,
    TransactionDeltaModel,
)
from ledger_services.assistant import AssistantReply

logger = get_logger("services.audit_trail")


class AuditTrailService:
    """
    Writes investigations, fix decisions and transaction deltas.

    Contract:
        Every ``record_*`` method adds exactly one row and flushes so the
        returned model carries its id.
    """

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    def record_investigation(
        self,
        *,
        session_id: UUID,
        iteration: int,
        discrepancy: Discrepancy,
        reply: AssistantReply,
        actor_id: UUID,
    ) -> InvestigationModel:
        response = reply.response
        model = InvestigationModel(
            session_id=session_id,
            iteration=iteration,
            discrepancy=discrepancy.to_dict(),
            status=(InvestigationStatus.RECEIVED if reply.ok else InvestigationStatus.FAILED).value,
            failure_reason=(reply.failure_reason or "")[:1000] or None,
            hypothesis=response.hypothesis if response else None,
            evidence_analysis=response.evidence_analysis if response else None,
            proposed_fixes=[f.to_dict() for f in response.proposed_fixes] if response else [],
            uncertainties=list(response.uncertainties) if response else [],
            needs_more_data=response.needs_more_data if response else False,
            raw_response=reply.raw_text,
            requested_at=self._clock.now(),
            created_by_id=actor_id,
        )
        self._session.add(model)
        self._session.flush()

        logger.info(
            "investigation_recorded",
            extra={
                "investigation_id": str(model.id),
                "iteration": iteration,
                "status": model.status,
                "discrepancy_kind": discrepancy.kind.value,
                "fix_count": len(model.proposed_fixes),
            },
        )
        return model

    def record_decision(
        self,
        *,
        investigation_id: UUID,
        decision: FixDecision,
        actor_id: UUID,
        fix_index: int | None = None,
        confidence: float | None = None,
        reason: str = "",
        error_code: str | None = None,
        dry_run: DryRunResult | None = None,
    ) -> FixDecisionModel:
        model = FixDecisionModel(
            investigation_id=investigation_id,
            fix_index=fix_index,
            confidence=confidence,
            decision=decision.value,
            reason=reason[:2000],
            error_code=error_code,
            dry_run=dry_run.to_dict() if dry_run is not None else None,
            decided_at=self._clock.now(),
            created_by_id=actor_id,
        )
        self._session.add(model)
        self._session.flush()
        logger.info(
            "fix_decision_recorded",
            extra={
                "investigation_id": str(investigation_id),
                "fix_index": fix_index,
                "decision": decision.value,
                "confidence": confidence,
                "error_code": error_code,
            },
        )
        return model

    def record_delta(
        self,
        *,
        investigation_id: UUID,
        fix_index: int,
        approval_source: ApprovalSource,
        entry_ids: Sequence[UUID],
        transaction_ids: Sequence[UUID],
        checkpoints_resolved: Sequence[UUID],
        balance_change: Decimal,
        actor_id: UUID,
        session_id: UUID | None = None,
    ) -> TransactionDeltaModel:
        model = TransactionDeltaModel(
            session_id=session_id,
            investigation_id=investigation_id,
            applied_fix_index=fix_index,
            approval_source=approval_source.value,
            applied_at=self._clock.now(),
            resulting_ledger_entry_ids=[str(i) for i in entry_ids],
            resulting_transaction_ids=[str(i) for i in transaction_ids],
            checkpoints_resolved=[str(c) for c in checkpoints_resolved],
            balance_change=balance_change,
            created_by_id=actor_id,
        )
        self._session.add(model)
        self._session.flush()
        logger.info(
            "transaction_delta_recorded",
            extra={
                "delta_id": str(model.id),
                "investigation_id": str(investigation_id),
                "approval_source": approval_source.value,
                "entries": len(entry_ids),
                "checkpoints_resolved": len(checkpoints_resolved),
                "balance_change": balance_change,
            },
        )
        return model


def iteration_summary(
    *,
    iteration: int,
    discrepancies_before: int,
    investigated: int,
    applied: int,
    staged: int,
    failed: int,
) -> dict[str, Any]:
    """One entry of a session's ``iteration_log``."""
    return to_json_safe(
        {
            "iteration": iteration,
            "discrepancies_before": discrepancies_before,
            "investigated": investigated,
            "applied": applied,
            "staged": staged,
            "failed": failed,
        }
    )
