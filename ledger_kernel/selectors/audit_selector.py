"""
Module: ledger_kernel.selectors.audit_selector
Responsibility: The read-only audit query surface -- plan-version lineage,
    ledger line <-> source row links, and reconciliation history.
Architecture position: Kernel > Selectors.

Invariants enforced:
    - A lineage query never returns a silent null.  A line whose source rows
      are gone, whose raw file is gone, or whose raw file no longer hashes
      to its recorded checksum raises ProvenanceIntegrityError.
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import select

from ledger_kernel.domain.dtos import LedgerEntryView, SourceRowView
from ledger_kernel.exceptions import (
    PlanVersionNotFoundError,
    ProvenanceIntegrityError,
    SessionNotFoundError,
)
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.ledger import (
    LedgerEntryModel,
    LedgerTransactionModel,
    ledger_entry_source_rows,
)
from ledger_kernel.models.parse_plan import ParsePlanVersionModel
from ledger_kernel.models.parse_run import ParseRunModel
from ledger_kernel.models.raw_file import RawFileModel, SourceRowModel
from ledger_kernel.models.reconciliation import (
    FixDecisionModel,
    InvestigationModel,
    ReconciliationSessionModel,
    TransactionDeltaModel,
    derive_investigation_outcome,
)
from ledger_kernel.selectors.base import BaseSelector
from ledger_kernel.selectors.ledger_selector import entry_to_view, source_row_to_view

logger = get_logger("selectors.audit")


@dataclass(frozen=True)
class PlanVersionInfo:
    version_id: UUID
    plan_id: UUID
    parent_version_id: UUID | None
    version_number: int
    content_hash: str
    commit_message: str
    committed_at: datetime


@dataclass(frozen=True)
class RawFileInfo:
    raw_file_id: UUID
    filename: str
    checksum: str


@dataclass(frozen=True)
class EntryLineage:
    """Verified path from a ledger line back to its raw data."""

    entry: LedgerEntryView
    source_rows: tuple[SourceRowView, ...]
    raw_files: tuple[RawFileInfo, ...]
    origin_run_id: UUID | None
    plan_version_id: UUID | None
    origin_kind: str
    origin_investigation_id: UUID | None


@dataclass(frozen=True)
class SessionSummary:
    session_id: UUID
    account_id: str
    state: str
    iterations: int
    initial_discrepancy_count: int | None
    final_discrepancy_count: int | None
    fixes_applied: int
    termination_reason: str | None
    started_at: datetime
    completed_at: datetime | None


@dataclass(frozen=True)
class InvestigationRecord:
    investigation_id: UUID
    session_id: UUID
    iteration: int
    status: str
    discrepancy: dict[str, Any]
    hypothesis: str | None
    proposed_fixes: tuple[dict[str, Any], ...]
    uncertainties: tuple[str, ...]
    failure_reason: str | None
    raw_response: str | None
    outcome: str


@dataclass(frozen=True)
class FixDecisionRecord:
    investigation_id: UUID
    fix_index: int | None
    confidence: float | None
    decision: str
    reason: str
    error_code: str | None


@dataclass(frozen=True)
class TransactionDeltaRecord:
    delta_id: UUID
    session_id: UUID | None
    investigation_id: UUID
    applied_fix_index: int
    approval_source: str
    applied_at: datetime
    resulting_ledger_entry_ids: tuple[UUID, ...]
    checkpoints_resolved: tuple[UUID, ...]
    balance_change: Decimal


class AuditSelector(BaseSelector):
    """Lineage and reconciliation history queries."""

    # -- plan versions -------------------------------------------------------

    def plan_lineage(self, version_id: UUID) -> tuple[PlanVersionInfo, ...]:
        """Versions from the root of the chain down to ``version_id``."""
        chain: list[PlanVersionInfo] = []
        current: UUID | None = version_id
        while current is not None:
            model = self.session.get(ParsePlanVersionModel, current)
            if model is None:
                raise PlanVersionNotFoundError(str(current))
            chain.append(
                PlanVersionInfo(
                    version_id=model.id,
                    plan_id=model.plan_id,
                    parent_version_id=model.parent_version_id,
                    version_number=model.version_number,
                    content_hash=model.content_hash,
                    commit_message=model.commit_message,
                    committed_at=model.committed_at,
                )
            )
            current = model.parent_version_id
        chain.reverse()
        return tuple(chain)

    # -- ledger provenance ---------------------------------------------------

    def entry_lineage(self, entry_id: UUID) -> EntryLineage:
        """
        Resolve a ledger line to its source rows, raw files and plan version.

        Raises:
            ProvenanceIntegrityError: The line is missing, cites no source
                row, cites a source row that no longer exists, or cites a
                raw file that is missing or fails checksum verification.
        """
        entry = self.session.get(LedgerEntryModel, entry_id)
        if entry is None:
            raise ProvenanceIntegrityError("LedgerEntry", str(entry_id), "entry not found")

        linked_ids = list(
            self.session.execute(
                select(ledger_entry_source_rows.c.source_row_id).where(
                    ledger_entry_source_rows.c.entry_id == entry_id
                )
            ).scalars()
        )
        if not linked_ids:
            self._fail(entry_id, "entry has no source rows")

        rows = {
            row.id: row
            for row in self.session.execute(
                select(SourceRowModel).where(SourceRowModel.id.in_(linked_ids))
            ).scalars()
        }
        missing = [str(i) for i in linked_ids if i not in rows]
        if missing:
            self._fail(entry_id, f"source rows missing: {', '.join(missing)}")

        raw_files: dict[UUID, RawFileInfo] = {}
        for row in rows.values():
            if row.raw_file_id in raw_files:
                continue
            raw = self.session.get(RawFileModel, row.raw_file_id)
            if raw is None:
                self._fail(entry_id, f"raw file {row.raw_file_id} missing")
            actual = hashlib.sha256(raw.content).hexdigest()
            if actual != raw.checksum:
                self._fail(entry_id, f"raw file {raw.id} checksum mismatch")
            raw_files[raw.id] = RawFileInfo(
                raw_file_id=raw.id, filename=raw.filename, checksum=raw.checksum
            )

        txn = self.session.get(LedgerTransactionModel, entry.transaction_id)
        plan_version_id = None
        if entry.origin_run_id is not None:
            run = self.session.get(ParseRunModel, entry.origin_run_id)
            plan_version_id = run.plan_version_id if run is not None else None

        ordered_rows = sorted(rows.values(), key=lambda r: (str(r.raw_file_id), r.row_number))
        return EntryLineage(
            entry=entry_to_view(entry),
            source_rows=tuple(source_row_to_view(r) for r in ordered_rows),
            raw_files=tuple(raw_files.values()),
            origin_run_id=entry.origin_run_id,
            plan_version_id=plan_version_id,
            origin_kind=txn.origin_kind if txn is not None else "unknown",
            origin_investigation_id=txn.origin_investigation_id if txn is not None else None,
        )

    def verify_account_provenance(self, account_id: str) -> int:
        """Run ``entry_lineage`` over every line of an account; returns the count."""
        entry_ids = self.session.execute(
            select(LedgerEntryModel.id)
            .join(
                LedgerTransactionModel,
                LedgerTransactionModel.id == LedgerEntryModel.transaction_id,
            )
            .where(LedgerTransactionModel.account_id == account_id)
        ).scalars().all()
        for entry_id in entry_ids:
            self.entry_lineage(entry_id)
        return len(entry_ids)

    def _fail(self, entry_id: UUID, reason: str) -> None:
        logger.error(
            "provenance_integrity_failure",
            extra={"entry_id": str(entry_id), "reason": reason},
        )
        raise ProvenanceIntegrityError("LedgerEntry", str(entry_id), reason)

    # -- reconciliation history ----------------------------------------------

    def session_history(self, account_id: str) -> tuple[SessionSummary, ...]:
        models = self.session.execute(
            select(ReconciliationSessionModel)
            .where(ReconciliationSessionModel.account_id == account_id)
            .order_by(ReconciliationSessionModel.started_at)
        ).scalars()
        return tuple(_session_summary(m) for m in models)

    def session_summary(self, session_id: UUID) -> SessionSummary:
        model = self.session.get(ReconciliationSessionModel, session_id)
        if model is None:
            raise SessionNotFoundError(str(session_id))
        return _session_summary(model)

    def investigations_for_session(self, session_id: UUID) -> tuple[InvestigationRecord, ...]:
        models = self.session.execute(
            select(InvestigationModel)
            .where(InvestigationModel.session_id == session_id)
            .order_by(InvestigationModel.iteration, InvestigationModel.requested_at)
        ).scalars().all()
        decisions: dict[UUID, list[str]] = {}
        if models:
            rows = self.session.execute(
                select(FixDecisionModel.investigation_id, FixDecisionModel.decision).where(
                    FixDecisionModel.investigation_id.in_([m.id for m in models])
                )
            )
            for investigation_id, decision in rows:
                decisions.setdefault(investigation_id, []).append(decision)
        return tuple(
            InvestigationRecord(
                investigation_id=m.id,
                session_id=m.session_id,
                iteration=m.iteration,
                status=m.status,
                discrepancy=dict(m.discrepancy),
                hypothesis=m.hypothesis,
                proposed_fixes=tuple(m.proposed_fixes or ()),
                uncertainties=tuple(m.uncertainties or ()),
                failure_reason=m.failure_reason,
                raw_response=m.raw_response,
                outcome=derive_investigation_outcome(
                    m.status, decisions.get(m.id, [])
                ).value,
            )
            for m in models
        )

    def decisions_for_investigation(
        self, investigation_id: UUID
    ) -> tuple[FixDecisionRecord, ...]:
        models = self.session.execute(
            select(FixDecisionModel)
            .where(FixDecisionModel.investigation_id == investigation_id)
            .order_by(FixDecisionModel.decided_at, FixDecisionModel.fix_index)
        ).scalars()
        return tuple(
            FixDecisionRecord(
                investigation_id=m.investigation_id,
                fix_index=m.fix_index,
                confidence=m.confidence,
                decision=m.decision,
                reason=m.reason,
                error_code=m.error_code,
            )
            for m in models
        )

    def deltas_for_session(self, session_id: UUID) -> tuple[TransactionDeltaRecord, ...]:
        return self._deltas(TransactionDeltaModel.session_id == session_id)

    def deltas_for_investigation(
        self, investigation_id: UUID
    ) -> tuple[TransactionDeltaRecord, ...]:
        return self._deltas(TransactionDeltaModel.investigation_id == investigation_id)

    def _deltas(self, condition) -> tuple[TransactionDeltaRecord, ...]:
        models = self.session.execute(
            select(TransactionDeltaModel)
            .where(condition)
            .order_by(TransactionDeltaModel.applied_at)
        ).scalars()
        return tuple(
            TransactionDeltaRecord(
                delta_id=m.id,
                session_id=m.session_id,
                investigation_id=m.investigation_id,
                applied_fix_index=m.applied_fix_index,
                approval_source=m.approval_source,
                applied_at=m.applied_at,
                resulting_ledger_entry_ids=tuple(UUID(i) for i in m.resulting_ledger_entry_ids),
                checkpoints_resolved=tuple(UUID(i) for i in m.checkpoints_resolved),
                balance_change=m.balance_change,
            )
            for m in models
        )


def _session_summary(m: ReconciliationSessionModel) -> SessionSummary:
    return SessionSummary(
        session_id=m.id,
        account_id=m.account_id,
        state=m.state,
        iterations=m.iterations,
        initial_discrepancy_count=m.initial_discrepancy_count,
        final_discrepancy_count=m.final_discrepancy_count,
        fixes_applied=m.fixes_applied,
        termination_reason=m.termination_reason,
        started_at=m.started_at,
        completed_at=m.completed_at,
    )
