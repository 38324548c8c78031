"""
Module: ledger_kernel.models.reconciliation
Responsibility: ORM persistence for the reconciliation audit trail --
    sessions, investigations received from the Assistant, per-fix routing
    decisions, the manual-review queue, and applied transaction deltas.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - InvestigationModel stores the Assistant's response verbatim and is
      never updated or deleted.
    - FixDecisionModel and TransactionDeltaModel are append-only.
    - At most one active session per account: ``active_account_id`` is
      unique and set only while the session is non-terminal.
    - Sessions and staged fixes are the only mutable rows here; they carry
      workflow state, not financial content.
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Float, ForeignKey, Index, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import TrackedBase, UUIDString


class SessionState(str, Enum):
    PENDING = "pending"
    INVESTIGATING = "investigating"
    APPLYING = "applying"
    CONVERGED = "converged"
    PARTIALLY_RECONCILED = "partially_reconciled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.CONVERGED, SessionState.PARTIALLY_RECONCILED)


class InvestigationStatus(str, Enum):
    RECEIVED = "received"
    FAILED = "failed"


class FixDecision(str, Enum):
    """How one proposed fix (or a whole investigation) was routed."""

    AUTO_APPLIED = "auto_applied"
    STAGED = "staged"
    BELOW_THRESHOLD = "below_threshold"
    NEEDS_MANUAL_REVIEW = "needs_manual_review"
    REJECTED_INVALID = "rejected_invalid"
    REJECTED_DRY_RUN = "rejected_dry_run"
    APPROVED = "approved"
    DECLINED = "declined"
    # Not considered because another fix of the investigation was applied.
    SUPERSEDED = "superseded"


class InvestigationOutcome(str, Enum):
    FIX_APPLIED = "fix_applied"
    FIX_STAGED = "fix_staged"
    NEEDS_MANUAL_REVIEW = "needs_manual_review"
    FIX_REJECTED = "fix_rejected"
    FAILED = "failed"


def derive_investigation_outcome(
    status: str, decisions: list[str]
) -> InvestigationOutcome:
    """
    Outcome of an investigation from its append-only fix decisions.

    An approval later in the record supersedes the staging that preceded it,
    and a decline cancels one staging.
    """
    if status == InvestigationStatus.FAILED:
        return InvestigationOutcome.FAILED
    if FixDecision.AUTO_APPLIED in decisions or FixDecision.APPROVED in decisions:
        return InvestigationOutcome.FIX_APPLIED
    if decisions.count(FixDecision.STAGED) > decisions.count(FixDecision.DECLINED):
        return InvestigationOutcome.FIX_STAGED
    if FixDecision.NEEDS_MANUAL_REVIEW in decisions or FixDecision.BELOW_THRESHOLD in decisions:
        return InvestigationOutcome.NEEDS_MANUAL_REVIEW
    return InvestigationOutcome.FIX_REJECTED


class StagedFixStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"
    SUPERSEDED = "superseded"


class ApprovalSource(str, Enum):
    AUTO = "auto"
    MANUAL = "manual"


class ReconciliationSessionModel(TrackedBase):
    """One run of the investigate / apply loop for an account."""

    __tablename__ = "reconciliation_sessions"

    __table_args__ = (
        UniqueConstraint("active_account_id", name="uq_reconciliation_active_account"),
        Index("idx_reconciliation_account", "account_id"),
    )

    account_id: Mapped[str] = mapped_column(String(100), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    # Equal to account_id while the session is active; NULL once terminal.
    active_account_id: Mapped[str | None] = mapped_column(String(100), nullable=True)
    state: Mapped[SessionState] = mapped_column(
        String(25),
        default=SessionState.PENDING,
        nullable=False,
    )
    iterations: Mapped[int] = mapped_column(nullable=False, default=0)
    max_iterations: Mapped[int] = mapped_column(nullable=False)
    initial_discrepancy_count: Mapped[int | None] = mapped_column(nullable=True)
    final_discrepancy_count: Mapped[int | None] = mapped_column(nullable=True)
    initial_max_delta: Mapped[Decimal | None] = mapped_column(nullable=True)
    final_max_delta: Mapped[Decimal | None] = mapped_column(nullable=True)
    investigations_run: Mapped[int] = mapped_column(nullable=False, default=0)
    fixes_applied: Mapped[int] = mapped_column(nullable=False, default=0)
    fixes_staged: Mapped[int] = mapped_column(nullable=False, default=0)
    termination_reason: Mapped[str | None] = mapped_column(String(50), nullable=True)
    # Per-iteration summaries: [{"iteration", "discrepancies_before", ...}]
    iteration_log: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
    started_at: Mapped[datetime] = mapped_column(nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<ReconciliationSession {self.id} {self.account_id} {self.state}>"


class InvestigationModel(TrackedBase):
    """An Assistant investigation of one discrepancy, stored as received."""

    __tablename__ = "investigations"

    __table_args__ = (Index("idx_investigation_session", "session_id"),)

    session_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("reconciliation_sessions.id"),
        nullable=False,
    )
    iteration: Mapped[int] = mapped_column(nullable=False)
    discrepancy: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    status: Mapped[InvestigationStatus] = mapped_column(String(10), nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    hypothesis: Mapped[str | None] = mapped_column(Text, nullable=True)
    evidence_analysis: Mapped[str | None] = mapped_column(Text, nullable=True)
    proposed_fixes: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
    uncertainties: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
    needs_more_data: Mapped[bool] = mapped_column(nullable=False, default=False)
    raw_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    requested_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<Investigation {self.id} {self.status}>"


class FixDecisionModel(TrackedBase):
    """Routing outcome for one proposed fix, or for a whole investigation."""

    __tablename__ = "fix_decisions"

    __table_args__ = (Index("idx_fix_decision_investigation", "investigation_id"),)

    investigation_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("investigations.id"),
        nullable=False,
    )
    # NULL when the decision covers the whole investigation.
    fix_index: Mapped[int | None] = mapped_column(nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    decision: Mapped[FixDecision] = mapped_column(String(25), nullable=False)
    reason: Mapped[str] = mapped_column(String(2000), nullable=False, default="")
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    dry_run: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    decided_at: Mapped[datetime] = mapped_column(nullable=False)


class StagedFixModel(TrackedBase):
    """A fix in the manual-review confidence band awaiting a decision."""

    __tablename__ = "staged_fixes"

    __table_args__ = (Index("idx_staged_fix_account_status", "account_id", "status"),)

    session_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("reconciliation_sessions.id"),
        nullable=False,
    )
    investigation_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("investigations.id"),
        nullable=False,
    )
    fix_index: Mapped[int] = mapped_column(nullable=False)
    account_id: Mapped[str] = mapped_column(String(100), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False)
    status: Mapped[StagedFixStatus] = mapped_column(
        String(10),
        default=StagedFixStatus.PENDING,
        nullable=False,
    )
    decided_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    decided_at: Mapped[datetime | None] = mapped_column(nullable=True)


class TransactionDeltaModel(TrackedBase):
    """Audit record of one applied fix and the entries it produced."""

    __tablename__ = "transaction_deltas"

    __table_args__ = (
        Index("idx_delta_investigation", "investigation_id"),
        Index("idx_delta_session", "session_id"),
    )

    session_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    investigation_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("investigations.id"),
        nullable=False,
    )
    applied_fix_index: Mapped[int] = mapped_column(nullable=False)
    approval_source: Mapped[ApprovalSource] = mapped_column(String(10), nullable=False)
    applied_at: Mapped[datetime] = mapped_column(nullable=False)
    resulting_ledger_entry_ids: Mapped[list[Any]] = mapped_column(JSON, nullable=False)
    resulting_transaction_ids: Mapped[list[Any]] = mapped_column(JSON, nullable=False)
    checkpoints_resolved: Mapped[list[Any]] = mapped_column(JSON, nullable=False)
    balance_change: Mapped[Decimal] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<TransactionDelta {self.id} fix={self.applied_fix_index} {self.approval_source}>"
