"""
ledger_services.fix_applicator -- Validate, dry-run, gate and apply proposed fixes.

Responsibility:
    Takes the fixes of one parsed investigation and decides, fix by fix,
    whether each is applied, staged for manual approval, or refused.
    Applying means materializing the fix's corrective transactions as new
    ledger lines and recording a TransactionDelta.

Architecture position:
    Services -- imperative shell over the pure dry-run and policy engines.

Pipeline per fix (highest confidence first):

    validate ------> rejected_invalid      (schema, rows, balance, currency)
       |
    dry-run -------> rejected_dry_run      (simulation contradicts the claim)
       |
    route_fix
       |-- >= auto_apply ........ apply      -> auto_applied  + delta{auto}
       |-- >= stage_for_review .. staged     -> staged (approve / decline later)
       +-- below ................ never      -> below_threshold

    An investigation whose best fix is below the investigation floor is
    recorded once as needs_manual_review and none of its fixes is looked at.
    Once a fix is applied the remaining fixes of that investigation are
    recorded as superseded.

Invariants enforced:
    - No fix is applied without a dry-run that agrees with its predicted
      impact, including on approval of a staged fix.
    - Every corrective transaction cites at least one existing source row
      of the account and balances within tolerance.
    - Existing ledger lines are never modified.

Failure modes:
    - FixRejectedError / DoubleEntryViolation: raised by ``validate`` and
      by ``approve``; recorded as decisions inside ``process_investigation``.
    - StagedFixNotFoundError: approve/decline of an unknown or decided fix.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger_config.schema import EngineSettings
from ledger_engines.materialization import (
    CorrectionSpec,
    MaterializationRow,
    TransactionPlan,
    build_correction,
)
from ledger_engines.reconciliation.dry_run import DryRunResult, simulate_fix
from ledger_engines.reconciliation.policy import (
    GateDecision,
    investigation_below_floor,
    route_fix,
)
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.exceptions import (
    DiscrepancyUnresolved,
    DoubleEntryViolation,
    FixRejectedError,
    StagedFixNotFoundError,
)
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.raw_file import SourceRowModel
from ledger_kernel.models.reconciliation import (
    ApprovalSource,
    FixDecision,
    InvestigationModel,
    StagedFixModel,
    StagedFixStatus,
    TransactionDeltaModel,
)
from ledger_kernel.selectors.ledger_selector import LedgerSelector
from ledger_services.assistant import (
    InvestigationResponse,
    ProposedFix,
    parse_proposed_fix,
)
from ledger_services.audit_trail import AuditTrailService
from ledger_services.materialization_service import (
    LedgerMaterializationService,
    check_balanced,
)

logger = get_logger("services.fix_applicator")


@dataclass(frozen=True)
class ValidatedFix:
    """A fix that passed validation, ready for dry-run and materialization."""

    fix_index: int
    fix: ProposedFix
    specs: tuple[CorrectionSpec, ...]
    plans: tuple[TransactionPlan, ...]


@dataclass(frozen=True)
class FixOutcome:
    """What ``process_investigation`` did with one investigation's fixes."""

    investigation_id: UUID
    applied_fix_index: int | None = None
    delta_id: UUID | None = None
    staged_fix_ids: tuple[UUID, ...] = ()
    decisions: tuple[FixDecision, ...] = ()

    @property
    def applied(self) -> bool:
        return self.applied_fix_index is not None


@dataclass(frozen=True)
class StagedFixSummary:
    staged_fix_id: UUID
    session_id: UUID
    investigation_id: UUID
    fix_index: int
    account_id: str
    confidence: float
    description: str
    created_at: datetime


def correction_salt(investigation_id: UUID, fix_index: int, n: int) -> str:
    return f"correction:{investigation_id}:{fix_index}:{n}"


class FixApplicator:
    """
    Routes proposed fixes through validation, dry-run and the confidence gates.

    Contract:
        Flush-only.  ``process_investigation`` never raises for a bad fix;
        every outcome is a FixDecision row.  ``approve`` raises instead,
        leaving the staged fix pending.
    """

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        settings: EngineSettings | None = None,
        audit: AuditTrailService | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._settings = settings or EngineSettings()
        self._audit = audit or AuditTrailService(session, self._clock)
        self._selector = LedgerSelector(session)
        self._materializer = LedgerMaterializationService(
            session, tolerance=self._settings.tolerance.amount
        )

    # -- validation ----------------------------------------------------------

    def validate(
        self,
        fix: ProposedFix,
        *,
        fix_index: int,
        account_id: str,
        currency: str,
        investigation_id: UUID,
    ) -> ValidatedFix:
        """
        Check an untrusted fix against the account's ledger.

        Raises:
            FixRejectedError: a structural, provenance or currency problem.
            DoubleEntryViolation: a transaction's lines do not balance.
        """
        if not 0.0 <= fix.confidence <= 1.0:
            raise FixRejectedError(f"confidence {fix.confidence} outside [0, 1]", fix_index)
        if not fix.transactions:
            raise FixRejectedError("fix proposes no transactions", fix_index)

        rows_by_number = self._account_rows(account_id)
        tolerance = self._settings.tolerance.amount
        specs: list[CorrectionSpec] = []
        plans: list[TransactionPlan] = []
        for n, txn in enumerate(fix.transactions):
            if not txn.source_row_numbers:
                raise FixRejectedError(f"transaction {n} cites no source rows", fix_index)
            unknown = sorted(set(txn.source_row_numbers) - set(rows_by_number))
            if unknown:
                raise FixRejectedError(
                    f"transaction {n} cites rows not in account {account_id}: {unknown}",
                    fix_index,
                )
            if not txn.lines:
                raise FixRejectedError(f"transaction {n} has no lines", fix_index)
            for line in txn.lines:
                if line.amount <= 0:
                    raise FixRejectedError(
                        f"transaction {n} has a non-positive amount {line.amount}", fix_index
                    )
                if (
                    line.account_id == account_id
                    and line.quantity is None
                    and line.asset_id != currency
                ):
                    raise FixRejectedError(
                        f"transaction {n} moves cash in {line.asset_id}, "
                        f"account currency is {currency}",
                        fix_index,
                    )

            spec = txn.to_correction(
                [rows_by_number[number] for number in dict.fromkeys(txn.source_row_numbers)]
            )
            plan = build_correction(
                spec,
                account_id=account_id,
                currency=currency,
                salt=correction_salt(investigation_id, fix_index, n),
            )
            check_balanced(plan, tolerance)
            specs.append(spec)
            plans.append(plan)

        return ValidatedFix(
            fix_index=fix_index, fix=fix, specs=tuple(specs), plans=tuple(plans)
        )

    def dry_run(
        self, plans: Sequence[TransactionPlan], *, account_id: str, currency: str
    ) -> DryRunResult:
        """Simulate ``plans`` against the current ledger without writing."""
        severity = self._settings.severity
        return simulate_fix(
            account_id=account_id,
            currency=currency,
            entries=self._selector.cash_entries(account_id, currency),
            checkpoints=self._selector.checkpoints_for_account(account_id),
            transactions=self._selector.transactions_for_account(account_id),
            corrections=plans,
            tolerance=self._settings.tolerance.amount,
            low_max=severity.low_max,
            medium_max=severity.medium_max,
        )

    # -- routing -------------------------------------------------------------

    def process_investigation(
        self,
        *,
        investigation_id: UUID,
        response: InvestigationResponse,
        session_id: UUID,
        account_id: str,
        currency: str,
        actor_id: UUID,
    ) -> FixOutcome:
        policy = self._settings.confidence
        decisions: list[FixDecision] = []

        if investigation_below_floor(
            response.confidences, investigation_floor=policy.investigation_floor
        ):
            error = DiscrepancyUnresolved(account_id, 1)
            best = max(response.confidences, default=None)
            self._audit.record_decision(
                investigation_id=investigation_id,
                decision=FixDecision.NEEDS_MANUAL_REVIEW,
                actor_id=actor_id,
                confidence=best,
                reason=(
                    f"no fix reaches confidence {policy.investigation_floor}"
                    if response.proposed_fixes
                    else "no fix proposed"
                ),
                error_code=error.code,
            )
            logger.info(
                "investigation_needs_manual_review",
                extra={"investigation_id": str(investigation_id), "best_confidence": best},
            )
            return FixOutcome(
                investigation_id=investigation_id,
                decisions=(FixDecision.NEEDS_MANUAL_REVIEW,),
            )

        ordered = sorted(
            enumerate(response.proposed_fixes), key=lambda item: (-item[1].confidence, item[0])
        )
        applied_index: int | None = None
        delta_id: UUID | None = None
        staged: list[UUID] = []

        for fix_index, fix in ordered:
            record = {
                "investigation_id": investigation_id,
                "actor_id": actor_id,
                "fix_index": fix_index,
                "confidence": fix.confidence,
            }
            if applied_index is not None:
                self._audit.record_decision(
                    decision=FixDecision.SUPERSEDED,
                    reason=f"fix {applied_index} was applied",
                    **record,
                )
                decisions.append(FixDecision.SUPERSEDED)
                continue

            gate = route_fix(
                fix.confidence,
                auto_apply=policy.auto_apply,
                stage_for_review=policy.stage_for_review,
            )
            if gate is GateDecision.BELOW_THRESHOLD:
                self._audit.record_decision(
                    decision=FixDecision.BELOW_THRESHOLD,
                    reason=f"confidence below {policy.stage_for_review}; manual review",
                    error_code=DiscrepancyUnresolved.code,
                    **record,
                )
                decisions.append(FixDecision.BELOW_THRESHOLD)
                continue

            try:
                validated = self.validate(
                    fix,
                    fix_index=fix_index,
                    account_id=account_id,
                    currency=currency,
                    investigation_id=investigation_id,
                )
            except (FixRejectedError, DoubleEntryViolation) as exc:
                self._audit.record_decision(
                    decision=FixDecision.REJECTED_INVALID,
                    reason=str(exc),
                    error_code=exc.code,
                    **record,
                )
                decisions.append(FixDecision.REJECTED_INVALID)
                logger.warning(
                    "fix_rejected_invalid",
                    extra={"fix_index": fix_index, "error_code": exc.code, "reason": str(exc)},
                )
                continue

            result = self.dry_run(validated.plans, account_id=account_id, currency=currency)
            contradiction = result.contradicts(
                fix.predicted_impact, self._settings.tolerance.amount
            )
            if contradiction is not None:
                self._audit.record_decision(
                    decision=FixDecision.REJECTED_DRY_RUN,
                    reason=contradiction,
                    error_code=FixRejectedError.code,
                    dry_run=result,
                    **record,
                )
                decisions.append(FixDecision.REJECTED_DRY_RUN)
                logger.warning(
                    "fix_rejected_dry_run",
                    extra={"fix_index": fix_index, "reason": contradiction},
                )
                continue

            if gate is GateDecision.AUTO_APPLY:
                delta = self._apply(
                    validated,
                    result,
                    account_id=account_id,
                    currency=currency,
                    investigation_id=investigation_id,
                    session_id=session_id,
                    source=ApprovalSource.AUTO,
                    actor_id=actor_id,
                )
                self._audit.record_decision(
                    decision=FixDecision.AUTO_APPLIED,
                    reason=fix.description,
                    dry_run=result,
                    **record,
                )
                decisions.append(FixDecision.AUTO_APPLIED)
                applied_index, delta_id = fix_index, delta.id
                logger.info(
                    "fix_auto_applied",
                    extra={
                        "investigation_id": str(investigation_id),
                        "fix_index": fix_index,
                        "confidence": fix.confidence,
                        "checkpoints_resolved": len(result.checkpoints_resolved),
                    },
                )
                continue

            staged_fix = StagedFixModel(
                session_id=session_id,
                investigation_id=investigation_id,
                fix_index=fix_index,
                account_id=account_id,
                currency=currency,
                confidence=fix.confidence,
                status=StagedFixStatus.PENDING.value,
                created_by_id=actor_id,
            )
            self._session.add(staged_fix)
            self._session.flush()
            self._audit.record_decision(
                decision=FixDecision.STAGED,
                reason=fix.description,
                dry_run=result,
                **record,
            )
            decisions.append(FixDecision.STAGED)
            staged.append(staged_fix.id)
            logger.info(
                "fix_staged",
                extra={
                    "staged_fix_id": str(staged_fix.id),
                    "fix_index": fix_index,
                    "confidence": fix.confidence,
                },
            )

        return FixOutcome(
            investigation_id=investigation_id,
            applied_fix_index=applied_index,
            delta_id=delta_id,
            staged_fix_ids=tuple(staged),
            decisions=tuple(decisions),
        )

    # -- manual review -------------------------------------------------------

    def approve(self, staged_fix_id: UUID, actor_id: UUID) -> TransactionDeltaModel:
        """
        Re-validate, re-dry-run and apply a staged fix.

        The investigation's other pending fixes are superseded.

        Raises:
            StagedFixNotFoundError: unknown or already decided.
            FixRejectedError / DoubleEntryViolation: the fix no longer holds
                against the current ledger; it stays pending.
        """
        staged = self._load_pending(staged_fix_id)
        investigation = self._session.get(InvestigationModel, staged.investigation_id)
        fix = parse_proposed_fix(
            investigation.proposed_fixes[staged.fix_index],
            f"$.proposed_fixes[{staged.fix_index}]",
        )
        validated = self.validate(
            fix,
            fix_index=staged.fix_index,
            account_id=staged.account_id,
            currency=staged.currency,
            investigation_id=staged.investigation_id,
        )
        result = self.dry_run(
            validated.plans, account_id=staged.account_id, currency=staged.currency
        )
        contradiction = result.contradicts(fix.predicted_impact, self._settings.tolerance.amount)
        if contradiction is not None:
            logger.warning(
                "staged_fix_approval_rejected",
                extra={"staged_fix_id": str(staged_fix_id), "reason": contradiction},
            )
            raise FixRejectedError(contradiction, staged.fix_index)

        delta = self._apply(
            validated,
            result,
            account_id=staged.account_id,
            currency=staged.currency,
            investigation_id=staged.investigation_id,
            session_id=staged.session_id,
            source=ApprovalSource.MANUAL,
            actor_id=actor_id,
        )
        self._decide(staged, StagedFixStatus.APPROVED, actor_id)
        self._audit.record_decision(
            investigation_id=staged.investigation_id,
            decision=FixDecision.APPROVED,
            actor_id=actor_id,
            fix_index=staged.fix_index,
            confidence=staged.confidence,
            reason=fix.description,
            dry_run=result,
        )
        self._supersede_pending(staged, actor_id)
        logger.info(
            "staged_fix_approved",
            extra={"staged_fix_id": str(staged_fix_id), "delta_id": str(delta.id)},
        )
        return delta

    def decline(self, staged_fix_id: UUID, actor_id: UUID, reason: str = "") -> None:
        staged = self._load_pending(staged_fix_id)
        self._decide(staged, StagedFixStatus.DECLINED, actor_id)
        self._audit.record_decision(
            investigation_id=staged.investigation_id,
            decision=FixDecision.DECLINED,
            actor_id=actor_id,
            fix_index=staged.fix_index,
            confidence=staged.confidence,
            reason=reason,
        )
        logger.info(
            "staged_fix_declined",
            extra={"staged_fix_id": str(staged_fix_id), "reason": reason},
        )

    def pending_staged(self, account_id: str) -> tuple[StagedFixSummary, ...]:
        models = self._session.execute(
            select(StagedFixModel)
            .where(
                StagedFixModel.account_id == account_id,
                StagedFixModel.status == StagedFixStatus.PENDING.value,
            )
            .order_by(StagedFixModel.created_at, StagedFixModel.fix_index)
        ).scalars().all()
        summaries = []
        for m in models:
            investigation = self._session.get(InvestigationModel, m.investigation_id)
            summaries.append(
                StagedFixSummary(
                    staged_fix_id=m.id,
                    session_id=m.session_id,
                    investigation_id=m.investigation_id,
                    fix_index=m.fix_index,
                    account_id=m.account_id,
                    confidence=m.confidence,
                    description=investigation.proposed_fixes[m.fix_index].get("description", ""),
                    created_at=m.created_at,
                )
            )
        return tuple(summaries)

    # -- helpers -------------------------------------------------------------

    def _apply(
        self,
        validated: ValidatedFix,
        result: DryRunResult,
        *,
        account_id: str,
        currency: str,
        investigation_id: UUID,
        session_id: UUID | None,
        source: ApprovalSource,
        actor_id: UUID,
    ) -> TransactionDeltaModel:
        outcome = self._materializer.materialize_correction(
            validated.specs,
            account_id=account_id,
            currency=currency,
            investigation_id=investigation_id,
            fix_index=validated.fix_index,
            actor_id=actor_id,
        )
        return self._audit.record_delta(
            investigation_id=investigation_id,
            fix_index=validated.fix_index,
            approval_source=source,
            entry_ids=outcome.entry_ids,
            transaction_ids=outcome.transaction_ids,
            checkpoints_resolved=result.checkpoints_resolved,
            balance_change=result.balance_change,
            actor_id=actor_id,
            session_id=session_id,
        )

    def _account_rows(self, account_id: str) -> dict[int, MaterializationRow]:
        """Row number -> source row of the account; the newest row wins a tie."""
        ids = self._selector.account_source_row_ids(account_id)
        if not ids:
            return {}
        models = self._session.execute(
            select(SourceRowModel)
            .where(SourceRowModel.id.in_(ids))
            .order_by(SourceRowModel.created_at, SourceRowModel.raw_file_id)
        ).scalars()
        return {
            m.row_number: MaterializationRow(
                row_number=m.row_number, values=dict(m.raw_values), source_row_id=m.id
            )
            for m in models
        }

    def _load_pending(self, staged_fix_id: UUID) -> StagedFixModel:
        staged = self._session.execute(
            select(StagedFixModel).where(StagedFixModel.id == staged_fix_id).with_for_update()
        ).scalar_one_or_none()
        if staged is None or staged.status != StagedFixStatus.PENDING:
            raise StagedFixNotFoundError(str(staged_fix_id))
        return staged

    def _supersede_pending(self, approved: StagedFixModel, actor_id: UUID) -> None:
        """Close the other pending fixes of ``approved``'s investigation."""
        siblings = self._session.execute(
            select(StagedFixModel).where(
                StagedFixModel.investigation_id == approved.investigation_id,
                StagedFixModel.status == StagedFixStatus.PENDING.value,
                StagedFixModel.id != approved.id,
            )
        ).scalars().all()
        for sibling in siblings:
            self._decide(sibling, StagedFixStatus.SUPERSEDED, actor_id)
            self._audit.record_decision(
                investigation_id=sibling.investigation_id,
                decision=FixDecision.SUPERSEDED,
                actor_id=actor_id,
                fix_index=sibling.fix_index,
                confidence=sibling.confidence,
                reason=f"fix {approved.fix_index} was approved",
            )
            logger.info(
                "staged_fix_superseded",
                extra={"staged_fix_id": str(sibling.id), "approved_fix_index": approved.fix_index},
            )

    def _decide(self, staged: StagedFixModel, status: StagedFixStatus, actor_id: UUID) -> None:
        staged.status = status.value
        staged.decided_by_id = actor_id
        staged.decided_at = self._clock.now()
        self._session.flush()
