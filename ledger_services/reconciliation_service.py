"""
ledger_services.reconciliation_service -- The investigate / apply loop.

Responsibility:
    Reconciles an account's calculated cash balance against the balances
    its source files reported.  Each iteration detects discrepancies, asks
    the Assistant to investigate each one, routes the proposed fixes
    through the FixApplicator, and detects again.

Architecture position:
    Services -- orchestrator over the detector engine, the Assistant
    gateway, the fix applicator and the audit trail writer.

Session state machine:

    pending --> investigating --> applying --+--> converged
                    ^                        |
                    +------------------------+--> partially_reconciled

    converged             no discrepancy left (iterations = passes run)
    partially_reconciled  max_iterations reached, or a pass applied no fix

Invariants enforced:
    - At most one active session per account: a pre-check plus the unique
      ``active_account_id`` column, cleared when the session ends.
    - Never raises for an unresolved or non-converged account; callers
      opt in with ``ReconciliationResult.raise_for_status()``.
    - Assistant timeouts and malformed replies are recorded as failed
      investigations and the session continues.

Failure modes:
    - SessionInProgressError: another session is active for the account.
    - ValueError: unknown thoroughness preset.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ledger_config.schema import EngineSettings
from ledger_engines.reconciliation.detector import (
    DetectionResult,
    Discrepancy,
    detect_discrepancies,
)
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.exceptions import (
    DiscrepancyUnresolved,
    ReconciliationNonConvergence,
    SessionInProgressError,
)
from ledger_kernel.logging_config import LogContext, get_logger
from ledger_kernel.models.reconciliation import ReconciliationSessionModel, SessionState
from ledger_kernel.selectors.ledger_selector import LedgerSelector
from ledger_services.assistant import Assistant, AssistantGateway, InvestigationRequest
from ledger_services.audit_trail import AuditTrailService, iteration_summary
from ledger_services.fix_applicator import FixApplicator

logger = get_logger("services.reconciliation")

REASON_CONVERGED = "converged"
REASON_MAX_ITERATIONS = "max_iterations"
REASON_NO_FIXES_APPLIED = "no_fixes_applied"


@dataclass(frozen=True)
class IterationReport:
    iteration: int
    discrepancies_before: int
    investigated: int
    applied: int
    staged: int
    failed: int


@dataclass(frozen=True)
class ReconciliationResult:
    session_id: UUID
    account_id: str
    state: SessionState
    iterations: int
    initial_discrepancy_count: int
    remaining: tuple[Discrepancy, ...]
    fixes_applied: int
    fixes_staged: int
    termination_reason: str
    reports: tuple[IterationReport, ...] = ()

    @property
    def converged(self) -> bool:
        return self.state == SessionState.CONVERGED

    @property
    def remaining_count(self) -> int:
        return len(self.remaining)

    def raise_for_status(self) -> None:
        """
        Raise if the account is not fully reconciled.

        Raises:
            ReconciliationNonConvergence: max iterations were exhausted.
            DiscrepancyUnresolved: the loop stopped for any other reason.
        """
        if self.converged:
            return
        if self.termination_reason == REASON_MAX_ITERATIONS:
            raise ReconciliationNonConvergence(
                str(self.session_id), self.iterations, self.remaining_count
            )
        raise DiscrepancyUnresolved(self.account_id, self.remaining_count)


class ReconciliationService:
    """
    Runs reconciliation sessions for one account at a time.

    Contract:
        Flush-only; the caller commits.  The Assistant is called through an
        ``AssistantGateway`` with the configured timeout.
    """

    def __init__(
        self,
        session: Session,
        assistant: Assistant,
        clock: Clock | None = None,
        settings: EngineSettings | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._settings = settings or EngineSettings()
        self._gateway = AssistantGateway(
            assistant, timeout_seconds=self._settings.reconciliation.assistant_timeout_seconds
        )
        self._selector = LedgerSelector(session)
        self._audit = AuditTrailService(session, self._clock)
        self._applicator = FixApplicator(
            session, clock=self._clock, settings=self._settings, audit=self._audit
        )

    @property
    def applicator(self) -> FixApplicator:
        return self._applicator

    def detect(self, account_id: str, currency: str) -> DetectionResult:
        """Recompute the account's discrepancies from the current ledger."""
        severity = self._settings.severity
        result = detect_discrepancies(
            account_id=account_id,
            currency=currency,
            entries=self._selector.cash_entries(account_id, currency),
            checkpoints=self._selector.checkpoints_for_account(account_id),
            transactions=self._selector.transactions_for_account(account_id),
            tolerance=self._settings.tolerance.amount,
            low_max=severity.low_max,
            medium_max=severity.medium_max,
        )
        for d in result.discrepancies:
            logger.debug(
                "discrepancy_detected",
                extra={
                    "account_id": account_id,
                    "kind": d.kind.value,
                    "effective_date": d.effective_date,
                    "delta": d.delta,
                    "severity": d.severity.value,
                },
            )
        logger.info(
            "discrepancies_detected",
            extra={
                "account_id": account_id,
                "count": result.count,
                "checkpoints_checked": result.checkpoints_checked,
                "max_abs_delta": result.max_abs_delta,
            },
        )
        return result

    def reconcile(
        self,
        account_id: str,
        currency: str,
        actor_id: UUID,
        thoroughness: str | None = None,
        max_iterations: int | None = None,
    ) -> ReconciliationResult:
        window_days = self._settings.reconciliation.window_days(thoroughness)
        if max_iterations is None:
            limit = self._settings.reconciliation.max_iterations
        elif max_iterations < 1:
            raise ValueError(f"max_iterations must be at least 1, got {max_iterations}")
        else:
            limit = max_iterations
        model = self._open_session(account_id, currency, limit, actor_id)

        with LogContext.bind(session_id=model.id, actor_id=actor_id):
            logger.info(
                "reconciliation_session_started",
                extra={
                    "account_id": account_id,
                    "max_iterations": limit,
                    "window_days": window_days,
                },
            )
            detection = self.detect(account_id, currency)
            model.initial_discrepancy_count = detection.count
            model.initial_max_delta = detection.max_abs_delta
            self._session.flush()

            reports: list[IterationReport] = []
            while True:
                if detection.count == 0:
                    return self._finish(
                        model, SessionState.CONVERGED, REASON_CONVERGED, detection, reports
                    )
                if model.iterations >= limit:
                    return self._finish(
                        model,
                        SessionState.PARTIALLY_RECONCILED,
                        REASON_MAX_ITERATIONS,
                        detection,
                        reports,
                    )

                report = self._iterate(model, detection, currency, window_days, actor_id)
                reports.append(report)
                detection = self.detect(account_id, currency)
                if report.applied == 0 and detection.count > 0:
                    return self._finish(
                        model,
                        SessionState.PARTIALLY_RECONCILED,
                        REASON_NO_FIXES_APPLIED,
                        detection,
                        reports,
                    )

    # -- loop ----------------------------------------------------------------

    def _iterate(
        self,
        model: ReconciliationSessionModel,
        detection: DetectionResult,
        currency: str,
        window_days: int,
        actor_id: UUID,
    ) -> IterationReport:
        model.iterations += 1
        iteration = model.iterations
        model.state = SessionState.INVESTIGATING.value
        self._session.flush()

        applied = staged = failed = 0
        window = timedelta(days=window_days)
        for discrepancy in detection.discrepancies:
            start = discrepancy.effective_date - window
            end = discrepancy.effective_date + window
            request = InvestigationRequest(
                account_id=model.account_id,
                currency=currency,
                discrepancy=discrepancy,
                window_start=start,
                window_end=end,
                source_rows=self._selector.source_rows_in_window(model.account_id, start, end),
                transactions=self._selector.transactions_for_account(
                    model.account_id, start, end
                ),
            )
            reply = self._gateway.investigate(request)
            investigation = self._audit.record_investigation(
                session_id=model.id,
                iteration=iteration,
                discrepancy=discrepancy,
                reply=reply,
                actor_id=actor_id,
            )
            model.investigations_run += 1
            if not reply.ok:
                failed += 1
                continue

            model.state = SessionState.APPLYING.value
            outcome = self._applicator.process_investigation(
                investigation_id=investigation.id,
                response=reply.response,
                session_id=model.id,
                account_id=model.account_id,
                currency=currency,
                actor_id=actor_id,
            )
            if outcome.applied:
                applied += 1
            staged += len(outcome.staged_fix_ids)
            model.state = SessionState.INVESTIGATING.value

        model.fixes_applied += applied
        model.fixes_staged += staged
        report = IterationReport(
            iteration=iteration,
            discrepancies_before=detection.count,
            investigated=len(detection.discrepancies),
            applied=applied,
            staged=staged,
            failed=failed,
        )
        model.iteration_log = [
            *model.iteration_log,
            iteration_summary(
                iteration=iteration,
                discrepancies_before=detection.count,
                investigated=report.investigated,
                applied=applied,
                staged=staged,
                failed=failed,
            ),
        ]
        self._session.flush()
        logger.info(
            "reconciliation_iteration_completed",
            extra={
                "iteration": iteration,
                "discrepancies_before": detection.count,
                "applied": applied,
                "staged": staged,
                "failed": failed,
            },
        )
        return report

    # -- session lifecycle ---------------------------------------------------

    def _open_session(
        self, account_id: str, currency: str, max_iterations: int, actor_id: UUID
    ) -> ReconciliationSessionModel:
        active = self._session.execute(
            select(ReconciliationSessionModel.id).where(
                ReconciliationSessionModel.active_account_id == account_id
            )
        ).scalar_one_or_none()
        if active is not None:
            logger.warning(
                "reconciliation_session_rejected",
                extra={"account_id": account_id, "active_session_id": str(active)},
            )
            raise SessionInProgressError(account_id, str(active))

        model = ReconciliationSessionModel(
            account_id=account_id,
            currency=currency,
            active_account_id=account_id,
            state=SessionState.PENDING.value,
            iterations=0,
            max_iterations=max_iterations,
            iteration_log=[],
            started_at=self._clock.now(),
            created_by_id=actor_id,
        )
        try:
            with self._session.begin_nested():
                self._session.add(model)
                self._session.flush()
        except IntegrityError:
            logger.warning(
                "reconciliation_session_rejected",
                extra={"account_id": account_id, "active_session_id": None},
            )
            raise SessionInProgressError(account_id) from None
        return model

    def _finish(
        self,
        model: ReconciliationSessionModel,
        state: SessionState,
        reason: str,
        detection: DetectionResult,
        reports: list[IterationReport],
    ) -> ReconciliationResult:
        model.state = state.value
        model.termination_reason = reason
        model.active_account_id = None
        model.final_discrepancy_count = detection.count
        model.final_max_delta = detection.max_abs_delta
        model.completed_at = self._clock.now()
        self._session.flush()

        log = logger.info if state == SessionState.CONVERGED else logger.warning
        log(
            "reconciliation_session_finished",
            extra={
                "account_id": model.account_id,
                "state": state.value,
                "termination_reason": reason,
                "iterations": model.iterations,
                "remaining": detection.count,
                "fixes_applied": model.fixes_applied,
                "fixes_staged": model.fixes_staged,
            },
        )
        return ReconciliationResult(
            session_id=model.id,
            account_id=model.account_id,
            state=state,
            iterations=model.iterations,
            initial_discrepancy_count=model.initial_discrepancy_count or 0,
            remaining=detection.discrepancies,
            fixes_applied=model.fixes_applied,
            fixes_staged=model.fixes_staged,
            termination_reason=reason,
            reports=tuple(reports),
        )
