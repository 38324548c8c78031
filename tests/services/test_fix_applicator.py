"""
Fix applicator: validation, dry-run and confidence routing.

Covers:
- Auto-apply at or above 0.95 writes correction entries and a delta
- Staging between 0.70 and 0.95; approve and decline
- Below-threshold fixes and the investigation floor
- Structural, provenance and currency rejections
- Dry-run contradictions against the predicted impact
- Descending-confidence order and supersession
"""

from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import select

from ledger_kernel.exceptions import (
    DoubleEntryViolation,
    FixRejectedError,
    StagedFixNotFoundError,
)
from ledger_kernel.models.ledger import LedgerTransactionModel
from ledger_kernel.models.reconciliation import (
    FixDecision,
    FixDecisionModel,
    StagedFixModel,
    StagedFixStatus,
    TransactionDeltaModel,
)
from ledger_services.assistant import parse_proposed_fix
from ledger_services.reconciliation_service import ReconciliationService


@pytest.fixture
def detect(session, clock, account_id):
    service = ReconciliationService(session, assistant=None, clock=clock)
    return lambda: service.detect(account_id, "USD")


@pytest.fixture
def process(applicator, investigation, actor_id, account_id):
    """Callable: record an investigation of ``payload`` and route its fixes."""

    def _process(payload, currency="USD"):
        recorded = investigation(payload)
        outcome = applicator.process_investigation(
            investigation_id=recorded.model.id,
            response=recorded.response,
            session_id=recorded.session_id,
            account_id=account_id,
            currency=currency,
            actor_id=actor_id,
        )
        return recorded, outcome

    return _process


def decisions_for(session, investigation_id):
    return session.scalars(
        select(FixDecisionModel)
        .where(FixDecisionModel.investigation_id == investigation_id)
        .order_by(FixDecisionModel.fix_index)
    ).all()


class TestAutoApply:
    """Confidence >= 0.95 with a matching dry-run is applied immediately."""

    def test_fee_fix_resolves_two_checkpoints(self, session, process, fixes, detect):
        assert detect().count == 3

        recorded, outcome = process(fixes.response(fixes.fee(0.97)))

        assert outcome.applied
        assert outcome.applied_fix_index == 0
        assert outcome.decisions == (FixDecision.AUTO_APPLIED,)

        delta = session.get(TransactionDeltaModel, outcome.delta_id)
        assert delta.approval_source == "auto"
        assert delta.balance_change == Decimal("-10.00")
        assert len(delta.checkpoints_resolved) == 2
        assert len(delta.resulting_ledger_entry_ids) == 2
        assert delta.session_id == recorded.session_id

        (remaining,) = detect().discrepancies
        assert remaining.effective_date.isoformat() == "2024-01-09"
        assert remaining.delta == Decimal("2.00")

    def test_correction_transaction_records_its_origin(self, session, process, fixes):
        recorded, outcome = process(fixes.response(fixes.fee(0.99)))

        corrections = session.scalars(
            select(LedgerTransactionModel).where(LedgerTransactionModel.origin_kind == "correction")
        ).all()
        (txn,) = corrections
        assert txn.origin_investigation_id == recorded.model.id
        assert txn.transaction_type == "fee"

    def test_auto_apply_is_logged(self, process, fixes, captured_logs):
        process(fixes.response(fixes.fee(0.97)))

        applied = [r for r in captured_logs() if r["message"] == "fix_auto_applied"]
        assert applied and applied[0]["checkpoints_resolved"] == 2


class TestStaging:
    def test_mid_confidence_fix_is_staged_not_applied(self, process, fixes, detect, applicator, account_id):
        _, outcome = process(fixes.response(fixes.fee(0.80)))

        assert not outcome.applied
        assert outcome.decisions == (FixDecision.STAGED,)
        assert len(outcome.staged_fix_ids) == 1
        assert detect().count == 3

        (pending,) = applicator.pending_staged(account_id)
        assert pending.staged_fix_id == outcome.staged_fix_ids[0]
        assert pending.confidence == pytest.approx(0.80)
        assert pending.description == "Missing account fee of 10.00"

    def test_approve_applies_with_manual_source(self, session, process, fixes, detect, applicator, actor_id, account_id):
        recorded, outcome = process(fixes.response(fixes.fee(0.80)))

        delta = applicator.approve(outcome.staged_fix_ids[0], actor_id)

        assert delta.approval_source == "manual"
        assert delta.investigation_id == recorded.model.id
        assert detect().count == 1
        assert applicator.pending_staged(account_id) == ()
        assert [d.decision for d in decisions_for(session, recorded.model.id)] == [
            FixDecision.STAGED,
            FixDecision.APPROVED,
        ]

    def test_decided_fix_cannot_be_approved_again(self, process, fixes, applicator, actor_id):
        _, outcome = process(fixes.response(fixes.fee(0.80)))
        applicator.approve(outcome.staged_fix_ids[0], actor_id)

        with pytest.raises(StagedFixNotFoundError):
            applicator.approve(outcome.staged_fix_ids[0], actor_id)

    def test_approval_supersedes_the_other_staged_fixes(
        self, session, process, fixes, detect, applicator, actor_id, account_id
    ):
        recorded, outcome = process(fixes.response(fixes.fee(0.80), fixes.fee(0.75)))
        first, second = outcome.staged_fix_ids

        applicator.approve(first, actor_id)

        assert session.get(StagedFixModel, second).status == StagedFixStatus.SUPERSEDED
        assert applicator.pending_staged(account_id) == ()
        with pytest.raises(StagedFixNotFoundError):
            applicator.approve(second, actor_id)
        assert detect().count == 1
        assert {(d.fix_index, d.decision) for d in decisions_for(session, recorded.model.id)} == {
            (0, FixDecision.STAGED),
            (0, FixDecision.APPROVED),
            (1, FixDecision.STAGED),
            (1, FixDecision.SUPERSEDED),
        }

    def test_decline_leaves_ledger_untouched(self, session, process, fixes, detect, applicator, actor_id):
        _, outcome = process(fixes.response(fixes.fee(0.80)))
        staged_id = outcome.staged_fix_ids[0]

        applicator.decline(staged_id, actor_id, reason="fee was refunded")

        staged = session.get(StagedFixModel, staged_id)
        assert staged.status == StagedFixStatus.DECLINED
        assert staged.decided_by_id == actor_id
        assert detect().count == 3
        with pytest.raises(StagedFixNotFoundError):
            applicator.decline(staged_id, actor_id)

    def test_unknown_staged_fix(self, applicator, actor_id):
        with pytest.raises(StagedFixNotFoundError):
            applicator.approve(uuid4(), actor_id)

    def test_approval_rechecks_against_current_ledger(self, process, fixes, applicator, actor_id, account_id):
        _, staged = process(fixes.response(fixes.fee(0.80)))
        # The same fee lands through another investigation first.
        process(fixes.response(fixes.fee(0.97)))

        with pytest.raises(FixRejectedError, match="checkpoint"):
            applicator.approve(staged.staged_fix_ids[0], actor_id)
        assert len(applicator.pending_staged(account_id)) == 1


class TestThresholds:
    def test_below_stage_threshold_goes_to_manual_review(self, session, process, fixes, detect):
        recorded, outcome = process(fixes.response(fixes.fee(0.65)))

        assert outcome.decisions == (FixDecision.BELOW_THRESHOLD,)
        (decision,) = decisions_for(session, recorded.model.id)
        assert decision.error_code == "DISCREPANCY_UNRESOLVED"
        assert detect().count == 3

    def test_investigation_below_floor_records_one_decision(self, session, process, fixes):
        recorded, outcome = process(fixes.response(fixes.fee(0.50), fixes.fee(0.40, amount="9.00")))

        assert outcome.decisions == (FixDecision.NEEDS_MANUAL_REVIEW,)
        (decision,) = decisions_for(session, recorded.model.id)
        assert decision.fix_index is None
        assert decision.confidence == pytest.approx(0.50)

    def test_no_fixes_needs_manual_review(self, session, process, fixes):
        recorded, outcome = process(fixes.response(needs_more_data=True))

        assert outcome.decisions == (FixDecision.NEEDS_MANUAL_REVIEW,)
        (decision,) = decisions_for(session, recorded.model.id)
        assert decision.reason == "no fix proposed"


class TestValidation:
    def validate(self, applicator, payload, account_id, currency="USD"):
        return applicator.validate(
            parse_proposed_fix(payload),
            fix_index=0,
            account_id=account_id,
            currency=currency,
            investigation_id=uuid4(),
        )

    def test_valid_fix_builds_balanced_plans(self, applicator, fixes, account_id, gapped_ledger):
        validated = self.validate(applicator, fixes.fee(), account_id)

        (plan,) = validated.plans
        assert plan.total_debits == plan.total_credits == Decimal("10.00")
        assert len(plan.source_row_ids) == 1

    def test_unknown_source_row(self, applicator, fixes, account_id, gapped_ledger):
        with pytest.raises(FixRejectedError, match=r"\[99\]"):
            self.validate(applicator, fixes.fee(rows=(99,)), account_id)

    def test_cash_in_wrong_currency(self, applicator, fixes, account_id, gapped_ledger):
        with pytest.raises(FixRejectedError, match="EUR"):
            self.validate(applicator, fixes.fee(currency="EUR"), account_id)

    def test_unbalanced_lines(self, applicator, fixes, account_id, gapped_ledger):
        payload = fixes.fee()
        payload["transactions"][0]["lines"][1]["amount"] = "9.00"

        with pytest.raises(DoubleEntryViolation):
            self.validate(applicator, payload, account_id)

    @pytest.mark.parametrize(
        "mutate, fragment",
        [
            (lambda p: p.update(transactions=[]), "no transactions"),
            (lambda p: p["transactions"][0].update(source_row_numbers=[]), "no source rows"),
            (lambda p: p["transactions"][0].update(lines=[]), "no lines"),
            (lambda p: p["transactions"][0]["lines"][0].update(amount="-10.00"), "non-positive"),
        ],
    )
    def test_structural_problems(self, applicator, fixes, account_id, gapped_ledger, mutate, fragment):
        payload = fixes.fee()
        mutate(payload)

        with pytest.raises(FixRejectedError, match=fragment):
            self.validate(applicator, payload, account_id)

    def test_invalid_fix_is_recorded_not_raised(self, session, process, fixes, detect):
        recorded, outcome = process(fixes.response(fixes.fee(0.97, rows=(99,))))

        assert outcome.decisions == (FixDecision.REJECTED_INVALID,)
        (decision,) = decisions_for(session, recorded.model.id)
        assert decision.error_code == "FIX_REJECTED"
        assert detect().count == 3


class TestDryRunGate:
    @pytest.mark.parametrize(
        "overrides, fragment",
        [
            ({"checkpoints_resolved": 3}, "checkpoint(s)"),
            ({"balance_change": "-5.00"}, "balance change"),
        ],
    )
    def test_contradicted_prediction_is_rejected(self, session, process, fixes, detect, overrides, fragment):
        recorded, outcome = process(fixes.response(fixes.fee(0.99, **overrides)))

        assert outcome.decisions == (FixDecision.REJECTED_DRY_RUN,)
        (decision,) = decisions_for(session, recorded.model.id)
        assert fragment in decision.reason
        assert decision.dry_run["balance_change"] == "-10.00"
        assert detect().count == 3

    def test_duplicate_fix_fails_its_dry_run(self, process, fixes, detect):
        process(fixes.response(fixes.fee(0.97)))

        _, second = process(fixes.response(fixes.fee(0.97)))

        assert second.decisions == (FixDecision.REJECTED_DRY_RUN,)
        assert detect().count == 1


class TestOrdering:
    def test_highest_confidence_fix_is_tried_first(self, session, process, fixes):
        recorded, outcome = process(fixes.response(fixes.fee(0.80), fixes.fee(0.97)))

        assert outcome.applied_fix_index == 1
        assert outcome.staged_fix_ids == ()
        by_index = {d.fix_index: d.decision for d in decisions_for(session, recorded.model.id)}
        assert by_index == {0: FixDecision.SUPERSEDED, 1: FixDecision.AUTO_APPLIED}

    def test_rejected_fix_falls_through_to_the_next(self, process, fixes, detect):
        _, outcome = process(fixes.response(fixes.fee(0.99, rows=(99,)), fixes.fee(0.96)))

        assert outcome.decisions == (FixDecision.REJECTED_INVALID, FixDecision.AUTO_APPLIED)
        assert outcome.applied_fix_index == 1
        assert detect().count == 1
