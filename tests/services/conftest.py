"""
Fixtures for the reconciliation service tests.

Provides:
- ``fixes``: builders for Assistant fix payloads against the gapped
  brokerage statement (a missing $10.00 fee on 2024-01-05 and $2.00 of
  missing interest on 2024-01-09)
- ``gapped_ledger``: the gapped statement committed through a plan
- ``investigation``: records an investigation for the first open
  discrepancy and returns it with its parsed response
- ``ScriptedAssistant`` instances via ``scripted_assistant``
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import pytest

from ledger_kernel.models.reconciliation import (
    InvestigationModel,
    ReconciliationSessionModel,
    SessionState,
)
from ledger_services.assistant import (
    AssistantReply,
    InvestigationRequest,
    InvestigationResponse,
    parse_investigation_response,
)
from ledger_services.audit_trail import AuditTrailService
from ledger_services.fix_applicator import FixApplicator
from ledger_services.reconciliation_service import ReconciliationService


class FixBuilder:
    """Assistant-shaped fix payloads for brokerage:1234."""

    def __init__(self, account_id: str):
        self.account_id = account_id

    def fee(
        self,
        confidence: float = 0.97,
        *,
        amount: str = "10.00",
        on: str = "2024-01-05",
        rows: tuple[int, ...] = (3,),
        balance_change: str | None = None,
        checkpoints_resolved: int = 2,
        currency: str = "USD",
    ) -> dict[str, Any]:
        return {
            "description": f"Missing account fee of {amount}",
            "confidence": confidence,
            "reasoning": "Reported balance drops by the fee amount with no matching row.",
            "assumptions": ["The fee posted on the dividend date"],
            "supporting_evidence": [f"row {n}" for n in rows],
            "transactions": [
                {
                    "date": on,
                    "description": "Account maintenance fee",
                    "transaction_type": "fee",
                    "source_row_numbers": list(rows),
                    "lines": [
                        {"side": "credit", "account_id": self.account_id, "asset_id": currency, "amount": amount},
                        {"side": "debit", "account_id": "expense:fees", "asset_id": currency, "amount": amount},
                    ],
                }
            ],
            "predicted_impact": {
                "balance_change": balance_change or f"-{amount}",
                "transactions_created": 1,
                "checkpoints_resolved": checkpoints_resolved,
                "warnings": [],
            },
        }

    def interest(self, confidence: float = 0.96) -> dict[str, Any]:
        return {
            "description": "Missing interest credit of 2.00",
            "confidence": confidence,
            "reasoning": "Balance is 2.00 higher than the running total.",
            "transactions": [
                {
                    "date": "2024-01-09",
                    "description": "Cash sweep interest",
                    "transaction_type": "interest",
                    "source_row_numbers": [5],
                    "lines": [
                        {"side": "debit", "account_id": self.account_id, "asset_id": "USD", "amount": "2.00"},
                        {"side": "credit", "account_id": "income:interest", "asset_id": "USD", "amount": "2.00"},
                    ],
                }
            ],
            "predicted_impact": {
                "balance_change": "2.00",
                "transactions_created": 1,
                "checkpoints_resolved": 1,
            },
        }

    @staticmethod
    def response(*fixes: dict[str, Any], needs_more_data: bool = False) -> dict[str, Any]:
        return {
            "hypothesis": "Rows are missing from the export",
            "evidence_analysis": "The reported balance diverges on a single date.",
            "proposed_fixes": list(fixes),
            "uncertainties": [] if fixes else ["No candidate rows in the window"],
            "needs_more_data": needs_more_data,
        }


@pytest.fixture
def fixes(account_id) -> FixBuilder:
    return FixBuilder(account_id)


@pytest.fixture
def gapped_ledger(ingest_csv, gapped_statement):
    return ingest_csv(gapped_statement)


@pytest.fixture
def applicator(session, clock) -> FixApplicator:
    return FixApplicator(session, clock=clock)


@pytest.fixture
def audit(session, clock) -> AuditTrailService:
    return AuditTrailService(session, clock)


@dataclass(frozen=True)
class RecordedInvestigation:
    model: InvestigationModel
    response: InvestigationResponse
    session_id: Any


@pytest.fixture
def investigation(session, clock, audit, actor_id, account_id, gapped_ledger):
    """
    Callable: record an investigation of the account's first discrepancy.

    Every call opens a new (inactive) reconciliation session so the
    investigation has a parent row.
    """
    detector = ReconciliationService(session, assistant=None, clock=clock)

    def _record(payload: dict[str, Any]) -> RecordedInvestigation:
        recon = ReconciliationSessionModel(
            account_id=account_id,
            currency="USD",
            state=SessionState.INVESTIGATING.value,
            max_iterations=3,
            iteration_log=[],
            started_at=clock.now(),
            created_by_id=actor_id,
        )
        session.add(recon)
        session.flush()
        response = parse_investigation_response(payload)
        model = audit.record_investigation(
            session_id=recon.id,
            iteration=1,
            discrepancy=detector.detect(account_id, "USD").discrepancies[0],
            reply=AssistantReply(raw_text=None, response=response),
            actor_id=actor_id,
        )
        return RecordedInvestigation(model=model, response=response, session_id=recon.id)

    return _record


class ScriptedAssistant:
    """
    Answers investigations from a function of the request.

    ``script(request)`` returns the reply (JSON text or a mapping); every
    request is kept in ``requests``.
    """

    def __init__(self, script: Callable[[InvestigationRequest], Any]):
        self._script = script
        self.requests: list[InvestigationRequest] = []

    def investigate(self, request: InvestigationRequest):
        self.requests.append(request)
        return self._script(request)


@pytest.fixture
def scripted_assistant():
    return ScriptedAssistant
