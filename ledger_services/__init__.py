"""
ledger_services -- Package init and public API.

Responsibility:
    Stateful orchestration that composes the pure engines with database
    sessions, the clock and the external Assistant: ledger materialization,
    the fix applicator, the reconciliation loop and the audit trail writer.

Architecture position:
    Services -- imperative shell over engines + kernel.

    Dependency direction:
        ledger_services/  -> ledger_engines/, ledger_kernel/, ledger_config/
        ledger_ingestion/ -> ledger_services.materialization_service
        ledger_engines/   -> ledger_services/ (FORBIDDEN)
        ledger_kernel/    -> ledger_services/ (FORBIDDEN)
"""

from ledger_services.assistant import (
    Assistant,
    AssistantGateway,
    AssistantReply,
    InvestigationRequest,
    InvestigationResponse,
    ProposedFix,
    ProposedLine,
    ProposedTransaction,
    parse_investigation_response,
)
from ledger_services.audit_trail import AuditTrailService
from ledger_services.fix_applicator import FixApplicator, FixOutcome, StagedFixSummary
from ledger_services.materialization_service import (
    LedgerMaterializationService,
    MaterializationOutcome,
)
from ledger_services.reconciliation_service import (
    IterationReport,
    ReconciliationResult,
    ReconciliationService,
)

__all__ = [
    "Assistant",
    "AssistantGateway",
    "AssistantReply",
    "InvestigationRequest",
    "InvestigationResponse",
    "ProposedFix",
    "ProposedLine",
    "ProposedTransaction",
    "parse_investigation_response",
    "AuditTrailService",
    "FixApplicator",
    "FixOutcome",
    "StagedFixSummary",
    "LedgerMaterializationService",
    "MaterializationOutcome",
    "IterationReport",
    "ReconciliationResult",
    "ReconciliationService",
]
