"""ORM models.  Importing this package registers every table on Base.metadata."""

from ledger_kernel.models.checkpoint import BalanceCheckpointModel
from ledger_kernel.models.ledger import (
    LedgerEntryModel,
    LedgerTransactionModel,
    ledger_entry_source_rows,
)
from ledger_kernel.models.parse_plan import ParsePlanModel, ParsePlanVersionModel
from ledger_kernel.models.parse_run import ParseRunModel, ParseRunStatus
from ledger_kernel.models.raw_file import RawFileModel, SourceRowModel
from ledger_kernel.models.reconciliation import (
    ApprovalSource,
    FixDecision,
    FixDecisionModel,
    InvestigationModel,
    InvestigationOutcome,
    InvestigationStatus,
    ReconciliationSessionModel,
    SessionState,
    StagedFixModel,
    StagedFixStatus,
    TransactionDeltaModel,
    derive_investigation_outcome,
)

__all__ = [
    "BalanceCheckpointModel",
    "LedgerEntryModel",
    "LedgerTransactionModel",
    "ledger_entry_source_rows",
    "ParsePlanModel",
    "ParsePlanVersionModel",
    "ParseRunModel",
    "ParseRunStatus",
    "RawFileModel",
    "SourceRowModel",
    "ApprovalSource",
    "FixDecision",
    "FixDecisionModel",
    "InvestigationModel",
    "InvestigationOutcome",
    "InvestigationStatus",
    "ReconciliationSessionModel",
    "SessionState",
    "StagedFixModel",
    "StagedFixStatus",
    "TransactionDeltaModel",
    "derive_investigation_outcome",
]
