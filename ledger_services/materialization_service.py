"""
ledger_services.materialization_service -- Persist transaction plans as ledger lines.

Responsibility:
    Writes the transaction plans built by ``ledger_engines.materialization``
    as LedgerTransaction / LedgerEntry rows with their source-row links,
    writes balance checkpoints, and materializes corrective transactions
    from applied fixes.

Architecture position:
    Services -- imperative shell over the pure materialization engine and
    the kernel models.  Flush-only; the caller owns the transaction (parse
    runs wrap each call in a chunk SAVEPOINT).

Invariants enforced:
    - Append-only: existing transactions are never touched.  A correction is
      a new transaction with ``origin_kind = "correction"``.
    - Every line links to at least one existing source row.
    - Debits equal credits for every transaction written.
    - A plan whose fingerprint already exists is skipped, so replaying a
      commit run leaves the ledger unchanged.
    - A source row already cited by another transaction flags the new one
      ``duplicate_row_usage``; it is surfaced, never resolved here.

Failure modes:
    - DoubleEntryViolation: a plan's lines do not balance.
    - ProvenanceIntegrityError: a plan cites no source row, or a row that
      does not exist.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger_engines.materialization import (
    CorrectionSpec,
    TransactionPlan,
    build_correction,
)
from ledger_engines.reconciliation.checkpoints import CheckpointCandidate
from ledger_kernel.domain.amounts import DEFAULT_TOLERANCE
from ledger_kernel.domain.dtos import TransactionFlag
from ledger_kernel.exceptions import DoubleEntryViolation, ProvenanceIntegrityError
from ledger_kernel.logging_config import get_logger
from ledger_kernel.models.checkpoint import BalanceCheckpointModel
from ledger_kernel.models.ledger import LedgerEntryModel, LedgerTransactionModel
from ledger_kernel.models.raw_file import SourceRowModel
from ledger_kernel.selectors.ledger_selector import LedgerSelector
from ledger_kernel.services.base import BaseService

logger = get_logger("services.materialization")


@dataclass(frozen=True)
class MaterializationOutcome:
    transaction_ids: tuple[UUID, ...] = ()
    entry_ids: tuple[UUID, ...] = ()
    skipped: int = 0
    duplicate_row_usage: int = 0

    @property
    def created(self) -> int:
        return len(self.transaction_ids)


def check_balanced(plan: TransactionPlan, tolerance: Decimal = DEFAULT_TOLERANCE) -> None:
    """Raise DoubleEntryViolation unless debits equal credits within tolerance."""
    debits, credits = plan.total_debits, plan.total_credits
    if abs(debits - credits) > tolerance:
        raise DoubleEntryViolation(str(debits), str(credits), str(tolerance))


class LedgerMaterializationService(BaseService):
    """Writes transaction plans, checkpoints and corrections."""

    def __init__(self, session: Session, tolerance: Decimal = DEFAULT_TOLERANCE):
        super().__init__(session)
        self._tolerance = tolerance
        self._selector = LedgerSelector(session)

    def write_plans(
        self,
        plans: Sequence[TransactionPlan],
        *,
        actor_id: UUID,
        origin_run_id: UUID | None = None,
        origin_kind: str = "import",
        origin_investigation_id: UUID | None = None,
    ) -> MaterializationOutcome:
        txn_ids: list[UUID] = []
        entry_ids: list[UUID] = []
        skipped = 0
        duplicates = 0

        for plan in plans:
            check_balanced(plan, self._tolerance)
            fingerprint = plan.fingerprint
            if self._selector.fingerprint_exists(fingerprint):
                skipped += 1
                logger.debug(
                    "transaction_already_materialized",
                    extra={"fingerprint": fingerprint, "row_number": plan.origin_row_number},
                )
                continue

            rows = self._load_rows(plan, fingerprint)
            flags = [f.value for f in plan.flags]
            # Corrections cite rows an import already used; only imports are checked.
            in_use = (
                self._selector.transactions_using_rows(r.id for r in rows)
                if origin_kind == "import"
                else {}
            )
            if in_use:
                flags.append(TransactionFlag.DUPLICATE_ROW_USAGE.value)
                duplicates += 1
                logger.warning(
                    "duplicate_row_usage",
                    extra={
                        "account_id": plan.account_id,
                        "row_numbers": sorted(r.row_number for r in rows if r.id in in_use),
                        "existing_transactions": sorted(
                            str(t) for ids in in_use.values() for t in ids
                        ),
                    },
                )

            txn = LedgerTransactionModel(
                account_id=plan.account_id,
                effective_date=plan.effective_date,
                transaction_type=plan.transaction_type.value,
                description=plan.description,
                csv_amount=plan.csv_amount,
                entry_sum=plan.entry_sum,
                amount_discrepancy=plan.amount_discrepancy,
                fingerprint=fingerprint,
                origin_kind=origin_kind,
                origin_run_id=origin_run_id,
                origin_investigation_id=origin_investigation_id,
                origin_row_number=plan.origin_row_number,
                flags=flags,
                created_by_id=actor_id,
            )
            self.session.add(txn)
            self.session.flush()

            for line in plan.lines:
                entry = LedgerEntryModel(
                    transaction=txn,
                    effective_date=plan.effective_date,
                    account_id=line.account_id,
                    asset_id=line.asset_id,
                    side=line.side.value,
                    amount=line.amount,
                    currency=plan.currency,
                    quantity=line.quantity,
                    transaction_type=plan.transaction_type.value,
                    csv_amount=plan.csv_amount,
                    amount_discrepancy=plan.amount_discrepancy,
                    origin_run_id=origin_run_id,
                    origin_row_number=plan.origin_row_number,
                    line_seq=line.line_seq,
                    source_rows=list(rows),
                    created_by_id=actor_id,
                )
                self.session.add(entry)
                self.session.flush()
                entry_ids.append(entry.id)
            txn_ids.append(txn.id)

        if txn_ids or skipped:
            logger.info(
                "transactions_materialized",
                extra={
                    "transactions_created": len(txn_ids),
                    "skipped": skipped,
                    "origin_kind": origin_kind,
                    "duplicate_row_usage": duplicates,
                },
            )
        return MaterializationOutcome(
            transaction_ids=tuple(txn_ids),
            entry_ids=tuple(entry_ids),
            skipped=skipped,
            duplicate_row_usage=duplicates,
        )

    def materialize_correction(
        self,
        specs: Sequence[CorrectionSpec],
        *,
        account_id: str,
        currency: str,
        investigation_id: UUID,
        fix_index: int,
        actor_id: UUID,
    ) -> MaterializationOutcome:
        """Write the corrective transactions of one applied fix as new entries."""
        plans = [
            build_correction(
                spec,
                account_id=account_id,
                currency=currency,
                salt=f"correction:{investigation_id}:{fix_index}:{n}",
            )
            for n, spec in enumerate(specs)
        ]
        return self.write_plans(
            plans,
            actor_id=actor_id,
            origin_kind="correction",
            origin_investigation_id=investigation_id,
        )

    def write_checkpoints(
        self,
        candidates: Sequence[CheckpointCandidate],
        *,
        account_id: str,
        raw_file_id: UUID,
        actor_id: UUID,
        origin_run_id: UUID | None = None,
    ) -> int:
        """Persist checkpoints not yet recorded for their source row; returns the count written."""
        row_ids = [c.source_row_id for c in candidates if c.source_row_id is not None]
        existing = set(
            self.session.scalars(
                select(BalanceCheckpointModel.source_row_id).where(
                    BalanceCheckpointModel.account_id == account_id,
                    BalanceCheckpointModel.source_row_id.in_(row_ids),
                )
            )
        ) if row_ids else set()

        written = 0
        for candidate in candidates:
            if candidate.source_row_id is None or candidate.source_row_id in existing:
                continue
            self.session.add(
                BalanceCheckpointModel(
                    account_id=account_id,
                    raw_file_id=raw_file_id,
                    source_row_id=candidate.source_row_id,
                    effective_date=candidate.effective_date,
                    row_number=candidate.row_number,
                    csv_balance=candidate.csv_balance,
                    balance_text=candidate.balance_text,
                    origin_run_id=origin_run_id,
                    created_by_id=actor_id,
                )
            )
            written += 1
        self.session.flush()
        if written:
            logger.info(
                "checkpoints_written",
                extra={"account_id": account_id, "count": written},
            )
        return written

    def _load_rows(self, plan: TransactionPlan, fingerprint: str) -> list[SourceRowModel]:
        ids = list(dict.fromkeys(plan.source_row_ids))
        if not ids:
            raise ProvenanceIntegrityError(
                "LedgerTransaction", fingerprint, "transaction cites no source rows"
            )
        rows = list(
            self.session.scalars(select(SourceRowModel).where(SourceRowModel.id.in_(ids)))
        )
        missing = set(ids) - {r.id for r in rows}
        if missing:
            raise ProvenanceIntegrityError(
                "LedgerTransaction",
                fingerprint,
                f"cited source rows do not exist: {sorted(str(m) for m in missing)}",
            )
        return sorted(rows, key=lambda r: r.row_number)
