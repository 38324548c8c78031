"""
Module: ledger_kernel.selectors.ledger_selector
Responsibility: Read-only queries over ledger transactions, lines,
    checkpoints and source rows, returned as frozen DTOs.
Architecture position: Kernel > Selectors.

Balances are never stored: the discrepancy detector derives the running
balance from the lines returned here on every pass.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import date
from uuid import UUID

from sqlalchemy import or_, select

from ledger_kernel.domain.dtos import (
    CheckpointView,
    EntrySide,
    LedgerEntryView,
    LedgerTransactionView,
    SourceRowView,
)
from ledger_kernel.models.checkpoint import BalanceCheckpointModel
from ledger_kernel.models.ledger import (
    LedgerEntryModel,
    LedgerTransactionModel,
    ledger_entry_source_rows,
)
from ledger_kernel.models.raw_file import SourceRowModel
from ledger_kernel.selectors.base import BaseSelector


def entry_to_view(model: LedgerEntryModel) -> LedgerEntryView:
    return LedgerEntryView(
        id=model.id,
        transaction_id=model.transaction_id,
        effective_date=model.effective_date,
        account_id=model.account_id,
        asset_id=model.asset_id,
        side=EntrySide(model.side),
        amount=model.amount,
        currency=model.currency,
        transaction_type=model.transaction_type,
        origin_row_number=model.origin_row_number,
        line_seq=model.line_seq,
        source_row_ids=tuple(row.id for row in model.source_rows),
        origin_run_id=model.origin_run_id,
        quantity=model.quantity,
        csv_amount=model.csv_amount,
        amount_discrepancy=model.amount_discrepancy,
    )


def transaction_to_view(model: LedgerTransactionModel) -> LedgerTransactionView:
    entries = tuple(entry_to_view(e) for e in model.entries)
    row_ids: dict[UUID, None] = {}
    for entry in entries:
        for row_id in entry.source_row_ids:
            row_ids.setdefault(row_id, None)
    return LedgerTransactionView(
        id=model.id,
        account_id=model.account_id,
        effective_date=model.effective_date,
        transaction_type=model.transaction_type,
        description=model.description,
        csv_amount=model.csv_amount,
        entry_sum=model.entry_sum,
        origin_row_number=model.origin_row_number,
        entries=entries,
        source_row_ids=tuple(row_ids),
        flags=tuple(model.flags or ()),
        amount_discrepancy=model.amount_discrepancy,
    )


def checkpoint_to_view(model: BalanceCheckpointModel) -> CheckpointView:
    return CheckpointView(
        id=model.id,
        account_id=model.account_id,
        effective_date=model.effective_date,
        row_number=model.row_number,
        csv_balance=model.csv_balance,
        source_row_id=model.source_row_id,
    )


def source_row_to_view(model: SourceRowModel) -> SourceRowView:
    return SourceRowView(
        id=model.id,
        raw_file_id=model.raw_file_id,
        row_number=model.row_number,
        raw_values=dict(model.raw_values),
    )


class LedgerSelector(BaseSelector):
    """Ledger, checkpoint and source-row reads for one account at a time."""

    def transactions_for_account(
        self,
        account_id: str,
        start: date | None = None,
        end: date | None = None,
    ) -> tuple[LedgerTransactionView, ...]:
        stmt = select(LedgerTransactionModel).where(
            LedgerTransactionModel.account_id == account_id
        )
        if start is not None:
            stmt = stmt.where(LedgerTransactionModel.effective_date >= start)
        if end is not None:
            stmt = stmt.where(LedgerTransactionModel.effective_date <= end)
        stmt = stmt.order_by(
            LedgerTransactionModel.effective_date,
            LedgerTransactionModel.origin_row_number,
            LedgerTransactionModel.fingerprint,
        )
        return tuple(
            transaction_to_view(m) for m in self.session.execute(stmt).scalars()
        )

    def entries_for_account(
        self,
        account_id: str,
        start: date | None = None,
        end: date | None = None,
    ) -> tuple[LedgerEntryView, ...]:
        """Every line of the account's transactions, in ledger order."""
        stmt = (
            select(LedgerEntryModel)
            .join(
                LedgerTransactionModel,
                LedgerTransactionModel.id == LedgerEntryModel.transaction_id,
            )
            .where(LedgerTransactionModel.account_id == account_id)
        )
        if start is not None:
            stmt = stmt.where(LedgerEntryModel.effective_date >= start)
        if end is not None:
            stmt = stmt.where(LedgerEntryModel.effective_date <= end)
        stmt = stmt.order_by(
            LedgerEntryModel.effective_date,
            LedgerEntryModel.origin_row_number,
            LedgerTransactionModel.fingerprint,
            LedgerEntryModel.line_seq,
        )
        return tuple(entry_to_view(m) for m in self.session.execute(stmt).scalars())

    def cash_entries(self, account_id: str, currency: str) -> tuple[LedgerEntryView, ...]:
        """Lines that move the account's cash balance."""
        return tuple(
            e
            for e in self.entries_for_account(account_id)
            if e.account_id == account_id and e.asset_id == currency
        )

    def checkpoints_for_account(
        self,
        account_id: str,
        start: date | None = None,
        end: date | None = None,
    ) -> tuple[CheckpointView, ...]:
        stmt = select(BalanceCheckpointModel).where(
            BalanceCheckpointModel.account_id == account_id
        )
        if start is not None:
            stmt = stmt.where(BalanceCheckpointModel.effective_date >= start)
        if end is not None:
            stmt = stmt.where(BalanceCheckpointModel.effective_date <= end)
        stmt = stmt.order_by(
            BalanceCheckpointModel.effective_date,
            BalanceCheckpointModel.row_number,
            BalanceCheckpointModel.created_at,
        )
        return tuple(
            checkpoint_to_view(m) for m in self.session.execute(stmt).scalars()
        )

    def source_rows(self, row_ids: Iterable[UUID]) -> dict[UUID, SourceRowView]:
        ids = list(dict.fromkeys(row_ids))
        if not ids:
            return {}
        rows = self.session.execute(
            select(SourceRowModel).where(SourceRowModel.id.in_(ids))
        ).scalars()
        return {row.id: source_row_to_view(row) for row in rows}

    def account_source_row_ids(self, account_id: str) -> set[UUID]:
        """Source rows tied to the account through a line or a checkpoint."""
        via_entries = select(ledger_entry_source_rows.c.source_row_id).join(
            LedgerEntryModel,
            LedgerEntryModel.id == ledger_entry_source_rows.c.entry_id,
        ).join(
            LedgerTransactionModel,
            LedgerTransactionModel.id == LedgerEntryModel.transaction_id,
        ).where(
            LedgerTransactionModel.account_id == account_id
        )
        via_checkpoints = select(BalanceCheckpointModel.source_row_id).where(
            BalanceCheckpointModel.account_id == account_id
        )
        ids = set(self.session.execute(via_entries).scalars())
        ids.update(self.session.execute(via_checkpoints).scalars())
        return ids

    def source_rows_in_window(
        self, account_id: str, start: date, end: date
    ) -> tuple[SourceRowView, ...]:
        """Source rows behind the account's lines and checkpoints in [start, end]."""
        entry_rows = (
            select(ledger_entry_source_rows.c.source_row_id)
            .join(
                LedgerEntryModel,
                LedgerEntryModel.id == ledger_entry_source_rows.c.entry_id,
            )
            .join(
                LedgerTransactionModel,
                LedgerTransactionModel.id == LedgerEntryModel.transaction_id,
            )
            .where(
                LedgerTransactionModel.account_id == account_id,
                LedgerEntryModel.effective_date >= start,
                LedgerEntryModel.effective_date <= end,
            )
        )
        checkpoint_rows = select(BalanceCheckpointModel.source_row_id).where(
            BalanceCheckpointModel.account_id == account_id,
            BalanceCheckpointModel.effective_date >= start,
            BalanceCheckpointModel.effective_date <= end,
        )
        stmt = (
            select(SourceRowModel)
            .where(
                or_(
                    SourceRowModel.id.in_(entry_rows),
                    SourceRowModel.id.in_(checkpoint_rows),
                )
            )
            .order_by(SourceRowModel.raw_file_id, SourceRowModel.row_number)
        )
        return tuple(source_row_to_view(r) for r in self.session.execute(stmt).scalars())

    def fingerprint_exists(self, fingerprint: str) -> bool:
        return (
            self.session.execute(
                select(LedgerTransactionModel.id).where(
                    LedgerTransactionModel.fingerprint == fingerprint
                )
            ).first()
            is not None
        )

    def transactions_using_rows(self, row_ids: Iterable[UUID]) -> dict[UUID, set[UUID]]:
        """Map each source row to the transactions that already cite it."""
        ids = list(dict.fromkeys(row_ids))
        if not ids:
            return {}
        stmt = (
            select(ledger_entry_source_rows.c.source_row_id, LedgerEntryModel.transaction_id)
            .join(
                LedgerEntryModel,
                LedgerEntryModel.id == ledger_entry_source_rows.c.entry_id,
            )
            .where(ledger_entry_source_rows.c.source_row_id.in_(ids))
        )
        usage: dict[UUID, set[UUID]] = {}
        for row_id, txn_id in self.session.execute(stmt):
            usage.setdefault(row_id, set()).add(txn_id)
        return usage
