"""
Module: ledger_kernel.models.ledger
Responsibility: ORM persistence for ledger transactions (the grouped
    double-entry unit) and their lines, with source-row provenance.
Architecture position: Kernel > Models.  May import from db/base.py and
    domain/dtos.py (for the shared side / flag enums).

Invariants enforced:
    - Append-only: transactions and lines are never updated or deleted
      (db/immutability.py).  Corrections are new transactions with
      ``origin_kind = "correction"``.
    - Every line amount is positive; ``side`` carries direction.
    - Every line links to at least one source row through
      ``ledger_entry_source_rows``.  The link is not ownership: a source
      row may back several lines.
    - ``fingerprint`` identifies a transaction by content so replaying a
      commit run does not duplicate it.
"""

from datetime import date
from decimal import Decimal
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Column, ForeignKey, Index, String, Table, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ledger_kernel.db.base import Base, TrackedBase, UUIDString
from ledger_kernel.domain.dtos import EntrySide
from ledger_kernel.models.raw_file import SourceRowModel

ledger_entry_source_rows = Table(
    "ledger_entry_source_rows",
    Base.metadata,
    Column("entry_id", UUIDString(), ForeignKey("ledger_entries.id"), primary_key=True),
    Column("source_row_id", UUIDString(), ForeignKey("source_rows.id"), primary_key=True),
)


class LedgerTransactionModel(TrackedBase):
    """A group of source rows materialized as one double-entry transaction."""

    __tablename__ = "ledger_transactions"

    __table_args__ = (
        UniqueConstraint("fingerprint", name="uq_ledger_transaction_fingerprint"),
        Index("idx_ledger_txn_account_date", "account_id", "effective_date"),
    )

    account_id: Mapped[str] = mapped_column(String(100), nullable=False)
    effective_date: Mapped[date] = mapped_column(nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(30), nullable=False)
    description: Mapped[str] = mapped_column(String(1000), nullable=False, default="")

    # Sum of the group's signed row amounts as reported by the source.
    csv_amount: Mapped[Decimal] = mapped_column(nullable=False)
    # Net cash effect of the constructed lines.
    entry_sum: Mapped[Decimal] = mapped_column(nullable=False)
    # entry_sum - csv_amount when beyond tolerance, else NULL.
    amount_discrepancy: Mapped[Decimal | None] = mapped_column(nullable=True)

    fingerprint: Mapped[str] = mapped_column(String(64), nullable=False)
    origin_kind: Mapped[str] = mapped_column(String(20), nullable=False, default="import")
    origin_run_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    origin_investigation_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), nullable=True
    )
    origin_row_number: Mapped[int] = mapped_column(nullable=False)
    flags: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)

    entries: Mapped[list["LedgerEntryModel"]] = relationship(
        back_populates="transaction",
        lazy="selectin",
        order_by="LedgerEntryModel.line_seq",
    )

    def __repr__(self) -> str:
        return f"<LedgerTransaction {self.id} {self.effective_date} {self.transaction_type}>"

    @property
    def total_debits(self) -> Decimal:
        return sum(
            (e.amount for e in self.entries if e.side == EntrySide.DEBIT),
            Decimal("0"),
        )

    @property
    def total_credits(self) -> Decimal:
        return sum(
            (e.amount for e in self.entries if e.side == EntrySide.CREDIT),
            Decimal("0"),
        )


class LedgerEntryModel(TrackedBase):
    """One debit or credit line of a ledger transaction."""

    __tablename__ = "ledger_entries"

    __table_args__ = (
        Index("idx_ledger_entry_account", "account_id", "asset_id"),
        Index("idx_ledger_entry_txn", "transaction_id"),
    )

    transaction_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("ledger_transactions.id"),
        nullable=False,
    )
    effective_date: Mapped[date] = mapped_column(nullable=False)
    account_id: Mapped[str] = mapped_column(String(100), nullable=False)
    asset_id: Mapped[str] = mapped_column(String(50), nullable=False)
    side: Mapped[EntrySide] = mapped_column(String(10), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    quantity: Mapped[Decimal | None] = mapped_column(nullable=True)
    transaction_type: Mapped[str] = mapped_column(String(30), nullable=False)
    csv_amount: Mapped[Decimal | None] = mapped_column(nullable=True)
    amount_discrepancy: Mapped[Decimal | None] = mapped_column(nullable=True)
    origin_run_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    origin_row_number: Mapped[int] = mapped_column(nullable=False)
    line_seq: Mapped[int] = mapped_column(nullable=False)

    transaction: Mapped[LedgerTransactionModel] = relationship(back_populates="entries")

    # One-directional on purpose: SourceRowModel is immutable and must not be
    # dirtied by a back-populated collection.
    source_rows: Mapped[list[SourceRowModel]] = relationship(
        secondary=ledger_entry_source_rows,
        lazy="selectin",
        order_by=SourceRowModel.row_number,
    )

    def __repr__(self) -> str:
        return (
            f"<LedgerEntry {self.id} {self.side} {self.amount} "
            f"{self.account_id}/{self.asset_id}>"
        )
