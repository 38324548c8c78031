"""
Data Transfer Objects for the ledger kernel.

Immutable read views handed from selectors to engines and services.
Engines never see ORM objects; they operate on these values only.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID


class EntrySide(str, Enum):
    """Side of a double-entry line."""

    DEBIT = "debit"
    CREDIT = "credit"

    @property
    def opposite(self) -> EntrySide:
        return EntrySide.CREDIT if self is EntrySide.DEBIT else EntrySide.DEBIT


class TransactionType(str, Enum):
    """Economic classification of a ledger transaction."""

    BUY = "buy"
    SELL = "sell"
    DIVIDEND = "dividend"
    REINVESTMENT = "reinvestment"
    INTEREST = "interest"
    FEE = "fee"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    ADJUSTMENT = "adjustment"
    OTHER = "other"


class TransactionFlag(str, Enum):
    """Conditions surfaced on a transaction rather than auto-resolved."""

    OVER_GROUPING_CANDIDATE = "over_grouping_candidate"
    DUPLICATE_ROW_USAGE = "duplicate_row_usage"
    ORPHAN_SETTLEMENT = "orphan_settlement"


@dataclass(frozen=True)
class SourceRowView:
    """One extracted row of a raw file."""

    id: UUID
    raw_file_id: UUID
    row_number: int
    raw_values: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class LedgerEntryView:
    """One persisted double-entry line with its provenance."""

    id: UUID
    transaction_id: UUID
    effective_date: date
    account_id: str
    asset_id: str
    side: EntrySide
    amount: Decimal
    currency: str
    transaction_type: str
    origin_row_number: int
    line_seq: int
    source_row_ids: tuple[UUID, ...]
    origin_run_id: UUID | None = None
    quantity: Decimal | None = None
    csv_amount: Decimal | None = None
    amount_discrepancy: Decimal | None = None

    @property
    def signed_amount(self) -> Decimal:
        """Debits increase, credits decrease."""
        return self.amount if self.side == EntrySide.DEBIT else -self.amount


@dataclass(frozen=True)
class LedgerTransactionView:
    """A persisted transaction group and its lines."""

    id: UUID
    account_id: str
    effective_date: date
    transaction_type: str
    description: str
    csv_amount: Decimal
    entry_sum: Decimal
    origin_row_number: int
    entries: tuple[LedgerEntryView, ...]
    source_row_ids: tuple[UUID, ...]
    flags: tuple[str, ...] = ()
    amount_discrepancy: Decimal | None = None

    @property
    def total_debits(self) -> Decimal:
        return sum(
            (e.amount for e in self.entries if e.side == EntrySide.DEBIT), Decimal("0")
        )

    @property
    def total_credits(self) -> Decimal:
        return sum(
            (e.amount for e in self.entries if e.side == EntrySide.CREDIT), Decimal("0")
        )


@dataclass(frozen=True)
class CheckpointView:
    """A reported balance at a point in the source data."""

    id: UUID
    account_id: str
    effective_date: date
    row_number: int
    csv_balance: Decimal
    source_row_id: UUID
