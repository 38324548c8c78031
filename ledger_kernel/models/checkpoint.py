"""
Module: ledger_kernel.models.checkpoint
Responsibility: ORM persistence for balance checkpoints -- balances reported
    by the source data, used as ground truth by the discrepancy detector.
Architecture position: Kernel > Models.  May import from db/base.py only.
"""

from datetime import date
from decimal import Decimal
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import TrackedBase, UUIDString


class BalanceCheckpointModel(TrackedBase):
    """A reported balance taken from one source row.  Immutable."""

    __tablename__ = "balance_checkpoints"

    __table_args__ = (
        UniqueConstraint("account_id", "source_row_id", name="uq_checkpoint_row"),
        Index("idx_checkpoint_account_date", "account_id", "effective_date"),
    )

    account_id: Mapped[str] = mapped_column(String(100), nullable=False)
    raw_file_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("raw_files.id"),
        nullable=False,
    )
    source_row_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("source_rows.id"),
        nullable=False,
    )
    effective_date: Mapped[date] = mapped_column(nullable=False)
    row_number: Mapped[int] = mapped_column(nullable=False)
    csv_balance: Mapped[Decimal] = mapped_column(nullable=False)
    # The balance exactly as it appeared in the file, before normalization.
    balance_text: Mapped[str] = mapped_column(String(100), nullable=False)
    origin_run_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    def __repr__(self) -> str:
        return f"<BalanceCheckpoint {self.account_id} {self.effective_date} {self.csv_balance}>"
