"""
Module: ledger_kernel.models.parse_run
Responsibility: ORM persistence for parse runs -- one execution of a plan
    version (or working copy, preview only) against a raw file.
Architecture position: Kernel > Models.  May import from db/base.py only.

A run row is the only mutable record in the provenance chain: status,
progress counters and the committed-group cursor advance as chunks commit.
The cursor is what makes a cancelled commit run resumable.
"""

from datetime import datetime
from enum import Enum
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import TrackedBase, UUIDString


class ParseRunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    PARTIALLY_COMPLETED = "partially_completed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class ParseRunModel(TrackedBase):
    """Outcome, progress and lineage of one parse run."""

    __tablename__ = "parse_runs"

    __table_args__ = (
        Index("idx_parse_run_version", "plan_version_id"),
        Index("idx_parse_run_file", "raw_file_id"),
    )

    plan_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    # NULL for preview runs over the working copy.
    plan_version_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    working_copy_revision: Mapped[int | None] = mapped_column(nullable=True)
    raw_file_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("raw_files.id"),
        nullable=False,
    )
    mode: Mapped[str] = mapped_column(String(10), nullable=False)
    sample_size: Mapped[int | None] = mapped_column(nullable=True)
    status: Mapped[ParseRunStatus] = mapped_column(
        String(20),
        default=ParseRunStatus.RUNNING,
        nullable=False,
    )

    rows_total: Mapped[int] = mapped_column(nullable=False, default=0)
    rows_processed: Mapped[int] = mapped_column(nullable=False, default=0)
    rows_failed: Mapped[int] = mapped_column(nullable=False, default=0)
    groups_total: Mapped[int] = mapped_column(nullable=False, default=0)
    # Number of leading transaction groups durably committed.
    groups_committed: Mapped[int] = mapped_column(nullable=False, default=0)

    transactions_created: Mapped[int] = mapped_column(nullable=False, default=0)
    transactions_skipped: Mapped[int] = mapped_column(nullable=False, default=0)
    checkpoints_created: Mapped[int] = mapped_column(nullable=False, default=0)

    mapped_rows_digest: Mapped[str | None] = mapped_column(String(64), nullable=True)
    failures: Mapped[list[Any]] = mapped_column(JSON, nullable=False, default=list)
    lineage: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    error_code: Mapped[str | None] = mapped_column(String(50), nullable=True)

    started_at: Mapped[datetime] = mapped_column(nullable=False)
    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    estimated_completion: Mapped[datetime | None] = mapped_column(nullable=True)

    def __repr__(self) -> str:
        return f"<ParseRun {self.id} mode={self.mode} status={self.status}>"
