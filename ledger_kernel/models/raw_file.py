"""
Module: ledger_kernel.models.raw_file
Responsibility: ORM persistence for raw files (the blob store contract)
    and the source rows extracted from them.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - A raw file is the sole source of truth for original data: content and
      checksum are written once and never updated (db/immutability.py).
    - A source row is created once during extraction and never mutated.
      Ledger entries reference rows through an association table; the row
      does not own them.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, LargeBinary, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import TrackedBase, UUIDString


class RawFileModel(TrackedBase):
    """Immutable byte content of an imported export, with its SHA-256."""

    __tablename__ = "raw_files"

    __table_args__ = (Index("idx_raw_file_checksum", "checksum"),)

    filename: Mapped[str] = mapped_column(String(255), nullable=False)
    content: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    checksum: Mapped[str] = mapped_column(String(64), nullable=False)
    size_bytes: Mapped[int] = mapped_column(nullable=False)
    arrived_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<RawFile {self.id} {self.filename!r} {self.checksum[:12]}>"


class SourceRowModel(TrackedBase):
    """
    One data row of a raw file as read under a particular dialect.

    ``dialect_hash`` distinguishes extractions of the same file under
    different dialects; replaying the same (file, dialect) reuses rows.
    """

    __tablename__ = "source_rows"

    __table_args__ = (
        UniqueConstraint(
            "raw_file_id", "dialect_hash", "row_number", name="uq_source_row_position"
        ),
        Index("idx_source_row_file", "raw_file_id"),
    )

    raw_file_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("raw_files.id"),
        nullable=False,
    )
    dialect_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    row_number: Mapped[int] = mapped_column(nullable=False)
    raw_values: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)

    def __repr__(self) -> str:
        return f"<SourceRow {self.raw_file_id}#{self.row_number}>"
