"""
Module: ledger_kernel.models.parse_plan
Responsibility: ORM persistence for parse plans (identity + mutable working
    copy) and their immutable, parent-linked versions.
Architecture position: Kernel > Models.  May import from db/base.py only.

Invariants enforced:
    - ParsePlanVersionModel rows are never updated or deleted
      (db/immutability.py).  Version numbers are unique per plan.
    - The working copy lives only on ParsePlanModel and carries a
      revision counter used for optimistic concurrency; it never carries a
      version number.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ledger_kernel.db.base import TrackedBase, UUIDString


class ParsePlanModel(TrackedBase):
    """A parse plan: name, institution reference, draft, and head pointer."""

    __tablename__ = "parse_plans"

    name: Mapped[str] = mapped_column(String(200), nullable=False)
    institution_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)
    working_copy: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    working_copy_revision: Mapped[int] = mapped_column(nullable=False, default=0)

    # Latest committed version; NULL until the first commit.
    head_version_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)

    # Version this plan was forked from, if any.  No further shared lineage.
    forked_from_version_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), nullable=True
    )

    def __repr__(self) -> str:
        return f"<ParsePlan {self.id} {self.name!r} rev={self.working_copy_revision}>"


class ParsePlanVersionModel(TrackedBase):
    """Immutable snapshot of a plan definition."""

    __tablename__ = "parse_plan_versions"

    __table_args__ = (
        UniqueConstraint("plan_id", "version_number", name="uq_plan_version_number"),
        Index("idx_plan_version_hash", "content_hash"),
    )

    plan_id: Mapped[UUID] = mapped_column(
        UUIDString(),
        ForeignKey("parse_plans.id"),
        nullable=False,
    )
    parent_version_id: Mapped[UUID | None] = mapped_column(
        UUIDString(),
        ForeignKey("parse_plan_versions.id"),
        nullable=True,
    )
    version_number: Mapped[int] = mapped_column(nullable=False)
    definition: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    content_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    commit_message: Mapped[str] = mapped_column(String(2000), nullable=False)
    committed_at: Mapped[datetime] = mapped_column(nullable=False)

    def __repr__(self) -> str:
        return f"<ParsePlanVersion {self.plan_id} v{self.version_number}>"
