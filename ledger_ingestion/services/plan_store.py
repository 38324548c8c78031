"""
Parse plan version store.

A plan has one mutable working copy and a chain of immutable versions:

    create_plan ---> working copy (rev 0)
    edit ----------> working copy (rev n+1)          no version
    commit --------> version k+1 (parent = head) ;   head := k+1, rev n+1
    fork(version) -> new plan, seed version 0 == fork point

Edits and commits carry the revision the caller last read.  The plan row is
locked (``SELECT ... FOR UPDATE`` on PostgreSQL) and the revision compared
before anything is written; a stale revision raises ``ConcurrentEditError``
and writes nothing.

Versions are content-addressed: ``content_hash`` is the SHA-256 of the
definition's canonical JSON and is re-checked whenever a version is loaded.
"""

from __future__ import annotations

from typing import Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger_ingestion.domain.types import (
    CommittedPlanVersion,
    PlanDefinition,
    PlanDraft,
)
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.exceptions import (
    ConcurrentEditError,
    ImmutabilityViolation,
    PlanNotFoundError,
    PlanVersionNotFoundError,
)
from ledger_kernel.logging_config import LogContext, get_logger
from ledger_kernel.models.parse_plan import ParsePlanModel, ParsePlanVersionModel

logger = get_logger("ingestion.plan_store")


def _version_to_dto(model: ParsePlanVersionModel) -> CommittedPlanVersion:
    definition = PlanDefinition.from_dict(model.definition)
    actual = definition.content_hash
    if actual != model.content_hash:
        logger.error(
            "plan_version_hash_mismatch",
            extra={
                "version_id": str(model.id),
                "stored_hash": model.content_hash,
                "actual_hash": actual,
            },
        )
        raise ImmutabilityViolation(
            entity_type="ParsePlanVersion",
            entity_id=str(model.id),
            reason=f"content hash mismatch: stored {model.content_hash}, computed {actual}",
        )
    return CommittedPlanVersion(
        version_id=model.id,
        plan_id=model.plan_id,
        parent_version_id=model.parent_version_id,
        version_number=model.version_number,
        definition=definition,
        content_hash=model.content_hash,
        commit_message=model.commit_message,
        committed_at=model.committed_at,
    )


def _draft(model: ParsePlanModel) -> PlanDraft:
    return PlanDraft(
        plan_id=model.id,
        name=model.name,
        revision=model.working_copy_revision,
        definition=PlanDefinition.from_dict(model.working_copy),
        forked_from_version_id=model.forked_from_version_id,
    )


class PlanVersionStore:
    """Working copies, commits, forks and lineage of parse plans."""

    def __init__(self, session: Session, clock: Clock | None = None):
        self._session = session
        self._clock = clock or SystemClock()

    # -- working copy --------------------------------------------------------

    def create_plan(
        self,
        name: str,
        definition: PlanDefinition,
        actor_id: UUID,
        institution_ref: str | None = None,
    ) -> PlanDraft:
        model = ParsePlanModel(
            name=name,
            institution_ref=institution_ref,
            working_copy=definition.to_dict(),
            working_copy_revision=0,
            created_by_id=actor_id,
        )
        self._session.add(model)
        self._session.flush()
        logger.info(
            "plan_created",
            extra={"plan_id": str(model.id), "plan_name": name, "account_id": definition.account_id},
        )
        return _draft(model)

    def get_draft(self, plan_id: UUID) -> PlanDraft:
        return _draft(self._load_plan(plan_id))

    def edit(
        self, plan_id: UUID, patch: dict[str, Any], expected_revision: int
    ) -> PlanDraft:
        """
        Apply ``patch`` (top-level definition sections) to the working copy.

        Raises:
            ConcurrentEditError: the working copy moved past ``expected_revision``.
            MalformedDescriptorError: the patched definition does not parse.
        """
        model = self._lock_plan(plan_id, expected_revision)
        current = PlanDefinition.from_dict(model.working_copy)
        updated = current.with_patch(patch)
        model.working_copy = updated.to_dict()
        model.working_copy_revision += 1
        self._session.flush()
        logger.info(
            "plan_working_copy_edited",
            extra={
                "plan_id": str(plan_id),
                "revision": model.working_copy_revision,
                "sections": sorted(patch),
            },
        )
        return _draft(model)

    # -- versions ------------------------------------------------------------

    def commit(
        self,
        plan_id: UUID,
        message: str,
        expected_revision: int,
        actor_id: UUID,
    ) -> CommittedPlanVersion:
        """
        Snapshot the working copy as the next version and advance the head.

        Raises:
            ConcurrentEditError: the working copy moved past ``expected_revision``.
        """
        with LogContext.bind(plan_id=plan_id, actor_id=actor_id):
            model = self._lock_plan(plan_id, expected_revision)
            definition = PlanDefinition.from_dict(model.working_copy)

            next_number = 1
            if model.head_version_id is not None:
                head = self._session.get(ParsePlanVersionModel, model.head_version_id)
                next_number = head.version_number + 1
            version = ParsePlanVersionModel(
                plan_id=plan_id,
                parent_version_id=model.head_version_id,
                version_number=next_number,
                definition=definition.to_dict(),
                content_hash=definition.content_hash,
                commit_message=message,
                committed_at=self._clock.now(),
                created_by_id=actor_id,
            )
            self._session.add(version)
            self._session.flush()

            model.head_version_id = version.id
            model.working_copy_revision += 1
            self._session.flush()

            logger.info(
                "plan_version_committed",
                extra={
                    "version_id": str(version.id),
                    "version_number": version.version_number,
                    "parent_version_id": str(version.parent_version_id)
                    if version.parent_version_id
                    else None,
                    "content_hash": version.content_hash,
                },
            )
            return _version_to_dto(version)

    def fork(self, version_id: UUID, name: str, actor_id: UUID) -> PlanDraft:
        """
        Start a new plan from ``version_id``.

        The new plan gets a version-0 snapshot equal to the fork point and a
        ``forked_from_version_id`` pointer; it shares no further lineage.
        """
        source = self.get_version(version_id)
        plan = ParsePlanModel(
            name=name,
            institution_ref=None,
            working_copy=source.definition.to_dict(),
            working_copy_revision=0,
            forked_from_version_id=version_id,
            created_by_id=actor_id,
        )
        self._session.add(plan)
        self._session.flush()

        seed = ParsePlanVersionModel(
            plan_id=plan.id,
            parent_version_id=None,
            version_number=0,
            definition=source.definition.to_dict(),
            content_hash=source.content_hash,
            commit_message=f"fork of {version_id}",
            committed_at=self._clock.now(),
            created_by_id=actor_id,
        )
        self._session.add(seed)
        self._session.flush()
        plan.head_version_id = seed.id
        self._session.flush()

        logger.info(
            "plan_forked",
            extra={
                "plan_id": str(plan.id),
                "forked_from_version_id": str(version_id),
                "seed_version_id": str(seed.id),
            },
        )
        return _draft(plan)

    def get_version(self, version_id: UUID) -> CommittedPlanVersion:
        """
        Raises:
            PlanVersionNotFoundError: no such version.
            ImmutabilityViolation: stored content no longer matches its hash.
        """
        model = self._session.get(ParsePlanVersionModel, version_id)
        if model is None:
            raise PlanVersionNotFoundError(str(version_id))
        return _version_to_dto(model)

    def head(self, plan_id: UUID) -> CommittedPlanVersion | None:
        model = self._load_plan(plan_id)
        if model.head_version_id is None:
            return None
        return self.get_version(model.head_version_id)

    def find_versions_by_content(self, content_hash: str) -> list[CommittedPlanVersion]:
        stmt = (
            select(ParsePlanVersionModel)
            .where(ParsePlanVersionModel.content_hash == content_hash)
            .order_by(ParsePlanVersionModel.committed_at, ParsePlanVersionModel.version_number)
        )
        return [_version_to_dto(m) for m in self._session.scalars(stmt)]

    def lineage(self, version_id: UUID) -> list[CommittedPlanVersion]:
        """``version_id`` and its ancestors, root first."""
        chain: list[CommittedPlanVersion] = []
        current: UUID | None = version_id
        while current is not None:
            version = self.get_version(current)
            chain.append(version)
            current = version.parent_version_id
        chain.reverse()
        return chain

    # -- helpers -------------------------------------------------------------

    def _load_plan(self, plan_id: UUID) -> ParsePlanModel:
        model = self._session.get(ParsePlanModel, plan_id)
        if model is None:
            raise PlanNotFoundError(str(plan_id))
        return model

    def _lock_plan(self, plan_id: UUID, expected_revision: int) -> ParsePlanModel:
        model = self._session.execute(
            select(ParsePlanModel)
            .where(ParsePlanModel.id == plan_id)
            .with_for_update()
        ).scalar_one_or_none()
        if model is None:
            raise PlanNotFoundError(str(plan_id))
        if model.working_copy_revision != expected_revision:
            logger.warning(
                "plan_concurrent_edit_rejected",
                extra={
                    "plan_id": str(plan_id),
                    "expected_revision": expected_revision,
                    "actual_revision": model.working_copy_revision,
                },
            )
            raise ConcurrentEditError(
                str(plan_id), expected_revision, model.working_copy_revision
            )
        return model
