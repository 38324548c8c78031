"""
Parse run orchestrator: extract -> map/transform/validate -> materialize.

Preview runs read a bounded prefix of the file and write nothing but the
run record.  Commit runs process the whole file and write source rows,
balance checkpoints and ledger transactions:

    version check (fatal, no writes)
        |
    blob get (checksum re-verified) -> extract -> adapter        (whole file)
        |
    source rows (get-or-create)
        |
    transaction groups, chunked by row count, one SAVEPOINT each
        |   the checkpoints of a chunk's rows commit with it
        |   cancel token checked between chunks
        |   run.groups_committed advanced after each chunk
        v
    completed | partially_completed | cancelled | failed

Mapping is deterministic: nothing in extract/transform/validate reads the
clock, so the same (version, raw file) always yields the same mapped rows,
the same ``mapped_rows_digest`` and the same failure set.  Resuming a
cancelled run re-runs that pipeline and skips the groups before the cursor;
fingerprints make any overlap a no-op.

Uses structured logging (LogContext, get_logger("ingestion.*")).
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from datetime import datetime, timezone
from decimal import Decimal
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.orm import Session

from ledger_config.schema import ParseSettings
from ledger_engines.materialization import (
    MaterializationPlan,
    MaterializationRow,
    TransactionPlan,
    plan_transactions,
)
from ledger_engines.reconciliation.checkpoints import CheckpointCandidate, build_checkpoints
from ledger_ingestion.adapters import extractor_for
from ledger_ingestion.domain.types import (
    CancelToken,
    CommittedPlanVersion,
    FailureKind,
    MappedRow,
    ParseMode,
    ParseProgress,
    ParseRunResult,
    PlanDefinition,
    PlanDraft,
    RowFailure,
    RowLineage,
    SourceRowData,
)
from ledger_ingestion.mapping.adapter import TransformValidateAdapter
from ledger_ingestion.mapping.evaluators import TransformEvaluator, ValidationEvaluator
from ledger_ingestion.services.plan_store import PlanVersionStore
from ledger_kernel.domain.amounts import DEFAULT_TOLERANCE, content_hash
from ledger_kernel.domain.clock import Clock, SystemClock
from ledger_kernel.exceptions import (
    LedgerError,
    RunNotFoundError,
    RunNotResumableError,
)
from ledger_kernel.logging_config import LogContext, get_logger
from ledger_kernel.models.parse_run import ParseRunModel, ParseRunStatus
from ledger_kernel.models.raw_file import SourceRowModel
from ledger_kernel.services.blob_store import BlobStore, DatabaseBlobStore
from ledger_services.materialization_service import LedgerMaterializationService

logger = get_logger("ingestion.parse_run")

ProgressCallback = Callable[[ParseProgress], None]

_RESUMABLE = (ParseRunStatus.CANCELLED, ParseRunStatus.FAILED)


def mapped_rows_digest(rows: Sequence[MappedRow]) -> str:
    """SHA-256 of the canonical serialization of ``rows`` in row order."""
    return content_hash(
        [
            {"row_number": r.row_number, "values": r.values, "steps": list(r.steps_applied)}
            for r in sorted(rows, key=lambda r: r.row_number)
        ]
    )


def chunk_groups(
    plans: Sequence[TransactionPlan], chunk_size: int
) -> list[list[TransactionPlan]]:
    """
    Split transaction plans into chunks of about ``chunk_size`` rows.

    A group is never split: a chunk closes once it holds ``chunk_size`` or
    more rows, so one oversized group forms a chunk of its own.
    """
    chunks: list[list[TransactionPlan]] = []
    current: list[TransactionPlan] = []
    rows = 0
    for plan in plans:
        current.append(plan)
        rows += len(plan.rows)
        if rows >= chunk_size:
            chunks.append(current)
            current, rows = [], 0
    if current:
        chunks.append(current)
    return chunks


class ParseRunService:
    """Runs parse plans against raw files in preview or commit mode."""

    def __init__(
        self,
        session: Session,
        clock: Clock | None = None,
        blob_store: BlobStore | None = None,
        settings: ParseSettings | None = None,
        tolerance: Decimal = DEFAULT_TOLERANCE,
        transform_evaluator: TransformEvaluator | None = None,
        validation_evaluator: ValidationEvaluator | None = None,
    ):
        self._session = session
        self._clock = clock or SystemClock()
        self._blobs = blob_store or DatabaseBlobStore(session, self._clock)
        self._settings = settings or ParseSettings()
        self._tolerance = tolerance
        self._transform_evaluator = transform_evaluator
        self._validation_evaluator = validation_evaluator
        self._plans = PlanVersionStore(session, self._clock)
        self._writer = LedgerMaterializationService(session, tolerance)

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    def run(
        self,
        plan: PlanDraft | CommittedPlanVersion,
        raw_file_id: UUID,
        mode: ParseMode,
        actor_id: UUID,
        cancel_token: CancelToken | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ParseRunResult:
        """
        Execute ``plan`` against ``raw_file_id``.

        Raises:
            ValueError: commit mode with a draft.
            PlanVersionNotFoundError: commit mode with a version that no
                longer exists (nothing is written).
            DialectError / MalformedDescriptorError / ProvenanceIntegrityError
            / RawFileNotFoundError: fatal to the run, which is recorded as
                failed with no ledger writes.
        """
        if mode.is_commit:
            if not isinstance(plan, CommittedPlanVersion):
                raise ValueError("commit mode requires a committed plan version")
            plan = self._plans.get_version(plan.version_id)

        if isinstance(plan, CommittedPlanVersion):
            version_id, revision = plan.version_id, None
        else:
            version_id, revision = None, plan.revision

        run = ParseRunModel(
            plan_id=plan.plan_id,
            plan_version_id=version_id,
            working_copy_revision=revision,
            raw_file_id=raw_file_id,
            mode=mode.kind,
            sample_size=mode.sample_size,
            status=ParseRunStatus.RUNNING,
            started_at=self._clock.now(),
            created_by_id=actor_id,
        )
        self._session.add(run)
        self._session.flush()
        return self._execute(run, plan.definition, mode, actor_id, cancel_token, on_progress)

    def resume(
        self,
        run_id: UUID,
        actor_id: UUID,
        cancel_token: CancelToken | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ParseRunResult:
        """
        Continue a cancelled or failed commit run from its committed cursor.

        Raises:
            RunNotFoundError, RunNotResumableError, PlanVersionNotFoundError.
        """
        run = self._session.get(ParseRunModel, run_id)
        if run is None:
            raise RunNotFoundError(str(run_id))
        status = ParseRunStatus(run.status)
        if run.mode != "commit" or status not in _RESUMABLE or run.plan_version_id is None:
            raise RunNotResumableError(str(run_id), status.value, run.mode)

        version = self._plans.get_version(run.plan_version_id)
        run.status = ParseRunStatus.RUNNING
        run.error_code = None
        run.completed_at = None
        self._session.flush()
        logger.info(
            "parse_run_resumed",
            extra={"run_id": str(run_id), "groups_committed": run.groups_committed},
        )
        return self._execute(
            run, version.definition, ParseMode.commit(), actor_id, cancel_token, on_progress
        )

    def get_run(self, run_id: UUID) -> ParseRunModel:
        run = self._session.get(ParseRunModel, run_id)
        if run is None:
            raise RunNotFoundError(str(run_id))
        return run

    # -------------------------------------------------------------------------
    # Pipeline
    # -------------------------------------------------------------------------

    def _execute(
        self,
        run: ParseRunModel,
        definition: PlanDefinition,
        mode: ParseMode,
        actor_id: UUID,
        cancel_token: CancelToken | None,
        on_progress: ProgressCallback | None,
    ) -> ParseRunResult:
        with LogContext.bind(run_id=run.id, plan_id=run.plan_id, actor_id=actor_id, producer="ingestion"):
            logger.info(
                "parse_run_started",
                extra={
                    "mode": mode.kind,
                    "plan_version_id": str(run.plan_version_id) if run.plan_version_id else None,
                    "raw_file_id": str(run.raw_file_id),
                },
            )
            try:
                source_rows, mapped, failures = self._map(run.raw_file_id, definition, mode)
            except Exception as exc:
                self._fail(run, exc)
                raise

            run.rows_total = len(source_rows) + _dialect_failure_count(failures)
            run.rows_failed = len({f.row_number for f in failures})
            run.failures = [f.to_dict() for f in failures]
            lineage = {
                r.row_number: RowLineage(r.row_number, run.plan_version_id, r.steps_applied)
                for r in mapped
            }
            run.lineage = {str(n): entry.to_dict() for n, entry in lineage.items()}
            run.mapped_rows_digest = mapped_rows_digest(mapped)
            self._session.flush()

            if not mode.is_commit:
                plan = self._plan(definition, [MaterializationRow(r.row_number, r.values) for r in mapped])
                run.groups_total = len(plan.transactions)
                run.rows_processed = run.rows_total
                self._finish(run)
                return self._result(run, mapped, failures, lineage, groups=plan.transactions)

            try:
                self._commit(run, definition, source_rows, mapped, actor_id, cancel_token, on_progress)
            except Exception as exc:
                # Any failure leaves the run resumable from its last committed chunk.
                self._fail(run, exc)
                raise
            return self._result(run, mapped, failures, lineage)

    def _map(
        self, raw_file_id: UUID, definition: PlanDefinition, mode: ParseMode
    ) -> tuple[tuple[SourceRowData, ...], tuple[MappedRow, ...], tuple[RowFailure, ...]]:
        content = self._blobs.get(raw_file_id)
        extraction = extractor_for(definition.dialect).extract(content, definition.dialect)
        rows = extraction.rows
        dialect_failures = extraction.failures
        if not mode.is_commit:
            limit = mode.sample_size or self._settings.default_sample_size
            rows = rows[:limit]
            last = rows[-1].row_number if rows else 0
            dialect_failures = tuple(f for f in dialect_failures if f.row_number <= last)

        adapter = TransformValidateAdapter(
            transform_evaluator=self._transform_evaluator,
            validation_evaluator=self._validation_evaluator,
            step_timeout_seconds=self._settings.transform_step_timeout_seconds,
        )
        result = adapter.run(rows, definition)
        failures = sorted(
            (*dialect_failures, *result.failures),
            key=lambda f: (f.row_number, f.kind.value, f.step or ""),
        )
        if result.warnings:
            logger.info("validation_warnings", extra={"count": len(result.warnings)})
        return rows, result.mapped_rows, tuple(failures)

    def _plan(
        self, definition: PlanDefinition, rows: Sequence[MaterializationRow]
    ) -> MaterializationPlan:
        return plan_transactions(
            rows,
            account_id=definition.account_id,
            currency=definition.currency,
            roles=definition.roles,
            grouping=definition.grouping,
            tolerance=self._tolerance,
        )

    def _commit(
        self,
        run: ParseRunModel,
        definition: PlanDefinition,
        source_rows: Sequence[SourceRowData],
        mapped: Sequence[MappedRow],
        actor_id: UUID,
        cancel_token: CancelToken | None,
        on_progress: ProgressCallback | None,
    ) -> None:
        with self._session.begin_nested():
            row_ids = self._ensure_source_rows(run.raw_file_id, definition, source_rows, actor_id)
        rows = [
            MaterializationRow(r.row_number, r.values, row_ids[r.row_number]) for r in mapped
        ]

        balance_column = _balance_column(definition)
        texts = {r.row_number: str(r.values.get(balance_column, "")) for r in source_rows}
        candidates = build_checkpoints(rows, definition.roles, texts)

        plan = self._plan(definition, rows)
        grouped = {r.row_number for p in plan.transactions for r in p.rows}
        run.groups_total = len(plan.transactions)
        pending = plan.transactions[run.groups_committed:]
        rows_done = sum(len(p.rows) for p in plan.transactions[: run.groups_committed])
        rows_in_groups = sum(len(p.rows) for p in plan.transactions)

        for chunk in chunk_groups(pending, self._settings.commit_chunk_size):
            if cancel_token is not None and cancel_token.is_cancelled:
                run.status = ParseRunStatus.CANCELLED
                run.completed_at = self._clock.now()
                self._session.flush()
                logger.info(
                    "parse_run_cancelled",
                    extra={"groups_committed": run.groups_committed, "groups_total": run.groups_total},
                )
                return

            chunk_rows = {r.row_number for p in chunk for r in p.rows}
            with self._session.begin_nested():
                outcome = self._writer.write_plans(
                    chunk, actor_id=actor_id, origin_run_id=run.id
                )
                # Checkpoints land with the transactions of their rows.
                run.checkpoints_created += self._write_checkpoints(
                    run, definition, [c for c in candidates if c.row_number in chunk_rows], actor_id
                )
            run.groups_committed += len(chunk)
            run.transactions_created += outcome.created
            run.transactions_skipped += outcome.skipped
            rows_done += sum(len(p.rows) for p in chunk)
            run.rows_processed = rows_done
            run.estimated_completion = self._estimate(run.started_at, rows_done, rows_in_groups)
            self._session.flush()
            logger.info(
                "chunk_committed",
                extra={
                    "groups_committed": run.groups_committed,
                    "groups_total": run.groups_total,
                    "transactions_created": outcome.created,
                    "transactions_skipped": outcome.skipped,
                },
            )
            if on_progress is not None:
                on_progress(
                    ParseProgress(
                        rows_processed=rows_done,
                        rows_total=run.rows_total,
                        estimated_completion=run.estimated_completion,
                    )
                )

        ungrouped = [c for c in candidates if c.row_number not in grouped]
        if ungrouped:
            with self._session.begin_nested():
                run.checkpoints_created += self._write_checkpoints(run, definition, ungrouped, actor_id)
        run.rows_processed = run.rows_total
        self._finish(run)

    def _write_checkpoints(
        self,
        run: ParseRunModel,
        definition: PlanDefinition,
        candidates: Sequence[CheckpointCandidate],
        actor_id: UUID,
    ) -> int:
        if not candidates:
            return 0
        return self._writer.write_checkpoints(
            candidates,
            account_id=definition.account_id,
            raw_file_id=run.raw_file_id,
            actor_id=actor_id,
            origin_run_id=run.id,
        )

    def _ensure_source_rows(
        self,
        raw_file_id: UUID,
        definition: PlanDefinition,
        rows: Sequence[SourceRowData],
        actor_id: UUID,
    ) -> dict[int, UUID]:
        """Get or create a SourceRow per extracted row, keyed by row number."""
        dialect_hash = definition.dialect.fingerprint
        existing = {
            m.row_number: m.id
            for m in self._session.scalars(
                select(SourceRowModel).where(
                    SourceRowModel.raw_file_id == raw_file_id,
                    SourceRowModel.dialect_hash == dialect_hash,
                )
            )
        }
        created = 0
        for row in rows:
            if row.row_number in existing:
                continue
            model = SourceRowModel(
                raw_file_id=raw_file_id,
                dialect_hash=dialect_hash,
                row_number=row.row_number,
                raw_values=dict(row.values),
                created_by_id=actor_id,
            )
            self._session.add(model)
            self._session.flush()
            existing[row.row_number] = model.id
            created += 1
        logger.info(
            "source_rows_recorded",
            extra={"rows_created": created, "rows_reused": len(rows) - created},
        )
        return existing

    # -------------------------------------------------------------------------
    # Run bookkeeping
    # -------------------------------------------------------------------------

    def _estimate(self, started_at: datetime, done: int, total: int) -> datetime | None:
        if done <= 0:
            return None
        now = self._clock.now()
        if started_at.tzinfo is None:
            # SQLite hands timestamps back naive; they were stored as UTC.
            started_at = started_at.replace(tzinfo=timezone.utc)
        elapsed = now - started_at
        return now + elapsed * ((total - done) / done)

    def _finish(self, run: ParseRunModel) -> None:
        run.status = (
            ParseRunStatus.PARTIALLY_COMPLETED if run.rows_failed else ParseRunStatus.COMPLETED
        )
        run.completed_at = self._clock.now()
        self._session.flush()
        logger.info(
            "parse_run_completed",
            extra={
                "status": run.status.value,
                "rows_total": run.rows_total,
                "rows_failed": run.rows_failed,
                "transactions_created": run.transactions_created,
                "transactions_skipped": run.transactions_skipped,
                "checkpoints_created": run.checkpoints_created,
                "mapped_rows_digest": run.mapped_rows_digest,
            },
        )

    def _fail(self, run: ParseRunModel, exc: Exception) -> None:
        code = exc.code if isinstance(exc, LedgerError) else "INTERNAL_ERROR"
        run.status = ParseRunStatus.FAILED
        run.error_code = code
        run.completed_at = self._clock.now()
        self._session.flush()
        logger.error("parse_run_failed", extra={"error_code": code}, exc_info=exc)

    def _result(
        self,
        run: ParseRunModel,
        mapped: Sequence[MappedRow],
        failures: Sequence[RowFailure],
        lineage: dict[int, RowLineage],
        groups: Sequence[TransactionPlan] = (),
    ) -> ParseRunResult:
        return ParseRunResult(
            run_id=run.id,
            status=ParseRunStatus(run.status).value,
            mode=run.mode,
            plan_version_id=run.plan_version_id,
            rows_total=run.rows_total,
            rows_processed=run.rows_processed,
            rows_failed=run.rows_failed,
            mapped_rows=tuple(mapped),
            failures=tuple(failures),
            lineage=lineage,
            mapped_rows_digest=run.mapped_rows_digest or "",
            groups=tuple(groups),
            groups_committed=run.groups_committed,
            transactions_created=run.transactions_created,
            transactions_skipped=run.transactions_skipped,
            checkpoints_created=run.checkpoints_created,
        )


def _dialect_failure_count(failures: Sequence[RowFailure]) -> int:
    return sum(1 for f in failures if f.kind == FailureKind.DIALECT)


def _balance_column(definition: PlanDefinition) -> str:
    spec = definition.schema.field_named(definition.roles.balance)
    return spec.source_column if spec is not None else definition.roles.balance
