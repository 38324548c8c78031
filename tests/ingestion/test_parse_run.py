"""
Parse runs: preview and commit against stored raw files.

Covers:
- Preview runs a bounded prefix and writes nothing to the ledger
- Commit writes source rows, checkpoints and transactions
- Replay of a committed run is a no-op with an identical digest
- Row-level failures (dialect, schema, transform, validation) are collected
- Structural failures abort the run and mark it failed
- Chunked commits: cancellation, progress and resume from the cursor
"""

import threading
from uuid import uuid4

import pytest
from sqlalchemy import func, select

from ledger_config.schema import ParseSettings
from ledger_ingestion.domain.types import CancelToken, FailureKind, ParseMode
from ledger_ingestion.mapping.evaluators import BuiltinTransformEvaluator, BuiltinValidationEvaluator
from ledger_ingestion.services.parse_run_service import ParseRunService
from ledger_kernel.exceptions import DialectError, RunNotFoundError, RunNotResumableError
from ledger_kernel.models.checkpoint import BalanceCheckpointModel
from ledger_kernel.models.ledger import LedgerTransactionModel
from ledger_kernel.models.parse_run import ParseRunModel
from ledger_kernel.models.raw_file import SourceRowModel
from ledger_services.reconciliation_service import ReconciliationService

UPPER_SYMBOL = {
    "name": "upper_symbol",
    "kind": "upper",
    "target_field": "symbol",
    "output_fields": ["symbol"],
}


def count(session, model):
    return session.scalar(select(func.count()).select_from(model))


@pytest.fixture
def service(session, clock, blob_store):
    return ParseRunService(session, clock, blob_store=blob_store)


@pytest.fixture
def stored(blob_store, actor_id):
    """Callable: put CSV text in the blob store and return its raw file id."""

    def _put(text, filename="statement.csv"):
        return blob_store.put(text.encode("utf-8"), filename, actor_id).id

    return _put


class TestPreview:
    def test_preview_reads_a_prefix_and_writes_no_ledger_rows(
        self, session, service, brokerage_draft, stored, clean_statement, actor_id
    ):
        draft = brokerage_draft()

        result = service.run(draft, stored(clean_statement), ParseMode.preview(2), actor_id)

        assert result.status == "completed"
        assert result.mode == "preview"
        assert result.plan_version_id is None
        assert [r.row_number for r in result.mapped_rows] == [1, 2]
        assert len(result.groups) == 2
        assert count(session, SourceRowModel) == 0
        assert count(session, LedgerTransactionModel) == 0
        assert count(session, BalanceCheckpointModel) == 0

    def test_preview_records_the_working_copy_revision(
        self, session, service, brokerage_draft, stored, clean_statement, actor_id
    ):
        draft = brokerage_draft()
        result = service.run(draft, stored(clean_statement), ParseMode.preview(), actor_id)

        run = service.get_run(result.run_id)
        assert run.working_copy_revision == draft.revision
        assert run.sample_size == 20

    def test_preview_digest_matches_commit_digest(
        self, service, brokerage_plan, stored, clean_statement, actor_id
    ):
        """Mapping is deterministic across modes."""
        version = brokerage_plan()
        raw_file_id = stored(clean_statement)

        preview = service.run(version, raw_file_id, ParseMode.preview(50), actor_id)
        committed = service.run(version, raw_file_id, ParseMode.commit(), actor_id)

        assert preview.mapped_rows_digest == committed.mapped_rows_digest

    def test_commit_requires_a_committed_version(
        self, service, brokerage_draft, stored, clean_statement, actor_id
    ):
        with pytest.raises(ValueError, match="committed plan version"):
            service.run(brokerage_draft(), stored(clean_statement), ParseMode.commit(), actor_id)

    def test_sample_size_must_be_positive(self):
        with pytest.raises(ValueError):
            ParseMode.preview(0)


class TestCommit:
    def test_commit_writes_rows_checkpoints_and_transactions(
        self, session, ingest_csv, clean_statement
    ):
        result = ingest_csv(clean_statement).result

        assert result.status == "completed"
        assert (result.rows_total, result.rows_processed, result.rows_failed) == (3, 3, 0)
        assert result.transactions_created == 3
        assert result.checkpoints_created == 3
        assert count(session, SourceRowModel) == 3
        assert count(session, LedgerTransactionModel) == 3

    def test_lineage_names_the_plan_version(self, ingest_csv, clean_statement):
        ingested = ingest_csv(clean_statement)
        lineage = ingested.result.lineage[2]
        assert lineage.plan_version_id == ingested.version.version_id
        assert lineage.transform_steps_applied == ()

    def test_replay_is_a_no_op(self, session, service, ingest_csv, clean_statement, actor_id):
        first = ingest_csv(clean_statement)

        replay = service.run(first.version, first.raw_file_id, ParseMode.commit(), actor_id)

        assert replay.transactions_created == 0
        assert replay.transactions_skipped == 3
        assert replay.checkpoints_created == 0
        assert replay.mapped_rows_digest == first.result.mapped_rows_digest
        assert count(session, LedgerTransactionModel) == 3
        assert count(session, SourceRowModel) == 3

    def test_completion_is_logged(self, ingest_csv, clean_statement, captured_logs):
        ingest_csv(clean_statement)
        completed = [r for r in captured_logs() if r["message"] == "parse_run_completed"]
        assert completed and completed[-1]["transactions_created"] == 3


class TestRowFailures:
    def test_dialect_and_schema_failures_are_collected(self, session, ingest_csv):
        statement = (
            "date,action,symbol,quantity,amount,balance,description\n"
            "2024-01-02,DEPOSIT,,,100.00,100.00,ok\n"
            "not-a-date,DEPOSIT,,,5.00,105.00,bad date\n"
            "2024-01-03,DEPOSIT,,,5.00\n"
            "\n"
            "2024-01-04,DEPOSIT,,,5.00,105.00,ok\n"
        )
        result = ingest_csv(statement).result

        assert result.status == "partially_completed"
        assert result.rows_total == 4
        assert result.rows_failed == 2
        kinds = {(f.row_number, f.kind) for f in result.failures}
        assert kinds == {(2, FailureKind.SCHEMA), (3, FailureKind.DIALECT)}
        schema_failure = next(f for f in result.failures if f.kind == FailureKind.SCHEMA)
        assert schema_failure.code == "SCHEMA_VIOLATION"
        assert schema_failure.step == "date"
        assert result.transactions_created == 2

    def test_failing_transform_drops_only_its_row(
        self, session, clock, blob_store, brokerage_plan, stored, clean_statement, actor_id
    ):
        class ExplodesOnBuy:
            def evaluate(self, row, step):
                if row.get("description") == "Buy AAPL":
                    raise RuntimeError("boom")
                return BuiltinTransformEvaluator().evaluate(row, step)

        version = brokerage_plan(transform_steps=[UPPER_SYMBOL])
        service = ParseRunService(
            session, clock, blob_store=blob_store, transform_evaluator=ExplodesOnBuy()
        )
        result = service.run(version, stored(clean_statement), ParseMode.commit(), actor_id)

        (failure,) = result.failures
        assert (failure.row_number, failure.kind, failure.step) == (
            2, FailureKind.TRANSFORM, "upper_symbol",
        )
        assert "RuntimeError: boom" in failure.message
        assert [r.row_number for r in result.mapped_rows] == [1, 3]
        assert result.mapped_rows[1].steps_applied == ("upper_symbol",)

    def test_transform_output_must_match_declared_fields(
        self, session, clock, blob_store, brokerage_plan, stored, clean_statement, actor_id
    ):
        class DropsFields:
            def evaluate(self, row, step):
                return {"date": row["date"]}

        version = brokerage_plan(transform_steps=[UPPER_SYMBOL])
        service = ParseRunService(
            session, clock, blob_store=blob_store, transform_evaluator=DropsFields()
        )
        result = service.run(version, stored(clean_statement), ParseMode.commit(), actor_id)

        assert result.rows_failed == 3
        assert all("missing declared fields" in f.message for f in result.failures)

    def test_slow_transform_times_out(
        self, session, clock, blob_store, brokerage_plan, stored, clean_statement, actor_id
    ):
        release = threading.Event()

        class HangsOnDividend:
            def evaluate(self, row, step):
                if row.get("action") == "DIVIDEND":
                    release.wait(5)
                return BuiltinTransformEvaluator().evaluate(row, step)

        version = brokerage_plan(transform_steps=[UPPER_SYMBOL])
        service = ParseRunService(
            session,
            clock,
            blob_store=blob_store,
            settings=ParseSettings(transform_step_timeout_seconds=0.2),
            transform_evaluator=HangsOnDividend(),
        )
        try:
            result = service.run(version, stored(clean_statement), ParseMode.commit(), actor_id)
        finally:
            release.set()

        (failure,) = result.failures
        assert failure.row_number == 3
        assert "quota" in failure.message
        assert result.transactions_created == 2

    def test_validation_errors_exclude_rows_and_warnings_keep_them(
        self, ingest_csv_with_rules, clean_statement
    ):
        result = ingest_csv_with_rules(
            clean_statement,
            [
                {"name": "no_outflows", "kind": "range", "field": "amount", "params": {"min": 0}},
                {
                    "name": "deposits_only",
                    "kind": "one_of",
                    "field": "action",
                    "params": {"values": ["DEPOSIT"]},
                    "severity": "warning",
                },
            ],
        )

        assert [r.row_number for r in result.mapped_rows] == [1, 3]
        (failure,) = result.failures
        assert (failure.row_number, failure.kind, failure.step) == (
            2, FailureKind.VALIDATION, "no_outflows",
        )

    def test_crashing_rule_fails_its_rows_and_the_run_goes_on(
        self, session, clock, blob_store, brokerage_plan, stored, clean_statement, actor_id
    ):
        class CrashesOnFlaky:
            def evaluate(self, rows, rule):
                if rule.name == "flaky":
                    raise RuntimeError("evaluator crashed")
                return BuiltinValidationEvaluator().evaluate(rows, rule)

        version = brokerage_plan(
            validation_rules=[
                {"name": "flaky", "kind": "required", "field": "date"},
                {"name": "has_date", "kind": "required", "field": "date"},
            ]
        )
        service = ParseRunService(
            session, clock, blob_store=blob_store, validation_evaluator=CrashesOnFlaky()
        )
        result = service.run(version, stored(clean_statement), ParseMode.commit(), actor_id)

        assert result.status == "partially_completed"
        assert [(f.row_number, f.step) for f in result.failures] == [(1, "flaky"), (2, "flaky"), (3, "flaky")]
        assert all("evaluator crashed" in f.message for f in result.failures)
        assert result.transactions_created == 0

    def test_slow_warning_rule_times_out_and_keeps_rows(
        self, session, clock, blob_store, brokerage_plan, stored, clean_statement, actor_id, captured_logs
    ):
        release = threading.Event()

        class HangsOnAudit:
            def evaluate(self, rows, rule):
                if rule.name == "slow_audit":
                    release.wait(5)
                return BuiltinValidationEvaluator().evaluate(rows, rule)

        version = brokerage_plan(
            validation_rules=[
                {"name": "slow_audit", "kind": "required", "field": "date", "severity": "warning"},
            ]
        )
        service = ParseRunService(
            session,
            clock,
            blob_store=blob_store,
            settings=ParseSettings(transform_step_timeout_seconds=0.2),
            validation_evaluator=HangsOnAudit(),
        )
        try:
            result = service.run(version, stored(clean_statement), ParseMode.commit(), actor_id)
        finally:
            release.set()

        assert result.status == "completed"
        assert result.transactions_created == 3
        assert any(r["message"] == "validation_rule_timeout" for r in captured_logs())


@pytest.fixture
def ingest_csv_with_rules(session, clock, blob_store, brokerage_plan, stored, actor_id):
    def _ingest(text, rules):
        version = brokerage_plan(validation_rules=rules)
        service = ParseRunService(session, clock, blob_store=blob_store)
        return service.run(version, stored(text), ParseMode.commit(), actor_id)

    return _ingest


class TestFatalFailures:
    def test_bad_header_fails_the_run_without_writes(
        self, session, service, brokerage_plan, stored, actor_id
    ):
        raw_file_id = stored("date,date,amount\n2024-01-02,2024-01-02,1.00\n")

        with pytest.raises(DialectError, match="duplicate"):
            service.run(brokerage_plan(), raw_file_id, ParseMode.commit(), actor_id)

        run = session.scalars(select(ParseRunModel)).one()
        assert run.status == "failed"
        assert run.error_code == "DIALECT_ERROR"
        assert count(session, SourceRowModel) == 0

    def test_undecodable_bytes(self, session, service, brokerage_plan, blob_store, actor_id):
        blob = blob_store.put(b"\xff\xfe\x00garbage", "bad.csv", actor_id)
        with pytest.raises(DialectError, match="cannot decode"):
            service.run(brokerage_plan(), blob.id, ParseMode.commit(), actor_id)


class TestChunkedCommit:
    """Groups commit in chunks; a cancelled run resumes from its cursor."""

    @pytest.fixture
    def chunked(self, session, clock, blob_store):
        return ParseRunService(
            session, clock, blob_store=blob_store, settings=ParseSettings(commit_chunk_size=1)
        )

    def test_progress_is_reported_per_chunk(
        self, chunked, brokerage_plan, stored, clean_statement, actor_id
    ):
        seen = []
        chunked.run(
            brokerage_plan(),
            stored(clean_statement),
            ParseMode.commit(),
            actor_id,
            on_progress=seen.append,
        )

        assert [p.rows_processed for p in seen] == [1, 2, 3]
        assert all(p.rows_total == 3 for p in seen)

    def test_cancel_then_resume(
        self, session, chunked, brokerage_plan, stored, clean_statement, actor_id
    ):
        token = CancelToken()
        cancelled = chunked.run(
            brokerage_plan(),
            stored(clean_statement),
            ParseMode.commit(),
            actor_id,
            cancel_token=token,
            on_progress=lambda progress: token.cancel(),
        )

        assert cancelled.status == "cancelled"
        assert cancelled.groups_committed == 1
        assert cancelled.checkpoints_created == 1
        assert count(session, LedgerTransactionModel) == 1
        assert count(session, BalanceCheckpointModel) == 1

        resumed = chunked.resume(cancelled.run_id, actor_id)

        assert resumed.status == "completed"
        assert resumed.groups_committed == 3
        assert resumed.transactions_created == 3
        assert resumed.checkpoints_created == 3
        assert count(session, LedgerTransactionModel) == 3
        assert resumed.rows_processed == 3

    def test_cancelled_run_reports_no_discrepancies(
        self, session, chunked, brokerage_plan, stored, clean_statement, account_id, actor_id
    ):
        token = CancelToken()
        chunked.run(
            brokerage_plan(),
            stored(clean_statement),
            ParseMode.commit(),
            actor_id,
            cancel_token=token,
            on_progress=lambda progress: token.cancel(),
        )

        detection = ReconciliationService(session, assistant=None).detect(account_id, "USD")

        assert detection.discrepancies == ()

    def test_unexpected_error_fails_the_run_and_it_resumes(
        self, session, chunked, brokerage_plan, stored, clean_statement, actor_id
    ):
        def crash_after_first_chunk(progress):
            raise RuntimeError("progress sink went away")

        with pytest.raises(RuntimeError):
            chunked.run(
                brokerage_plan(),
                stored(clean_statement),
                ParseMode.commit(),
                actor_id,
                on_progress=crash_after_first_chunk,
            )

        run = session.scalars(select(ParseRunModel)).one()
        assert run.status == "failed"
        assert run.error_code == "INTERNAL_ERROR"
        assert run.groups_committed == 1

        resumed = chunked.resume(run.id, actor_id)

        assert resumed.status == "completed"
        assert resumed.groups_committed == 3
        assert run.estimated_completion is not None
        assert count(session, LedgerTransactionModel) == 3
        assert count(session, BalanceCheckpointModel) == 3

    def test_completed_run_is_not_resumable(self, service, ingest_csv, clean_statement, actor_id):
        run_id = ingest_csv(clean_statement).result.run_id
        with pytest.raises(RunNotResumableError):
            service.resume(run_id, actor_id)

    def test_unknown_run(self, service, actor_id):
        with pytest.raises(RunNotFoundError):
            service.resume(uuid4(), actor_id)
