"""
Pytest fixtures for the cascade ledger test suite.

Provides:
- A fresh in-memory SQLite database per test (StaticPool, real SAVEPOINTs)
- ORM immutability listeners for the whole run
- A deterministic clock and a test actor
- ``captured_logs`` for asserting on structured log events
- ``brokerage_plan`` / ``ingest_csv`` helpers that commit a CSV through a
  committed parse plan version

Environment Variables:
- DATABASE_URL: run against another database (e.g. PostgreSQL) instead of
  in-memory SQLite.  Tables are created and dropped per test.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Generator
from dataclasses import dataclass
from datetime import datetime, timezone
from io import StringIO
from typing import Any
from uuid import UUID, uuid4

import pytest
from sqlalchemy.orm import Session

from ledger_ingestion.domain.types import (
    CommittedPlanVersion,
    ParseMode,
    ParseRunResult,
    PlanDefinition,
    PlanDraft,
)
from ledger_ingestion.services.parse_run_service import ParseRunService
from ledger_ingestion.services.plan_store import PlanVersionStore
from ledger_kernel.db.engine import (
    IN_MEMORY_URL,
    build_engine,
    build_session_factory,
    create_tables,
    drop_tables,
)
from ledger_kernel.db.immutability import (
    register_immutability_listeners,
    unregister_immutability_listeners,
)
from ledger_kernel.domain.clock import DeterministicClock
from ledger_kernel.logging_config import (
    LogContext,
    StructuredFormatter,
    configure_logging,
    reset_logging,
)
from ledger_kernel.services.blob_store import DatabaseBlobStore

TEST_ACTOR_ID = uuid4()
ACCOUNT_ID = "brokerage:1234"


# =============================================================================
# Logging fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _configure_test_logging():
    """Configure structured logging for the test suite."""
    reset_logging()
    configure_logging(level=logging.DEBUG)
    yield
    reset_logging()


@pytest.fixture(autouse=True)
def _clear_log_context():
    """Clear LogContext between tests to prevent cross-test contamination."""
    LogContext.clear()
    yield
    LogContext.clear()


@pytest.fixture
def captured_logs():
    """
    Capture ledger_kernel logs as parsed JSON dicts.

    Usage::

        def test_something(captured_logs, session):
            ...
            logs = captured_logs()
            assert any(r["message"] == "parse_run_completed" for r in logs)
    """
    stream = StringIO()
    handler = logging.StreamHandler(stream)
    handler.setFormatter(StructuredFormatter())
    root = logging.getLogger("ledger_kernel")
    previous_level = root.level
    root.setLevel(logging.DEBUG)
    root.addHandler(handler)

    def _get_records() -> list[dict]:
        lines = stream.getvalue().strip().split("\n")
        return [json.loads(line) for line in lines if line]

    yield _get_records

    root.removeHandler(handler)
    root.setLevel(previous_level)


# =============================================================================
# Database fixtures
# =============================================================================


@pytest.fixture(autouse=True, scope="session")
def _immutability_listeners():
    register_immutability_listeners()
    yield
    unregister_immutability_listeners()


@pytest.fixture
def engine():
    url = os.environ.get("DATABASE_URL", IN_MEMORY_URL)
    eng = build_engine(url)
    create_tables(eng)
    yield eng
    drop_tables(eng)
    eng.dispose()


@pytest.fixture
def session(engine) -> Generator[Session, None, None]:
    factory = build_session_factory(engine)
    s = factory()
    yield s
    s.rollback()
    s.close()


@pytest.fixture
def clock() -> DeterministicClock:
    return DeterministicClock(datetime(2024, 3, 1, 9, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def actor_id() -> UUID:
    return TEST_ACTOR_ID


@pytest.fixture
def blob_store(session, clock) -> DatabaseBlobStore:
    return DatabaseBlobStore(session, clock)


@pytest.fixture
def plan_store(session, clock) -> PlanVersionStore:
    return PlanVersionStore(session, clock)


# =============================================================================
# Brokerage statement helpers
# =============================================================================


def brokerage_descriptor(account_id: str = ACCOUNT_ID, **overrides: Any) -> dict[str, Any]:
    """Plan descriptor for the brokerage export used across the suite."""
    descriptor = {
        "account_id": account_id,
        "currency": "USD",
        "dialect": {"format": "csv", "delimiter": ","},
        "schema": {
            "fields": [
                {"name": "date", "type": "date", "constraints": {"required": True}},
                {"name": "action", "type": "string"},
                {"name": "symbol", "type": "string"},
                {"name": "quantity", "type": "number"},
                {"name": "amount", "type": "currency"},
                {"name": "balance", "type": "currency"},
                {"name": "description", "type": "string"},
            ]
        },
        "grouping": {"strategy": "action_settlement", "adjacency_window": 3},
    }
    descriptor.update(overrides)
    return descriptor


HEADER = "date,action,symbol,quantity,amount,balance,description\n"

# Every balance agrees with the running cash balance.
CLEAN_STATEMENT = HEADER + (
    '2024-01-02,DEPOSIT,,,"1,000.00","1,000.00",Initial deposit\n'
    "2024-01-03,BOUGHT,AAPL,2,-300.00,700.00,Buy AAPL\n"
    "2024-01-05,DIVIDEND,AAPL,,5.00,705.00,AAPL dividend\n"
)

# A $10.00 fee before row 3 and $2.00 of interest on row 5 never made it
# into the export; the reported balances include both.
#   row 3: 695 vs 705 (-10)   row 4: 855 vs 865 (-10)   row 5: 957 vs 965 (-8)
STATEMENT_WITH_GAPS = HEADER + (
    '2024-01-02,DEPOSIT,,,"1,000.00","1,000.00",Initial deposit\n'
    "2024-01-03,BOUGHT,AAPL,2,-300.00,700.00,Buy AAPL\n"
    "2024-01-05,DIVIDEND,AAPL,,5.00,695.00,AAPL dividend\n"
    "2024-01-07,SOLD,AAPL,1,160.00,855.00,Sell AAPL\n"
    "2024-01-09,DEPOSIT,,,100.00,957.00,Top-up\n"
)


@dataclass(frozen=True)
class Ingested:
    version: CommittedPlanVersion
    raw_file_id: UUID
    result: ParseRunResult


@pytest.fixture
def brokerage_draft(plan_store, actor_id):
    """Callable: create an uncommitted brokerage plan and return its working copy."""

    def _create(account_id: str = ACCOUNT_ID, **overrides: Any) -> PlanDraft:
        definition = PlanDefinition.from_dict(brokerage_descriptor(account_id, **overrides))
        return plan_store.create_plan(f"{account_id} export", definition, actor_id)

    return _create


@pytest.fixture
def brokerage_plan(plan_store, brokerage_draft, actor_id):
    """Callable: commit a brokerage plan version and return it."""

    def _commit(account_id: str = ACCOUNT_ID, **overrides: Any) -> CommittedPlanVersion:
        draft = brokerage_draft(account_id, **overrides)
        return plan_store.commit(draft.plan_id, "initial", draft.revision, actor_id)

    return _commit


@pytest.fixture
def ingest_csv(session, clock, blob_store, brokerage_plan, actor_id):
    """Callable: store ``text`` as a raw file and commit it through a fresh plan."""

    def _ingest(
        text: str,
        account_id: str = ACCOUNT_ID,
        filename: str = "statement.csv",
    ) -> Ingested:
        version = brokerage_plan(account_id)
        blob = blob_store.put(text.encode("utf-8"), filename, actor_id)
        service = ParseRunService(session, clock, blob_store=blob_store)
        result = service.run(version, blob.id, ParseMode.commit(), actor_id)
        return Ingested(version=version, raw_file_id=blob.id, result=result)

    return _ingest


@pytest.fixture
def account_id() -> str:
    return ACCOUNT_ID


@pytest.fixture
def clean_statement() -> str:
    return CLEAN_STATEMENT


@pytest.fixture
def gapped_statement() -> str:
    return STATEMENT_WITH_GAPS
