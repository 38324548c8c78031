"""Ingestion services: plan version store and parse run orchestrator."""

from ledger_ingestion.services.parse_run_service import (
    ParseRunService,
    chunk_groups,
    mapped_rows_digest,
)
from ledger_ingestion.services.plan_store import PlanVersionStore

__all__ = [
    "ParseRunService",
    "PlanVersionStore",
    "chunk_groups",
    "mapped_rows_digest",
]
