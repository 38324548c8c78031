"""Reconciliation engines: checkpoints, discrepancy detection, fix gates, dry-run."""

from ledger_engines.reconciliation.checkpoints import CheckpointCandidate, build_checkpoints
from ledger_engines.reconciliation.detector import (
    DetectionResult,
    Discrepancy,
    DiscrepancyKind,
    Severity,
    classify_severity,
    detect_discrepancies,
)
from ledger_engines.reconciliation.dry_run import DryRunResult, PredictedImpact, simulate_fix
from ledger_engines.reconciliation.policy import (
    GateDecision,
    investigation_below_floor,
    route_fix,
)

__all__ = [
    "CheckpointCandidate",
    "build_checkpoints",
    "DetectionResult",
    "Discrepancy",
    "DiscrepancyKind",
    "Severity",
    "classify_severity",
    "detect_discrepancies",
    "DryRunResult",
    "PredictedImpact",
    "simulate_fix",
    "GateDecision",
    "investigation_below_floor",
    "route_fix",
]
