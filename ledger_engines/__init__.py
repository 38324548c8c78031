"""
Ledger Engines

Pure calculation layer: no database, no clock, no I/O.  Engines take frozen
values (mapped rows, ledger views, checkpoints) and return frozen values.

- materialization: transaction grouping and double-entry construction
- reconciliation: checkpoint building, discrepancy detection, confidence
  gates and fix dry-runs
"""

from ledger_engines.materialization import (
    CorrectionLine,
    CorrectionSpec,
    FieldRoles,
    GroupingSpec,
    GroupingStrategy,
    MaterializationPlan,
    MaterializationRow,
    PlannedLine,
    RowGroup,
    TransactionPlan,
    build_correction,
    build_transaction,
    classify_transaction_type,
    group_rows,
    plan_transactions,
)

__all__ = [
    "CorrectionLine",
    "CorrectionSpec",
    "FieldRoles",
    "GroupingSpec",
    "GroupingStrategy",
    "MaterializationPlan",
    "MaterializationRow",
    "PlannedLine",
    "RowGroup",
    "TransactionPlan",
    "build_correction",
    "build_transaction",
    "classify_transaction_type",
    "group_rows",
    "plan_transactions",
]
