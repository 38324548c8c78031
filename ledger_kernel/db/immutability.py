"""
ORM-Level Immutability Enforcement.

===============================================================================
WHY THIS EXISTS
===============================================================================

Lineage only means something if nothing in the chain can change after the
fact.  Raw files, source rows, committed plan versions, ledger lines,
checkpoints and the reconciliation audit trail are append-only: a
correction is a new record, never an edit.

SQLAlchemy fires mapper events before UPDATE / DELETE statements reach the
database.  The listeners below intercept them and raise
``ImmutabilityViolation``, which aborts the flush:

    session.flush()
         |
         v
    [before_update] --> _block_update() --> ImmutabilityViolation
    [before_delete] --> _block_delete() --> ImmutabilityViolation

Raw SQL issued with ``text()`` bypasses the ORM entirely; that is how tests
simulate out-of-band corruption, and why lineage queries re-verify
checksums instead of trusting the rows.

===============================================================================
PROTECTED ENTITIES
===============================================================================

Entity                    | Why
--------------------------|-----------------------------------------------
RawFile                   | Sole source of truth for original data
SourceRow                 | Lineage target of every ledger line
ParsePlanVersion          | Committed versions are content-addressed
LedgerTransaction / Entry | Ledger is append-only; corrections are new rows
BalanceCheckpoint         | Ground truth derived from an immutable row
Investigation             | Assistant response persisted verbatim
FixDecision               | Audit trail of fix routing
TransactionDelta          | Audit trail of applied fixes

Updates that carry no net column change (e.g. an object merely marked dirty
by a relationship load) are let through.

===============================================================================
USAGE
===============================================================================

    from ledger_kernel.db.immutability import register_immutability_listeners
    register_immutability_listeners()  # once, at startup

    unregister_immutability_listeners()  # TESTS ONLY
"""

from sqlalchemy import event, inspect

from ledger_kernel.exceptions import ImmutabilityViolation
from ledger_kernel.logging_config import get_logger

logger = get_logger("db.immutability")


def _has_column_changes(target) -> bool:
    state = inspect(target)
    for attr in state.mapper.column_attrs:
        if state.attrs[attr.key].history.has_changes():
            return True
    return False


def _reject(target, operation: str, reason: str) -> None:
    entity_type = type(target).__name__.removesuffix("Model")
    logger.error(
        "immutability_violation_blocked",
        extra={
            "entity_type": entity_type,
            "entity_id": str(target.id),
            "operation": operation,
        },
    )
    raise ImmutabilityViolation(
        entity_type=entity_type,
        entity_id=str(target.id),
        reason=reason,
    )


def _block_update(mapper, connection, target):
    """Reject any UPDATE that changes a column of an append-only record."""
    if not _has_column_changes(target):
        return
    _reject(target, "UPDATE", "Append-only records cannot be modified")


def _block_delete(mapper, connection, target):
    """Reject any DELETE of an append-only record."""
    _reject(target, "DELETE", "Append-only records cannot be deleted")


def _protected_models() -> tuple[type, ...]:
    from ledger_kernel.models.checkpoint import BalanceCheckpointModel
    from ledger_kernel.models.ledger import LedgerEntryModel, LedgerTransactionModel
    from ledger_kernel.models.parse_plan import ParsePlanVersionModel
    from ledger_kernel.models.raw_file import RawFileModel, SourceRowModel
    from ledger_kernel.models.reconciliation import (
        FixDecisionModel,
        InvestigationModel,
        TransactionDeltaModel,
    )

    return (
        RawFileModel,
        SourceRowModel,
        ParsePlanVersionModel,
        LedgerTransactionModel,
        LedgerEntryModel,
        BalanceCheckpointModel,
        InvestigationModel,
        FixDecisionModel,
        TransactionDeltaModel,
    )


def register_immutability_listeners() -> None:
    """
    Register immutability enforcement listeners on every append-only model.

    Idempotent: a listener already present is not added twice.
    """
    for model in _protected_models():
        if not event.contains(model, "before_update", _block_update):
            event.listen(model, "before_update", _block_update)
        if not event.contains(model, "before_delete", _block_delete):
            event.listen(model, "before_delete", _block_delete)


def _safe_remove_listener(target, event_name, listener_fn):
    if event.contains(target, event_name, listener_fn):
        event.remove(target, event_name, listener_fn)


def unregister_immutability_listeners() -> None:
    """
    Remove immutability enforcement listeners.

    WARNING: Only use this in tests that deliberately corrupt records.
    """
    for model in _protected_models():
        _safe_remove_listener(model, "before_update", _block_update)
        _safe_remove_listener(model, "before_delete", _block_delete)
