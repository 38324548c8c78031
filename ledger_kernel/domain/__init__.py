"""
Pure domain layer.

Immutable DTOs, the injectable clock and exact-decimal helpers.  No ORM,
no database and no I/O.
"""

from ledger_kernel.domain.amounts import (
    DEFAULT_TOLERANCE,
    canonical_json,
    content_hash,
    parse_locale_decimal,
    within_tolerance,
)
from ledger_kernel.domain.clock import Clock, DeterministicClock, SystemClock
from ledger_kernel.domain.dtos import (
    CheckpointView,
    EntrySide,
    LedgerEntryView,
    LedgerTransactionView,
    SourceRowView,
    TransactionFlag,
    TransactionType,
)

__all__ = [
    "DEFAULT_TOLERANCE",
    "canonical_json",
    "content_hash",
    "parse_locale_decimal",
    "within_tolerance",
    "Clock",
    "DeterministicClock",
    "SystemClock",
    "CheckpointView",
    "EntrySide",
    "LedgerEntryView",
    "LedgerTransactionView",
    "SourceRowView",
    "TransactionFlag",
    "TransactionType",
]
