"""
Discrepancy detector -- pure engine.

Derives the running cash balance of an account from its ledger lines and
compares it with every balance the source reported:

    cash lines ordered by (date, origin_row_number, line_seq)
        |  running balance: debit +, credit -
        v
    one checkpoint per date (highest row number wins)
        |  delta = csv_balance - running balance on that date
        v
    |delta| <= tolerance -> balanced, else a severity-ranked Discrepancy

Transactions whose lines do not balance, or that were flagged with an
amount discrepancy when they were built, are reported as CRITICAL
``unbalanced_transaction`` discrepancies whatever their size.

Nothing here is persisted: discrepancies are recomputed on every pass.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from ledger_engines.tracer import traced_engine
from ledger_kernel.domain.amounts import DEFAULT_TOLERANCE
from ledger_kernel.domain.dtos import CheckpointView, LedgerEntryView, LedgerTransactionView

ZERO = Decimal("0")
DEFAULT_LOW_MAX = Decimal("10")
DEFAULT_MEDIUM_MAX = Decimal("1000")


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    CRITICAL = "critical"


class DiscrepancyKind(str, Enum):
    BALANCE_MISMATCH = "balance_mismatch"
    UNBALANCED_TRANSACTION = "unbalanced_transaction"


@dataclass(frozen=True)
class Discrepancy:
    account_id: str
    kind: DiscrepancyKind
    effective_date: date
    expected_balance: Decimal | None
    calculated_balance: Decimal | None
    delta: Decimal
    severity: Severity
    checkpoint_id: UUID | None = None
    checkpoint_row_number: int | None = None
    transaction_id: UUID | None = None
    affected_row_numbers: tuple[int, ...] = ()

    @property
    def key(self) -> tuple[str, str]:
        """Stable identity across detection passes."""
        ref = self.checkpoint_id if self.kind == DiscrepancyKind.BALANCE_MISMATCH else self.transaction_id
        return self.kind.value, str(ref)

    def to_dict(self) -> dict[str, Any]:
        return {
            "account_id": self.account_id,
            "kind": self.kind.value,
            "date": self.effective_date.isoformat(),
            "expected_balance": _fmt(self.expected_balance),
            "calculated_balance": _fmt(self.calculated_balance),
            "delta": _fmt(self.delta),
            "severity": self.severity.value,
            "checkpoint_id": str(self.checkpoint_id) if self.checkpoint_id else None,
            "checkpoint_row_number": self.checkpoint_row_number,
            "transaction_id": str(self.transaction_id) if self.transaction_id else None,
            "affected_row_numbers": list(self.affected_row_numbers),
        }


def _fmt(value: Decimal | None) -> str | None:
    return None if value is None else format(value, "f")


@dataclass(frozen=True)
class DetectionResult:
    account_id: str
    discrepancies: tuple[Discrepancy, ...]
    checkpoints_checked: int

    @property
    def count(self) -> int:
        return len(self.discrepancies)

    @property
    def max_abs_delta(self) -> Decimal:
        return max((abs(d.delta) for d in self.discrepancies), default=ZERO)

    @property
    def unresolved_checkpoint_ids(self) -> frozenset[UUID]:
        return frozenset(
            d.checkpoint_id
            for d in self.discrepancies
            if d.kind == DiscrepancyKind.BALANCE_MISMATCH and d.checkpoint_id is not None
        )


def classify_severity(
    delta: Decimal,
    *,
    tolerance: Decimal = DEFAULT_TOLERANCE,
    low_max: Decimal = DEFAULT_LOW_MAX,
    medium_max: Decimal = DEFAULT_MEDIUM_MAX,
) -> Severity | None:
    """None when ``|delta|`` is within tolerance."""
    size = abs(delta)
    if size <= tolerance:
        return None
    if size <= low_max:
        return Severity.LOW
    if size <= medium_max:
        return Severity.MEDIUM
    return Severity.CRITICAL


def latest_checkpoint_per_date(
    checkpoints: Sequence[CheckpointView],
) -> tuple[CheckpointView, ...]:
    """One checkpoint per date: the one with the highest row number."""
    by_date: dict[date, CheckpointView] = {}
    for cp in checkpoints:
        current = by_date.get(cp.effective_date)
        if current is None or cp.row_number > current.row_number:
            by_date[cp.effective_date] = cp
    return tuple(by_date[d] for d in sorted(by_date))


def cash_lines(
    entries: Sequence[LedgerEntryView], account_id: str, currency: str
) -> list[LedgerEntryView]:
    lines = [e for e in entries if e.account_id == account_id and e.asset_id == currency]
    lines.sort(key=lambda e: (e.effective_date, e.origin_row_number, e.line_seq))
    return lines


@traced_engine("discrepancy_detector", "1.0", fingerprint_fields=("account_id", "currency"))
def detect_discrepancies(
    *,
    account_id: str,
    currency: str,
    entries: Sequence[LedgerEntryView],
    checkpoints: Sequence[CheckpointView],
    transactions: Sequence[LedgerTransactionView] = (),
    tolerance: Decimal = DEFAULT_TOLERANCE,
    low_max: Decimal = DEFAULT_LOW_MAX,
    medium_max: Decimal = DEFAULT_MEDIUM_MAX,
) -> DetectionResult:
    found: list[Discrepancy] = []

    lines = cash_lines(entries, account_id, currency)
    selected = latest_checkpoint_per_date(checkpoints)
    running = ZERO
    cursor = 0
    for cp in selected:
        window_rows: set[int] = set()
        while cursor < len(lines) and lines[cursor].effective_date <= cp.effective_date:
            running += lines[cursor].signed_amount
            window_rows.add(lines[cursor].origin_row_number)
            cursor += 1
        delta = cp.csv_balance - running
        severity = classify_severity(
            delta, tolerance=tolerance, low_max=low_max, medium_max=medium_max
        )
        if severity is None:
            continue
        found.append(
            Discrepancy(
                account_id=account_id,
                kind=DiscrepancyKind.BALANCE_MISMATCH,
                effective_date=cp.effective_date,
                expected_balance=cp.csv_balance,
                calculated_balance=running,
                delta=delta,
                severity=severity,
                checkpoint_id=cp.id,
                checkpoint_row_number=cp.row_number,
                affected_row_numbers=tuple(sorted(window_rows | {cp.row_number})),
            )
        )

    for txn in transactions:
        imbalance = txn.total_debits - txn.total_credits
        if txn.amount_discrepancy is None and abs(imbalance) <= tolerance:
            continue
        delta = txn.amount_discrepancy if txn.amount_discrepancy is not None else imbalance
        found.append(
            Discrepancy(
                account_id=account_id,
                kind=DiscrepancyKind.UNBALANCED_TRANSACTION,
                effective_date=txn.effective_date,
                expected_balance=txn.csv_amount,
                calculated_balance=txn.entry_sum,
                delta=delta,
                severity=Severity.CRITICAL,
                transaction_id=txn.id,
                affected_row_numbers=tuple(
                    sorted({e.origin_row_number for e in txn.entries} | {txn.origin_row_number})
                ),
            )
        )

    found.sort(key=lambda d: (d.effective_date, d.kind.value, d.checkpoint_row_number or 0))
    return DetectionResult(
        account_id=account_id,
        discrepancies=tuple(found),
        checkpoints_checked=len(selected),
    )
