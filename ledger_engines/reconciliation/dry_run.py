"""
Dry-run simulation of a proposed fix -- pure engine.

A fix is never applied on the strength of its own predicted impact.  The
corrective transactions are laid over the current ledger as synthetic
lines, the detector runs before and after, and the observed effect is
compared with what the fix claimed:

    current entries ----------------> detect ---> unresolved (before)
    current entries + fix lines ----> detect ---> unresolved (after)

    checkpoints_resolved = before - after
    new_discrepancies    = after  - before

Nothing is written.  Synthetic ids are uuid5-derived so the same
simulation always produces the same result.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import Decimal
from typing import Any
from uuid import NAMESPACE_URL, UUID, uuid5

from ledger_engines.materialization import TransactionPlan
from ledger_engines.reconciliation.detector import (
    DEFAULT_LOW_MAX,
    DEFAULT_MEDIUM_MAX,
    Discrepancy,
    detect_discrepancies,
)
from ledger_engines.tracer import traced_engine
from ledger_kernel.domain.amounts import DEFAULT_TOLERANCE
from ledger_kernel.domain.dtos import (
    CheckpointView,
    LedgerEntryView,
    LedgerTransactionView,
)

ZERO = Decimal("0")


@dataclass(frozen=True)
class PredictedImpact:
    """What a fix claims it will do."""

    balance_change: Decimal
    transactions_created: int
    checkpoints_resolved: int
    warnings: tuple[str, ...] = ()

    def to_dict(self) -> dict[str, Any]:
        return {
            "balance_change": format(self.balance_change, "f"),
            "transactions_created": self.transactions_created,
            "checkpoints_resolved": self.checkpoints_resolved,
            "warnings": list(self.warnings),
        }


@dataclass(frozen=True)
class DryRunResult:
    """What a fix would actually do to the current ledger."""

    balance_change: Decimal
    transactions_created: int
    checkpoints_resolved: tuple[UUID, ...]
    discrepancies_before: int
    discrepancies_after: int
    new_discrepancies: tuple[Discrepancy, ...] = ()

    def contradicts(
        self, predicted: PredictedImpact, tolerance: Decimal = DEFAULT_TOLERANCE
    ) -> str | None:
        """Reason the simulation disagrees with ``predicted``, or None."""
        if abs(self.balance_change - predicted.balance_change) > tolerance:
            return (
                f"balance change {self.balance_change} differs from predicted "
                f"{predicted.balance_change}"
            )
        if self.transactions_created != predicted.transactions_created:
            return (
                f"creates {self.transactions_created} transaction(s), predicted "
                f"{predicted.transactions_created}"
            )
        if len(self.checkpoints_resolved) < predicted.checkpoints_resolved:
            return (
                f"resolves {len(self.checkpoints_resolved)} checkpoint(s), predicted "
                f"{predicted.checkpoints_resolved}"
            )
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "balance_change": format(self.balance_change, "f"),
            "transactions_created": self.transactions_created,
            "checkpoints_resolved": [str(c) for c in self.checkpoints_resolved],
            "discrepancies_before": self.discrepancies_before,
            "discrepancies_after": self.discrepancies_after,
            "new_discrepancies": [d.to_dict() for d in self.new_discrepancies],
        }


def _synthetic_entries(plan: TransactionPlan, index: int) -> tuple[LedgerTransactionView, ...]:
    txn_id = uuid5(NAMESPACE_URL, f"dry-run:{plan.fingerprint}:{index}")
    entries = tuple(
        LedgerEntryView(
            id=uuid5(txn_id, str(line.line_seq)),
            transaction_id=txn_id,
            effective_date=plan.effective_date,
            account_id=line.account_id,
            asset_id=line.asset_id,
            side=line.side,
            amount=line.amount,
            currency=plan.currency,
            transaction_type=plan.transaction_type.value,
            origin_row_number=plan.origin_row_number,
            line_seq=line.line_seq,
            source_row_ids=plan.source_row_ids,
            quantity=line.quantity,
        )
        for line in plan.lines
    )
    return (
        LedgerTransactionView(
            id=txn_id,
            account_id=plan.account_id,
            effective_date=plan.effective_date,
            transaction_type=plan.transaction_type.value,
            description=plan.description,
            csv_amount=plan.csv_amount,
            entry_sum=plan.entry_sum,
            origin_row_number=plan.origin_row_number,
            entries=entries,
            source_row_ids=plan.source_row_ids,
            amount_discrepancy=plan.amount_discrepancy,
        ),
    )


@traced_engine("fix_dry_run", "1.0", fingerprint_fields=("account_id", "currency"))
def simulate_fix(
    *,
    account_id: str,
    currency: str,
    entries: Sequence[LedgerEntryView],
    checkpoints: Sequence[CheckpointView],
    transactions: Sequence[LedgerTransactionView],
    corrections: Sequence[TransactionPlan],
    tolerance: Decimal = DEFAULT_TOLERANCE,
    low_max: Decimal = DEFAULT_LOW_MAX,
    medium_max: Decimal = DEFAULT_MEDIUM_MAX,
) -> DryRunResult:
    bands = {"tolerance": tolerance, "low_max": low_max, "medium_max": medium_max}
    before = detect_discrepancies(
        account_id=account_id,
        currency=currency,
        entries=entries,
        checkpoints=checkpoints,
        transactions=transactions,
        **bands,
    )

    synthetic: list[LedgerTransactionView] = []
    for index, plan in enumerate(corrections):
        synthetic.extend(_synthetic_entries(plan, index))
    added_entries = [e for txn in synthetic for e in txn.entries]

    after = detect_discrepancies(
        account_id=account_id,
        currency=currency,
        entries=[*entries, *added_entries],
        checkpoints=checkpoints,
        transactions=[*transactions, *synthetic],
        **bands,
    )

    balance_change = sum(
        (
            e.signed_amount
            for e in added_entries
            if e.account_id == account_id and e.asset_id == currency
        ),
        ZERO,
    )
    resolved = before.unresolved_checkpoint_ids - after.unresolved_checkpoint_ids
    before_keys = {d.key for d in before.discrepancies}
    new = tuple(d for d in after.discrepancies if d.key not in before_keys)
    return DryRunResult(
        balance_change=balance_change,
        transactions_created=len(synthetic),
        checkpoints_resolved=tuple(sorted(resolved, key=str)),
        discrepancies_before=before.count,
        discrepancies_after=after.count,
        new_discrepancies=new,
    )
