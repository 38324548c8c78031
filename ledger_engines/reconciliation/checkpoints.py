"""
Balance checkpoint builder -- pure engine.

A checkpoint is a balance the source itself reported on a row.  Any row
with a usable date and a parseable balance yields one; rows without either
are skipped, never reported as errors.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from uuid import UUID

from ledger_engines.materialization import FieldRoles, MaterializationRow, to_date
from ledger_kernel.domain.amounts import parse_locale_decimal


@dataclass(frozen=True)
class CheckpointCandidate:
    row_number: int
    source_row_id: UUID | None
    effective_date: date
    csv_balance: Decimal
    balance_text: str


def build_checkpoints(
    rows: Sequence[MaterializationRow],
    roles: FieldRoles,
    balance_texts: Mapping[int, str] | None = None,
) -> tuple[CheckpointCandidate, ...]:
    """
    Checkpoint candidates for ``rows`` in row-number order.

    ``balance_texts`` maps row numbers to the balance cell exactly as it
    appeared in the file; without it the mapped value's text is recorded.
    """
    texts = balance_texts or {}
    candidates = []
    for row in sorted(rows, key=lambda r: r.row_number):
        effective_date = to_date(row.values.get(roles.date))
        if effective_date is None:
            continue
        value = row.values.get(roles.balance)
        text = texts.get(row.row_number)
        if text is None:
            text = "" if value is None else str(value)
        if isinstance(value, Decimal):
            balance = value
        else:
            balance = parse_locale_decimal(text)
        if balance is None:
            continue
        candidates.append(
            CheckpointCandidate(
                row_number=row.row_number,
                source_row_id=row.source_row_id,
                effective_date=effective_date,
                csv_balance=balance,
                balance_text=text.strip(),
            )
        )
    return tuple(candidates)
