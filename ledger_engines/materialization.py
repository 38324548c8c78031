"""
Module: ledger_engines.materialization
Responsibility:
    Turn mapped rows into double-entry transaction plans: group action rows
    with their settlement rows, classify the transaction type from the
    action text, and build balanced debit/credit lines with full
    source-row provenance.
Architecture position:
    Engines -- pure calculation layer, zero I/O.  Persistence of the plans
    is done by ledger_services.materialization_service.

Invariants enforced:
    - Every planned line has a positive amount; ``side`` carries direction.
    - Debits equal credits within every plan built here.
    - ``csv_amount`` is the sum of the group's signed source amounts;
      ``entry_sum`` is the net cash effect of the lines.  When they differ
      by more than the tolerance every line carries ``amount_discrepancy``
      and the plan is flagged ``over_grouping_candidate``.  Balance is
      never forced.
    - ``fingerprint`` depends only on content, so planning the same rows
      twice yields the same fingerprints.

Grouping (``action_settlement`` strategy):

    row 1  YOU BOUGHT  AAPL  10   -1500.00   <- action row
    row 2  (blank)     --    0       -4.95   <- settlement, same date,
                                                within adjacency window
    row 3  DIVIDEND    MSFT  --      12.00   <- next action row

A settlement row with no preceding action row on the same date within
``adjacency_window`` rows becomes its own group, flagged
``orphan_settlement``.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any
from uuid import UUID

from ledger_engines.tracer import traced_engine
from ledger_kernel.domain.amounts import DEFAULT_TOLERANCE, content_hash, parse_locale_decimal
from ledger_kernel.domain.dtos import EntrySide, TransactionFlag, TransactionType
from ledger_kernel.logging_config import get_logger

logger = get_logger("engines.materialization")

ZERO = Decimal("0")

INCOME_DIVIDENDS = "income:dividends"
INCOME_INTEREST = "income:interest"
EXPENSE_FEES = "expense:fees"
EQUITY_EXTERNAL = "equity:external_transfers"
SUSPENSE = "suspense:unclassified"


# =============================================================================
# Configuration values
# =============================================================================


class GroupingStrategy(str, Enum):
    ACTION_SETTLEMENT = "action_settlement"
    ONE_ROW_PER_TRANSACTION = "one_row_per_transaction"


@dataclass(frozen=True)
class GroupingSpec:
    strategy: GroupingStrategy = GroupingStrategy.ACTION_SETTLEMENT
    adjacency_window: int = 3


@dataclass(frozen=True)
class FieldRoles:
    """Names of the mapped-row fields the materializer reads."""

    date: str = "date"
    action: str = "action"
    symbol: str = "symbol"
    quantity: str = "quantity"
    amount: str = "amount"
    balance: str = "balance"
    description: str = "description"


# =============================================================================
# Inputs and outputs
# =============================================================================


@dataclass(frozen=True)
class MaterializationRow:
    """A mapped row as seen by the materializer."""

    row_number: int
    values: dict[str, Any]
    source_row_id: UUID | None = None  # None in preview runs


@dataclass(frozen=True)
class RowGroup:
    rows: tuple[MaterializationRow, ...]
    orphan: bool = False

    @property
    def first_row_number(self) -> int:
        return self.rows[0].row_number


@dataclass(frozen=True)
class PlannedLine:
    line_seq: int
    account_id: str
    asset_id: str
    side: EntrySide
    amount: Decimal
    quantity: Decimal | None = None

    @property
    def signed_amount(self) -> Decimal:
        return self.amount if self.side == EntrySide.DEBIT else -self.amount

    def to_dict(self) -> dict[str, Any]:
        return {
            "line_seq": self.line_seq,
            "account_id": self.account_id,
            "asset_id": self.asset_id,
            "side": self.side.value,
            "amount": self.amount,
            "quantity": self.quantity,
        }


@dataclass(frozen=True)
class TransactionPlan:
    """A transaction ready to be persisted, with its provenance."""

    account_id: str
    currency: str
    effective_date: date
    transaction_type: TransactionType
    description: str
    rows: tuple[MaterializationRow, ...]
    lines: tuple[PlannedLine, ...]
    csv_amount: Decimal
    entry_sum: Decimal
    amount_discrepancy: Decimal | None = None
    flags: tuple[TransactionFlag, ...] = ()
    fingerprint_salt: str = "import"

    @property
    def origin_row_number(self) -> int:
        return self.rows[0].row_number

    @property
    def source_row_ids(self) -> tuple[UUID, ...]:
        return tuple(r.source_row_id for r in self.rows if r.source_row_id is not None)

    @property
    def total_debits(self) -> Decimal:
        return sum((line.amount for line in self.lines if line.side == EntrySide.DEBIT), ZERO)

    @property
    def total_credits(self) -> Decimal:
        return sum((line.amount for line in self.lines if line.side == EntrySide.CREDIT), ZERO)

    @property
    def fingerprint(self) -> str:
        provenance = sorted(str(i) for i in self.source_row_ids) or [
            r.row_number for r in self.rows
        ]
        return content_hash(
            {
                "salt": self.fingerprint_salt,
                "account_id": self.account_id,
                "date": self.effective_date,
                "type": self.transaction_type.value,
                "rows": provenance,
                "lines": [line.to_dict() for line in self.lines],
            }
        )


@dataclass(frozen=True)
class MaterializationPlan:
    transactions: tuple[TransactionPlan, ...]
    groups: tuple[RowGroup, ...]
    zero_effect_groups: int = 0
    unplaced_rows: tuple[int, ...] = ()  # row numbers with no usable date


# =============================================================================
# Row helpers
# =============================================================================


def to_decimal(value: Any) -> Decimal | None:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, str):
        return parse_locale_decimal(value)
    return None


def to_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str) and value.strip():
        try:
            return date.fromisoformat(value.strip())
        except ValueError:
            return None
    return None


def _text(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ("" if value is None else str(value))


def is_settlement_row(row: MaterializationRow, roles: FieldRoles) -> bool:
    """Blank action, blank symbol and zero or absent quantity."""
    quantity = to_decimal(row.values.get(roles.quantity))
    return (
        not _text(row.values.get(roles.action))
        and not _text(row.values.get(roles.symbol))
        and (quantity is None or quantity == ZERO)
    )


def classify_transaction_type(action: str) -> TransactionType:
    """Map free-text action wording to a transaction type."""
    upper = action.upper()
    if "REINVEST" in upper:
        return TransactionType.REINVESTMENT
    if "BOUGHT" in upper or upper.startswith("BUY") or " BUY" in upper:
        return TransactionType.BUY
    if "SOLD" in upper or upper.startswith("SELL") or " SELL" in upper:
        return TransactionType.SELL
    if "DIVIDEND" in upper:
        return TransactionType.DIVIDEND
    if "INTEREST" in upper:
        return TransactionType.INTEREST
    if "FEE" in upper or "COMMISSION" in upper:
        return TransactionType.FEE
    if "TRANSFERRED TO" in upper or "TRANSFER OUT" in upper:
        return TransactionType.TRANSFER_OUT
    if "TRANSFERRED FROM" in upper or "TRANSFER IN" in upper:
        return TransactionType.TRANSFER_IN
    if "DEPOSIT" in upper or "CONTRIBUTION" in upper:
        return TransactionType.DEPOSIT
    if "WITHDRAWAL" in upper or "DISTRIBUTION" in upper:
        return TransactionType.WITHDRAWAL
    return TransactionType.OTHER


# =============================================================================
# Grouping
# =============================================================================


def group_rows(
    rows: Sequence[MaterializationRow],
    roles: FieldRoles,
    grouping: GroupingSpec,
) -> tuple[RowGroup, ...]:
    """Group dated rows into transaction groups, in row-number order."""
    ordered = sorted(rows, key=lambda r: r.row_number)
    if grouping.strategy == GroupingStrategy.ONE_ROW_PER_TRANSACTION:
        return tuple(RowGroup(rows=(r,)) for r in ordered)

    groups: list[RowGroup] = []
    current: list[MaterializationRow] = []
    anchor: MaterializationRow | None = None

    def close() -> None:
        if current:
            groups.append(RowGroup(rows=tuple(current)))

    for row in ordered:
        if not is_settlement_row(row, roles):
            close()
            current = [row]
            anchor = row
            continue
        attaches = (
            anchor is not None
            and row.row_number - anchor.row_number <= grouping.adjacency_window
            and to_date(row.values.get(roles.date)) == to_date(anchor.values.get(roles.date))
        )
        if attaches:
            current.append(row)
        else:
            close()
            current = []
            anchor = None
            groups.append(RowGroup(rows=(row,), orphan=True))
    close()
    return tuple(groups)


# =============================================================================
# Construction
# =============================================================================


def _counter_account(
    txn_type: TransactionType, account_id: str, symbol: str, quantity: Decimal | None
) -> tuple[str, str | None]:
    """(account, asset) of the non-cash line; asset None means the cash currency."""
    has_position = bool(symbol) and quantity is not None and quantity != ZERO
    if txn_type in (TransactionType.BUY, TransactionType.SELL, TransactionType.REINVESTMENT):
        if symbol:
            return account_id, symbol
        return SUSPENSE, None
    if txn_type == TransactionType.DIVIDEND:
        return INCOME_DIVIDENDS, None
    if txn_type == TransactionType.INTEREST:
        return INCOME_INTEREST, None
    if txn_type == TransactionType.FEE:
        return EXPENSE_FEES, None
    if txn_type in (
        TransactionType.TRANSFER_IN,
        TransactionType.TRANSFER_OUT,
        TransactionType.DEPOSIT,
        TransactionType.WITHDRAWAL,
    ):
        return EQUITY_EXTERNAL, None
    if has_position:
        return account_id, symbol
    return SUSPENSE, None


def build_transaction(
    group: RowGroup,
    *,
    account_id: str,
    currency: str,
    roles: FieldRoles,
    tolerance: Decimal = DEFAULT_TOLERANCE,
) -> TransactionPlan | None:
    """
    Build the double-entry plan for one group.

    Returns None for a group with no cash effect at all (every amount zero
    or absent).
    """
    primary = next(
        (r for r in group.rows if not is_settlement_row(r, roles)),
        group.rows[0],
    )
    amounts = [to_decimal(r.values.get(roles.amount)) or ZERO for r in group.rows]
    csv_amount = sum(amounts, ZERO)

    driver_amount = to_decimal(primary.values.get(roles.amount)) or ZERO
    if driver_amount == ZERO:
        driver_amount = next((a for a in amounts if a != ZERO), ZERO)
    if driver_amount == ZERO and csv_amount == ZERO:
        return None

    effective_date = to_date(primary.values.get(roles.date))
    action = _text(primary.values.get(roles.action))
    symbol = _text(primary.values.get(roles.symbol)).upper()
    quantity = to_decimal(primary.values.get(roles.quantity))
    txn_type = classify_transaction_type(action)

    cash_side = EntrySide.DEBIT if driver_amount > ZERO else EntrySide.CREDIT
    magnitude = abs(driver_amount)
    counter_account, counter_asset = _counter_account(txn_type, account_id, symbol, quantity)
    counter_is_position = counter_asset is not None

    lines = (
        PlannedLine(
            line_seq=0,
            account_id=account_id,
            asset_id=currency,
            side=cash_side,
            amount=magnitude,
        ),
        PlannedLine(
            line_seq=1,
            account_id=counter_account,
            asset_id=counter_asset or currency,
            side=cash_side.opposite,
            amount=magnitude,
            quantity=abs(quantity) if counter_is_position and quantity is not None else None,
        ),
    )

    entry_sum = lines[0].signed_amount
    flags: list[TransactionFlag] = []
    discrepancy = None
    if abs(entry_sum - csv_amount) > tolerance:
        discrepancy = entry_sum - csv_amount
        flags.append(TransactionFlag.OVER_GROUPING_CANDIDATE)
    if group.orphan:
        flags.append(TransactionFlag.ORPHAN_SETTLEMENT)

    description = _text(primary.values.get(roles.description)) or action or txn_type.value
    return TransactionPlan(
        account_id=account_id,
        currency=currency,
        effective_date=effective_date,
        transaction_type=txn_type,
        description=description,
        rows=group.rows,
        lines=lines,
        csv_amount=csv_amount,
        entry_sum=entry_sum,
        amount_discrepancy=discrepancy,
        flags=tuple(flags),
    )


@traced_engine("materializer", "1.0", fingerprint_fields=("account_id", "currency"))
def plan_transactions(
    rows: Sequence[MaterializationRow],
    *,
    account_id: str,
    currency: str,
    roles: FieldRoles,
    grouping: GroupingSpec,
    tolerance: Decimal = DEFAULT_TOLERANCE,
) -> MaterializationPlan:
    """Group and build every transaction for one run's mapped rows."""
    dated = [r for r in rows if to_date(r.values.get(roles.date)) is not None]
    dated_numbers = {r.row_number for r in dated}
    unplaced = tuple(sorted(r.row_number for r in rows if r.row_number not in dated_numbers))

    groups = group_rows(dated, roles, grouping)
    plans: list[TransactionPlan] = []
    zero_effect = 0
    for group in groups:
        plan = build_transaction(
            group,
            account_id=account_id,
            currency=currency,
            roles=roles,
            tolerance=tolerance,
        )
        if plan is None:
            zero_effect += 1
            continue
        plans.append(plan)

    flagged = sum(1 for p in plans if p.amount_discrepancy is not None)
    if flagged:
        logger.warning(
            "over_grouping_candidates",
            extra={"account_id": account_id, "count": flagged},
        )
    return MaterializationPlan(
        transactions=tuple(plans),
        groups=groups,
        zero_effect_groups=zero_effect,
        unplaced_rows=unplaced,
    )


# =============================================================================
# Corrections
# =============================================================================


@dataclass(frozen=True)
class CorrectionLine:
    side: EntrySide
    account_id: str
    asset_id: str
    amount: Decimal
    quantity: Decimal | None = None


@dataclass(frozen=True)
class CorrectionSpec:
    """A validated corrective transaction from an applied fix."""

    effective_date: date
    description: str
    transaction_type: TransactionType
    rows: tuple[MaterializationRow, ...]
    lines: tuple[CorrectionLine, ...] = field(default_factory=tuple)


def build_correction(
    spec: CorrectionSpec,
    *,
    account_id: str,
    currency: str,
    salt: str,
) -> TransactionPlan:
    """
    Plan a corrective transaction from explicit lines.

    ``salt`` distinguishes corrections that cite the same rows as an
    imported transaction (e.g. "correction:<investigation>:<fix>:<n>").
    """
    lines = tuple(
        PlannedLine(
            line_seq=i,
            account_id=line.account_id,
            asset_id=line.asset_id,
            side=line.side,
            amount=line.amount,
            quantity=line.quantity,
        )
        for i, line in enumerate(spec.lines)
    )
    cash_effect = sum(
        (
            line.signed_amount
            for line in lines
            if line.account_id == account_id and line.asset_id == currency
        ),
        ZERO,
    )
    return TransactionPlan(
        account_id=account_id,
        currency=currency,
        effective_date=spec.effective_date,
        transaction_type=spec.transaction_type,
        description=spec.description,
        rows=tuple(sorted(spec.rows, key=lambda r: r.row_number)),
        lines=lines,
        csv_amount=cash_effect,
        entry_sum=cash_effect,
        fingerprint_salt=salt,
    )
