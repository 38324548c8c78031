"""
Pure materialization engine: grouping rows and building double-entry plans.

Covers:
- Transaction type classification from action wording
- Cash line = driver amount; counter account per transaction type
- Action + settlement grouping, adjacency window, orphan settlements
- Over-grouping: csv amount vs entry sum mismatch is flagged, not hidden
- Zero-effect groups and undated rows
- Property: every planned transaction balances and uses each row once
- Fingerprints and corrective transactions
"""

from datetime import date
from decimal import Decimal

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from ledger_engines.materialization import (
    EQUITY_EXTERNAL,
    EXPENSE_FEES,
    INCOME_DIVIDENDS,
    SUSPENSE,
    CorrectionLine,
    CorrectionSpec,
    FieldRoles,
    GroupingSpec,
    GroupingStrategy,
    MaterializationRow,
    build_correction,
    classify_transaction_type,
    group_rows,
    plan_transactions,
)
from ledger_kernel.domain.dtos import EntrySide, TransactionFlag, TransactionType

ACCOUNT = "brokerage:1234"
ROLES = FieldRoles()


def row(n, on, action="", symbol="", quantity=None, amount=None, description=""):
    return MaterializationRow(
        row_number=n,
        values={
            "date": on,
            "action": action,
            "symbol": symbol,
            "quantity": None if quantity is None else Decimal(quantity),
            "amount": None if amount is None else Decimal(amount),
            "description": description,
        },
    )


def plan(rows, strategy=GroupingStrategy.ACTION_SETTLEMENT, window=3):
    return plan_transactions(
        rows,
        account_id=ACCOUNT,
        currency="USD",
        roles=ROLES,
        grouping=GroupingSpec(strategy=strategy, adjacency_window=window),
    )


D1 = date(2024, 1, 3)
D2 = date(2024, 1, 4)


class TestClassifyTransactionType:
    @pytest.mark.parametrize(
        "action, expected",
        [
            ("YOU BOUGHT", TransactionType.BUY),
            ("Buy", TransactionType.BUY),
            ("YOU SOLD", TransactionType.SELL),
            ("DIVIDEND RECEIVED", TransactionType.DIVIDEND),
            ("REINVESTMENT DIVIDEND", TransactionType.REINVESTMENT),
            ("INTEREST EARNED", TransactionType.INTEREST),
            ("ADVISORY FEE", TransactionType.FEE),
            ("TRANSFERRED FROM savings", TransactionType.TRANSFER_IN),
            ("Transfer out", TransactionType.TRANSFER_OUT),
            ("Electronic deposit", TransactionType.DEPOSIT),
            ("IRA DISTRIBUTION", TransactionType.WITHDRAWAL),
            ("JOURNALED SHARES", TransactionType.OTHER),
        ],
    )
    def test_keywords(self, action, expected):
        assert classify_transaction_type(action) == expected


class TestBuildTransaction:
    """Single-row groups: the cash line carries the row's amount."""

    def test_buy_debits_position_and_credits_cash(self):
        result = plan([row(1, D1, "YOU BOUGHT", "aapl", "2", "-300.00")])

        (txn,) = result.transactions
        cash, position = txn.lines
        assert txn.transaction_type == TransactionType.BUY
        assert (cash.account_id, cash.asset_id, cash.side, cash.amount) == (
            ACCOUNT, "USD", EntrySide.CREDIT, Decimal("300.00"),
        )
        assert (position.account_id, position.asset_id, position.side) == (
            ACCOUNT, "AAPL", EntrySide.DEBIT,
        )
        assert position.quantity == Decimal("2")
        assert txn.entry_sum == txn.csv_amount == Decimal("-300.00")

    @pytest.mark.parametrize(
        "action, amount, counter",
        [
            ("DIVIDEND RECEIVED", "5.00", INCOME_DIVIDENDS),
            ("ADVISORY FEE", "-25.00", EXPENSE_FEES),
            ("Electronic deposit", "1000.00", EQUITY_EXTERNAL),
            ("JOURNALED", "12.00", SUSPENSE),
        ],
    )
    def test_counter_accounts(self, action, amount, counter):
        (txn,) = plan([row(1, D1, action, amount=amount)]).transactions
        assert txn.lines[1].account_id == counter
        assert txn.lines[1].asset_id == "USD"

    def test_description_falls_back_to_action(self):
        (txn,) = plan([row(1, D1, "DIVIDEND RECEIVED", amount="5.00")]).transactions
        assert txn.description == "DIVIDEND RECEIVED"

    def test_zero_effect_group_is_skipped(self):
        result = plan([row(1, D1, "JOURNALED SHARES", "AAPL", "0", "0")])
        assert result.transactions == ()
        assert result.zero_effect_groups == 1

    def test_undated_rows_are_reported(self):
        result = plan([row(1, None, "DEPOSIT", amount="5.00"), row(2, D1, "DEPOSIT", amount="1.00")])
        assert result.unplaced_rows == (1,)
        assert len(result.transactions) == 1


class TestGrouping:
    """Settlement rows attach to the preceding action row on the same date."""

    def test_zero_settlement_row_joins_its_action(self):
        rows = [row(1, D1, "YOU SOLD", "AAPL", "1", "160.00"), row(2, D1, amount="0")]
        result = plan(rows)

        (txn,) = result.transactions
        assert [r.row_number for r in txn.rows] == [1, 2]
        assert txn.amount_discrepancy is None
        assert txn.flags == ()

    def test_settlement_with_amount_is_flagged_over_grouping(self):
        """The cash line keeps the action amount; the gap is recorded, not absorbed."""
        rows = [row(1, D1, "YOU SOLD", "AAPL", "1", "160.00"), row(2, D1, amount="-5.00")]
        (txn,) = plan(rows).transactions

        assert txn.entry_sum == Decimal("160.00")
        assert txn.csv_amount == Decimal("155.00")
        assert txn.amount_discrepancy == Decimal("5.00")
        assert TransactionFlag.OVER_GROUPING_CANDIDATE in txn.flags
        assert txn.total_debits == txn.total_credits

    def test_settlement_on_another_date_is_orphaned(self):
        rows = [row(1, D1, "YOU SOLD", "AAPL", "1", "160.00"), row(2, D2, amount="-5.00")]
        result = plan(rows)

        assert len(result.transactions) == 2
        orphan = result.transactions[1]
        assert orphan.rows[0].row_number == 2
        assert TransactionFlag.ORPHAN_SETTLEMENT in orphan.flags
        assert orphan.lines[1].account_id == SUSPENSE

    def test_settlement_beyond_adjacency_window_is_orphaned(self):
        rows = [row(1, D1, "YOU SOLD", "AAPL", "1", "160.00"), row(5, D1, amount="0.50")]
        groups = group_rows(rows, ROLES, GroupingSpec(adjacency_window=3))

        assert [g.orphan for g in groups] == [False, True]

    def test_one_row_per_transaction(self):
        rows = [row(1, D1, "YOU SOLD", "AAPL", "1", "160.00"), row(2, D1, amount="-5.00")]
        result = plan(rows, strategy=GroupingStrategy.ONE_ROW_PER_TRANSACTION)

        assert [t.origin_row_number for t in result.transactions] == [1, 2]
        assert all(t.amount_discrepancy is None for t in result.transactions)


_actions = st.sampled_from(
    ["YOU BOUGHT", "YOU SOLD", "DIVIDEND", "INTEREST", "FEE", "DEPOSIT", "", "MISC"]
)
_amounts = st.decimals(
    min_value=Decimal("-100000"), max_value=Decimal("100000"), places=2,
    allow_nan=False, allow_infinity=False,
)


@st.composite
def statement_rows(draw):
    count = draw(st.integers(min_value=1, max_value=25))
    rows = []
    for n in range(1, count + 1):
        action = draw(_actions)
        symbol = draw(st.sampled_from(["", "AAPL", "MSFT"])) if action else ""
        quantity = draw(st.sampled_from([None, "0", "1", "10"])) if action else None
        rows.append(
            row(n, draw(st.sampled_from([D1, D2])), action, symbol, quantity, str(draw(_amounts)))
        )
    return rows


class TestBalanceProperty:
    @given(rows=statement_rows())
    @settings(max_examples=150)
    def test_every_transaction_balances(self, rows):
        result = plan(rows)
        for txn in result.transactions:
            assert txn.total_debits == txn.total_credits
            assert txn.rows

    @given(rows=statement_rows())
    @settings(max_examples=150)
    def test_each_row_is_grouped_exactly_once(self, rows):
        result = plan(rows)
        grouped = [r.row_number for g in result.groups for r in g.rows]
        assert sorted(grouped) == [r.row_number for r in rows]


class TestFingerprints:
    def test_same_rows_same_fingerprint(self):
        rows = [row(1, D1, "DEPOSIT", amount="10.00")]
        assert plan(rows).transactions[0].fingerprint == plan(rows).transactions[0].fingerprint

    def test_correction_salt_separates_identical_corrections(self):
        spec = CorrectionSpec(
            effective_date=D1,
            description="missing fee",
            transaction_type=TransactionType.FEE,
            rows=(row(3, D1),),
            lines=(
                CorrectionLine(EntrySide.CREDIT, ACCOUNT, "USD", Decimal("10.00")),
                CorrectionLine(EntrySide.DEBIT, EXPENSE_FEES, "USD", Decimal("10.00")),
            ),
        )
        first = build_correction(spec, account_id=ACCOUNT, currency="USD", salt="correction:a:0:0")
        second = build_correction(spec, account_id=ACCOUNT, currency="USD", salt="correction:b:0:0")

        assert first.fingerprint != second.fingerprint
        assert first.entry_sum == Decimal("-10.00")
        assert first.total_debits == first.total_credits
