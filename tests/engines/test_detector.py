"""
Discrepancy detection over ledger views and reported balances.

Covers:
- Severity bands and tolerance boundaries
- Running balance derived from cash lines only
- Latest checkpoint per date wins
- Unbalanced and over-grouped transactions are CRITICAL whatever their size
- Checkpoint candidates from mapped rows
"""

from datetime import date
from decimal import Decimal
from uuid import uuid4

import pytest

from ledger_engines.materialization import FieldRoles, MaterializationRow
from ledger_engines.reconciliation import (
    DiscrepancyKind,
    Severity,
    build_checkpoints,
    classify_severity,
    detect_discrepancies,
)
from ledger_kernel.domain.dtos import (
    CheckpointView,
    EntrySide,
    LedgerEntryView,
    LedgerTransactionView,
)

ACCOUNT = "brokerage:1234"


def cash(on, amount, row_number, account=ACCOUNT, asset="USD"):
    value = Decimal(amount)
    return LedgerEntryView(
        id=uuid4(),
        transaction_id=uuid4(),
        effective_date=on,
        account_id=account,
        asset_id=asset,
        side=EntrySide.DEBIT if value > 0 else EntrySide.CREDIT,
        amount=abs(value),
        currency="USD",
        transaction_type="other",
        origin_row_number=row_number,
        line_seq=0,
        source_row_ids=(),
    )


def checkpoint(on, balance, row_number):
    return CheckpointView(
        id=uuid4(),
        account_id=ACCOUNT,
        effective_date=on,
        row_number=row_number,
        csv_balance=Decimal(balance),
        source_row_id=uuid4(),
    )


def detect(entries, checkpoints, transactions=()):
    return detect_discrepancies(
        account_id=ACCOUNT,
        currency="USD",
        entries=entries,
        checkpoints=checkpoints,
        transactions=transactions,
    )


JAN2 = date(2024, 1, 2)
JAN3 = date(2024, 1, 3)


class TestClassifySeverity:
    @pytest.mark.parametrize(
        "delta, expected",
        [
            ("0.00", None),
            ("0.005", None),
            ("-0.01", None),
            ("0.03", Severity.LOW),
            ("-10.00", Severity.LOW),
            ("10.01", Severity.MEDIUM),
            ("-1000.00", Severity.MEDIUM),
            ("1000.01", Severity.CRITICAL),
            ("48195.04", Severity.CRITICAL),
        ],
    )
    def test_default_bands(self, delta, expected):
        assert classify_severity(Decimal(delta)) == expected

    def test_custom_bands(self):
        assert classify_severity(
            Decimal("50"), low_max=Decimal("100"), medium_max=Decimal("500")
        ) == Severity.LOW


class TestBalanceMismatch:
    """Running cash balance against every reported balance."""

    def test_matching_balances_produce_nothing(self):
        result = detect(
            [cash(JAN2, "1000.00", 1), cash(JAN3, "-300.00", 2)],
            [checkpoint(JAN2, "1000.00", 1), checkpoint(JAN3, "700.00", 2)],
        )
        assert result.count == 0
        assert result.checkpoints_checked == 2

    def test_sub_cent_difference_is_balanced(self):
        """$1,000.00 reported vs $1,000.005 calculated."""
        result = detect([cash(JAN2, "1000.005", 1)], [checkpoint(JAN2, "1000.00", 1)])
        assert result.count == 0

    def test_three_cents_is_low(self):
        result = detect([cash(JAN2, "100.00", 1)], [checkpoint(JAN2, "100.03", 1)])

        (found,) = result.discrepancies
        assert found.severity == Severity.LOW
        assert found.delta == Decimal("0.03")

    def test_sign_error_is_critical(self):
        """A balance of 46,175.80 computed as -2,019.24."""
        result = detect([cash(JAN2, "-2019.24", 1)], [checkpoint(JAN2, "46175.80", 1)])

        (found,) = result.discrepancies
        assert found.kind == DiscrepancyKind.BALANCE_MISMATCH
        assert found.delta == Decimal("48195.04")
        assert found.severity == Severity.CRITICAL
        assert found.expected_balance == Decimal("46175.80")
        assert found.calculated_balance == Decimal("-2019.24")

    def test_non_cash_lines_are_ignored(self):
        entries = [
            cash(JAN2, "1000.00", 1),
            cash(JAN2, "500.00", 1, asset="AAPL"),
            cash(JAN2, "-75.00", 1, account="expense:fees"),
        ]
        assert detect(entries, [checkpoint(JAN2, "1000.00", 1)]).count == 0

    def test_latest_checkpoint_on_a_date_wins(self):
        """Two rows on one date: only the later reported balance is compared."""
        entries = [cash(JAN2, "1000.00", 1), cash(JAN2, "-300.00", 2)]
        checkpoints = [checkpoint(JAN2, "1000.00", 1), checkpoint(JAN2, "700.00", 2)]

        result = detect(entries, checkpoints)

        assert result.count == 0
        assert result.checkpoints_checked == 1

    def test_affected_rows_cover_the_window(self):
        entries = [cash(JAN2, "1000.00", 1), cash(JAN3, "-300.00", 2), cash(JAN3, "5.00", 3)]
        checkpoints = [checkpoint(JAN2, "1000.00", 1), checkpoint(JAN3, "695.00", 3)]

        (found,) = detect(entries, checkpoints).discrepancies

        assert found.checkpoint_row_number == 3
        assert found.affected_row_numbers == (2, 3)
        assert found.delta == Decimal("-10.00")

    def test_unresolved_checkpoint_ids(self):
        bad = checkpoint(JAN3, "1.00", 2)
        result = detect([cash(JAN2, "5.00", 1)], [checkpoint(JAN2, "5.00", 1), bad])
        assert result.unresolved_checkpoint_ids == frozenset({bad.id})
        assert result.max_abs_delta == Decimal("4.00")


class TestUnbalancedTransactions:
    def _transaction(self, lines, amount_discrepancy=None):
        return LedgerTransactionView(
            id=uuid4(),
            account_id=ACCOUNT,
            effective_date=JAN2,
            transaction_type="sell",
            description="",
            csv_amount=Decimal("155.00"),
            entry_sum=Decimal("160.00"),
            origin_row_number=1,
            entries=tuple(lines),
            source_row_ids=(),
            amount_discrepancy=amount_discrepancy,
        )

    def test_over_grouped_transaction_is_critical(self):
        lines = [cash(JAN2, "160.00", 1), cash(JAN2, "-160.00", 1, account="suspense:unclassified")]
        txn = self._transaction(lines, amount_discrepancy=Decimal("5.00"))

        result = detect([], [], [txn])

        (found,) = result.discrepancies
        assert found.kind == DiscrepancyKind.UNBALANCED_TRANSACTION
        assert found.severity == Severity.CRITICAL
        assert found.delta == Decimal("5.00")
        assert found.transaction_id == txn.id

    def test_lines_that_do_not_balance_are_critical(self):
        txn = self._transaction([cash(JAN2, "0.50", 1)])
        (found,) = detect([], [], [txn]).discrepancies
        assert found.severity == Severity.CRITICAL
        assert found.delta == Decimal("0.50")

    def test_balanced_transaction_is_not_reported(self):
        lines = [cash(JAN2, "160.00", 1), cash(JAN2, "-160.00", 1, account="equity:external_transfers")]
        assert detect([], [], [self._transaction(lines)]).count == 0


class TestBuildCheckpoints:
    def test_rows_without_date_or_balance_are_skipped(self):
        rows = [
            MaterializationRow(1, {"date": JAN2, "balance": Decimal("1000.00")}),
            MaterializationRow(2, {"date": None, "balance": Decimal("5.00")}),
            MaterializationRow(3, {"date": JAN3, "balance": None}),
            MaterializationRow(4, {"date": JAN3, "balance": "1.234,50"}),
        ]
        candidates = build_checkpoints(rows, FieldRoles(), {1: " 1,000.00 "})

        assert [c.row_number for c in candidates] == [1, 4]
        assert candidates[0].balance_text == "1,000.00"
        assert candidates[1].csv_balance == Decimal("1234.50")
