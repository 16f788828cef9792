"""Tests for financial aggregation."""

import random
import pytest
from datetime import datetime
from decimal import Decimal

from shift_recon.reconciliation import (
    Aggregator,
    CabinetType,
    Direction,
    MatchKey,
    MatchedPair,
    TransactionRecord,
)


T = datetime(2024, 1, 15, 12, 0)


def make_pair(income: str, expense: str, a_id: int = 1, b_id: int = 1) -> MatchedPair:
    return MatchedPair(
        record_a=TransactionRecord(
            id=a_id, platform=CabinetType.IDEX, cabinet_id=1, timestamp=T,
            amount=Decimal(income), direction=Direction.INCOME,
        ),
        record_b=TransactionRecord(
            id=b_id, platform=CabinetType.BYBIT, cabinet_id=2, timestamp=T,
            amount=Decimal(expense), direction=Direction.EXPENSE,
        ),
        match_key=MatchKey.AMOUNT_TIME,
        time_difference_seconds=0,
    )


@pytest.fixture
def aggregator():
    return Aggregator()


class TestPairMetrics:
    """Tests for per-pair figures."""

    def test_income_expense_profit(self, aggregator):
        metrics = aggregator.pair_metrics(make_pair("10.50", "10.00", a_id=4, b_id=9))

        assert metrics.record_a_id == 4
        assert metrics.record_b_id == 9
        assert metrics.gross_income == Decimal("10.50")
        assert metrics.gross_expense == Decimal("10.00")
        assert metrics.gross_profit == Decimal("0.50")
        assert metrics.profit_percentage == Decimal("5")

    def test_legs_follow_direction_not_side(self, aggregator):
        pair = make_pair("10", "12")
        pair = pair.model_copy(update={
            "record_a": pair.record_a.model_copy(update={"direction": Direction.EXPENSE}),
            "record_b": pair.record_b.model_copy(update={"direction": Direction.INCOME}),
        })

        metrics = aggregator.pair_metrics(pair)

        assert metrics.gross_income == Decimal("12")
        assert metrics.gross_expense == Decimal("10")

    def test_expense_fee_rate(self):
        metrics = Aggregator(expense_fee_rate=Decimal("0.009")).pair_metrics(make_pair("10.50", "10.00"))

        assert metrics.gross_expense == Decimal("10.09")
        assert metrics.gross_profit == Decimal("0.41")

    def test_negative_fee_rate_rejected(self):
        with pytest.raises(ValueError):
            Aggregator(expense_fee_rate=Decimal("-0.01"))


class TestSummarize:
    """Tests for StatisticsSummary rollups."""

    def test_totals(self, aggregator):
        pairs = [make_pair("10.50", "10.00", 1, 1), make_pair("20.25", "20.00", 2, 2)]

        stats = aggregator.summarize(pairs)

        assert stats.gross_income == Decimal("30.75")
        assert stats.gross_expense == Decimal("30.00")
        assert stats.gross_profit == Decimal("0.75")
        assert stats.profit_percentage == Decimal("2.5")
        assert stats.matched_count == 2
        assert stats.profit_per_order == Decimal("0.375")
        assert stats.expense_per_order == Decimal("15")
        assert stats.income_per_order == Decimal("15.375")
        assert stats.success_rate == Decimal("100")
        assert stats.max_profit == Decimal("0.50")
        assert stats.min_profit == Decimal("0.25")

    def test_success_rate_counts_profitable_pairs(self, aggregator):
        pairs = [make_pair("11", "10", 1, 1), make_pair("9", "10", 2, 2), make_pair("10", "10", 3, 3),
                 make_pair("12", "10", 4, 4)]

        stats = aggregator.summarize(pairs)

        assert stats.success_rate == Decimal("50")
        assert stats.min_profit == Decimal("-1")
        assert stats.max_profit == Decimal("2")

    def test_no_pairs(self, aggregator):
        stats = aggregator.summarize([])

        assert stats.matched_count == 0
        assert stats.gross_profit == Decimal("0")
        assert stats.profit_percentage == Decimal("0")
        assert stats.profit_per_order is None
        assert stats.expense_per_order is None
        assert stats.income_per_order is None
        assert stats.success_rate is None
        assert stats.max_profit is None
        assert stats.min_profit is None

    def test_zero_expense_gives_zero_percentage(self, aggregator):
        stats = aggregator.summarize([make_pair("5", "0")])

        assert stats.gross_expense == Decimal("0")
        assert stats.profit_percentage == Decimal("0")
        assert stats.gross_profit == Decimal("5")

    def test_leftovers_counted_in_total(self, aggregator):
        pair = make_pair("10", "9")
        leftover_a = [pair.record_a.model_copy(update={"id": 50})]
        leftover_b = [pair.record_b.model_copy(update={"id": 60}), pair.record_b.model_copy(update={"id": 61})]

        stats = aggregator.summarize([pair], leftover_a, leftover_b)

        assert stats.total_transactions == 4
        assert stats.unmatched_a_count == 1
        assert stats.unmatched_b_count == 2
        assert stats.gross_income == Decimal("10")

    def test_leftovers_excluded_from_total(self):
        pair = make_pair("10", "9")
        leftover_a = [pair.record_a.model_copy(update={"id": 50})]

        stats = Aggregator(count_unmatched_in_total=False).summarize([pair], leftover_a)

        assert stats.total_transactions == 1
        assert stats.unmatched_a_count == 1

    @pytest.mark.parametrize("seed", range(10))
    def test_profit_is_income_minus_expense(self, aggregator, seed):
        rng = random.Random(seed)
        pairs = [
            make_pair(
                f"{rng.randint(0, 100000)}.{rng.randint(0, 99999999):08d}",
                f"{rng.randint(0, 100000)}.{rng.randint(0, 99999999):08d}",
                i, i,
            )
            for i in range(rng.randint(1, 50))
        ]

        stats = aggregator.summarize(pairs)

        assert stats.gross_profit == stats.gross_income - stats.gross_expense
        assert stats.gross_profit == sum((m.gross_profit for m in map(aggregator.pair_metrics, pairs)), Decimal("0"))
