"""Financial rollups over matched transaction pairs."""

import logging
from decimal import Decimal
from typing import Iterable, List, Optional, Sequence

from .models import (
    Direction,
    MatchedPair,
    PairMetrics,
    StatisticsSummary,
    TransactionRecord,
)

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
HUNDRED = Decimal("100")


def _percentage(part: Decimal, whole: Decimal) -> Decimal:
    if whole == ZERO:
        return ZERO
    return part / whole * HUNDRED


def _per_order(total: Decimal, count: int) -> Optional[Decimal]:
    if count == 0:
        return None
    return total / count


class Aggregator:
    """Computes per-pair metrics and period statistics."""

    def __init__(
        self,
        expense_fee_rate: Decimal = ZERO,
        count_unmatched_in_total: bool = True,
    ):
        """Initialize the aggregator.

        Args:
            expense_fee_rate: Commission added on top of every expense leg
                              (0.009 for a 0.9% fee).
            count_unmatched_in_total: If True, leftovers count towards
                                      total_transactions.
        """
        if expense_fee_rate < 0:
            raise ValueError("expense_fee_rate must not be negative")
        self.expense_fee_rate = Decimal(expense_fee_rate)
        self.count_unmatched_in_total = count_unmatched_in_total

    def _legs(self, pair: MatchedPair, direction: Direction) -> Decimal:
        legs = (pair.record_a, pair.record_b)
        return sum((r.amount for r in legs if r.direction == direction), ZERO)

    def pair_metrics(self, pair: MatchedPair) -> PairMetrics:
        """Income, expense and profit of one matched pair."""
        income = self._legs(pair, Direction.INCOME)
        expense = self._legs(pair, Direction.EXPENSE) * (1 + self.expense_fee_rate)
        profit = income - expense
        return PairMetrics(
            record_a_id=pair.record_a.id,
            record_b_id=pair.record_b.id,
            gross_income=income,
            gross_expense=expense,
            gross_profit=profit,
            profit_percentage=_percentage(profit, expense),
        )

    def summarize(
        self,
        pairs: Sequence[MatchedPair],
        unmatched_a: Iterable[TransactionRecord] = (),
        unmatched_b: Iterable[TransactionRecord] = (),
    ) -> StatisticsSummary:
        """Roll matched pairs up into a StatisticsSummary.

        Args:
            pairs: Matched pairs to aggregate.
            unmatched_a: Platform A leftovers, counted but never summed.
            unmatched_b: Platform B leftovers, counted but never summed.

        Returns:
            StatisticsSummary for the given pairs.
        """
        metrics: List[PairMetrics] = [self.pair_metrics(p) for p in pairs]
        leftover_a = len(list(unmatched_a))
        leftover_b = len(list(unmatched_b))

        matched_count = len(metrics)
        gross_income = sum((m.gross_income for m in metrics), ZERO)
        gross_expense = sum((m.gross_expense for m in metrics), ZERO)
        gross_profit = gross_income - gross_expense

        total = matched_count
        if self.count_unmatched_in_total:
            total += leftover_a + leftover_b

        profits = [m.gross_profit for m in metrics]
        profitable = sum(1 for p in profits if p > ZERO)

        summary = StatisticsSummary(
            gross_income=gross_income,
            gross_expense=gross_expense,
            gross_profit=gross_profit,
            profit_percentage=_percentage(gross_profit, gross_expense),
            matched_count=matched_count,
            total_transactions=total,
            unmatched_a_count=leftover_a,
            unmatched_b_count=leftover_b,
            profit_per_order=_per_order(gross_profit, matched_count),
            expense_per_order=_per_order(gross_expense, matched_count),
            income_per_order=_per_order(gross_income, matched_count),
            success_rate=(
                Decimal(profitable) / Decimal(matched_count) * HUNDRED
                if matched_count else None
            ),
            max_profit=max(profits) if profits else None,
            min_profit=min(profits) if profits else None,
        )

        logger.debug(
            f"Summarized {matched_count} pairs: income={gross_income} "
            f"expense={gross_expense} profit={gross_profit}"
        )
        return summary
