"""Matching logic for pairing idex and bybit transaction records."""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Set, Tuple

from .exceptions import ManualMatchError, report_invariant_violation
from .models import (
    CabinetType,
    MatchKey,
    MatchResult,
    MatchedPair,
    TransactionRecord,
    Window,
    WindowSet,
)
from .windows import DEFAULT_CLOCK_SKEW

logger = logging.getLogger(__name__)

Interval = Tuple[datetime, datetime]


class Matcher:
    """Matching engine for platform A (idex) and platform B (bybit) records."""

    def __init__(
        self,
        clock_skew: timedelta = DEFAULT_CLOCK_SKEW,
        time_tolerance: timedelta = timedelta(minutes=30),
        amount_tolerance: Decimal = Decimal("0.01"),
    ):
        """Initialize the matcher.

        Args:
            clock_skew: Offset added to bybit timestamps to bring them into
                        the idex clock.
            time_tolerance: Maximum corrected time distance for fallback matches.
            amount_tolerance: Maximum amount difference for fallback matches.
        """
        if time_tolerance < timedelta(0):
            raise ValueError("time_tolerance must not be negative")
        if amount_tolerance < 0:
            raise ValueError("amount_tolerance must not be negative")
        self.clock_skew = clock_skew
        self.time_tolerance = time_tolerance
        self.amount_tolerance = Decimal(amount_tolerance)

    def corrected_time(self, record: TransactionRecord) -> datetime:
        """Return the record timestamp expressed in the idex clock."""
        if record.platform == CabinetType.BYBIT:
            return record.timestamp + self.clock_skew
        return record.timestamp

    def _distance(self, a: TransactionRecord, b: TransactionRecord) -> timedelta:
        return abs(self.corrected_time(a) - self.corrected_time(b))

    def _sort_key(self, record: TransactionRecord) -> Tuple[datetime, int]:
        return self.corrected_time(record), record.id

    def _prepare(self, records: Iterable[TransactionRecord], side: str) -> List[TransactionRecord]:
        unique: Dict[int, TransactionRecord] = {}
        for record in records:
            if record.id in unique:
                logger.warning(
                    f"Duplicate platform {side} record id {record.id} encountered; "
                    f"keeping first occurrence."
                )
                continue
            unique[record.id] = record
        return sorted(unique.values(), key=self._sort_key)

    def _scope_intervals(
        self,
        records: List[TransactionRecord],
        windows: List[Window],
    ) -> Dict[int, List[Interval]]:
        """Map each record to the wall-clock intervals of the windows containing it."""
        scopes: Dict[int, List[Interval]] = {}
        for record in records:
            scopes[record.id] = [
                w.wall_clock(self.clock_skew)
                for w in windows
                if w.cabinet_id == record.cabinet_id and w.contains(record.timestamp)
            ]
        return scopes

    @staticmethod
    def _overlaps(left: List[Interval], right: List[Interval]) -> bool:
        for a_start, a_end in left:
            for b_start, b_end in right:
                if a_start <= b_end and b_start <= a_end:
                    return True
        return False

    def _amounts_match(self, a: TransactionRecord, b: TransactionRecord) -> bool:
        if a.comparison_currency and b.comparison_currency:
            if a.comparison_currency.upper() != b.comparison_currency.upper():
                return False
        return abs(a.comparison_amount - b.comparison_amount) <= self.amount_tolerance

    def _fallback_candidate(self, a: TransactionRecord, b: TransactionRecord) -> bool:
        # Distinct order refs on both sides identify different orders
        if a.order_ref and b.order_ref and a.order_ref != b.order_ref:
            return False
        if not self._amounts_match(a, b):
            return False
        return self._distance(a, b) <= self.time_tolerance

    def _pick(
        self,
        a: TransactionRecord,
        candidates: List[TransactionRecord],
    ) -> Tuple[Optional[TransactionRecord], bool]:
        """Choose the closest candidate, then the lowest id.

        Returns:
            Tuple of (chosen record or None, whether the id tie-break decided).
        """
        if not candidates:
            return None, False
        ranked = sorted(candidates, key=lambda b: (self._distance(a, b), b.id))
        ambiguous = len(ranked) > 1 and self._distance(a, ranked[1]) == self._distance(a, ranked[0])
        if ambiguous:
            logger.debug(
                f"Ambiguous candidates for platform A record {a.id}; "
                f"resolved to platform B record {ranked[0].id} by lowest id"
            )
        return ranked[0], ambiguous

    def _make_pair(self, a: TransactionRecord, b: TransactionRecord, key: MatchKey) -> MatchedPair:
        return MatchedPair(
            record_a=a,
            record_b=b,
            match_key=key,
            time_difference_seconds=int(round(self._distance(a, b).total_seconds())),
        )

    def _verify(self, pairs: List[MatchedPair]) -> None:
        seen_a: Set[int] = set()
        seen_b: Set[int] = set()
        for pair in pairs:
            if pair.record_a.id in seen_a or pair.record_b.id in seen_b:
                report_invariant_violation(
                    f"record consumed twice: A#{pair.record_a.id} / B#{pair.record_b.id}"
                )
            seen_a.add(pair.record_a.id)
            seen_b.add(pair.record_b.id)

    def match(
        self,
        records_a: Iterable[TransactionRecord],
        records_b: Iterable[TransactionRecord],
        windows: Optional[WindowSet] = None,
    ) -> MatchResult:
        """Match platform A records against platform B records.

        The matching process:
        1. Order both sides by corrected timestamp and id
        2. Pair records sharing an order reference
        3. Pair remaining records by amount and timestamp proximity
        4. Report everything left over on either side

        Args:
            records_a: idex records, already restricted to their windows.
            records_b: bybit records, already restricted to their windows.
            windows: Optional windows the records were fetched with. When
                     given, a pair is only eligible if the windows holding
                     the two records overlap in wall-clock time.

        Returns:
            MatchResult with matched pairs and leftovers.
        """
        side_a = self._prepare(records_a, "A")
        side_b = self._prepare(records_b, "B")

        logger.info(
            f"Starting matching: {len(side_a)} platform A, "
            f"{len(side_b)} platform B records"
        )

        scopes_a: Optional[Dict[int, List[Interval]]] = None
        scopes_b: Optional[Dict[int, List[Interval]]] = None
        if windows is not None:
            scopes_a = self._scope_intervals(side_a, windows.idex)
            scopes_b = self._scope_intervals(side_b, windows.bybit)

        def in_scope(a: TransactionRecord, b: TransactionRecord) -> bool:
            if scopes_a is None or scopes_b is None:
                return True
            return self._overlaps(scopes_a[a.id], scopes_b[b.id])

        consumed_a: Set[int] = set()
        consumed_b: Set[int] = set()
        pairs: List[MatchedPair] = []
        ambiguous = 0

        # Pass 1: order reference
        b_by_ref: Dict[str, List[TransactionRecord]] = {}
        for b in side_b:
            if b.order_ref:
                b_by_ref.setdefault(b.order_ref, []).append(b)

        for a in side_a:
            if not a.order_ref:
                continue
            candidates = [
                b for b in b_by_ref.get(a.order_ref, [])
                if b.id not in consumed_b and in_scope(a, b)
            ]
            chosen, tied = self._pick(a, candidates)
            if chosen is None:
                continue
            ambiguous += int(tied)
            consumed_a.add(a.id)
            consumed_b.add(chosen.id)
            pairs.append(self._make_pair(a, chosen, MatchKey.ORDER_REF))

        # Pass 2: amount and time proximity
        for a in side_a:
            if a.id in consumed_a:
                continue
            candidates = [
                b for b in side_b
                if b.id not in consumed_b
                and self._fallback_candidate(a, b)
                and in_scope(a, b)
            ]
            chosen, tied = self._pick(a, candidates)
            if chosen is None:
                continue
            ambiguous += int(tied)
            consumed_a.add(a.id)
            consumed_b.add(chosen.id)
            pairs.append(self._make_pair(a, chosen, MatchKey.AMOUNT_TIME))

        pairs.sort(key=lambda p: self._sort_key(p.record_a))
        self._verify(pairs)

        result = MatchResult(
            matched=pairs,
            unmatched_a=[a for a in side_a if a.id not in consumed_a],
            unmatched_b=[b for b in side_b if b.id not in consumed_b],
            ambiguous_resolutions=ambiguous,
        )

        logger.info(
            f"Matching complete: {result.matched_count} matched, "
            f"{len(result.unmatched_a)} platform A and "
            f"{len(result.unmatched_b)} platform B unmatched"
        )
        return result

    def match_manually(self, result: MatchResult, record_a_id: int, record_b_id: int) -> MatchResult:
        """Pair two leftover records by hand.

        Args:
            result: Result of a previous matching run.
            record_a_id: ID of an unmatched platform A record.
            record_b_id: ID of an unmatched platform B record.

        Returns:
            A new MatchResult including the manual pair.

        Raises:
            ManualMatchError: If either record is unknown or already matched.
        """
        a = next((r for r in result.unmatched_a if r.id == record_a_id), None)
        if a is None:
            if any(p.record_a.id == record_a_id for p in result.matched):
                raise ManualMatchError(f"Platform A record {record_a_id} is already matched")
            raise ManualMatchError(f"Platform A record {record_a_id} not found")

        b = next((r for r in result.unmatched_b if r.id == record_b_id), None)
        if b is None:
            if any(p.record_b.id == record_b_id for p in result.matched):
                raise ManualMatchError(f"Platform B record {record_b_id} is already matched")
            raise ManualMatchError(f"Platform B record {record_b_id} not found")

        pairs = list(result.matched) + [self._make_pair(a, b, MatchKey.MANUAL)]
        pairs.sort(key=lambda p: self._sort_key(p.record_a))
        self._verify(pairs)

        logger.info(f"Manually matched platform A record {a.id} with platform B record {b.id}")
        return MatchResult(
            matched=pairs,
            unmatched_a=[r for r in result.unmatched_a if r.id != record_a_id],
            unmatched_b=[r for r in result.unmatched_b if r.id != record_b_id],
            ambiguous_resolutions=result.ambiguous_resolutions,
        )

    def unmatch(self, result: MatchResult, record_a_id: int) -> MatchResult:
        """Dissolve the pair holding a platform A record.

        Raises:
            ManualMatchError: If the record is not part of any pair.
        """
        pair = next((p for p in result.matched if p.record_a.id == record_a_id), None)
        if pair is None:
            raise ManualMatchError(f"Platform A record {record_a_id} is not matched")

        logger.info(
            f"Unmatched platform A record {pair.record_a.id} "
            f"from platform B record {pair.record_b.id}"
        )
        return MatchResult(
            matched=[p for p in result.matched if p is not pair],
            unmatched_a=sorted(list(result.unmatched_a) + [pair.record_a], key=self._sort_key),
            unmatched_b=sorted(list(result.unmatched_b) + [pair.record_b], key=self._sort_key),
            ambiguous_resolutions=result.ambiguous_resolutions,
        )
