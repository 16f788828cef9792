"""Service layer for reconciliation operations."""

import asyncio
import uuid
import logging
from typing import Dict, List, Mapping, NamedTuple, Optional, Sequence

from ..config import ReconciliationSettings, get_settings
from .aggregator import Aggregator
from .exceptions import FetchError, InvariantViolation, ReconciliationError
from .fetcher import RecordFetcherBase, WorkSessionSourceBase, in_windows
from .matcher import Matcher
from .models import (
    CabinetOutcome,
    CabinetStatus,
    CabinetType,
    MatchResult,
    ReconciliationReport,
    ReconciliationRequest,
    ReconciliationStatus,
    TransactionRecord,
    Window,
    WindowSet,
    utcnow,
)
from .report import ReportGenerator
from .windows import WindowBuilder

logger = logging.getLogger(__name__)


class CabinetUnit(NamedTuple):
    """Windows of one cabinet on one platform, fetched as a single job."""
    platform: CabinetType
    cabinet_id: int
    windows: List[Window]


class UnitResult(NamedTuple):
    unit: CabinetUnit
    status: CabinetStatus
    records: List[TransactionRecord]
    error_message: Optional[str] = None


class ReconciliationService:
    """Service for executing reconciliation jobs across an operator's cabinets."""

    def __init__(
        self,
        fetchers: Mapping[CabinetType, RecordFetcherBase],
        session_source: Optional[WorkSessionSourceBase] = None,
        settings: Optional[ReconciliationSettings] = None,
    ):
        """Initialize the reconciliation service.

        Args:
            fetchers: Record fetcher per platform.
            session_source: Optional source of work sessions, required for
                            requests that only name an operator.
            settings: Optional settings. Loaded from the environment if not provided.
        """
        self.settings = settings or get_settings()
        self.fetchers: Dict[CabinetType, RecordFetcherBase] = dict(fetchers)
        self.session_source = session_source
        self.window_builder = WindowBuilder(self.settings.clock_skew)
        self.matcher = Matcher(
            clock_skew=self.settings.clock_skew,
            time_tolerance=self.settings.match_tolerance,
            amount_tolerance=self.settings.amount_tolerance,
        )
        self.aggregator = Aggregator(
            expense_fee_rate=self.settings.expense_fee_rate,
            count_unmatched_in_total=self.settings.count_unmatched_in_total,
        )

    async def resolve_windows(self, request: ReconciliationRequest) -> WindowSet:
        """Turn a request into query windows.

        Sources are tried in order: serialized cabinet windows, explicit work
        sessions, then the work session source for the operator.

        Args:
            request: Reconciliation request parameters.

        Returns:
            WindowSet for the request.

        Raises:
            ReconciliationError: If the request needs a session source and none is configured.
        """
        if request.cabinet_windows is not None:
            return self.window_builder.parse_windows(
                request.cabinet_windows,
                period_start=request.period_start,
                period_end=request.period_end,
            )

        if request.work_sessions is not None:
            sessions = request.work_sessions
        else:
            if self.session_source is None:
                raise ReconciliationError("No work session source configured")
            sessions = await self.session_source.list_sessions(
                request.operator_id,
                request.period_start,
                request.period_end,
            )

        return self.window_builder.build(
            sessions,
            now=request.now,
            period_start=request.period_start,
            period_end=request.period_end,
        )

    @staticmethod
    def split_units(windows: WindowSet) -> List[CabinetUnit]:
        """Group windows into one unit per (platform, cabinet)."""
        units = []
        for platform in (CabinetType.IDEX, CabinetType.BYBIT):
            platform_windows = windows.for_platform(platform)
            for cabinet_id in windows.cabinet_ids(platform):
                units.append(CabinetUnit(
                    platform=platform,
                    cabinet_id=cabinet_id,
                    windows=[w for w in platform_windows if w.cabinet_id == cabinet_id],
                ))
        return units

    async def _fetch_unit(self, semaphore: asyncio.Semaphore, unit: CabinetUnit) -> UnitResult:
        label = f"{unit.platform.value} cabinet {unit.cabinet_id}"
        timeout = self.settings.cabinet_timeout_seconds

        async with semaphore:
            try:
                fetcher = self.fetchers.get(unit.platform)
                if fetcher is None:
                    raise FetchError(
                        f"No record fetcher configured for {unit.platform.value}",
                        cabinet_id=unit.cabinet_id,
                    )
                records = await asyncio.wait_for(fetcher.fetch_records(unit.windows), timeout=timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Fetching {label} timed out after {timeout}s")
                return UnitResult(unit, CabinetStatus.TIMED_OUT, [], f"Timed out after {timeout}s")
            except InvariantViolation:
                raise
            except Exception as e:
                logger.error(f"Fetching {label} failed: {e}")
                return UnitResult(unit, CabinetStatus.FAILED, [], str(e))

        kept = [
            r for r in records
            if r.platform == unit.platform
            and r.cabinet_id == unit.cabinet_id
            and in_windows(r, unit.windows)
        ]
        if len(kept) != len(records):
            logger.warning(f"Discarded {len(records) - len(kept)} records outside the windows of {label}")
        return UnitResult(unit, CabinetStatus.OK, kept)

    async def fetch_all(self, units: Sequence[CabinetUnit]) -> List[UnitResult]:
        """Fetch every unit concurrently, bounded by max_workers.

        Returns:
            One UnitResult per unit, in unit order.
        """
        semaphore = asyncio.Semaphore(self.settings.max_workers)
        return list(await asyncio.gather(*[self._fetch_unit(semaphore, u) for u in units]))

    def summarize_cabinets(
        self,
        cabinets: Sequence[CabinetOutcome],
        result: MatchResult,
    ) -> List[CabinetOutcome]:
        """Recompute per-cabinet statistics from a match result.

        A cabinet is credited with the pairs in which its record appears and
        with its own leftovers. Failed cabinets keep statistics=None.
        """
        summarized = []
        for cabinet in cabinets:
            if cabinet.failed:
                summarized.append(cabinet)
                continue
            cid = cabinet.cabinet_id
            if cabinet.cabinet_type == CabinetType.IDEX:
                pairs = [p for p in result.matched if p.record_a.cabinet_id == cid]
                leftover_a = [r for r in result.unmatched_a if r.cabinet_id == cid]
                leftover_b = []
            else:
                pairs = [p for p in result.matched if p.record_b.cabinet_id == cid]
                leftover_a = []
                leftover_b = [r for r in result.unmatched_b if r.cabinet_id == cid]
            summarized.append(cabinet.model_copy(update={
                "statistics": self.aggregator.summarize(pairs, leftover_a, leftover_b),
            }))
        return summarized

    def _apply_result(self, report: ReconciliationReport, result: MatchResult) -> ReconciliationReport:
        return report.model_copy(update={
            "cabinets": self.summarize_cabinets(report.cabinets, result),
            "matched_pairs": result.matched,
            "pair_metrics": [self.aggregator.pair_metrics(p) for p in result.matched],
            "unmatched_a": result.unmatched_a,
            "unmatched_b": result.unmatched_b,
            "statistics": self.aggregator.summarize(result.matched, result.unmatched_a, result.unmatched_b),
            "ambiguous_resolutions": result.ambiguous_resolutions,
        })

    async def run_reconciliation(
        self,
        request: ReconciliationRequest,
    ) -> ReconciliationReport:
        """Execute a reconciliation job.

        Args:
            request: Reconciliation request parameters.

        Returns:
            ReconciliationReport with results. Fetch failures are reported
            per cabinet; a failure to resolve windows yields a failed report.
        """
        report_id = str(uuid.uuid4())
        created_at = utcnow()

        logger.info(
            f"Starting reconciliation job {report_id} for operator {request.operator_id} "
            f"from {request.period_start} to {request.period_end}"
        )

        try:
            windows = await self.resolve_windows(request)
        except InvariantViolation:
            raise
        except Exception as e:
            logger.error(f"Reconciliation job {report_id} failed to resolve windows: {e}")
            return ReconciliationReport(
                id=report_id,
                status=ReconciliationStatus.FAILED,
                operator_id=request.operator_id,
                period_start=request.period_start,
                period_end=request.period_end,
                created_at=created_at,
                completed_at=utcnow(),
                error_message=str(e),
            )

        units = self.split_units(windows)
        unit_results = await self.fetch_all(units)

        records_a: List[TransactionRecord] = []
        records_b: List[TransactionRecord] = []
        cabinets: List[CabinetOutcome] = []
        for ur in unit_results:
            if ur.status == CabinetStatus.OK:
                target = records_a if ur.unit.platform == CabinetType.IDEX else records_b
                target.extend(ur.records)
            cabinets.append(CabinetOutcome(
                cabinet_id=ur.unit.cabinet_id,
                cabinet_type=ur.unit.platform,
                status=ur.status,
                windows=ur.unit.windows,
                record_count=len(ur.records),
                error_message=ur.error_message,
            ))

        failed = [c for c in cabinets if c.failed]
        if units and len(failed) == len(units):
            status = ReconciliationStatus.FAILED
            error_message = "All cabinet fetches failed"
        elif failed:
            status = ReconciliationStatus.PARTIAL
            error_message = None
        else:
            status = ReconciliationStatus.COMPLETED
            error_message = None

        result = self.matcher.match(records_a, records_b, windows=windows)

        report = ReconciliationReport(
            id=report_id,
            status=status,
            operator_id=request.operator_id,
            period_start=request.period_start,
            period_end=request.period_end,
            created_at=created_at,
            windows=windows,
            cabinets=cabinets,
            partial_failure=bool(failed),
            error_message=error_message,
        )
        report = self._apply_result(report, result)
        report = report.model_copy(update={"completed_at": utcnow()})

        logger.info(
            f"Reconciliation job {report_id} {status.value}: "
            f"{report.statistics.matched_count} matched, "
            f"{len(report.unmatched_a)} platform A and {len(report.unmatched_b)} platform B unmatched, "
            f"{len(failed)} of {len(units)} cabinets failed"
        )
        return report

    def _match_result(self, report: ReconciliationReport) -> MatchResult:
        return MatchResult(
            matched=report.matched_pairs,
            unmatched_a=report.unmatched_a,
            unmatched_b=report.unmatched_b,
            ambiguous_resolutions=report.ambiguous_resolutions,
        )

    def match_manually(
        self,
        report: ReconciliationReport,
        record_a_id: int,
        record_b_id: int,
    ) -> ReconciliationReport:
        """Pair two leftovers of a report by hand and recompute statistics.

        Raises:
            ManualMatchError: If either record is unknown or already matched.
        """
        result = self.matcher.match_manually(self._match_result(report), record_a_id, record_b_id)
        return self._apply_result(report, result)

    def unmatch(self, report: ReconciliationReport, record_a_id: int) -> ReconciliationReport:
        """Dissolve the pair holding a platform A record and recompute statistics.

        Raises:
            ManualMatchError: If the record is not matched.
        """
        result = self.matcher.unmatch(self._match_result(report), record_a_id)
        return self._apply_result(report, result)

    def generate_report(
        self,
        report: ReconciliationReport,
        format: str = "json",
        include_details: bool = True,
    ) -> str:
        """Generate a formatted report from reconciliation results.

        Args:
            report: ReconciliationReport to format.
            format: Output format ('json', 'csv', 'text', 'detailed_text').
            include_details: Include detailed records (for JSON format).

        Returns:
            Formatted report string.
        """
        generator = ReportGenerator(report)

        if format == "json":
            return generator.to_json(include_details=include_details)
        elif format == "csv":
            return generator.to_csv(record_type="all")
        elif format == "text":
            return generator.to_summary_text()
        elif format == "detailed_text":
            return generator.to_detailed_text()
        else:
            raise ValueError(f"Unsupported report format: {format}")
