"""Models for shift reconciliation."""

import enum
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Optional, Dict, Any, List, Tuple, Union

from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    """Current time as a naive UTC datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Convert an aware datetime to naive UTC; naive values are taken as UTC."""
    if value is None or value.tzinfo is None:
        return value
    try:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    except OverflowError as e:
        raise ValueError(f"{value.isoformat()} is outside the supported date range") from e


class CabinetType(str, enum.Enum):
    """Trading platform a cabinet belongs to."""
    IDEX = "idex"    # approval timestamps, compared directly
    BYBIT = "bybit"  # transaction timestamps, skewed clock


class Direction(str, enum.Enum):
    """Money flow of a transaction leg."""
    INCOME = "income"
    EXPENSE = "expense"


class MatchKey(str, enum.Enum):
    """How a matched pair was correlated."""
    ORDER_REF = "order_ref"
    AMOUNT_TIME = "amount_time"
    MANUAL = "manual"


class CabinetStatus(str, enum.Enum):
    """Fetch outcome for a single cabinet."""
    OK = "ok"
    FAILED = "failed"
    TIMED_OUT = "timed_out"


class ReconciliationStatus(str, enum.Enum):
    """Status of a reconciliation run."""
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"


class WorkSession(BaseModel):
    """An operator's shift on one cabinet."""
    cabinet_id: int = Field(..., gt=0, description="Cabinet the shift was worked on")
    cabinet_type: CabinetType = Field(..., description="Platform of the cabinet")
    start_time: datetime = Field(..., description="Shift start (wall clock, UTC)")
    end_time: Optional[datetime] = Field(None, description="Shift end; None while the shift is open")
    operator_id: Optional[int] = Field(None, description="Operator working the shift")

    class Config:
        frozen = True
        from_attributes = True

    @field_validator("start_time", "end_time")
    @classmethod
    def _normalize_time(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(value)

    @model_validator(mode="after")
    def _check_bounds(self) -> "WorkSession":
        if self.end_time is not None and self.end_time < self.start_time:
            raise ValueError("end_time must not be before start_time")
        return self

    @property
    def is_active(self) -> bool:
        return self.end_time is None


class Window(BaseModel):
    """Inclusive time range scoping a query to one cabinet on one platform.

    Bounds are expressed in the platform's own clock.
    """
    cabinet_id: int = Field(..., description="Cabinet the window applies to")
    cabinet_type: CabinetType = Field(..., description="Platform the window is expressed for")
    start_time: datetime = Field(..., description="Lower bound (inclusive)")
    end_time: datetime = Field(..., description="Upper bound (inclusive)")
    operator_id: Optional[int] = Field(None)

    class Config:
        frozen = True

    @model_validator(mode="after")
    def _check_bounds(self) -> "Window":
        if self.start_time > self.end_time:
            raise ValueError("window start_time must not be after end_time")
        return self

    def contains(self, timestamp: datetime) -> bool:
        return self.start_time <= timestamp <= self.end_time

    def wall_clock(self, clock_skew: timedelta) -> Tuple[datetime, datetime]:
        """Return the window bounds translated back into the operator's wall clock."""
        if self.cabinet_type == CabinetType.BYBIT:
            return self.start_time + clock_skew, self.end_time + clock_skew
        return self.start_time, self.end_time


class WindowSet(BaseModel):
    """Per-platform window lists produced by the window builder."""
    idex: List[Window] = Field(default_factory=list)
    bybit: List[Window] = Field(default_factory=list)
    rejected_entries: int = Field(default=0, description="Configuration entries rejected at parse time")

    class Config:
        frozen = True

    def for_platform(self, platform: CabinetType) -> List[Window]:
        return self.idex if platform == CabinetType.IDEX else self.bybit

    def cabinet_ids(self, platform: CabinetType) -> List[int]:
        """Distinct cabinet ids for a platform, in first-seen order."""
        seen: Dict[int, None] = {}
        for window in self.for_platform(platform):
            seen.setdefault(window.cabinet_id, None)
        return list(seen)

    @property
    def is_empty(self) -> bool:
        return not self.idex and not self.bybit


class CabinetWindowConfig(BaseModel):
    """One entry of a serialized per-cabinet window configuration."""
    cabinet_id: int = Field(..., alias="cabinetId", gt=0)
    cabinet_type: CabinetType = Field(default=CabinetType.BYBIT, alias="cabinetType")
    start_date: datetime = Field(..., alias="startDate")
    end_date: datetime = Field(..., alias="endDate")

    class Config:
        frozen = True
        populate_by_name = True

    @field_validator("cabinet_type", mode="before")
    @classmethod
    def _default_cabinet_type(cls, value: Any) -> Any:
        # Entries without a type belong to the skewed platform
        if value is None:
            return CabinetType.BYBIT
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @field_validator("start_date", "end_date")
    @classmethod
    def _normalize_time(cls, value: datetime) -> datetime:
        return to_naive_utc(value)

    @model_validator(mode="after")
    def _check_bounds(self) -> "CabinetWindowConfig":
        if self.end_date < self.start_date:
            raise ValueError("endDate must not be before startDate")
        return self

    def to_work_session(self) -> WorkSession:
        return WorkSession(
            cabinet_id=self.cabinet_id,
            cabinet_type=self.cabinet_type,
            start_time=self.start_date,
            end_time=self.end_date,
        )


class TransactionRecord(BaseModel):
    """A platform transaction in the shape consumed by the matcher."""
    id: int = Field(..., description="Record ID on its platform")
    platform: CabinetType = Field(..., description="Platform the record comes from")
    cabinet_id: int = Field(..., description="Cabinet the record was booked on")
    timestamp: datetime = Field(..., description="Event time in the platform's own clock")
    amount: Decimal = Field(..., description="Settlement amount used for statistics")
    direction: Direction = Field(..., description="Income or expense leg")
    asset: str = Field(default="USDT", description="Asset code of amount")
    order_ref: Optional[str] = Field(None, description="Order reference shared across platforms")
    quote_amount: Optional[Decimal] = Field(None, description="Fiat amount used for correlation")
    quote_currency: Optional[str] = Field(None, description="Currency code of quote_amount")
    counterparty_ref: Optional[str] = Field(None)
    raw_status: Optional[str] = Field(None, description="Status as reported by the platform")

    class Config:
        frozen = True
        from_attributes = True

    @field_validator("timestamp")
    @classmethod
    def _normalize_time(cls, value: datetime) -> datetime:
        return to_naive_utc(value)

    @property
    def comparison_amount(self) -> Decimal:
        return self.quote_amount if self.quote_amount is not None else self.amount

    @property
    def comparison_currency(self) -> Optional[str]:
        if self.quote_amount is not None:
            return self.quote_currency
        return self.asset


class MatchedPair(BaseModel):
    """Two records, one per platform, judged to be the same financial event."""
    record_a: TransactionRecord
    record_b: TransactionRecord
    match_key: MatchKey
    time_difference_seconds: int = Field(..., ge=0, description="Distance after clock correction")

    class Config:
        frozen = True


class MatchResult(BaseModel):
    """Output of one matcher run."""
    matched: List[MatchedPair] = Field(default_factory=list)
    unmatched_a: List[TransactionRecord] = Field(default_factory=list)
    unmatched_b: List[TransactionRecord] = Field(default_factory=list)
    ambiguous_resolutions: int = Field(default=0, description="Ties resolved by record id")

    class Config:
        frozen = True

    @property
    def matched_count(self) -> int:
        return len(self.matched)


class PairMetrics(BaseModel):
    """Financial figures of a single matched pair."""
    record_a_id: int
    record_b_id: int
    gross_income: Decimal
    gross_expense: Decimal
    gross_profit: Decimal
    profit_percentage: Decimal

    class Config:
        frozen = True


class StatisticsSummary(BaseModel):
    """Financial rollup over a set of matched pairs."""
    gross_income: Decimal = Field(default=Decimal("0"))
    gross_expense: Decimal = Field(default=Decimal("0"))
    gross_profit: Decimal = Field(default=Decimal("0"))
    profit_percentage: Decimal = Field(default=Decimal("0"))
    matched_count: int = Field(default=0, ge=0)
    total_transactions: int = Field(default=0, ge=0)
    unmatched_a_count: int = Field(default=0, ge=0)
    unmatched_b_count: int = Field(default=0, ge=0)
    # None means "no matched pairs", as opposed to a zero value
    profit_per_order: Optional[Decimal] = None
    expense_per_order: Optional[Decimal] = None
    income_per_order: Optional[Decimal] = None
    success_rate: Optional[Decimal] = None
    max_profit: Optional[Decimal] = None
    min_profit: Optional[Decimal] = None

    class Config:
        frozen = True


class CabinetOutcome(BaseModel):
    """Per-cabinet contribution to a reconciliation run."""
    cabinet_id: int
    cabinet_type: CabinetType
    status: CabinetStatus
    windows: List[Window] = Field(default_factory=list)
    record_count: int = Field(default=0, ge=0)
    statistics: Optional[StatisticsSummary] = Field(None, description="None when the fetch failed")
    error_message: Optional[str] = None

    class Config:
        frozen = True

    @property
    def failed(self) -> bool:
        return self.status != CabinetStatus.OK


class ReconciliationRequest(BaseModel):
    """Request model for a reconciliation run."""
    operator_id: Optional[int] = Field(None, description="Operator whose sessions are reconciled")
    period_start: Optional[datetime] = Field(None, description="Start of the reporting period")
    period_end: Optional[datetime] = Field(None, description="End of the reporting period")
    work_sessions: Optional[List[WorkSession]] = Field(None, description="Explicit sessions to reconcile")
    cabinet_windows: Optional[Union[str, List[Dict[str, Any]]]] = Field(
        None, description="Serialized per-cabinet window configuration"
    )
    now: Optional[datetime] = Field(None, description="Query time used to close active sessions")
    include_details: bool = Field(default=True, description="Include detailed records in report")

    @field_validator("period_start", "period_end", "now")
    @classmethod
    def _normalize_time(cls, value: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(value)

    @model_validator(mode="after")
    def _check_request(self) -> "ReconciliationRequest":
        if self.period_start and self.period_end and self.period_start > self.period_end:
            raise ValueError("period_start must not be after period_end")
        if self.operator_id is None and self.work_sessions is None and self.cabinet_windows is None:
            raise ValueError("one of operator_id, work_sessions or cabinet_windows is required")
        return self


class ReconciliationReport(BaseModel):
    """Complete reconciliation report with all findings."""
    id: str = Field(..., description="Report ID")
    status: ReconciliationStatus = Field(..., description="Overall run status")
    operator_id: Optional[int] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    windows: WindowSet = Field(default_factory=WindowSet)
    cabinets: List[CabinetOutcome] = Field(default_factory=list)

    matched_pairs: List[MatchedPair] = Field(default_factory=list)
    pair_metrics: List[PairMetrics] = Field(default_factory=list)
    unmatched_a: List[TransactionRecord] = Field(default_factory=list)
    unmatched_b: List[TransactionRecord] = Field(default_factory=list)
    statistics: StatisticsSummary = Field(default_factory=StatisticsSummary)
    ambiguous_resolutions: int = 0

    partial_failure: bool = Field(default=False, description="At least one cabinet failed to fetch")
    error_message: Optional[str] = Field(None, description="Error message if reconciliation failed")

    @property
    def failed_cabinets(self) -> List[CabinetOutcome]:
        return [c for c in self.cabinets if c.failed]

    def to_summary_dict(self) -> Dict[str, Any]:
        """Return a summary of the report without detailed records."""
        considered_a = self.statistics.matched_count + self.statistics.unmatched_a_count
        return {
            "id": self.id,
            "status": self.status.value,
            "operator_id": self.operator_id,
            "period_start": self.period_start.isoformat() if self.period_start else None,
            "period_end": self.period_end.isoformat() if self.period_end else None,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "partial_failure": self.partial_failure,
            "windows": {
                "idex": len(self.windows.idex),
                "bybit": len(self.windows.bybit),
                "rejected_entries": self.windows.rejected_entries,
            },
            "statistics": self.statistics.model_dump(mode="json"),
            "match_rate": (
                f"{(self.statistics.matched_count / considered_a * 100):.2f}%"
                if considered_a > 0 else "N/A"
            ),
            "ambiguous_resolutions": self.ambiguous_resolutions,
            "cabinets": [
                {
                    "cabinet_id": c.cabinet_id,
                    "cabinet_type": c.cabinet_type.value,
                    "status": c.status.value,
                    "record_count": c.record_count,
                    "error_message": c.error_message,
                }
                for c in self.cabinets
            ],
            "error_message": self.error_message,
        }

    def to_full_dict(self) -> Dict[str, Any]:
        """Return the complete report including all records."""
        result = self.to_summary_dict()
        result["cabinets"] = [c.model_dump(mode="json") for c in self.cabinets]
        result["windows"] = self.windows.model_dump(mode="json")
        result["matched_pairs"] = [p.model_dump(mode="json") for p in self.matched_pairs]
        result["pair_metrics"] = [m.model_dump(mode="json") for m in self.pair_metrics]
        result["unmatched_a"] = [r.model_dump(mode="json") for r in self.unmatched_a]
        result["unmatched_b"] = [r.model_dump(mode="json") for r in self.unmatched_b]
        return result
