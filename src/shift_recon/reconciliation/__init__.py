"""Reconciliation of idex and bybit transactions against work sessions.

This module pairs transactions recorded on two trading platforms that do
not share a transaction id, within the time windows an operator worked
each cabinet.

Features:
- Build per-platform query windows from work sessions, correcting bybit's clock skew
- Fetch records per cabinet with bounded concurrency and per-cabinet timeouts
- Match records by order reference, then by amount and timestamp proximity
- Aggregate income, expense and profit per cabinet and per period
- Generate JSON, CSV and text reports
"""

from .exceptions import (
    ReconciliationError,
    ConfigurationParseError,
    FetchError,
    ManualMatchError,
    InvariantViolation,
)
from .models import (
    CabinetType,
    Direction,
    MatchKey,
    CabinetStatus,
    ReconciliationStatus,
    WorkSession,
    Window,
    WindowSet,
    TransactionRecord,
    MatchedPair,
    MatchResult,
    PairMetrics,
    StatisticsSummary,
    CabinetOutcome,
    ReconciliationRequest,
    ReconciliationReport,
)
from .windows import WindowBuilder, shift_window
from .fetcher import (
    RecordFetcherBase,
    InMemoryRecordFetcher,
    SqlRecordFetcher,
    WorkSessionSourceBase,
    InMemoryWorkSessionSource,
    SqlWorkSessionSource,
    get_record_fetchers,
)
from .matcher import Matcher
from .aggregator import Aggregator
from .service import ReconciliationService
from .report import ReportGenerator

__all__ = [
    # Errors
    "ReconciliationError",
    "ConfigurationParseError",
    "FetchError",
    "ManualMatchError",
    "InvariantViolation",
    # Models
    "CabinetType",
    "Direction",
    "MatchKey",
    "CabinetStatus",
    "ReconciliationStatus",
    "WorkSession",
    "Window",
    "WindowSet",
    "TransactionRecord",
    "MatchedPair",
    "MatchResult",
    "PairMetrics",
    "StatisticsSummary",
    "CabinetOutcome",
    "ReconciliationRequest",
    "ReconciliationReport",
    # Fetchers
    "RecordFetcherBase",
    "InMemoryRecordFetcher",
    "SqlRecordFetcher",
    "WorkSessionSourceBase",
    "InMemoryWorkSessionSource",
    "SqlWorkSessionSource",
    "get_record_fetchers",
    # Core Components
    "WindowBuilder",
    "shift_window",
    "Matcher",
    "Aggregator",
    "ReconciliationService",
    "ReportGenerator",
]
