"""Record fetching and work session lookup for reconciliation."""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..database import (
    BybitTransaction,
    IdexTransaction,
    TransactionRepository,
    WorkSessionRepository,
    read_only_session,
)
from .exceptions import FetchError
from .models import (
    CabinetType,
    Direction,
    TransactionRecord,
    Window,
    WorkSession,
)

logger = logging.getLogger(__name__)


def in_windows(record: TransactionRecord, windows: Iterable[Window]) -> bool:
    """Check whether a record falls inside any window of its own cabinet."""
    return any(
        w.cabinet_id == record.cabinet_id and w.contains(record.timestamp)
        for w in windows
    )


class RecordFetcherBase(ABC):
    """Base class for platform record fetchers."""

    platform: CabinetType

    @abstractmethod
    async def fetch_records(self, windows: List[Window]) -> List[TransactionRecord]:
        """Fetch the platform's records falling inside any of the windows.

        Args:
            windows: Windows expressed in the platform's own clock.

        Returns:
            List of TransactionRecord objects. An empty window list returns
            an empty list.

        Raises:
            FetchError: If the underlying source fails.
        """
        raise NotImplementedError


class InMemoryRecordFetcher(RecordFetcherBase):
    """Fetcher serving records from a preloaded list."""

    def __init__(self, platform: CabinetType, records: Iterable[TransactionRecord]):
        self.platform = platform
        self._records = [r for r in records if r.platform == platform]

    async def fetch_records(self, windows: List[Window]) -> List[TransactionRecord]:
        if not windows:
            return []
        return [r for r in self._records if in_windows(r, windows)]


class SqlRecordFetcher(RecordFetcherBase):
    """Fetcher reading platform transactions through SQLAlchemy."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        platform: CabinetType,
    ):
        """Initialize the SQL fetcher.

        Args:
            session_factory: Factory for async database sessions.
            platform: Platform whose table is queried.
        """
        self.session_factory = session_factory
        self.platform = platform

    @staticmethod
    def _convert_idex(row: IdexTransaction) -> TransactionRecord:
        return TransactionRecord(
            id=row.id,
            platform=CabinetType.IDEX,
            cabinet_id=row.cabinet_id,
            timestamp=row.approved_at,
            amount=row.total_usdt,
            direction=Direction.INCOME,
            asset="USDT",
            order_ref=row.order_ref,
            quote_amount=row.amount_rub,
            quote_currency="RUB",
            counterparty_ref=row.external_id,
            raw_status=row.status,
        )

    @staticmethod
    def _convert_bybit(row: BybitTransaction) -> TransactionRecord:
        return TransactionRecord(
            id=row.id,
            platform=CabinetType.BYBIT,
            cabinet_id=row.cabinet_id,
            timestamp=row.date_time,
            amount=row.amount,
            direction=Direction.EXPENSE,
            asset=row.asset or "USDT",
            order_ref=row.order_no,
            quote_amount=row.total_price,
            quote_currency="RUB",
            counterparty_ref=row.counterparty,
            raw_status=row.status,
        )

    async def fetch_records(self, windows: List[Window]) -> List[TransactionRecord]:
        if not windows:
            return []

        cabinets = sorted({w.cabinet_id for w in windows})
        try:
            async with read_only_session(self.session_factory) as session:
                repo = TransactionRepository(session)
                if self.platform == CabinetType.IDEX:
                    rows = await repo.list_idex_in_windows(windows)
                    records = [self._convert_idex(r) for r in rows]
                else:
                    rows = await repo.list_bybit_in_windows(windows)
                    records = [self._convert_bybit(r) for r in rows]
        except SQLAlchemyError as e:
            logger.error(f"Failed to fetch {self.platform.value} records for cabinets {cabinets}: {e}")
            cabinet_id = cabinets[0] if len(cabinets) == 1 else None
            raise FetchError(f"{self.platform.value} query failed: {e}", cabinet_id=cabinet_id) from e

        logger.info(
            f"Fetched {len(records)} {self.platform.value} records "
            f"for {len(windows)} windows"
        )
        return records


class WorkSessionSourceBase(ABC):
    """Base class for work session sources."""

    @abstractmethod
    async def list_sessions(
        self,
        operator_id: int,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> List[WorkSession]:
        """List an operator's work sessions overlapping a period.

        Args:
            operator_id: Operator identifier.
            period_start: Optional start of the period.
            period_end: Optional end of the period.

        Returns:
            List of WorkSession objects, open sessions included.
        """
        raise NotImplementedError


class InMemoryWorkSessionSource(WorkSessionSourceBase):
    """Work session source backed by a preloaded list."""

    def __init__(self, sessions: Iterable[WorkSession]):
        self._sessions = list(sessions)

    async def list_sessions(
        self,
        operator_id: int,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> List[WorkSession]:
        result = []
        for s in self._sessions:
            if s.operator_id != operator_id:
                continue
            if period_end is not None and s.start_time > period_end:
                continue
            if period_start is not None and s.end_time is not None and s.end_time < period_start:
                continue
            result.append(s)
        return result


class SqlWorkSessionSource(WorkSessionSourceBase):
    """Work session source reading the work_sessions table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def list_sessions(
        self,
        operator_id: int,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> List[WorkSession]:
        sessions = []
        async with read_only_session(self.session_factory) as session:
            rows = await WorkSessionRepository(session).list_for_operator(
                operator_id, period_start, period_end
            )
            for row in rows:
                try:
                    sessions.append(WorkSession.model_validate(row))
                except ValueError as e:
                    logger.warning(f"Skipping invalid work session {row.id}: {e}")
        logger.info(f"Loaded {len(sessions)} work sessions for operator {operator_id}")
        return sessions


def get_record_fetchers(
    session_factory: async_sessionmaker[AsyncSession],
) -> Dict[CabinetType, RecordFetcherBase]:
    """Create SQL fetchers for both platforms.

    Args:
        session_factory: Factory for async database sessions.

    Returns:
        Mapping of platform to fetcher.
    """
    return {
        CabinetType.IDEX: SqlRecordFetcher(session_factory, CabinetType.IDEX),
        CabinetType.BYBIT: SqlRecordFetcher(session_factory, CabinetType.BYBIT),
    }
