"""Repository layer for work session and transaction lookups."""

import logging
from datetime import datetime
from typing import Any, List, Optional, Sequence

from sqlalchemy import select, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from .models import (
    OperatorWorkSession,
    IdexTransaction,
    BybitTransaction,
)

logger = logging.getLogger(__name__)


def windows_clause(cabinet_column, time_column, windows: Sequence[Any]):
    """Build an OR-of-ranges filter for a list of windows.

    Args:
        cabinet_column: Column holding the cabinet id.
        time_column: Column holding the timestamp the windows bound.
        windows: Objects with cabinet_id, start_time and end_time.

    Returns:
        SQLAlchemy boolean clause matching rows inside any window.
    """
    return or_(*[
        and_(
            cabinet_column == w.cabinet_id,
            time_column >= w.start_time,
            time_column <= w.end_time,
        )
        for w in windows
    ])


class TransactionRepository:
    """Read-only queries over platform transactions."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session

    async def list_idex_in_windows(self, windows: Sequence[Any]) -> List[IdexTransaction]:
        """List approved idex transactions falling inside any window.

        Args:
            windows: idex windows (cabinet_id, start_time, end_time).

        Returns:
            Matching rows ordered by approval time and id. An empty window
            list matches nothing.
        """
        if not windows:
            return []
        result = await self.session.execute(
            select(IdexTransaction)
            .where(
                and_(
                    IdexTransaction.approved_at.is_not(None),
                    windows_clause(IdexTransaction.cabinet_id, IdexTransaction.approved_at, windows),
                )
            )
            .order_by(IdexTransaction.approved_at, IdexTransaction.id)
        )
        rows = list(result.scalars().all())
        logger.debug(f"Loaded {len(rows)} idex transactions for {len(windows)} windows")
        return rows

    async def list_bybit_in_windows(self, windows: Sequence[Any]) -> List[BybitTransaction]:
        """List bybit transactions falling inside any window.

        Args:
            windows: bybit windows, already expressed in bybit's clock.

        Returns:
            Matching rows ordered by transaction time and id.
        """
        if not windows:
            return []
        result = await self.session.execute(
            select(BybitTransaction)
            .where(windows_clause(BybitTransaction.cabinet_id, BybitTransaction.date_time, windows))
            .order_by(BybitTransaction.date_time, BybitTransaction.id)
        )
        rows = list(result.scalars().all())
        logger.debug(f"Loaded {len(rows)} bybit transactions for {len(windows)} windows")
        return rows


class WorkSessionRepository:
    """Queries over operator work sessions."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_for_operator(
        self,
        operator_id: int,
        period_start: Optional[datetime] = None,
        period_end: Optional[datetime] = None,
    ) -> List[OperatorWorkSession]:
        """List an operator's sessions overlapping a period.

        Open sessions (end_time NULL) overlap every period that ends after
        they started.

        Args:
            operator_id: Operator identifier.
            period_start: Optional start of the period.
            period_end: Optional end of the period.

        Returns:
            Sessions ordered by start time and id.
        """
        conditions = [OperatorWorkSession.operator_id == operator_id]
        if period_end is not None:
            conditions.append(OperatorWorkSession.start_time <= period_end)
        if period_start is not None:
            conditions.append(
                or_(
                    OperatorWorkSession.end_time.is_(None),
                    OperatorWorkSession.end_time >= period_start,
                )
            )

        result = await self.session.execute(
            select(OperatorWorkSession)
            .where(and_(*conditions))
            .order_by(OperatorWorkSession.start_time, OperatorWorkSession.id)
        )
        return list(result.scalars().all())
