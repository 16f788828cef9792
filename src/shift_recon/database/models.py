"""SQLAlchemy models for work sessions and platform transactions."""

from datetime import datetime
from decimal import Decimal
from typing import Optional, Dict, Any

from sqlalchemy import (
    Integer,
    String,
    DateTime,
    Numeric,
    Index,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class OperatorWorkSession(Base):
    """An operator's shift on one cabinet."""
    __tablename__ = "work_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    operator_id: Mapped[int] = mapped_column(Integer, nullable=False)
    cabinet_id: Mapped[int] = mapped_column(Integer, nullable=False)
    # "idex" or "bybit"
    cabinet_type: Mapped[str] = mapped_column(String(16), nullable=False, default="bybit")

    start_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    # NULL while the shift is still open
    end_time: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_work_sessions_operator_start", "operator_id", "start_time"),
    )

    def to_dict(self) -> Dict[str, Any]:
        """Convert work session to dictionary representation."""
        return {
            "id": self.id,
            "operator_id": self.operator_id,
            "cabinet_id": self.cabinet_id,
            "cabinet_type": self.cabinet_type,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
        }


class IdexTransaction(Base):
    """A transaction approved on an idex cabinet."""
    __tablename__ = "idex_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cabinet_id: Mapped[int] = mapped_column(Integer, nullable=False)
    external_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    order_ref: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    # Fiat amount paid by the client and USDT credited to the trader
    amount_rub: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    total_usdt: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)

    status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_idex_transactions_cabinet_approved", "cabinet_id", "approved_at"),
    )


class BybitTransaction(Base):
    """A P2P order recorded on a bybit cabinet."""
    __tablename__ = "bybit_transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    cabinet_id: Mapped[int] = mapped_column(Integer, nullable=False)
    order_no: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)

    # Recorded in bybit's clock, which runs behind the operators' wall clock
    date_time: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    type: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    asset: Mapped[str] = mapped_column(String(16), nullable=False, default="USDT")
    amount: Mapped[Decimal] = mapped_column(Numeric(20, 8), nullable=False)
    total_price: Mapped[Decimal] = mapped_column(Numeric(20, 2), nullable=False)
    unit_price: Mapped[Optional[Decimal]] = mapped_column(Numeric(20, 4), nullable=True)
    counterparty: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=datetime.utcnow)

    __table_args__ = (
        Index("ix_bybit_transactions_cabinet_date_time", "cabinet_id", "date_time"),
    )
