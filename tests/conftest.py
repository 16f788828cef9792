"""Shared test fixtures and configuration."""

import os
import pytest
from datetime import datetime
from decimal import Decimal
from typing import Optional
from unittest.mock import patch

# Set up test environment variables before importing modules
os.environ.setdefault("API_KEY", "test_api_key_12345")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from shift_recon import config
from shift_recon.config import ReconciliationSettings
from shift_recon.database import (
    Base,
    create_async_engine,
    get_async_session_factory,
)
from shift_recon.reconciliation.models import (
    CabinetType,
    Direction,
    TransactionRecord,
    WorkSession,
)


@pytest.fixture(autouse=True)
def reset_settings():
    """Drop cached settings so each test reads its own environment."""
    config._settings = None
    yield
    config._settings = None


@pytest.fixture
def mock_api_key():
    """Set up mock API key for authentication."""
    with patch.dict(os.environ, {"API_KEY": "test_api_key_12345"}):
        yield "test_api_key_12345"


@pytest.fixture
def auth_headers(mock_api_key):
    return {"Authorization": f"Bearer {mock_api_key}"}


@pytest.fixture
def settings():
    """Default settings."""
    return ReconciliationSettings()


@pytest.fixture
async def db_engine():
    """Create an in-memory SQLite database for testing."""
    engine = create_async_engine(
        database_url="sqlite+aiosqlite:///:memory:",
        echo=False
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    """Session factory bound to the test database."""
    return get_async_session_factory(db_engine)


@pytest.fixture
def make_idex():
    """Factory for idex (platform A) income records."""
    def _make(
        record_id: int,
        timestamp: datetime,
        rub: str = "1000.00",
        usdt: str = "10.50",
        cabinet_id: int = 1,
        order_ref: Optional[str] = None,
    ) -> TransactionRecord:
        return TransactionRecord(
            id=record_id,
            platform=CabinetType.IDEX,
            cabinet_id=cabinet_id,
            timestamp=timestamp,
            amount=Decimal(usdt),
            direction=Direction.INCOME,
            order_ref=order_ref,
            quote_amount=Decimal(rub),
            quote_currency="RUB",
        )
    return _make


@pytest.fixture
def make_bybit():
    """Factory for bybit (platform B) expense records; timestamps in bybit's clock."""
    def _make(
        record_id: int,
        timestamp: datetime,
        rub: str = "1000.00",
        usdt: str = "10.00",
        cabinet_id: int = 2,
        order_ref: Optional[str] = None,
    ) -> TransactionRecord:
        return TransactionRecord(
            id=record_id,
            platform=CabinetType.BYBIT,
            cabinet_id=cabinet_id,
            timestamp=timestamp,
            amount=Decimal(usdt),
            direction=Direction.EXPENSE,
            order_ref=order_ref,
            quote_amount=Decimal(rub),
            quote_currency="RUB",
        )
    return _make


@pytest.fixture
def day_sessions():
    """One idex and one bybit shift worked by operator 7 on 2024-01-15, 10:00-18:00."""
    return [
        WorkSession(
            cabinet_id=1,
            cabinet_type=CabinetType.IDEX,
            start_time=datetime(2024, 1, 15, 10, 0),
            end_time=datetime(2024, 1, 15, 18, 0),
            operator_id=7,
        ),
        WorkSession(
            cabinet_id=2,
            cabinet_type=CabinetType.BYBIT,
            start_time=datetime(2024, 1, 15, 10, 0),
            end_time=datetime(2024, 1, 15, 18, 0),
            operator_id=7,
        ),
    ]
