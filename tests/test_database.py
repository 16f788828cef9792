"""Tests for the SQL adapter: models, repositories, fetchers and session sources."""

import pytest
from datetime import datetime
from decimal import Decimal

from shift_recon.database import (
    BybitTransaction,
    IdexTransaction,
    OperatorWorkSession,
    TransactionRepository,
    WorkSessionRepository,
    create_async_engine,
    get_async_session_factory,
    get_database_url,
    read_only_session,
)
from shift_recon.reconciliation import (
    CabinetType,
    Direction,
    FetchError,
    SqlRecordFetcher,
    SqlWorkSessionSource,
    Window,
    get_record_fetchers,
)


T = datetime(2024, 1, 15)


def at(hour: int, minute: int = 0) -> datetime:
    return T.replace(hour=hour, minute=minute)


def window(cabinet_id, cabinet_type, start, end):
    return Window(cabinet_id=cabinet_id, cabinet_type=cabinet_type, start_time=start, end_time=end)


@pytest.fixture
async def seeded(session_factory):
    """Seed two idex cabinets, one bybit cabinet and operator shifts."""
    async with session_factory() as session:
        session.add_all([
            IdexTransaction(id=1, cabinet_id=1, external_id="ext-1", order_ref="ORD-1",
                            amount_rub=Decimal("1000.00"), total_usdt=Decimal("10.5"),
                            status="2", approved_at=at(12)),
            IdexTransaction(id=2, cabinet_id=1, amount_rub=Decimal("500.00"),
                            total_usdt=Decimal("5.25"), approved_at=at(19)),
            IdexTransaction(id=3, cabinet_id=4, amount_rub=Decimal("700.00"),
                            total_usdt=Decimal("7"), approved_at=at(12)),
            IdexTransaction(id=4, cabinet_id=1, amount_rub=Decimal("300.00"),
                            total_usdt=Decimal("3"), approved_at=None),
            BybitTransaction(id=10, cabinet_id=2, order_no="ORD-1", date_time=at(9, 5),
                             type="BUY", amount=Decimal("10"), total_price=Decimal("1000.00"),
                             counterparty="seller-1", status="completed"),
            BybitTransaction(id=11, cabinet_id=2, date_time=at(16),
                             amount=Decimal("3"), total_price=Decimal("300.00")),
            OperatorWorkSession(operator_id=7, cabinet_id=1, cabinet_type="idex",
                                start_time=at(10), end_time=at(18)),
            OperatorWorkSession(operator_id=7, cabinet_id=2, cabinet_type="bybit",
                                start_time=at(10), end_time=None),
            OperatorWorkSession(operator_id=7, cabinet_id=1, cabinet_type="idex",
                                start_time=datetime(2024, 1, 10, 10), end_time=datetime(2024, 1, 10, 18)),
            OperatorWorkSession(operator_id=8, cabinet_id=4, cabinet_type="idex",
                                start_time=at(10), end_time=at(18)),
        ])
        await session.commit()
    return session_factory


class TestDatabaseUrl:
    """Tests for DATABASE_URL handling."""

    def test_postgres_urls_use_asyncpg(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "postgres://user:pw@db/recon")
        assert get_database_url() == "postgresql+asyncpg://user:pw@db/recon"

        monkeypatch.setenv("DATABASE_URL", "postgresql://user:pw@db/recon")
        assert get_database_url() == "postgresql+asyncpg://user:pw@db/recon"

    def test_default_is_sqlite(self, monkeypatch):
        monkeypatch.delenv("DATABASE_URL", raising=False)
        assert get_database_url() == "sqlite+aiosqlite:///./shift_recon.db"

    def test_plain_sqlite_uses_aiosqlite(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite:////var/lib/recon.db")
        assert get_database_url() == "sqlite+aiosqlite:////var/lib/recon.db"

    def test_async_urls_untouched(self, monkeypatch):
        monkeypatch.setenv("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
        assert get_database_url() == "sqlite+aiosqlite:///:memory:"

    def test_global_factory_requires_init(self):
        with pytest.raises(RuntimeError, match="init_db"):
            get_async_session_factory()


class TestReadOnlySession:
    """Reconciliation reads never persist changes."""

    async def test_changes_rolled_back(self, session_factory):
        async with read_only_session(session_factory) as session:
            session.add(BybitTransaction(cabinet_id=2, date_time=at(9), amount=Decimal("1"),
                                         total_price=Decimal("100")))
            await session.flush()

        async with read_only_session(session_factory) as session:
            rows = await TransactionRepository(session).list_bybit_in_windows([
                window(2, CabinetType.BYBIT, at(0), at(23)),
            ])

        assert rows == []


class TestTransactionRepository:
    """Tests for OR-of-ranges window queries."""

    async def test_idex_rows_inside_windows(self, seeded):
        async with seeded() as session:
            rows = await TransactionRepository(session).list_idex_in_windows([
                window(1, CabinetType.IDEX, at(10), at(18)),
                window(4, CabinetType.IDEX, at(11), at(13)),
            ])

        assert [r.id for r in rows] == [1, 3]

    async def test_windows_are_per_cabinet(self, seeded):
        async with seeded() as session:
            rows = await TransactionRepository(session).list_idex_in_windows([
                window(1, CabinetType.IDEX, at(18, 30), at(20)),
            ])

        assert [r.id for r in rows] == [2]

    async def test_bounds_inclusive(self, seeded):
        async with seeded() as session:
            rows = await TransactionRepository(session).list_bybit_in_windows([
                window(2, CabinetType.BYBIT, at(9, 5), at(16)),
            ])

        assert [r.id for r in rows] == [10, 11]

    async def test_empty_window_list_queries_nothing(self, seeded):
        async with seeded() as session:
            repo = TransactionRepository(session)
            assert await repo.list_idex_in_windows([]) == []
            assert await repo.list_bybit_in_windows([]) == []


class TestWorkSessionRepository:
    """Tests for work session lookups."""

    async def test_sessions_overlapping_period(self, seeded):
        async with seeded() as session:
            rows = await WorkSessionRepository(session).list_for_operator(7, at(0), at(23))

        assert [(r.cabinet_id, r.end_time) for r in rows] == [(1, at(18)), (2, None)]

    async def test_open_session_overlaps_later_period(self, seeded):
        async with seeded() as session:
            rows = await WorkSessionRepository(session).list_for_operator(
                7, datetime(2024, 1, 20), datetime(2024, 1, 21)
            )

        assert [r.cabinet_id for r in rows] == [2]

    async def test_without_period(self, seeded):
        async with seeded() as session:
            rows = await WorkSessionRepository(session).list_for_operator(7)

        assert len(rows) == 3
        assert rows[0].start_time == datetime(2024, 1, 10, 10)
        assert rows[0].to_dict()["cabinet_type"] == "idex"


class TestSqlRecordFetcher:
    """Tests for converting rows into transaction records."""

    async def test_idex_conversion(self, seeded):
        fetcher = SqlRecordFetcher(seeded, CabinetType.IDEX)

        records = await fetcher.fetch_records([window(1, CabinetType.IDEX, at(10), at(18))])

        assert len(records) == 1
        record = records[0]
        assert record.platform == CabinetType.IDEX
        assert record.direction == Direction.INCOME
        assert record.timestamp == at(12)
        assert record.amount == Decimal("10.5")
        assert record.quote_amount == Decimal("1000")
        assert record.quote_currency == "RUB"
        assert record.order_ref == "ORD-1"
        assert record.counterparty_ref == "ext-1"
        assert record.raw_status == "2"

    async def test_bybit_conversion(self, seeded):
        fetcher = SqlRecordFetcher(seeded, CabinetType.BYBIT)

        records = await fetcher.fetch_records([window(2, CabinetType.BYBIT, at(7), at(15))])

        assert len(records) == 1
        record = records[0]
        assert record.platform == CabinetType.BYBIT
        assert record.direction == Direction.EXPENSE
        assert record.timestamp == at(9, 5)
        assert record.amount == Decimal("10")
        assert record.quote_amount == Decimal("1000")
        assert record.order_ref == "ORD-1"
        assert record.counterparty_ref == "seller-1"

    async def test_empty_windows(self, seeded):
        assert await SqlRecordFetcher(seeded, CabinetType.IDEX).fetch_records([]) == []

    async def test_database_error_wrapped(self):
        engine = create_async_engine(database_url="sqlite+aiosqlite:///:memory:")
        try:
            fetcher = SqlRecordFetcher(get_async_session_factory(engine), CabinetType.BYBIT)
            with pytest.raises(FetchError) as exc_info:
                await fetcher.fetch_records([window(2, CabinetType.BYBIT, at(7), at(15))])
            assert exc_info.value.cabinet_id == 2
        finally:
            await engine.dispose()

    def test_get_record_fetchers(self, session_factory):
        fetchers = get_record_fetchers(session_factory)

        assert set(fetchers) == {CabinetType.IDEX, CabinetType.BYBIT}
        assert fetchers[CabinetType.BYBIT].platform == CabinetType.BYBIT


class TestSqlWorkSessionSource:
    """Tests for loading work sessions as domain objects."""

    async def test_list_sessions(self, seeded):
        sessions = await SqlWorkSessionSource(seeded).list_sessions(7, at(0), at(23))

        assert [(s.cabinet_id, s.cabinet_type) for s in sessions] == [
            (1, CabinetType.IDEX),
            (2, CabinetType.BYBIT),
        ]
        assert sessions[1].is_active
        assert all(s.operator_id == 7 for s in sessions)
