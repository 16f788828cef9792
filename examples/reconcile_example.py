"""
Reconcile one operator shift in memory: an idex income leg bought back on bybit
three hours earlier by bybit's clock. Prints the text summary of the report.
"""
import asyncio
from datetime import datetime
from decimal import Decimal

from shift_recon.config import ReconciliationSettings
from shift_recon.reconciliation import (
    CabinetType,
    Direction,
    InMemoryRecordFetcher,
    InMemoryWorkSessionSource,
    ReconciliationRequest,
    ReconciliationService,
    TransactionRecord,
    WorkSession,
)

DAY = datetime(2024, 1, 15)


def build_service() -> ReconciliationService:
    sessions = [
        WorkSession(operator_id=7, cabinet_id=1, cabinet_type=CabinetType.IDEX,
                    start_time=DAY.replace(hour=10), end_time=DAY.replace(hour=18)),
        WorkSession(operator_id=7, cabinet_id=2, cabinet_type=CabinetType.BYBIT,
                    start_time=DAY.replace(hour=10), end_time=DAY.replace(hour=18)),
    ]
    records = [
        TransactionRecord(id=1, platform=CabinetType.IDEX, cabinet_id=1,
                          timestamp=DAY.replace(hour=12), amount=Decimal("10.50"),
                          direction=Direction.INCOME, quote_amount=Decimal("1000.00"),
                          quote_currency="RUB"),
        TransactionRecord(id=10, platform=CabinetType.BYBIT, cabinet_id=2,
                          timestamp=DAY.replace(hour=9, minute=5), amount=Decimal("10.00"),
                          direction=Direction.EXPENSE, quote_amount=Decimal("1000.00"),
                          quote_currency="RUB"),
    ]
    return ReconciliationService(
        fetchers={
            CabinetType.IDEX: InMemoryRecordFetcher(CabinetType.IDEX, records),
            CabinetType.BYBIT: InMemoryRecordFetcher(CabinetType.BYBIT, records),
        },
        session_source=InMemoryWorkSessionSource(sessions),
        settings=ReconciliationSettings(),
    )


async def run():
    service = build_service()
    report = await service.run_reconciliation(ReconciliationRequest(
        operator_id=7,
        period_start=DAY,
        period_end=DAY.replace(hour=23, minute=59),
    ))
    print(service.generate_report(report, format="detailed_text"))


if __name__ == "__main__":
    asyncio.run(run())
