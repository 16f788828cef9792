"""API endpoints for reconciliation operations."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field, ValidationError

from ..auth import verify_api_key, limiter
from ..config import get_settings
from ..database import get_async_session_factory
from .fetcher import SqlWorkSessionSource, get_record_fetchers
from .models import ReconciliationRequest, WindowSet, to_naive_utc
from .service import ReconciliationService
from .windows import WindowBuilder

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])

REPORT_FORMATS = ("json", "csv", "text", "detailed_text")


def job_rate_limit() -> str:
    """Rate limit applied to reconciliation job endpoints."""
    return get_settings().rate_limit


def get_reconciliation_service() -> ReconciliationService:
    """Build a service reading from the application database."""
    session_factory = get_async_session_factory()
    return ReconciliationService(
        fetchers=get_record_fetchers(session_factory),
        session_source=SqlWorkSessionSource(session_factory),
    )


class ReconciliationRequestBody(BaseModel):
    """Request body for starting a reconciliation job."""
    operator_id: Optional[int] = Field(None, description="Operator whose sessions are reconciled")
    period_start: Optional[datetime] = Field(None, description="Start of the reporting period")
    period_end: Optional[datetime] = Field(None, description="End of the reporting period")
    work_sessions: Optional[List[Dict[str, Any]]] = Field(None, description="Explicit work sessions")
    cabinet_windows: Optional[Union[str, List[Dict[str, Any]]]] = Field(
        None, description="Cabinet window configuration, JSON text or array"
    )
    now: Optional[datetime] = Field(None, description="Query time used to close active sessions")


class WindowPreviewBody(BaseModel):
    """Request body for previewing windows of a cabinet window configuration."""
    cabinet_windows: Union[str, List[Any]] = Field(..., description="JSON text or array of entries")
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None


class ReconciliationSummaryResponse(BaseModel):
    """Summary response for reconciliation job."""
    id: str
    status: str
    operator_id: Optional[int] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    partial_failure: bool = False
    failed_cabinets: List[int] = Field(default_factory=list)
    matched_count: int = 0
    unmatched_a_count: int = 0
    unmatched_b_count: int = 0
    total_transactions: int = 0
    gross_income: Decimal = Decimal("0")
    gross_expense: Decimal = Decimal("0")
    gross_profit: Decimal = Decimal("0")
    profit_percentage: Decimal = Decimal("0")
    match_rate: str = "N/A"
    ambiguous_resolutions: int = 0
    error_message: Optional[str] = None


def _build_request(body: ReconciliationRequestBody, include_details: bool = True) -> ReconciliationRequest:
    try:
        return ReconciliationRequest(**body.model_dump(), include_details=include_details)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=e.errors()[0]["msg"]) from e


@router.post("/jobs", response_model=ReconciliationSummaryResponse)
@limiter.limit(job_rate_limit)
async def create_reconciliation_job(
    request: Request,
    body: ReconciliationRequestBody,
    service: ReconciliationService = Depends(get_reconciliation_service),
    api_key: str = Depends(verify_api_key),
):
    """
    Run a reconciliation job.

    Builds windows from the operator's work sessions (or the given sessions
    or cabinet windows), fetches idex and bybit records, matches them and
    returns summary statistics.
    """
    recon_request = _build_request(body)

    logger.info(
        f"Starting reconciliation job for operator {body.operator_id} "
        f"from {body.period_start} to {body.period_end}"
    )

    report = await service.run_reconciliation(recon_request)
    summary = report.to_summary_dict()
    stats = report.statistics

    return ReconciliationSummaryResponse(
        id=report.id,
        status=summary["status"],
        operator_id=report.operator_id,
        period_start=report.period_start,
        period_end=report.period_end,
        created_at=report.created_at,
        completed_at=report.completed_at,
        partial_failure=report.partial_failure,
        failed_cabinets=[c.cabinet_id for c in report.failed_cabinets],
        matched_count=stats.matched_count,
        unmatched_a_count=stats.unmatched_a_count,
        unmatched_b_count=stats.unmatched_b_count,
        total_transactions=stats.total_transactions,
        gross_income=stats.gross_income,
        gross_expense=stats.gross_expense,
        gross_profit=stats.gross_profit,
        profit_percentage=stats.profit_percentage,
        match_rate=summary["match_rate"],
        ambiguous_resolutions=report.ambiguous_resolutions,
        error_message=report.error_message,
    )


@router.post("/jobs/report")
@limiter.limit(job_rate_limit)
async def create_reconciliation_report(
    request: Request,
    body: ReconciliationRequestBody,
    include_details: bool = Query(default=True, description="Include detailed records"),
    format: str = Query(default="json", description="Output format: json, csv, text, detailed_text"),
    service: ReconciliationService = Depends(get_reconciliation_service),
    api_key: str = Depends(verify_api_key),
):
    """
    Run reconciliation and generate a detailed report.

    Returns the full reconciliation report including:
    - Matched pairs with per-pair income, expense and profit
    - Unmatched idex and bybit records
    - Per-cabinet outcomes and statistics
    """
    if format not in REPORT_FORMATS:
        raise HTTPException(
            status_code=400,
            detail="format must be one of: json, csv, text, detailed_text"
        )

    recon_request = _build_request(body, include_details=include_details)
    report = await service.run_reconciliation(recon_request)

    if format == "json":
        return report.to_full_dict() if include_details else report.to_summary_dict()

    # Return as plain text for non-JSON formats
    output = service.generate_report(
        report=report,
        format=format,
        include_details=include_details,
    )
    content_type = "text/csv" if format == "csv" else "text/plain"
    return PlainTextResponse(content=output, media_type=content_type)


@router.post("/windows")
async def preview_windows(
    body: WindowPreviewBody,
    api_key: str = Depends(verify_api_key),
):
    """
    Build query windows from a cabinet window configuration.

    Malformed configurations yield empty window lists; rejected entries are
    counted in rejected_entries.
    """
    builder = WindowBuilder(get_settings().clock_skew)
    windows: WindowSet = builder.parse_windows(
        body.cabinet_windows,
        period_start=to_naive_utc(body.period_start),
        period_end=to_naive_utc(body.period_end),
    )
    return windows.model_dump(mode="json")


@router.get("/health")
async def reconciliation_health():
    """Health check endpoint for reconciliation service."""
    return {"status": "healthy", "service": "reconciliation"}
