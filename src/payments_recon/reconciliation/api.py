"""API endpoints for reconciliation, diagnostics and the statement listing."""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, File, HTTPException, Query, UploadFile
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import verify_api_key
from ..config import RecoverySettings
from ..database import get_db
from ..errors import ValidationError
from .models import ReconciliationRequest
from .service import ReconciliationService
from .statement_reader import MAX_PAGE_SIZE, StatementCursor, StatementReader

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/reconciliation", tags=["reconciliation"])
statement_router = APIRouter(prefix="/statement", tags=["statement"])

REPORT_FORMATS = ("json", "csv", "text", "detailed_text")


class DiagnosticsResponse(BaseModel):
    """Diagnostics scan result."""
    scanned_orders: int
    counts: dict
    records: List[dict]


def _check_window(start_time: Optional[datetime], end_time: Optional[datetime]) -> None:
    if start_time and end_time and start_time >= end_time:
        raise HTTPException(
            status_code=400,
            detail="start_time must be before end_time"
        )


def _check_format(format: str) -> None:
    if format not in REPORT_FORMATS:
        raise HTTPException(
            status_code=400,
            detail=f"format must be one of: {', '.join(REPORT_FORMATS)}"
        )


def _render(service: ReconciliationService, report, format: str, include_details: bool):
    if format == "json":
        return report.to_full_dict() if include_details else report.to_summary_dict()
    output = service.generate_report(report=report, format=format, include_details=include_details)
    content_type = "text/csv" if format == "csv" else "text/plain"
    return PlainTextResponse(content=output, media_type=content_type)


@router.post("/rows")
async def reconcile_rows(
    body: ReconciliationRequest,
    format: str = Query(default="json", description="Output format: json, csv, text, detailed_text"),
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """
    Reconcile already-parsed statement rows against the ledger.

    Rows failing validation are skipped and counted in the report.
    """
    _check_window(body.start_time, body.end_time)
    _check_format(format)

    service = ReconciliationService(db, RecoverySettings.from_env())
    report = await service.reconcile_rows(body.rows, body.start_time, body.end_time)
    return _render(service, report, format, body.include_details)


@router.post("/file")
async def reconcile_file(
    file: UploadFile = File(..., description="CSV or XLSX statement export"),
    start_time: Optional[datetime] = Query(default=None),
    end_time: Optional[datetime] = Query(default=None),
    include_details: bool = Query(default=True, description="Include sample records"),
    format: str = Query(default="json", description="Output format: json, csv, text, detailed_text"),
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """
    Upload a statement file and reconcile it against the ledger.

    Returns the reconciliation report with exact counts per bucket,
    sample records and per-status totals on both sides.
    """
    _check_window(start_time, end_time)
    _check_format(format)

    content = await file.read()
    service = ReconciliationService(db, RecoverySettings.from_env())
    try:
        report = await service.reconcile_file(content, file.filename or "", start_time, end_time)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    logger.info(f"Reconciled statement file {file.filename}: {report.matched_count} matched")
    return _render(service, report, format, include_details)


@router.get("/diagnostics", response_model=DiagnosticsResponse)
async def run_diagnostics(
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """Scan paid orders for missing payment records, duplicate UIDs and missing UIDs."""
    service = ReconciliationService(db, RecoverySettings.from_env())
    report = await service.run_diagnostics()
    return DiagnosticsResponse(
        scanned_orders=report.scanned_orders,
        counts=report.counts(),
        records=[r.model_dump(mode="json") for r in report.records],
    )


@router.get("/health")
async def reconciliation_health():
    """Health check endpoint for reconciliation service."""
    return {"status": "healthy", "service": "reconciliation"}


@statement_router.get("")
async def list_statement(
    cursor: Optional[str] = Query(default=None, description="Cursor from the previous page"),
    page_size: int = Query(default=50, ge=1, le=MAX_PAGE_SIZE),
    status: Optional[List[str]] = Query(default=None, description="Normalized status filter"),
    include_cancelled: bool = Query(default=True),
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """List stored transactions newest first, one keyset page at a time."""
    try:
        decoded = StatementCursor.decode(cursor) if cursor else None
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))

    page = await StatementReader(db).list_page(
        cursor=decoded,
        page_size=page_size,
        statuses=status,
        include_cancelled=include_cancelled,
    )
    return page.to_dict()
