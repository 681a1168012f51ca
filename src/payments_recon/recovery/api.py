"""API endpoints for recovery previews and executions."""

import logging
from datetime import datetime
from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..auth import EXECUTE_RATE_LIMIT, limiter, verify_api_key
from ..config import RecoverySettings
from ..database import get_db
from .models import DateRange, RecoveryPlanView, RecoveryResult
from .provider_client import get_provider_client
from .service import RecoveryService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/recovery", tags=["recovery"])


class SingleRecoveryBody(BaseModel):
    """Request body for previewing a single-record recovery."""
    uid: Optional[str] = Field(None, description="Provider transaction UID")
    tracking_id: Optional[str] = Field(None, description="Merchant tracking id")


class BulkResyncBody(BaseModel):
    """Request body for previewing a bulk UID-resync."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    confirm_large: bool = False


class SoftCancelBody(BaseModel):
    """Request body for previewing a soft-cancel."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    statuses: List[str] = Field(default_factory=lambda: ["pending"])
    source_channels: Optional[List[str]] = None
    confirm_large: bool = False


class ExecuteBody(BaseModel):
    """Request body for executing a plan."""
    plan_id: str = Field(..., description="Token returned by the preview")
    confirm_large: bool = Field(default=False, description="Confirm a plan stopped at the safety threshold")


async def get_recovery_service(db: AsyncSession = Depends(get_db)):
    """Build a RecoveryService bound to the request session."""
    settings = RecoverySettings.from_env()
    client = get_provider_client(settings)
    try:
        yield RecoveryService(db, client=client, settings=settings)
    finally:
        await client.aclose()


def _date_range(start: Optional[datetime], end: Optional[datetime]) -> DateRange:
    if start and end and start > end:
        raise HTTPException(status_code=400, detail="start must not be after end")
    return DateRange(start=start, end=end)


@router.post("/single/preview", response_model=RecoveryPlanView)
async def preview_recovery(
    body: SingleRecoveryBody,
    service: RecoveryService = Depends(get_recovery_service),
    api_key: str = Depends(verify_api_key),
):
    """Preview recovering one transaction by UID or tracking id."""
    return await service.preview_recovery(uid=body.uid, tracking_id=body.tracking_id)


@router.post("/single/execute", response_model=RecoveryResult)
@limiter.limit(EXECUTE_RATE_LIMIT)
async def execute_recovery(
    request: Request,
    body: ExecuteBody,
    service: RecoveryService = Depends(get_recovery_service),
    api_key: str = Depends(verify_api_key),
):
    """Execute a ``created`` single-record recovery preview."""
    return await service.execute_recovery(body.plan_id)


@router.post("/resync/preview", response_model=RecoveryPlanView)
async def preview_bulk_resync(
    body: BulkResyncBody,
    service: RecoveryService = Depends(get_recovery_service),
    api_key: str = Depends(verify_api_key),
):
    """Preview re-fetching incomplete stored records from the provider."""
    return await service.preview_bulk_resync(
        _date_range(body.start, body.end),
        confirm_large=body.confirm_large,
    )


@router.post("/resync/execute", response_model=RecoveryResult)
@limiter.limit(EXECUTE_RATE_LIMIT)
async def execute_bulk_resync(
    request: Request,
    body: ExecuteBody,
    service: RecoveryService = Depends(get_recovery_service),
    api_key: str = Depends(verify_api_key),
):
    """Execute a bulk resync plan."""
    return await service.execute_bulk_resync(body.plan_id, confirm_large=body.confirm_large)


@router.post("/soft-cancel/preview", response_model=RecoveryPlanView)
async def preview_soft_cancel(
    body: SoftCancelBody,
    service: RecoveryService = Depends(get_recovery_service),
    api_key: str = Depends(verify_api_key),
):
    """Preview soft-cancelling stored records by status and date range."""
    return await service.preview_soft_cancel(
        _date_range(body.start, body.end),
        statuses=body.statuses,
        source_channels=body.source_channels,
        confirm_large=body.confirm_large,
    )


@router.post("/soft-cancel/execute", response_model=RecoveryResult)
@limiter.limit(EXECUTE_RATE_LIMIT)
async def execute_soft_cancel(
    request: Request,
    body: ExecuteBody,
    service: RecoveryService = Depends(get_recovery_service),
    api_key: str = Depends(verify_api_key),
):
    """Execute a soft-cancel plan."""
    return await service.execute_soft_cancel(body.plan_id, confirm_large=body.confirm_large)
