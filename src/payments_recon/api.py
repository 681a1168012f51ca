"""FastAPI application: ingestion, contacts, reconciliation and recovery routes."""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, File, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from sqlalchemy.ext.asyncio import AsyncSession

from .auth import limiter, verify_api_key
from .config import RecoverySettings
from .database import ContactRepository, close_db, get_db, init_db
from .errors import ConflictError, NotFoundError, PlanStateError, ValidationError
from .ingestion.service import IngestionService, IngestResult, StatementIngestResult
from .ingestion.statuses import SourceChannel
from .matching.matcher import ContactMatcher, LinkResult
from .reconciliation.api import router as reconciliation_router
from .reconciliation.api import statement_router
from .recovery.api import router as recovery_router

logger = logging.getLogger(__name__)

ingest_router = APIRouter(prefix="/ingest", tags=["ingest"])
contacts_router = APIRouter(prefix="/contacts", tags=["contacts"])


class ContactBody(BaseModel):
    """Request body for creating a directory contact."""
    full_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class LinkBody(BaseModel):
    """Request body for linking a transaction to a contact."""
    uid: str = Field(..., description="Provider UID of the stored transaction")


@ingest_router.post("/webhook", response_model=IngestResult)
async def ingest_webhook(
    payload: Dict[str, Any],
    db: AsyncSession = Depends(get_db),
):
    """Accept a provider webhook body and store the transaction it carries."""
    service = IngestionService(db, RecoverySettings.from_env())
    return await service.ingest_payload(payload, SourceChannel.WEBHOOK)


@ingest_router.post("/api-record", response_model=IngestResult)
async def ingest_api_record(
    payload: Dict[str, Any],
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """Store a transaction pulled from the provider API."""
    service = IngestionService(db, RecoverySettings.from_env())
    return await service.ingest_payload(payload, SourceChannel.API_PULL)


@ingest_router.post("/statement", response_model=StatementIngestResult)
async def ingest_statement(
    file: UploadFile = File(..., description="CSV or XLSX statement export"),
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """Upload a statement file and upsert its rows into the transaction store."""
    content = await file.read()
    service = IngestionService(db, RecoverySettings.from_env())
    return await service.ingest_statement(content, file.filename or "")


@contacts_router.post("")
async def create_contact(
    body: ContactBody,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """Add a contact to the matching directory."""
    if not body.full_name and not body.email:
        raise HTTPException(status_code=400, detail="full_name or email is required")
    contact = await ContactRepository(db).create(body.full_name, body.email, body.phone)
    return {"id": contact.id, "full_name": contact.full_name, "email": contact.email}


@contacts_router.post("/{contact_id}/link", response_model=LinkResult)
async def link_contact(
    contact_id: str,
    body: LinkBody,
    db: AsyncSession = Depends(get_db),
    api_key: str = Depends(verify_api_key),
):
    """Link a stored transaction to a contact and propagate to unmatched peers."""
    return await ContactMatcher(db).link_manually(body.uid.strip().lower(), contact_id)


async def _validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
    return JSONResponse(status_code=400, content={"detail": str(exc), "field": exc.field})


async def _not_found_handler(request: Request, exc: NotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


async def _conflict_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


def create_app(init_database: bool = True) -> FastAPI:
    """Build the application.

    Args:
        init_database: Initialize the database on startup. Tests that manage
            their own engine pass False.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if init_database:
            await init_db()
        try:
            yield
        finally:
            if init_database:
                await close_db()

    app = FastAPI(title="Payments Reconciliation & Recovery API", lifespan=lifespan)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
    app.add_exception_handler(ValidationError, _validation_error_handler)
    app.add_exception_handler(NotFoundError, _not_found_handler)
    app.add_exception_handler(PlanStateError, _conflict_handler)
    app.add_exception_handler(ConflictError, _conflict_handler)

    app.include_router(ingest_router)
    app.include_router(contacts_router)
    app.include_router(reconciliation_router)
    app.include_router(statement_router)
    app.include_router(recovery_router)

    @app.get("/health")
    async def health():
        return {"status": "healthy"}

    return app


app = create_app()
