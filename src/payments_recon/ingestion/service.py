"""Ingestion pipeline: raw payload -> normalizer -> dedup store -> matcher."""

import logging
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import RecoverySettings
from ..database.models import TransactionRecord
from ..database.repository import BatchUpsertResult, TransactionRepository
from ..matching.matcher import ContactMatcher, MatchResult
from .models import Transaction
from .normalizer import normalize_payload
from .statement_parser import RowIssue, StatementParser, StatementStats
from .statuses import SourceChannel

logger = logging.getLogger(__name__)


class IngestResult(BaseModel):
    """Outcome of ingesting one payload."""
    uid: str
    created: bool
    normalized_status: str
    match: Optional[MatchResult] = None


class StatementIngestResult(BaseModel):
    """Outcome of ingesting a statement file into the store."""
    filename: str
    sheets: List[str] = Field(default_factory=list)
    total_rows: int = 0
    invalid_rows: int = 0
    issues: List[RowIssue] = Field(default_factory=list)
    stats: StatementStats = Field(default_factory=StatementStats)
    upsert: BatchUpsertResult = Field(default_factory=BatchUpsertResult)
    matched: int = 0


class IngestionService:
    """Service that stores observations from every source channel."""

    def __init__(self, session: AsyncSession, settings: Optional[RecoverySettings] = None):
        """Initialize the ingestion service.

        Args:
            session: Async database session. The service owns its transaction:
                a unique-UID race is resolved by rolling back and retrying.
            settings: Runtime settings; read from the environment if omitted.
        """
        self.session = session
        self.settings = settings or RecoverySettings.from_env()
        self.transactions = TransactionRepository(session)
        self.matcher = ContactMatcher(session)

    async def _upsert(self, transaction: Transaction) -> tuple:
        try:
            return await self.transactions.upsert(transaction)
        except IntegrityError:
            # another writer inserted the same uid first; merge into its row
            logger.warning(f"Concurrent insert of {transaction.uid}; retrying as a merge")
            await self.session.rollback()
            return await self.transactions.upsert(transaction)

    async def ingest(self, transaction: Transaction) -> IngestResult:
        """Store an already-normalized transaction and match it to a contact."""
        record, created = await self._upsert(transaction)
        match = await self.matcher.match_record(record)
        return IngestResult(
            uid=record.uid,
            created=created,
            normalized_status=record.normalized_status,
            match=match,
        )

    async def ingest_payload(self, raw: Dict[str, Any], channel: SourceChannel) -> IngestResult:
        """Normalize and store one raw payload.

        Args:
            raw: Webhook body or API record.
            channel: Channel the payload arrived on.

        Returns:
            IngestResult with the created flag and the contact match.

        Raises:
            ValidationError: If the payload does not normalize.
        """
        transaction = normalize_payload(raw, channel)
        result = await self.ingest(transaction)
        logger.info(
            f"Ingested {channel.value} observation of {result.uid} "
            f"({'created' if result.created else 'merged'}, {result.normalized_status})"
        )
        return result

    async def _match_all(self, records: List[TransactionRecord]) -> int:
        matched = 0
        for record in records:
            result = await self.matcher.match_record(record)
            if result.contact_id:
                matched += 1
        return matched

    async def ingest_statement(self, content: bytes, filename: str) -> StatementIngestResult:
        """Parse a statement file and upsert every valid row.

        Rows failing validation are skipped and counted; repeated UIDs within
        the file are merged before the store is touched.

        Raises:
            ValidationError: If the file format is unsupported or has no header row.
        """
        parsed = StatementParser().parse(content, filename)
        upsert = await self.transactions.upsert_batch(parsed.transactions, self.settings.batch_size)

        stored = await self.transactions.get_many_by_uid(t.uid for t in parsed.transactions)
        matched = await self._match_all(list(stored.values()))

        logger.info(
            f"Ingested statement {filename}: {parsed.total_rows} rows, "
            f"{parsed.invalid_rows} invalid, {upsert.created} created, {matched} matched"
        )
        return StatementIngestResult(
            filename=filename,
            sheets=parsed.sheets,
            total_rows=parsed.total_rows,
            invalid_rows=parsed.invalid_rows,
            issues=parsed.issues,
            stats=parsed.stats,
            upsert=upsert,
            matched=matched,
        )
