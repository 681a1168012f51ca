"""Keyset-paginated listing of stored statement transactions."""

import base64
import binascii
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import TransactionRecord
from ..database.repository import TransactionRepository
from ..errors import ValidationError

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 500


class StatementCursor(BaseModel):
    """Position after the last row of a page: ``(sort_ts, uid)``."""
    sort_ts: datetime
    uid: str

    def encode(self) -> str:
        """Opaque, URL-safe token for API clients."""
        raw = f"{self.sort_ts.isoformat()}|{self.uid}"
        return base64.urlsafe_b64encode(raw.encode()).decode()

    @classmethod
    def decode(cls, token: str) -> "StatementCursor":
        """Parse a token produced by ``encode``.

        Raises:
            ValidationError: If the token is malformed.
        """
        try:
            raw = base64.urlsafe_b64decode(token.encode()).decode()
            ts, uid = raw.split("|", 1)
            return cls(sort_ts=datetime.fromisoformat(ts), uid=uid)
        except (binascii.Error, UnicodeDecodeError, ValueError) as e:
            raise ValidationError("cursor", "malformed cursor", token) from e


class StatementPage(BaseModel):
    """One page of the statement listing."""
    items: List[Dict[str, Any]] = Field(default_factory=list)
    next_cursor: Optional[StatementCursor] = None
    has_more: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "items": self.items,
            "next_cursor": self.next_cursor.encode() if self.next_cursor else None,
            "has_more": self.has_more,
        }


def sort_key(record: TransactionRecord) -> datetime:
    """Python-side twin of the SQL sort expression."""
    return record.occurred_at or record.ingested_at


class StatementReader:
    """Serves stored transactions newest first with stable keyset pagination.

    Ordering is ``(coalesce(occurred_at, ingested_at) DESC, uid DESC)``; the
    next page starts strictly after the cursor, so concurrent inserts never
    shift rows between pages and rows sharing a timestamp are neither
    skipped nor repeated.
    """

    def __init__(self, session: AsyncSession):
        self.transactions = TransactionRepository(session)

    async def list_page(
        self,
        cursor: Optional[StatementCursor] = None,
        page_size: int = 50,
        statuses: Optional[Sequence[str]] = None,
        include_cancelled: bool = True,
    ) -> StatementPage:
        """Return the page after ``cursor`` (the first page when ``None``).

        Args:
            cursor: Cursor from the previous page's ``next_cursor``.
            page_size: Rows per page, 1 to ``MAX_PAGE_SIZE``.
            statuses: Optional normalized status filter.
            include_cancelled: Whether soft-cancelled rows are listed.

        Returns:
            StatementPage with rows, ``has_more`` and the next cursor.
        """
        if page_size < 1 or page_size > MAX_PAGE_SIZE:
            raise ValidationError("page_size", f"must be between 1 and {MAX_PAGE_SIZE}", page_size)

        after = (cursor.sort_ts, cursor.uid) if cursor else None
        records = await self.transactions.list_keyset(
            page_size + 1,
            after=after,
            statuses=statuses,
            include_cancelled=include_cancelled,
        )
        has_more = len(records) > page_size
        records = records[:page_size]

        page = StatementPage(items=[r.to_dict() for r in records], has_more=has_more)
        if has_more and records:
            last = records[-1]
            page.next_cursor = StatementCursor(sort_ts=sort_key(last), uid=last.uid)

        logger.debug(f"Statement page: {len(records)} rows, has_more={has_more}")
        return page
