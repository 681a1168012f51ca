"""Tests for the keyset-paginated statement listing."""

from datetime import datetime

import pytest

from payments_recon.database import TransactionRepository
from payments_recon.errors import ValidationError
from payments_recon.ingestion.normalizer import normalize_payload
from payments_recon.ingestion.statuses import SourceChannel
from payments_recon.reconciliation import StatementCursor, StatementReader


@pytest.fixture
def store(db_session, statement_row):
    """Store statement rows with the given timestamps."""
    async def _store(uid, occurred_at="2024-01-15 10:00:00", status="successful"):
        tx = normalize_payload(statement_row(uid, status=status, occurred_at=occurred_at), SourceChannel.FILE_IMPORT)
        record, _ = await TransactionRepository(db_session).upsert(tx)
        return record
    return _store


class TestStatementReader:
    """Tests for the StatementReader class."""

    async def test_pages_cover_every_row_once(self, db_session, store, uid_factory):
        """Test that paging over shared timestamps neither skips nor repeats."""
        for n in range(1, 8):
            await store(uid_factory(n))
        await store(uid_factory(8), occurred_at="2024-01-16 10:00:00")
        await store(uid_factory(9), occurred_at="2024-01-14 10:00:00")
        reader = StatementReader(db_session)

        seen = []
        cursor = None
        pages = 0
        while True:
            page = await reader.list_page(cursor=cursor, page_size=3)
            seen.extend(item["uid"] for item in page.items)
            pages += 1
            if not page.has_more:
                assert page.next_cursor is None
                break
            cursor = StatementCursor.decode(page.next_cursor.encode())

        assert pages == 3
        assert len(seen) == len(set(seen)) == 9
        # newest first, UID descending within a timestamp
        assert seen[0] == uid_factory(8)
        assert seen[1:8] == [uid_factory(n) for n in range(7, 0, -1)]
        assert seen[-1] == uid_factory(9)

    async def test_exact_page_has_no_more(self, db_session, store, uid_factory):
        """Test that a page holding the last row reports no more rows."""
        await store(uid_factory(10))
        await store(uid_factory(11))

        page = await StatementReader(db_session).list_page(page_size=2)

        assert len(page.items) == 2
        assert page.has_more is False
        assert page.to_dict()["next_cursor"] is None

    async def test_filters(self, db_session, store, uid_factory):
        """Test the status filter and cancelled-row exclusion."""
        await store(uid_factory(20), status="pending")
        cancelled = await store(uid_factory(21), status="pending")
        await store(uid_factory(22), status="failed")
        await TransactionRepository(db_session).mark_cancelled(cancelled, "cleanup")
        reader = StatementReader(db_session)

        pending = await reader.list_page(statuses=["pending"])
        active = await reader.list_page(include_cancelled=False)

        assert [i["uid"] for i in pending.items] == [uid_factory(20)]
        assert uid_factory(21) not in [i["uid"] for i in active.items]
        assert len(active.items) == 2

    @pytest.mark.parametrize("page_size", [0, 501])
    async def test_page_size_bounds(self, db_session, page_size):
        """Test that page sizes outside 1..500 are rejected."""
        with pytest.raises(ValidationError):
            await StatementReader(db_session).list_page(page_size=page_size)


class TestStatementCursor:
    """Tests for cursor tokens."""

    def test_round_trip(self, uid_factory):
        """Test that a token decodes to the same position."""
        cursor = StatementCursor(sort_ts=datetime(2024, 1, 15, 10, 0), uid=uid_factory(1))
        assert StatementCursor.decode(cursor.encode()) == cursor

    @pytest.mark.parametrize("token", ["not base64 !!", "bm8tc2VwYXJhdG9y"])
    def test_malformed(self, token):
        """Test that garbage tokens raise ValidationError."""
        with pytest.raises(ValidationError) as exc_info:
            StatementCursor.decode(token)
        assert exc_info.value.field == "cursor"
