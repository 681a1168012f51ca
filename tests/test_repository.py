"""Tests for the transaction store and the ledger/plan repositories."""

from datetime import datetime, timedelta
from decimal import Decimal

from payments_recon.database import (
    HistoryAction,
    LedgerRepository,
    Order,
    RecoveryPlanRepository,
    RecoveryState,
    TransactionHistoryRepository,
    TransactionRepository,
)
from payments_recon.database.models import utcnow
from payments_recon.ingestion.normalizer import normalize_payload
from payments_recon.ingestion.statuses import NormalizedStatus, SourceChannel


class TestTransactionUpsert:
    """Tests for idempotent insert-or-merge."""

    async def test_insert_then_idempotent(self, db_session, webhook_payload, uid_factory):
        """Test that replaying the same observation changes nothing."""
        repo = TransactionRepository(db_session)
        tx = normalize_payload(webhook_payload(uid_factory(1)), SourceChannel.WEBHOOK)

        record, created = await repo.upsert(tx)
        again, created_again = await repo.upsert(tx)

        assert created is True
        assert created_again is False
        assert again.id == record.id
        history = await TransactionHistoryRepository(db_session).get_by_transaction_id(record.id)
        assert len(history) == 1
        assert history[0].action == HistoryAction.OBSERVED.value

    async def test_channels_converge_in_any_order(
        self, db_session, webhook_payload, statement_row, uid_factory
    ):
        """Test that webhook-then-file and file-then-webhook give the same record."""
        repo = TransactionRepository(db_session)
        uid_a, uid_b = uid_factory(2), uid_factory(3)

        def observations(uid):
            return (
                normalize_payload(webhook_payload(uid), SourceChannel.WEBHOOK),
                normalize_payload(
                    statement_row(uid, occurred_at="2024-01-15 09:59:00", email="ivan@example.com"),
                    SourceChannel.FILE_IMPORT,
                ),
            )

        hook_a, file_a = observations(uid_a)
        hook_b, file_b = observations(uid_b)
        await repo.upsert(hook_a)
        record_a, _ = await repo.upsert(file_a)
        await repo.upsert(file_b)
        record_b, _ = await repo.upsert(hook_b)

        for field in ("amount", "currency", "normalized_status", "occurred_at", "source_channel",
                      "card_holder", "customer_email", "transaction_type"):
            assert getattr(record_a, field) == getattr(record_b, field), field
        assert record_a.observed_channels == record_b.observed_channels == ["webhook", "file_import"]
        assert record_a.occurred_at == datetime(2024, 1, 15, 9, 59, 0)
        assert record_a.source_channel == SourceChannel.WEBHOOK.value

    async def test_status_change_is_recorded(self, db_session, webhook_payload, uid_factory):
        """Test that a status transition writes a history entry."""
        repo = TransactionRepository(db_session)
        uid = uid_factory(4)
        record, _ = await repo.upsert(normalize_payload(webhook_payload(uid, status="pending"), SourceChannel.WEBHOOK))
        await repo.upsert(normalize_payload(webhook_payload(uid, status="successful"), SourceChannel.WEBHOOK))

        assert record.normalized_status == NormalizedStatus.SUCCESSFUL.value
        history = await TransactionHistoryRepository(db_session).get_by_transaction_id(record.id)
        assert len(history) == 2

    async def test_soft_cancel_is_sticky(self, db_session, webhook_payload, uid_factory):
        """Test that later observations do not move a record out of cancelled."""
        repo = TransactionRepository(db_session)
        uid = uid_factory(5)
        record, _ = await repo.upsert(normalize_payload(webhook_payload(uid, status="pending"), SourceChannel.WEBHOOK))
        await repo.mark_cancelled(record, "test cleanup")

        record, created = await repo.upsert(
            normalize_payload(webhook_payload(uid, status="successful"), SourceChannel.API_PULL)
        )

        assert created is False
        assert record.is_cancelled
        assert record.normalized_status == NormalizedStatus.CANCELLED.value
        assert record.status == "successful"
        assert record.cancel_reason == "test cleanup"


class TestUpsertBatch:
    """Tests for batched upserts."""

    async def test_batch_merges_repeated_uids(self, db_session, statement_row, uid_factory):
        """Test that repeated UIDs inside one batch are written once."""
        repo = TransactionRepository(db_session)
        uid_a, uid_b = uid_factory(10), uid_factory(11)
        batch = [
            normalize_payload(statement_row(uid_a, status="pending"), SourceChannel.FILE_IMPORT),
            normalize_payload(statement_row(uid_a, status="successful", amount=None), SourceChannel.FILE_IMPORT),
            normalize_payload(statement_row(uid_b), SourceChannel.FILE_IMPORT),
        ]

        result = await repo.upsert_batch(batch, batch_size=1)

        assert result.received == 3
        assert result.merged_in_batch == 1
        assert result.created == 2
        stored = await repo.get_by_uid(uid_a)
        assert stored.normalized_status == NormalizedStatus.SUCCESSFUL.value
        assert stored.amount == Decimal("100.00")

        replay = await repo.upsert_batch(batch)
        assert replay.created == 0
        assert replay.unchanged == 2

    async def test_get_many_and_tracking_id(self, db_session, webhook_payload, uid_factory):
        """Test bulk and tracking-id lookups."""
        repo = TransactionRepository(db_session)
        for n in range(3):
            await repo.upsert(normalize_payload(
                webhook_payload(uid_factory(20 + n), tracking_id=f"order-{n}"),
                SourceChannel.WEBHOOK,
            ))

        found = await repo.get_many_by_uid([uid_factory(20), uid_factory(22), uid_factory(99)])
        assert set(found) == {uid_factory(20), uid_factory(22)}
        by_tracking = await repo.get_by_tracking_id("order-1")
        assert by_tracking.uid == uid_factory(21)


class TestLedgerRepository:
    """Tests for ledger lookups."""

    async def test_corroborated_uids(self, db_session, add_payment, uid_factory):
        """Test that UIDs known to payments or orders are corroborated."""
        await add_payment(uid_factory(30))
        order = Order(status="paid", provider_uid=uid_factory(31))
        db_session.add(order)
        await db_session.flush()

        known = await LedgerRepository(db_session).corroborated_uids(
            [uid_factory(30), uid_factory(31), uid_factory(32)]
        )

        assert known == {uid_factory(30), uid_factory(31)}

    async def test_payments_in_window(self, db_session, add_payment, uid_factory):
        """Test that the window applies to paid_at."""
        await add_payment(uid_factory(33), paid_at=datetime(2024, 1, 10))
        await add_payment(uid_factory(34), paid_at=datetime(2024, 2, 10))

        payments = await LedgerRepository(db_session).list_payments_in_window(
            datetime(2024, 1, 1), datetime(2024, 1, 31)
        )

        assert [p.provider_uid for p in payments] == [uid_factory(33)]


class TestRecoveryPlanRepository:
    """Tests for plan persistence."""

    def test_fingerprint_is_key_order_independent(self):
        """Test that fingerprints depend on content only."""
        a = RecoveryPlanRepository.compute_fingerprint({"a": 1, "b": [1, 2]})
        b = RecoveryPlanRepository.compute_fingerprint({"b": [1, 2], "a": 1})
        assert a == b
        assert a != RecoveryPlanRepository.compute_fingerprint({"a": 2, "b": [1, 2]})

    async def test_delete_expired_keeps_executed(self, db_session):
        """Test that only unexecuted expired plans are deleted."""
        repo = RecoveryPlanRepository(db_session)
        await repo.create("soft_cancel", {}, [], ttl_hours=-1)
        executed = await repo.create("soft_cancel", {}, [], ttl_hours=-1)
        await repo.mark_executed(executed, {"plan_id": executed.id})
        live = await repo.create("soft_cancel", {}, [])

        deleted = await repo.delete_expired()

        assert deleted == 1
        assert (await repo.get_by_id(executed.id)).state == RecoveryState.EXECUTED.value
        assert (await repo.get_by_id(live.id)) is not None
        assert live.expires_at > utcnow() + timedelta(hours=23)
