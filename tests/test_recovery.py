"""Tests for recovery plans: single-record recovery, bulk resync and soft-cancel."""

from collections import Counter
from datetime import timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest

from payments_recon.config import RecoverySettings
from payments_recon.database import (
    ContactRepository,
    RecoveryPlanRepository,
    RecoveryState,
    TransactionRepository,
)
from payments_recon.database.models import utcnow
from payments_recon.errors import NotFoundError, PlanStateError, ProviderFetchError, ValidationError
from payments_recon.ingestion.normalizer import normalize_payload
from payments_recon.ingestion.statuses import NormalizedStatus, SourceChannel
from payments_recon.recovery import (
    ProviderClientBase,
    RecoveryAction,
    RecoveryService,
    StaticProviderClient,
)


class FlakyProviderClient(ProviderClientBase):
    """Provider double that fails the first ``failures`` calls per UID."""

    def __init__(self, records=None, failures=0, retryable=True):
        self.records = records or {}
        self.failures = failures
        self.retryable = retryable
        self.calls = Counter()

    async def fetch_by_uid(self, uid):
        self.calls[uid] += 1
        if self.calls[uid] <= self.failures:
            raise ProviderFetchError("provider returned HTTP 503", uid=uid, status_code=503, retryable=self.retryable)
        record = self.records.get(uid)
        return {"transaction": record} if record else None

    async def fetch_by_tracking_id(self, tracking_id):
        raise ProviderFetchError("tracking lookup unavailable", uid=tracking_id)


@pytest.fixture
def ingest(db_session, webhook_payload):
    """Store webhook observations directly."""
    async def _ingest(uid, **fields):
        tx = normalize_payload(webhook_payload(uid, **fields), SourceChannel.WEBHOOK)
        record, _ = await TransactionRepository(db_session).upsert(tx)
        return record
    return _ingest


def make_service(session, settings, client=None):
    return RecoveryService(session, client=client or StaticProviderClient(), settings=settings, retry_delay=0)


class TestSoftCancel:
    """Tests for soft-cancel previews and execution."""

    async def test_corroborated_records_are_conflicts(self, db_session, settings, ingest, add_payment, uid_factory):
        """Test that records linked to the ledger are never cancelled."""
        for n in range(1, 6):
            await ingest(uid_factory(n), status="pending")
        await add_payment(uid_factory(2))
        await add_payment(uid_factory(4))
        service = make_service(db_session, settings)

        preview = await service.preview_soft_cancel()

        assert preview.state == RecoveryState.PREVIEWED
        assert preview.candidate_count == 3
        assert preview.conflict_count == 2
        assert {c.uid for c in preview.conflicts} == {uid_factory(2), uid_factory(4)}
        assert all(c.action == RecoveryAction.CONFLICT for c in preview.conflicts)

        result = await service.execute_soft_cancel(preview.plan_id)

        assert result.count(RecoveryAction.CANCELLED) == 3
        assert result.count(RecoveryAction.CONFLICT) == 2
        assert result.processed == 5
        conflict_uids = {o.uid for o in result.outcomes if o.action == RecoveryAction.CONFLICT}
        assert conflict_uids == {uid_factory(2), uid_factory(4)}
        repo = TransactionRepository(db_session)
        for n in (2, 4):
            record = await repo.get_by_uid(uid_factory(n))
            assert record.normalized_status == NormalizedStatus.PENDING.value
        cancelled = await repo.get_by_uid(uid_factory(1))
        assert cancelled.is_cancelled

    async def test_ledger_link_after_preview_is_conflict(self, db_session, settings, ingest, add_payment, uid_factory):
        """Test that execution re-checks corroboration."""
        await ingest(uid_factory(10), status="pending")
        service = make_service(db_session, settings)
        preview = await service.preview_soft_cancel()

        await add_payment(uid_factory(10))
        result = await service.execute_soft_cancel(preview.plan_id)

        assert result.count(RecoveryAction.CONFLICT) == 1
        assert result.count(RecoveryAction.CANCELLED) == 0

    async def test_threshold_stops_preview(self, db_session, ingest, uid_factory):
        """Test that a large candidate set needs explicit confirmation."""
        settings = RecoverySettings(batch_size=3, safety_threshold=5, sample_size=2)
        for n in range(20, 28):
            await ingest(uid_factory(n), status="pending")
        service = make_service(db_session, settings)

        preview = await service.preview_soft_cancel()

        assert preview.state == RecoveryState.STOPPED
        assert preview.candidate_count == 8
        assert len(preview.candidates) == 2
        assert "safety threshold" in preview.stop_reason
        assert not preview.executable
        record = await TransactionRepository(db_session).get_by_uid(uid_factory(20))
        assert not record.is_cancelled

        with pytest.raises(PlanStateError):
            await service.execute_soft_cancel(preview.plan_id)

        result = await service.execute_soft_cancel(preview.plan_id, confirm_large=True)
        assert result.count(RecoveryAction.CANCELLED) == 8
        assert result.processed == 8

    async def test_confirmed_preview_is_not_stopped(self, db_session, ingest, uid_factory):
        """Test that confirming at preview time skips the stop."""
        settings = RecoverySettings(safety_threshold=1)
        await ingest(uid_factory(30), status="pending")
        await ingest(uid_factory(31), status="pending")

        preview = await make_service(db_session, settings).preview_soft_cancel(confirm_large=True)

        assert preview.state == RecoveryState.PREVIEWED

    async def test_execute_twice_replays(self, db_session, settings, ingest, uid_factory):
        """Test that a repeated execute returns the recorded result."""
        await ingest(uid_factory(40), status="pending")
        service = make_service(db_session, settings)
        preview = await service.preview_soft_cancel()

        first = await service.execute_soft_cancel(preview.plan_id)
        second = await service.execute_soft_cancel(preview.plan_id)

        assert first.replayed is False
        assert second.replayed is True
        assert second.counts == first.counts

    async def test_status_changed_since_preview_is_skipped(self, db_session, settings, ingest, uid_factory):
        """Test that a record that settled after the preview is left alone."""
        await ingest(uid_factory(50), status="pending")
        await ingest(uid_factory(51), status="pending")
        service = make_service(db_session, settings)
        preview = await service.preview_soft_cancel()

        await ingest(uid_factory(50), status="successful")
        result = await service.execute_soft_cancel(preview.plan_id)

        assert result.count(RecoveryAction.SKIPPED) == 1
        assert result.count(RecoveryAction.CANCELLED) == 1
        record = await TransactionRepository(db_session).get_by_uid(uid_factory(50))
        assert record.normalized_status == NormalizedStatus.SUCCESSFUL.value

    async def test_only_requested_statuses(self, db_session, settings, ingest, uid_factory):
        """Test the status filter."""
        await ingest(uid_factory(60), status="pending")
        await ingest(uid_factory(61), status="failed")

        preview = await make_service(db_session, settings).preview_soft_cancel(statuses=["failed"])

        assert [c.uid for c in preview.candidates] == [uid_factory(61)]

    @pytest.mark.parametrize("statuses", [["cancelled"], ["bogus"]])
    async def test_invalid_statuses(self, db_session, settings, statuses):
        """Test that cancelled and unknown statuses are rejected."""
        with pytest.raises(ValidationError):
            await make_service(db_session, settings).preview_soft_cancel(statuses=statuses)


class TestPlanLifecycle:
    """Tests for plan loading rules shared by every operation."""

    async def test_unknown_plan(self, db_session, settings):
        """Test that a missing plan raises NotFoundError."""
        with pytest.raises(NotFoundError):
            await make_service(db_session, settings).execute_soft_cancel("no-such-plan")

    async def test_wrong_kind(self, db_session, settings):
        """Test that a plan cannot be executed as another operation."""
        service = make_service(db_session, settings)
        preview = await service.preview_soft_cancel()
        with pytest.raises(PlanStateError):
            await service.execute_bulk_resync(preview.plan_id)

    async def test_expired_plan(self, db_session, settings, ingest, uid_factory):
        """Test that an expired plan cannot be executed."""
        await ingest(uid_factory(70), status="pending")
        service = make_service(db_session, settings)
        preview = await service.preview_soft_cancel()
        plan = await RecoveryPlanRepository(db_session).get_by_id(preview.plan_id)
        plan.expires_at = utcnow() - timedelta(minutes=1)
        await db_session.flush()

        with pytest.raises(PlanStateError):
            await service.execute_soft_cancel(preview.plan_id)

    async def test_modified_plan_is_refused(self, db_session, settings, ingest, uid_factory):
        """Test that a plan whose candidates changed after the preview is not executed."""
        await ingest(uid_factory(71), status="pending")
        await ingest(uid_factory(72), status="pending")
        service = make_service(db_session, settings)
        preview = await service.preview_soft_cancel()
        repo = RecoveryPlanRepository(db_session)
        plan = await repo.get_by_id(preview.plan_id)
        assert repo.verify_fingerprint(plan)

        plan.candidates = plan.candidates[:1]
        await db_session.flush()

        assert not repo.verify_fingerprint(plan)
        with pytest.raises(PlanStateError, match="modified"):
            await service.execute_soft_cancel(preview.plan_id)
        record = await TransactionRepository(db_session).get_by_uid(uid_factory(71))
        assert not record.is_cancelled


class TestSingleRecovery:
    """Tests for single-record recovery."""

    async def test_created_then_executed(self, db_session, settings, webhook_payload, uid_factory):
        """Test recovering a record the store does not know."""
        uid = uid_factory(100)
        client = StaticProviderClient([webhook_payload(uid)["transaction"]])
        service = make_service(db_session, settings, client)

        preview = await service.preview_recovery(uid=uid)

        assert preview.action == RecoveryAction.CREATED
        assert preview.executable
        assert preview.candidates[0].amount == "100.00"
        assert await TransactionRepository(db_session).get_by_uid(uid) is None

        result = await service.execute_recovery(preview.plan_id)

        assert result.count(RecoveryAction.CREATED) == 1
        record = await TransactionRepository(db_session).get_by_uid(uid)
        assert record.amount == Decimal("100.00")
        assert record.source_channel == SourceChannel.MANUAL_RECOVERY.value

        replay = await service.execute_recovery(preview.plan_id)
        assert replay.replayed is True
        assert replay.count(RecoveryAction.CREATED) == 1

    async def test_confident_match_reported(self, db_session, settings, webhook_payload, uid_factory):
        """Test that a recovered record reports its email match."""
        contact = await ContactRepository(db_session).create("Ivan Petrov", "ivan@example.com")
        uid = uid_factory(101)
        service = make_service(db_session, settings, StaticProviderClient([webhook_payload(uid)["transaction"]]))

        preview = await service.preview_recovery(uid=uid)
        result = await service.execute_recovery(preview.plan_id)

        assert result.outcomes[0].contact_id == contact.id

    async def test_already_exists_cannot_execute(self, db_session, settings, ingest, uid_factory):
        """Test that a stored record previews as already_exists."""
        uid = uid_factory(102)
        await ingest(uid)
        service = make_service(db_session, settings)

        preview = await service.preview_recovery(uid=uid)

        assert preview.action == RecoveryAction.ALREADY_EXISTS
        assert not preview.executable
        with pytest.raises(PlanStateError):
            await service.execute_recovery(preview.plan_id)

    async def test_not_found(self, db_session, settings, uid_factory):
        """Test a UID the provider does not know."""
        preview = await make_service(db_session, settings).preview_recovery(uid=uid_factory(103))
        assert preview.action == RecoveryAction.NOT_FOUND
        assert preview.candidate_count == 0

    async def test_lookup_by_tracking_id(self, db_session, settings, webhook_payload, uid_factory):
        """Test that a tracking id finds the provider record."""
        uid = uid_factory(104)
        client = StaticProviderClient([webhook_payload(uid, tracking_id="order-77")["transaction"]])

        preview = await make_service(db_session, settings, client).preview_recovery(tracking_id="order-77")

        assert preview.action == RecoveryAction.CREATED
        assert preview.candidates[0].uid == uid

    async def test_provider_error(self, db_session, settings):
        """Test that a provider failure previews as an error."""
        service = make_service(db_session, settings, FlakyProviderClient())
        preview = await service.preview_recovery(tracking_id="order-78")
        assert preview.action == RecoveryAction.ERROR
        assert "tracking lookup unavailable" in preview.message

    async def test_store_checked_before_provider(self, db_session, settings, ingest, uid_factory):
        """Test that a stored record is never fetched from the provider."""
        uid = uid_factory(105)
        await ingest(uid)
        client = AsyncMock(spec=ProviderClientBase)

        preview = await make_service(db_session, settings, client).preview_recovery(uid=uid)

        assert preview.action == RecoveryAction.ALREADY_EXISTS
        client.fetch_by_uid.assert_not_called()

    async def test_uid_lookup_error(self, db_session, settings, uid_factory):
        """Test that a failing UID lookup previews as an error."""
        client = AsyncMock(spec=ProviderClientBase)
        client.fetch_by_uid.side_effect = ProviderFetchError("provider returned HTTP 500", status_code=500)

        preview = await make_service(db_session, settings, client).preview_recovery(uid=uid_factory(106))

        assert preview.action == RecoveryAction.ERROR
        client.fetch_by_uid.assert_awaited_once_with(uid_factory(106))

    async def test_malformed_uid(self, db_session, settings):
        """Test that a malformed UID is rejected."""
        with pytest.raises(ValidationError):
            await make_service(db_session, settings).preview_recovery(uid="12345")

    async def test_key_required(self, db_session, settings):
        """Test that one of uid or tracking_id is required."""
        with pytest.raises(ValidationError):
            await make_service(db_session, settings).preview_recovery()


class TestBulkResync:
    """Tests for bulk UID-resync."""

    async def _store_incomplete(self, session, statement_row, uid):
        tx = normalize_payload(statement_row(uid, amount=None), SourceChannel.FILE_IMPORT)
        await TransactionRepository(session).upsert(tx)

    async def test_retries_then_updates(self, db_session, settings, statement_row, webhook_payload, uid_factory):
        """Test that a transient failure is retried and the record completed."""
        uid = uid_factory(200)
        await self._store_incomplete(db_session, statement_row, uid)
        client = FlakyProviderClient({uid: webhook_payload(uid)["transaction"]}, failures=2)
        service = make_service(db_session, settings, client)

        preview = await service.preview_bulk_resync()
        assert preview.candidate_count == 1
        assert preview.candidates[0].missing_fields == ["amount"]

        result = await service.execute_bulk_resync(preview.plan_id)

        assert result.count(RecoveryAction.UPDATED) == 1
        assert client.calls[uid] == 3
        record = await TransactionRepository(db_session).get_by_uid(uid)
        assert record.amount == Decimal("100.00")

    async def test_exhausted_retries_are_errors(self, db_session, settings, statement_row, webhook_payload, uid_factory):
        """Test that a record failing every attempt is reported, not raised."""
        uid = uid_factory(201)
        await self._store_incomplete(db_session, statement_row, uid)
        client = FlakyProviderClient({uid: webhook_payload(uid)["transaction"]}, failures=10)
        service = make_service(db_session, settings, client)

        preview = await service.preview_bulk_resync()
        result = await service.execute_bulk_resync(preview.plan_id)

        assert result.count(RecoveryAction.ERROR) == 1
        assert result.errors[0].uid == uid
        assert client.calls[uid] == settings.provider_max_attempts

    async def test_non_retryable_failure(self, db_session, settings, statement_row, uid_factory):
        """Test that a non-retryable failure is not retried."""
        uid = uid_factory(202)
        await self._store_incomplete(db_session, statement_row, uid)
        client = FlakyProviderClient(failures=1, retryable=False)
        service = make_service(db_session, settings, client)

        preview = await service.preview_bulk_resync()
        result = await service.execute_bulk_resync(preview.plan_id)

        assert result.count(RecoveryAction.ERROR) == 1
        assert client.calls[uid] == 1

    async def test_malformed_provider_record_does_not_abort_batch(
        self, db_session, settings, statement_row, webhook_payload, uid_factory
    ):
        """Test that one unparseable provider record is an error and the rest still update."""
        bad, good = uid_factory(205), uid_factory(206)
        await self._store_incomplete(db_session, statement_row, bad)
        await self._store_incomplete(db_session, statement_row, good)
        client = FlakyProviderClient({
            bad: webhook_payload(bad, amount="abc")["transaction"],
            good: webhook_payload(good)["transaction"],
        })
        service = make_service(db_session, settings, client)

        preview = await service.preview_bulk_resync()
        result = await service.execute_bulk_resync(preview.plan_id)

        assert result.count(RecoveryAction.ERROR) == 1
        assert result.errors[0].uid == bad
        assert "transaction.amount" in result.errors[0].message
        assert result.count(RecoveryAction.UPDATED) == 1

    async def test_unknown_to_provider(self, db_session, settings, statement_row, uid_factory):
        """Test that a record the provider does not know is not_found."""
        uid = uid_factory(203)
        await self._store_incomplete(db_session, statement_row, uid)
        service = make_service(db_session, settings, FlakyProviderClient())

        preview = await service.preview_bulk_resync()
        result = await service.execute_bulk_resync(preview.plan_id)

        assert result.count(RecoveryAction.NOT_FOUND) == 1

    async def test_complete_records_not_candidates(self, db_session, settings, ingest, uid_factory):
        """Test that only incomplete records are previewed."""
        await ingest(uid_factory(204))

        preview = await make_service(db_session, settings).preview_bulk_resync()

        assert preview.candidate_count == 0
