"""Repository layer for the transaction store, ledger and recovery plans."""

import hashlib
import json
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence, Set, Tuple

from pydantic import BaseModel
from sqlalchemy import and_, delete, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..ingestion.models import Transaction
from ..ingestion.names import normalize_email, normalize_name
from ..ingestion.normalizer import merge_transactions
from ..ingestion.statuses import NormalizedStatus
from .models import (
    Contact,
    HistoryAction,
    ManualLink,
    MatchType,
    Order,
    OrderStatus,
    Payment,
    RecoveryPlan,
    RecoveryState,
    TransactionHistory,
    TransactionRecord,
    new_id,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 100
DEFAULT_PLAN_TTL_HOURS = 24


def _chunks(items: Sequence[Any], size: int) -> Iterable[Sequence[Any]]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


def sort_timestamp_column():
    """SQL expression for the statement sort key."""
    return func.coalesce(TransactionRecord.occurred_at, TransactionRecord.ingested_at)


class BatchUpsertResult(BaseModel):
    """Counts from one ``upsert_batch`` call."""
    received: int = 0
    merged_in_batch: int = 0
    created: int = 0
    updated: int = 0
    unchanged: int = 0


class TransactionRepository:
    """Identity & dedup store: at most one ``TransactionRecord`` per UID."""

    def __init__(self, session: AsyncSession):
        """Initialize the repository with a database session.

        Args:
            session: AsyncSession instance for database operations.
        """
        self.session = session
        self.history = TransactionHistoryRepository(session)

    async def get_by_uid(self, uid: str) -> Optional[TransactionRecord]:
        """Get a stored transaction by provider UID."""
        result = await self.session.execute(
            select(TransactionRecord).where(TransactionRecord.uid == uid)
        )
        return result.scalar_one_or_none()

    async def get_by_tracking_id(self, tracking_id: str) -> Optional[TransactionRecord]:
        """Get the earliest stored transaction carrying a merchant tracking id."""
        result = await self.session.execute(
            select(TransactionRecord)
            .where(TransactionRecord.tracking_id == tracking_id)
            .order_by(sort_timestamp_column().asc(), TransactionRecord.uid.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_many_by_uid(self, uids: Iterable[str]) -> Dict[str, TransactionRecord]:
        """Load stored transactions for a set of UIDs, keyed by UID."""
        found: Dict[str, TransactionRecord] = {}
        unique = sorted(set(uids))
        for chunk in _chunks(unique, DEFAULT_BATCH_SIZE):
            result = await self.session.execute(
                select(TransactionRecord).where(TransactionRecord.uid.in_(chunk))
            )
            for record in result.scalars().all():
                found[record.uid] = record
        return found

    async def _insert(self, transaction: Transaction) -> TransactionRecord:
        record = TransactionRecord(id=new_id())
        record.apply(transaction)
        self.session.add(record)
        await self.history.create(
            transaction_id=record.id,
            action=HistoryAction.OBSERVED.value,
            new_status=record.normalized_status,
            source_channel=transaction.source_channel.value,
            flush=False,
        )
        return record

    async def _merge_into(
        self,
        record: TransactionRecord,
        transaction: Transaction,
    ) -> bool:
        existing = record.to_transaction()
        merged = merge_transactions(existing, transaction)
        if record.is_cancelled:
            # only a recovery operation moves a record out of cancelled
            merged = merged.model_copy(update={"normalized_status": existing.normalized_status})
        if merged == existing:
            return False

        previous_status = record.normalized_status
        record.apply(merged)
        await self.session.flush()
        if record.normalized_status != previous_status:
            await self.history.create(
                transaction_id=record.id,
                action=HistoryAction.OBSERVED.value,
                previous_status=previous_status,
                new_status=record.normalized_status,
                source_channel=transaction.source_channel.value,
            )
        return True

    async def upsert(self, transaction: Transaction) -> Tuple[TransactionRecord, bool]:
        """Insert a transaction or merge it into the stored record for its UID.

        Applying the same observation twice leaves the record unchanged, and
        observations of one UID converge to the same record in any order.

        Args:
            transaction: Canonical transaction from the normalizer.

        Returns:
            Tuple of (stored record, created flag).
        """
        record = await self.get_by_uid(transaction.uid)
        if record is None:
            record = await self._insert(transaction)
            await self.session.flush()
            logger.debug(f"Stored new transaction {transaction.uid} from {transaction.source_channel.value}")
            return record, True

        changed = await self._merge_into(record, transaction)
        if changed:
            logger.debug(f"Merged {transaction.source_channel.value} observation into {transaction.uid}")
        return record, False

    async def upsert_batch(
        self,
        transactions: Sequence[Transaction],
        batch_size: int = DEFAULT_BATCH_SIZE,
    ) -> BatchUpsertResult:
        """Upsert many transactions in bounded chunks.

        Duplicate UIDs within ``transactions`` are merged in memory first, so
        each UID is written exactly once per call.

        Args:
            transactions: Canonical transactions, possibly repeating UIDs.
            batch_size: Maximum number of UIDs written per chunk.

        Returns:
            BatchUpsertResult with created/updated/unchanged counts.
        """
        result = BatchUpsertResult(received=len(transactions))

        premerged: Dict[str, Transaction] = {}
        for transaction in transactions:
            existing = premerged.get(transaction.uid)
            if existing is None:
                premerged[transaction.uid] = transaction
            else:
                premerged[transaction.uid] = merge_transactions(existing, transaction)
                result.merged_in_batch += 1

        pending = list(premerged.values())
        for chunk in _chunks(pending, batch_size):
            stored = await self.get_many_by_uid(t.uid for t in chunk)
            for transaction in chunk:
                record = stored.get(transaction.uid)
                if record is None:
                    await self._insert(transaction)
                    result.created += 1
                elif await self._merge_into(record, transaction):
                    result.updated += 1
                else:
                    result.unchanged += 1
            await self.session.flush()

        logger.info(
            f"Batch upsert: {result.received} received, {result.merged_in_batch} merged in batch, "
            f"{result.created} created, {result.updated} updated, {result.unchanged} unchanged"
        )
        return result

    async def mark_cancelled(
        self,
        record: TransactionRecord,
        reason: str,
        plan_id: Optional[str] = None,
    ) -> TransactionRecord:
        """Soft-cancel a stored transaction; the row and its raw data are kept.

        Args:
            record: Stored transaction to cancel.
            reason: Human-readable reason kept on the record.
            plan_id: Recovery plan that performed the cancellation.

        Returns:
            Updated TransactionRecord instance.
        """
        previous_status = record.normalized_status
        record.normalized_status = NormalizedStatus.CANCELLED.value
        record.cancelled_at = utcnow()
        record.cancel_reason = reason
        await self.session.flush()

        await self.history.create(
            transaction_id=record.id,
            action=HistoryAction.SOFT_CANCEL.value,
            previous_status=previous_status,
            new_status=record.normalized_status,
            plan_id=plan_id,
            detail={"reason": reason},
        )
        logger.info(f"Soft-cancelled transaction {record.uid} ({previous_status} -> cancelled)")
        return record

    async def set_match(
        self,
        record: TransactionRecord,
        contact_id: Optional[str],
        match_type: str,
        low_confidence: bool = False,
    ) -> TransactionRecord:
        """Record the contact linkage computed by the matcher."""
        record.contact_id = contact_id
        record.match_type = match_type
        record.match_low_confidence = low_confidence
        await self.session.flush()
        return record

    async def list_unmatched_by_email(self, email: str) -> List[TransactionRecord]:
        """Transactions with no contact match whose customer email equals ``email``."""
        result = await self.session.execute(
            select(TransactionRecord).where(
                and_(
                    func.lower(func.trim(TransactionRecord.customer_email)) == email,
                    TransactionRecord.match_type == MatchType.NONE.value,
                )
            )
        )
        return list(result.scalars().all())

    async def list_unmatched_by_holder_key(self, holder_key: str) -> List[TransactionRecord]:
        """Transactions with no contact match whose normalized card holder equals ``holder_key``."""
        result = await self.session.execute(
            select(TransactionRecord).where(
                and_(
                    TransactionRecord.card_holder_key == holder_key,
                    TransactionRecord.match_type == MatchType.NONE.value,
                )
            )
        )
        return list(result.scalars().all())

    def _window_filters(
        self,
        start: Optional[datetime],
        end: Optional[datetime],
        column=None,
    ) -> List[Any]:
        column = column if column is not None else sort_timestamp_column()
        filters = []
        if start is not None:
            filters.append(column >= start)
        if end is not None:
            filters.append(column <= end)
        return filters

    async def list_soft_cancel_candidates(
        self,
        statuses: Sequence[str],
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        source_channels: Optional[Sequence[str]] = None,
    ) -> List[TransactionRecord]:
        """Not-yet-cancelled records in the window whose status is in ``statuses``."""
        filters = [
            TransactionRecord.cancelled_at.is_(None),
            TransactionRecord.normalized_status.in_(list(statuses)),
        ]
        filters.extend(self._window_filters(start, end))
        if source_channels:
            filters.append(TransactionRecord.source_channel.in_(list(source_channels)))

        result = await self.session.execute(
            select(TransactionRecord)
            .where(and_(*filters))
            .order_by(sort_timestamp_column().asc(), TransactionRecord.uid.asc())
        )
        return list(result.scalars().all())

    async def list_incomplete(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[TransactionRecord]:
        """Known records in the ingestion window that still lack provider data.

        A record is incomplete when its timestamp, amount or currency is
        missing. Cancelled records are not enriched.
        """
        filters = [
            TransactionRecord.cancelled_at.is_(None),
            or_(
                TransactionRecord.occurred_at.is_(None),
                TransactionRecord.amount.is_(None),
                TransactionRecord.currency.is_(None),
            ),
        ]
        filters.extend(self._window_filters(start, end, TransactionRecord.ingested_at))

        result = await self.session.execute(
            select(TransactionRecord)
            .where(and_(*filters))
            .order_by(TransactionRecord.ingested_at.asc(), TransactionRecord.uid.asc())
        )
        return list(result.scalars().all())

    async def list_keyset(
        self,
        page_size: int,
        after: Optional[Tuple[datetime, str]] = None,
        statuses: Optional[Sequence[str]] = None,
        include_cancelled: bool = True,
    ) -> List[TransactionRecord]:
        """One page ordered by ``(coalesce(occurred_at, ingested_at) DESC, uid DESC)``.

        Args:
            page_size: Maximum number of records to return.
            after: Cursor ``(sort_ts, uid)`` of the last row of the previous page.
            statuses: Optional normalized status filter.
            include_cancelled: Whether soft-cancelled records are listed.

        Returns:
            List of TransactionRecord instances strictly after the cursor.
        """
        sort_ts = sort_timestamp_column()
        query = select(TransactionRecord)
        filters = []
        if after is not None:
            cursor_ts, cursor_uid = after
            filters.append(
                or_(
                    sort_ts < cursor_ts,
                    and_(sort_ts == cursor_ts, TransactionRecord.uid < cursor_uid),
                )
            )
        if statuses:
            filters.append(TransactionRecord.normalized_status.in_(list(statuses)))
        if not include_cancelled:
            filters.append(TransactionRecord.cancelled_at.is_(None))
        if filters:
            query = query.where(and_(*filters))

        result = await self.session.execute(
            query.order_by(sort_ts.desc(), TransactionRecord.uid.desc()).limit(page_size)
        )
        return list(result.scalars().all())


class ManualLinkRepository:
    """Repository for operator-confirmed contact links."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, kind: str, key: str) -> Optional[ManualLink]:
        """Get the link recorded for ``(kind, key)``."""
        result = await self.session.execute(
            select(ManualLink).where(and_(ManualLink.kind == kind, ManualLink.key == key))
        )
        return result.scalar_one_or_none()

    async def save(
        self,
        kind: str,
        key: str,
        contact_id: str,
        source_uid: Optional[str] = None,
    ) -> ManualLink:
        """Create or repoint the link for ``(kind, key)``.

        Args:
            kind: One of the ``ManualLinkKind`` values.
            key: Normalized key (uid, email, holder name or card key).
            contact_id: Contact the key is linked to.
            source_uid: Transaction the operator linked from.

        Returns:
            The stored ManualLink.
        """
        link = await self.get(kind, key)
        if link is None:
            link = ManualLink(kind=kind, key=key, contact_id=contact_id, source_uid=source_uid)
            self.session.add(link)
        else:
            link.contact_id = contact_id
            link.source_uid = source_uid or link.source_uid
        await self.session.flush()
        logger.debug(f"Manual link {kind}:{key} -> {contact_id}")
        return link


class ContactRepository:
    """Repository for the minimal contact directory."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        full_name: Optional[str] = None,
        email: Optional[str] = None,
        phone: Optional[str] = None,
    ) -> Contact:
        """Create a contact, indexing its normalized email and full name."""
        contact = Contact(
            full_name=full_name,
            email=normalize_email(email),
            phone=phone,
            name_key=normalize_name(full_name),
        )
        self.session.add(contact)
        await self.session.flush()
        return contact

    async def get_by_id(self, contact_id: str) -> Optional[Contact]:
        """Get a contact by id."""
        result = await self.session.execute(select(Contact).where(Contact.id == contact_id))
        return result.scalar_one_or_none()

    async def find_by_email(self, email: str) -> List[Contact]:
        """Contacts whose email equals the normalized ``email``."""
        result = await self.session.execute(
            select(Contact)
            .where(func.lower(func.trim(Contact.email)) == email)
            .order_by(Contact.created_at.asc())
        )
        return list(result.scalars().all())

    async def find_by_name_key(self, name_key: str) -> List[Contact]:
        """Contacts whose normalized full name equals ``name_key``."""
        result = await self.session.execute(
            select(Contact)
            .where(Contact.name_key == name_key)
            .order_by(Contact.created_at.asc())
        )
        return list(result.scalars().all())


class LedgerRepository:
    """Read access to the internal order/payment ledger."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def list_paid_orders(self) -> List[Order]:
        """All orders in the paid terminal state, oldest first."""
        result = await self.session.execute(
            select(Order)
            .where(Order.status == OrderStatus.PAID.value)
            .order_by(Order.created_at.asc(), Order.id.asc())
        )
        return list(result.scalars().all())

    async def list_payments_with_uid(self, uids: Optional[Iterable[str]] = None) -> List[Payment]:
        """Payments carrying a provider UID, optionally restricted to ``uids``."""
        query = select(Payment).where(Payment.provider_uid.is_not(None))
        if uids is None:
            result = await self.session.execute(query.order_by(Payment.created_at.asc()))
            return list(result.scalars().all())

        payments: List[Payment] = []
        for chunk in _chunks(sorted(set(uids)), DEFAULT_BATCH_SIZE):
            result = await self.session.execute(query.where(Payment.provider_uid.in_(chunk)))
            payments.extend(result.scalars().all())
        return payments

    async def list_payments_for_orders(self, order_ids: Iterable[str]) -> List[Payment]:
        """All payments belonging to the given orders."""
        payments: List[Payment] = []
        for chunk in _chunks(sorted(set(order_ids)), DEFAULT_BATCH_SIZE):
            result = await self.session.execute(
                select(Payment).where(Payment.order_id.in_(chunk)).order_by(Payment.created_at.asc())
            )
            payments.extend(result.scalars().all())
        return payments

    async def list_orders_with_uid(self, uids: Iterable[str]) -> List[Order]:
        """Orders whose ``provider_uid`` is in ``uids``."""
        orders: List[Order] = []
        for chunk in _chunks(sorted(set(uids)), DEFAULT_BATCH_SIZE):
            result = await self.session.execute(select(Order).where(Order.provider_uid.in_(chunk)))
            orders.extend(result.scalars().all())
        return orders

    async def get_orders_by_id(self, order_ids: Iterable[str]) -> Dict[str, Order]:
        """Load orders keyed by id."""
        orders: Dict[str, Order] = {}
        for chunk in _chunks(sorted(set(order_ids)), DEFAULT_BATCH_SIZE):
            result = await self.session.execute(select(Order).where(Order.id.in_(chunk)))
            for order in result.scalars().all():
                orders[order.id] = order
        return orders

    async def list_payments_in_window(
        self,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
    ) -> List[Payment]:
        """Ledger payments whose ``coalesce(paid_at, created_at)`` falls in the window."""
        ts = func.coalesce(Payment.paid_at, Payment.created_at)
        filters = []
        if start is not None:
            filters.append(ts >= start)
        if end is not None:
            filters.append(ts <= end)
        query = select(Payment)
        if filters:
            query = query.where(and_(*filters))
        result = await self.session.execute(query.order_by(ts.asc(), Payment.id.asc()))
        return list(result.scalars().all())

    async def corroborated_uids(self, uids: Iterable[str]) -> Set[str]:
        """Subset of ``uids`` that the ledger knows (on a payment or an order)."""
        wanted = sorted(set(uids))
        known: Set[str] = set()
        for chunk in _chunks(wanted, DEFAULT_BATCH_SIZE):
            payment_rows = await self.session.execute(
                select(Payment.provider_uid).where(Payment.provider_uid.in_(chunk))
            )
            known.update(uid for uid in payment_rows.scalars().all() if uid)
            order_rows = await self.session.execute(
                select(Order.provider_uid).where(Order.provider_uid.in_(chunk))
            )
            known.update(uid for uid in order_rows.scalars().all() if uid)
        return known


class RecoveryPlanRepository:
    """Repository for persisted recovery previews (plan tokens)."""

    def __init__(self, session: AsyncSession):
        self.session = session

    @staticmethod
    def compute_fingerprint(data: Any) -> str:
        """SHA256 over the canonical JSON form of ``data``.

        Args:
            data: Plan inputs and candidate state.

        Returns:
            Hex digest used to detect drift between preview and execute.
        """
        data_str = json.dumps(data, sort_keys=True, default=str)
        return hashlib.sha256(data_str.encode()).hexdigest()

    @classmethod
    def verify_fingerprint(cls, plan: RecoveryPlan) -> bool:
        """Check that a plan's stored inputs still hash to its fingerprint."""
        expected = cls.compute_fingerprint({"params": plan.params, "candidates": plan.candidates})
        return plan.fingerprint == expected

    async def create(
        self,
        kind: str,
        params: Dict[str, Any],
        candidates: List[Any],
        state: str = RecoveryState.PREVIEWED.value,
        stop_reason: Optional[str] = None,
        ttl_hours: int = DEFAULT_PLAN_TTL_HOURS,
    ) -> RecoveryPlan:
        """Persist a new plan.

        Args:
            kind: One of the ``RecoveryKind`` values.
            params: Preview parameters, replayed on execute.
            candidates: Candidate records as computed by the preview.
            state: ``previewed`` or ``stopped``.
            stop_reason: Why the preview stopped, if it did.
            ttl_hours: Time-to-live of the plan token in hours.

        Returns:
            Created RecoveryPlan instance.
        """
        plan = RecoveryPlan(
            kind=kind,
            state=state,
            stop_reason=stop_reason,
            fingerprint=self.compute_fingerprint({"params": params, "candidates": candidates}),
            expires_at=utcnow() + timedelta(hours=ttl_hours),
        )
        plan.params = params
        plan.candidates = candidates
        self.session.add(plan)
        await self.session.flush()

        logger.debug(f"Created {kind} plan {plan.id} in state {state}")
        return plan

    async def get_by_id(self, plan_id: str) -> Optional[RecoveryPlan]:
        """Get a plan by id."""
        result = await self.session.execute(select(RecoveryPlan).where(RecoveryPlan.id == plan_id))
        return result.scalar_one_or_none()

    async def mark_executed(self, plan: RecoveryPlan, result: Dict[str, Any]) -> RecoveryPlan:
        """Move a plan to ``executed`` and cache its result for replays."""
        plan.state = RecoveryState.EXECUTED.value
        plan.executed_at = utcnow()
        plan.result = result
        await self.session.flush()
        return plan

    async def delete_expired(self) -> int:
        """Delete expired plans that were never executed.

        Returns:
            Number of deleted records.
        """
        result = await self.session.execute(
            delete(RecoveryPlan).where(
                and_(
                    RecoveryPlan.expires_at < utcnow(),
                    RecoveryPlan.state != RecoveryState.EXECUTED.value,
                )
            )
        )
        await self.session.flush()
        return result.rowcount


class TransactionHistoryRepository:
    """Repository for TransactionHistory records."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create(
        self,
        transaction_id: str,
        action: str,
        new_status: str,
        previous_status: Optional[str] = None,
        source_channel: Optional[str] = None,
        plan_id: Optional[str] = None,
        detail: Optional[Dict[str, Any]] = None,
        flush: bool = True,
    ) -> TransactionHistory:
        """Create a new history record.

        Args:
            transaction_id: Stored transaction row id.
            action: One of the ``HistoryAction`` values.
            new_status: Normalized status after the transition.
            previous_status: Normalized status before the transition.
            source_channel: Channel of the observation, for observed transitions.
            plan_id: Recovery plan that caused the transition.
            detail: Additional context for this entry.
            flush: Flush immediately; batch writers flush once per chunk.

        Returns:
            Created TransactionHistory instance.
        """
        history = TransactionHistory(
            transaction_id=transaction_id,
            action=action,
            new_status=new_status,
            previous_status=previous_status,
            source_channel=source_channel,
            plan_id=plan_id,
        )
        if detail:
            history.detail = detail

        self.session.add(history)
        if flush:
            await self.session.flush()
        return history

    async def get_by_transaction_id(
        self,
        transaction_id: str,
        limit: int = 100,
    ) -> List[TransactionHistory]:
        """Get history for a stored transaction, newest first."""
        result = await self.session.execute(
            select(TransactionHistory)
            .where(TransactionHistory.transaction_id == transaction_id)
            .order_by(TransactionHistory.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())
