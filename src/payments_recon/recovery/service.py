"""Recovery operations: single-record recovery, bulk UID-resync and soft-cancel.

Every operation runs in two phases. ``preview_*`` computes the candidate set
without touching stored transactions and persists it as a plan; the plan id
is the token that ``execute_*`` must present. Execution re-verifies each
candidate against the current store and skips (with a reason) any record
that changed since the preview.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import RecoverySettings
from ..database.models import (
    HistoryAction,
    RecoveryKind,
    RecoveryPlan,
    RecoveryState,
    TransactionRecord,
    utcnow,
)
from ..database.repository import (
    LedgerRepository,
    RecoveryPlanRepository,
    TransactionHistoryRepository,
    TransactionRepository,
)
from ..errors import (
    CapacityExceededError,
    NotFoundError,
    PlanStateError,
    ProviderFetchError,
    SafetyViolation,
    ValidationError,
)
from ..ingestion.models import Transaction
from ..ingestion.normalizer import normalize_payload, validate_uid
from ..ingestion.statuses import NormalizedStatus, SourceChannel
from ..matching.matcher import ContactMatcher
from .models import (
    DateRange,
    RecoveryAction,
    RecoveryCandidate,
    RecoveryItemOutcome,
    RecoveryPlanView,
    RecoveryResult,
)
from .provider_client import ProviderClientBase, get_provider_client

logger = logging.getLogger(__name__)

SOFT_CANCEL_REASON = "soft-cancelled by recovery plan"

# fields whose absence makes a stored record a resync candidate
RESYNC_FIELDS = ("occurred_at", "amount", "currency")


def _candidate(record: TransactionRecord) -> RecoveryCandidate:
    return RecoveryCandidate(
        uid=record.uid,
        tracking_id=record.tracking_id,
        normalized_status=record.normalized_status,
        amount=str(record.amount) if record.amount is not None else None,
        currency=record.currency,
        occurred_at=record.occurred_at.isoformat() if record.occurred_at else None,
        missing_fields=[f for f in RESYNC_FIELDS if getattr(record, f) is None],
    )


def _range_params(date_range: Optional[DateRange]) -> Dict[str, Optional[str]]:
    date_range = date_range or DateRange()
    return {
        "start": date_range.start.isoformat() if date_range.start else None,
        "end": date_range.end.isoformat() if date_range.end else None,
    }


def _chunks(items: Sequence[Any], size: int):
    for start in range(0, len(items), size):
        yield items[start:start + size]


class RecoveryService:
    """Service for previewing and executing recovery plans."""

    def __init__(
        self,
        session: AsyncSession,
        client: Optional[ProviderClientBase] = None,
        settings: Optional[RecoverySettings] = None,
        retry_delay: float = 0.5,
    ):
        """Initialize the recovery service.

        Args:
            session: Async database session.
            client: Provider client; built from settings if omitted.
            settings: Runtime settings; read from the environment if omitted.
            retry_delay: Base delay in seconds between provider retry rounds.
        """
        self.session = session
        self.settings = settings or RecoverySettings.from_env()
        self._client = client
        self.retry_delay = retry_delay
        self.transactions = TransactionRepository(session)
        self.ledger = LedgerRepository(session)
        self.plans = RecoveryPlanRepository(session)
        self.history = TransactionHistoryRepository(session)
        self.matcher = ContactMatcher(session)

    @property
    def client(self) -> ProviderClientBase:
        if self._client is None:
            self._client = get_provider_client(self.settings)
        return self._client

    # -- plan helpers --------------------------------------------------------

    def _view(
        self,
        plan: RecoveryPlan,
        candidates: List[RecoveryCandidate],
        conflicts: Optional[List[RecoveryItemOutcome]] = None,
        action: Optional[RecoveryAction] = None,
        message: Optional[str] = None,
    ) -> RecoveryPlanView:
        conflicts = conflicts or []
        sample = self.settings.sample_size
        return RecoveryPlanView(
            plan_id=plan.id,
            kind=RecoveryKind(plan.kind),
            state=RecoveryState(plan.state),
            action=action,
            candidate_count=len(candidates),
            conflict_count=len(conflicts),
            candidates=candidates[:sample],
            conflicts=conflicts[:sample],
            stop_reason=plan.stop_reason,
            message=message,
            fingerprint=plan.fingerprint,
            expires_at=plan.expires_at,
        )

    def _threshold_state(self, count: int, confirm_large: bool):
        """Return ``(state, stop_reason)`` for a bulk candidate set."""
        if count > self.settings.safety_threshold and not confirm_large:
            reason = str(CapacityExceededError(count, self.settings.safety_threshold))
            logger.warning(f"Bulk preview stopped: {reason}")
            return RecoveryState.STOPPED, f"{reason}; re-run with confirmation to proceed"
        return RecoveryState.PREVIEWED, None

    async def _load_plan(
        self,
        plan_id: str,
        kind: RecoveryKind,
        confirm_large: bool = False,
    ) -> RecoveryPlan:
        plan = await self.plans.get_by_id(plan_id)
        if plan is None:
            raise NotFoundError("plan", plan_id)
        if plan.kind != kind.value:
            raise PlanStateError(plan_id, plan.state, f"Plan {plan_id} is a {plan.kind} plan, not {kind.value}")
        if plan.state == RecoveryState.EXECUTED.value:
            return plan
        if not self.plans.verify_fingerprint(plan):
            logger.error(f"Plan {plan_id} no longer matches its preview fingerprint")
            raise PlanStateError(plan_id, plan.state, f"Plan {plan_id} was modified after its preview")
        if plan.state == RecoveryState.STOPPED.value and not confirm_large:
            raise PlanStateError(
                plan_id,
                plan.state,
                f"Plan {plan_id} exceeded the safety threshold and needs explicit confirmation",
            )
        if plan.is_expired():
            raise PlanStateError(plan_id, plan.state, f"Plan {plan_id} expired at {plan.expires_at}")
        return plan

    @staticmethod
    def _replay(plan: RecoveryPlan) -> RecoveryResult:
        result = RecoveryResult.model_validate(plan.result or {
            "plan_id": plan.id,
            "kind": plan.kind,
        })
        result.replayed = True
        logger.info(f"Plan {plan.id} was already executed; returning the recorded result")
        return result

    async def _finish(self, plan: RecoveryPlan, result: RecoveryResult) -> RecoveryResult:
        result.executed_at = utcnow()
        await self.plans.mark_executed(plan, result.to_dict())
        logger.info(f"Executed {plan.kind} plan {plan.id}: {result.counts}")
        return result

    async def _annotate_match(self, record: TransactionRecord) -> Optional[str]:
        """Run the matcher; only a confident match is reported back."""
        match = await self.matcher.match_record(record)
        if match.contact_id and not match.low_confidence:
            return match.contact_id
        return None

    # -- single-record recovery ----------------------------------------------

    async def _fetch_single(
        self,
        uid: Optional[str],
        tracking_id: Optional[str],
    ) -> Optional[Dict[str, Any]]:
        raw = await self.client.fetch_by_uid(uid) if uid else None
        if raw is None and tracking_id:
            raw = await self.client.fetch_by_tracking_id(tracking_id)
        return raw

    async def preview_recovery(
        self,
        uid: Optional[str] = None,
        tracking_id: Optional[str] = None,
    ) -> RecoveryPlanView:
        """Look up one transaction by UID or tracking id and preview its recovery.

        The store is checked first; only records unknown to the store are
        fetched from the provider.

        Args:
            uid: Provider transaction UID.
            tracking_id: Merchant tracking id, used when no UID is given or the
                UID lookup finds nothing.

        Returns:
            RecoveryPlanView with action ``created``, ``already_exists``,
            ``not_found`` or ``error``. Only ``created`` can be executed.

        Raises:
            ValidationError: If neither key is given or the UID is malformed.
        """
        if not uid and not tracking_id:
            raise ValidationError("uid", "uid or tracking_id is required")
        uid = validate_uid(uid) if uid else None
        tracking_id = tracking_id.strip() if tracking_id else None

        params: Dict[str, Any] = {"uid": uid, "tracking_id": tracking_id}
        candidates: List[Dict[str, Any]] = []
        action = RecoveryAction.NOT_FOUND
        message = None

        existing = await self.transactions.get_by_uid(uid) if uid else None
        if existing is None and tracking_id:
            existing = await self.transactions.get_by_tracking_id(tracking_id)

        if existing is not None:
            action = RecoveryAction.ALREADY_EXISTS
            message = f"Transaction {existing.uid} is already stored"
            candidates.append(_candidate(existing).model_dump())
        else:
            try:
                raw = await self._fetch_single(uid, tracking_id)
            except ProviderFetchError as e:
                action = RecoveryAction.ERROR
                message = str(e)
                raw = None
                logger.error(f"Provider lookup failed for uid={uid} tracking_id={tracking_id}: {e}")

            if raw is not None:
                try:
                    transaction = normalize_payload(raw, SourceChannel.MANUAL_RECOVERY)
                except ValidationError as e:
                    action = RecoveryAction.ERROR
                    message = f"Provider record failed validation: {e}"
                else:
                    stored = await self.transactions.get_by_uid(transaction.uid)
                    if stored is not None:
                        action = RecoveryAction.ALREADY_EXISTS
                        message = f"Transaction {stored.uid} is already stored"
                        candidates.append(_candidate(stored).model_dump())
                    else:
                        action = RecoveryAction.CREATED
                        message = f"Transaction {transaction.uid} will be added from the provider"
                        candidate = self._transaction_candidate(transaction)
                        candidates.append({**candidate.model_dump(), "payload": raw})
            elif action != RecoveryAction.ERROR:
                message = f"Provider has no transaction for uid={uid} tracking_id={tracking_id}"

        params["action"] = action.value
        plan = await self.plans.create(
            kind=RecoveryKind.SINGLE_RECORD.value,
            params=params,
            candidates=candidates,
            ttl_hours=self.settings.plan_ttl_hours,
        )
        logger.info(f"Recovery preview {plan.id}: {action.value} (uid={uid}, tracking_id={tracking_id})")
        return self._view(
            plan,
            [RecoveryCandidate.model_validate(c) for c in candidates],
            action=action,
            message=message,
        )

    @staticmethod
    def _transaction_candidate(transaction: Transaction) -> RecoveryCandidate:
        return RecoveryCandidate(
            uid=transaction.uid,
            tracking_id=transaction.tracking_id,
            normalized_status=transaction.normalized_status.value,
            amount=str(transaction.amount) if transaction.amount is not None else None,
            currency=transaction.currency,
            occurred_at=transaction.occurred_at.isoformat() if transaction.occurred_at else None,
        )

    async def execute_recovery(self, plan_id: str) -> RecoveryResult:
        """Store the transaction previewed by a ``created`` recovery plan.

        Args:
            plan_id: Token returned by ``preview_recovery``.

        Returns:
            RecoveryResult with a single outcome.

        Raises:
            NotFoundError: If the plan does not exist.
            PlanStateError: If the plan is expired, of another kind, or its
                preview action was not ``created``.
        """
        plan = await self._load_plan(plan_id, RecoveryKind.SINGLE_RECORD)
        if plan.state == RecoveryState.EXECUTED.value:
            return self._replay(plan)

        action = plan.params.get("action")
        if action != RecoveryAction.CREATED.value:
            raise PlanStateError(
                plan_id,
                plan.state,
                f"Only a 'created' preview can be executed; this plan previewed '{action}'",
            )

        result = RecoveryResult(plan_id=plan.id, kind=RecoveryKind.SINGLE_RECORD)
        candidate = plan.candidates[0]
        uid = candidate["uid"]

        if await self.transactions.get_by_uid(uid) is not None:
            result.record(RecoveryItemOutcome(
                uid=uid,
                action=RecoveryAction.ALREADY_EXISTS,
                message="Stored by another channel after the preview",
            ), self.settings.sample_size)
            return await self._finish(plan, result)

        transaction = normalize_payload(candidate["payload"], SourceChannel.MANUAL_RECOVERY)
        record, _ = await self.transactions.upsert(transaction)
        await self.history.create(
            transaction_id=record.id,
            action=HistoryAction.RECOVERED.value,
            new_status=record.normalized_status,
            source_channel=SourceChannel.MANUAL_RECOVERY.value,
            plan_id=plan.id,
        )
        contact_id = await self._annotate_match(record)
        result.record(RecoveryItemOutcome(
            uid=uid,
            action=RecoveryAction.CREATED,
            message=f"Recovered {record.normalized_status} transaction",
            contact_id=contact_id,
        ), self.settings.sample_size)
        return await self._finish(plan, result)

    # -- bulk UID-resync -----------------------------------------------------

    async def preview_bulk_resync(
        self,
        date_range: Optional[DateRange] = None,
        confirm_large: bool = False,
    ) -> RecoveryPlanView:
        """Preview re-fetching known but incomplete records from the provider.

        Only UIDs already in the store are considered; nothing new is
        discovered. Candidates are records ingested within ``date_range``
        that lack a timestamp, amount or currency.

        Args:
            date_range: Ingestion window to scan.
            confirm_large: Allow a candidate set above the safety threshold.

        Returns:
            RecoveryPlanView in state ``previewed``, or ``stopped`` when the
            candidate count exceeds the threshold without confirmation.
        """
        date_range = date_range or DateRange()
        records = await self.transactions.list_incomplete(date_range.start, date_range.end)
        candidates = [_candidate(r) for r in records]
        state, stop_reason = self._threshold_state(len(candidates), confirm_large)

        plan = await self.plans.create(
            kind=RecoveryKind.BULK_RESYNC.value,
            params={**_range_params(date_range), "confirm_large": confirm_large},
            candidates=[c.model_dump() for c in candidates],
            state=state.value,
            stop_reason=stop_reason,
            ttl_hours=self.settings.plan_ttl_hours,
        )
        logger.info(f"Bulk resync preview {plan.id}: {len(candidates)} candidates, state {state.value}")
        return self._view(plan, candidates)

    async def _fetch_with_retry(self, uids: List[str]) -> Dict[str, Any]:
        """Fetch a batch, retrying retryable failures as a group.

        Returns a dict mapping each UID to the raw record, ``None`` (not
        found) or the final ``ProviderFetchError``.
        """
        outcome: Dict[str, Any] = {}
        pending = list(uids)
        attempts = self.settings.provider_max_attempts
        for attempt in range(1, attempts + 1):
            failed: List[str] = []
            for uid in pending:
                try:
                    outcome[uid] = await self.client.fetch_by_uid(uid)
                except ProviderFetchError as e:
                    if e.retryable and attempt < attempts:
                        failed.append(uid)
                    else:
                        outcome[uid] = e
            if not failed:
                break
            logger.warning(f"Provider fetch attempt {attempt}/{attempts} failed for {len(failed)} records; retrying")
            pending = failed
            if self.retry_delay:
                await asyncio.sleep(self.retry_delay * attempt)
        return outcome

    async def execute_bulk_resync(self, plan_id: str, confirm_large: bool = False) -> RecoveryResult:
        """Fill missing fields of the previewed records from the provider.

        Records are processed in chunks of ``batch_size``. A provider failure
        is retried for the whole chunk up to ``provider_max_attempts`` times
        and then recorded per record; the remaining chunks continue.

        Args:
            plan_id: Token returned by ``preview_bulk_resync``.
            confirm_large: Confirm a plan that stopped at the safety threshold.

        Returns:
            RecoveryResult with updated / unchanged / not_found / skipped /
            error counts.
        """
        plan = await self._load_plan(plan_id, RecoveryKind.BULK_RESYNC, confirm_large)
        if plan.state == RecoveryState.EXECUTED.value:
            return self._replay(plan)

        sample = self.settings.sample_size
        result = RecoveryResult(plan_id=plan.id, kind=RecoveryKind.BULK_RESYNC)
        uids = [c["uid"] for c in plan.candidates]

        for chunk in _chunks(uids, self.settings.batch_size):
            stored = await self.transactions.get_many_by_uid(chunk)
            to_fetch: List[str] = []
            for uid in chunk:
                record = stored.get(uid)
                if record is None:
                    result.record(RecoveryItemOutcome(uid=uid, action=RecoveryAction.SKIPPED, message="no longer stored"), sample)
                elif record.is_cancelled:
                    result.record(RecoveryItemOutcome(uid=uid, action=RecoveryAction.SKIPPED, message="cancelled since preview"), sample)
                elif all(getattr(record, f) is not None for f in RESYNC_FIELDS):
                    result.record(RecoveryItemOutcome(uid=uid, action=RecoveryAction.SKIPPED, message="already complete"), sample)
                else:
                    to_fetch.append(uid)

            fetched = await self._fetch_with_retry(to_fetch)
            for uid in to_fetch:
                raw = fetched.get(uid)
                if isinstance(raw, ProviderFetchError):
                    logger.error(f"Resync of {uid} failed: {raw}")
                    result.record(RecoveryItemOutcome(uid=uid, action=RecoveryAction.ERROR, message=str(raw)), sample)
                    continue
                if raw is None:
                    result.record(RecoveryItemOutcome(uid=uid, action=RecoveryAction.NOT_FOUND), sample)
                    continue
                try:
                    transaction = normalize_payload(raw, SourceChannel.API_PULL)
                except ValidationError as e:
                    result.record(RecoveryItemOutcome(uid=uid, action=RecoveryAction.ERROR, message=str(e)), sample)
                    continue
                if transaction.uid != uid:
                    result.record(RecoveryItemOutcome(
                        uid=uid,
                        action=RecoveryAction.ERROR,
                        message=f"provider returned a different uid {transaction.uid}",
                    ), sample)
                    continue

                record = stored[uid]
                before = record.to_transaction()
                record, _ = await self.transactions.upsert(transaction)
                if record.to_transaction() == before:
                    result.record(RecoveryItemOutcome(uid=uid, action=RecoveryAction.UNCHANGED), sample)
                    continue
                await self.history.create(
                    transaction_id=record.id,
                    action=HistoryAction.RESYNC.value,
                    previous_status=before.normalized_status.value,
                    new_status=record.normalized_status,
                    source_channel=SourceChannel.API_PULL.value,
                    plan_id=plan.id,
                )
                result.record(RecoveryItemOutcome(uid=uid, action=RecoveryAction.UPDATED), sample)

            logger.info(f"Resync plan {plan.id}: {result.processed}/{len(uids)} processed")

        return await self._finish(plan, result)

    # -- soft-cancel ---------------------------------------------------------

    @staticmethod
    def _cancel_statuses(statuses: Optional[Sequence[str]]) -> List[str]:
        if not statuses:
            return [NormalizedStatus.PENDING.value]
        values = []
        for status in statuses:
            try:
                value = NormalizedStatus(str(status).strip().lower())
            except ValueError as e:
                raise ValidationError("statuses", f"unknown status {status!r}", status) from e
            if value == NormalizedStatus.CANCELLED:
                raise ValidationError("statuses", "cancelled records cannot be cancelled again", status)
            values.append(value.value)
        return sorted(set(values))

    async def preview_soft_cancel(
        self,
        date_range: Optional[DateRange] = None,
        statuses: Optional[Sequence[str]] = None,
        source_channels: Optional[Sequence[str]] = None,
        confirm_large: bool = False,
    ) -> RecoveryPlanView:
        """Preview soft-cancelling stored records by status and date range.

        Records whose UID appears in the ledger (on a payment or an order)
        are excluded up front and reported as conflicts.

        Args:
            date_range: Window over the record timestamp.
            statuses: Normalized statuses to cancel; defaults to ``pending``.
            source_channels: Optional restriction to records first seen on
                these channels.
            confirm_large: Allow a candidate set above the safety threshold.

        Returns:
            RecoveryPlanView in state ``previewed`` or ``stopped``.
        """
        date_range = date_range or DateRange()
        status_values = self._cancel_statuses(statuses)
        records = await self.transactions.list_soft_cancel_candidates(
            status_values,
            date_range.start,
            date_range.end,
            source_channels=source_channels,
        )
        corroborated = await self.ledger.corroborated_uids(r.uid for r in records)

        candidates: List[RecoveryCandidate] = []
        conflicts: List[RecoveryItemOutcome] = []
        for record in records:
            if record.uid in corroborated:
                violation = SafetyViolation(record.uid, "linked to a ledger payment")
                conflicts.append(RecoveryItemOutcome(
                    uid=record.uid,
                    action=RecoveryAction.CONFLICT,
                    message=violation.reason,
                ))
            else:
                candidates.append(_candidate(record))

        if conflicts:
            logger.warning(f"Soft-cancel preview excluded {len(conflicts)} records linked to the ledger")

        state, stop_reason = self._threshold_state(len(candidates), confirm_large)
        plan = await self.plans.create(
            kind=RecoveryKind.SOFT_CANCEL.value,
            params={
                **_range_params(date_range),
                "statuses": status_values,
                "source_channels": list(source_channels or []),
                "confirm_large": confirm_large,
                "conflicts": [c.uid for c in conflicts],
            },
            candidates=[c.model_dump() for c in candidates],
            state=state.value,
            stop_reason=stop_reason,
            ttl_hours=self.settings.plan_ttl_hours,
        )
        logger.info(
            f"Soft-cancel preview {plan.id}: {len(candidates)} candidates, "
            f"{len(conflicts)} conflicts, state {state.value}"
        )
        return self._view(plan, candidates, conflicts)

    async def execute_soft_cancel(self, plan_id: str, confirm_large: bool = False) -> RecoveryResult:
        """Soft-cancel the previewed records.

        Each candidate is re-checked: a record that left the previewed status,
        was already cancelled, or has since been linked from the ledger is
        skipped or reported as a conflict instead of being cancelled. Records
        the preview already excluded as ledger conflicts appear in the result
        as conflicts too.

        Args:
            plan_id: Token returned by ``preview_soft_cancel``.
            confirm_large: Confirm a plan that stopped at the safety threshold.

        Returns:
            RecoveryResult with cancelled / conflict / skipped counts.
        """
        plan = await self._load_plan(plan_id, RecoveryKind.SOFT_CANCEL, confirm_large)
        if plan.state == RecoveryState.EXECUTED.value:
            return self._replay(plan)

        sample = self.settings.sample_size
        result = RecoveryResult(plan_id=plan.id, kind=RecoveryKind.SOFT_CANCEL)
        statuses = set(plan.params.get("statuses") or [])
        candidates = plan.candidates

        # excluded at preview time; reported, never touched
        for uid in plan.params.get("conflicts") or []:
            result.record(RecoveryItemOutcome(
                uid=uid,
                action=RecoveryAction.CONFLICT,
                message="linked to a ledger payment",
            ), sample)

        for chunk in _chunks(candidates, self.settings.batch_size):
            uids = [c["uid"] for c in chunk]
            stored = await self.transactions.get_many_by_uid(uids)
            corroborated = await self.ledger.corroborated_uids(uids)
            for candidate in chunk:
                uid = candidate["uid"]
                record = stored.get(uid)
                if record is None:
                    result.record(RecoveryItemOutcome(uid=uid, action=RecoveryAction.SKIPPED, message="no longer stored"), sample)
                elif uid in corroborated:
                    logger.warning(f"Not cancelling {uid}: linked to a ledger payment since the preview")
                    result.record(RecoveryItemOutcome(
                        uid=uid,
                        action=RecoveryAction.CONFLICT,
                        message="linked to a ledger payment",
                    ), sample)
                elif record.is_cancelled:
                    result.record(RecoveryItemOutcome(uid=uid, action=RecoveryAction.SKIPPED, message="already cancelled"), sample)
                elif record.normalized_status not in statuses:
                    result.record(RecoveryItemOutcome(
                        uid=uid,
                        action=RecoveryAction.SKIPPED,
                        message=f"status changed to {record.normalized_status}",
                    ), sample)
                else:
                    await self.transactions.mark_cancelled(record, SOFT_CANCEL_REASON, plan_id=plan.id)
                    result.record(RecoveryItemOutcome(uid=uid, action=RecoveryAction.CANCELLED), sample)

        return await self._finish(plan, result)
