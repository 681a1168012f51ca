"""Payload normalization and the merge policy for repeated observations."""

import logging
import re
from decimal import Decimal
from typing import Any, Dict, Optional, Type

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from ..errors import ValidationError
from .models import (
    ApiRecordPayload,
    CardDetails,
    CustomerDetails,
    ProviderCustomerPayload,
    ProviderTransactionPayload,
    StatementRowPayload,
    Transaction,
    WebhookPayload,
    coerce_datetime,
)
from .statuses import (
    CHANNEL_PRECEDENCE,
    SourceChannel,
    bucket_status,
    to_normalized_status,
    to_transaction_type,
)

logger = logging.getLogger(__name__)

UID_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE,
)

# ISO 4217 currencies without minor units; everything else uses two decimals.
ZERO_DECIMAL_CURRENCIES = frozenset([
    "BIF", "CLP", "DJF", "GNF", "ISK", "JPY", "KMF", "KRW",
    "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF",
])

PAYLOAD_SHAPES: Dict[SourceChannel, Type[BaseModel]] = {
    SourceChannel.WEBHOOK: WebhookPayload,
    SourceChannel.API_PULL: ApiRecordPayload,
    SourceChannel.MANUAL_RECOVERY: ApiRecordPayload,
    SourceChannel.FILE_IMPORT: StatementRowPayload,
}


def is_valid_uid(value: Optional[str]) -> bool:
    """Check a value against the provider's UID shape (8-4-4-4-12 hex)."""
    return bool(value) and bool(UID_PATTERN.match(str(value).strip()))


def validate_uid(value: Optional[str]) -> str:
    """Return the canonical (trimmed, lower-case) UID or raise ``ValidationError``."""
    if value is None or not str(value).strip():
        raise ValidationError("uid", "is required")
    uid = str(value).strip()
    if not UID_PATTERN.match(uid):
        raise ValidationError("uid", "does not match the provider UID format", uid)
    return uid.lower()


def minor_to_major(amount: Optional[int], currency: Optional[str]) -> Optional[Decimal]:
    """Convert an integer minor-unit amount to major units for ``currency``."""
    if amount is None:
        return None
    if currency and currency.upper() in ZERO_DECIMAL_CURRENCIES:
        return Decimal(amount)
    return (Decimal(amount) / Decimal(100)).quantize(Decimal("0.01"))


def _join_name(first: Optional[str], last: Optional[str]) -> Optional[str]:
    name = " ".join(part.strip() for part in (first, last) if part and part.strip())
    return name or None


def _customer_from_provider(
    customer: Optional[ProviderCustomerPayload],
    billing: Optional[ProviderCustomerPayload],
) -> CustomerDetails:
    # some transaction types only fill billing_address
    primary = customer or ProviderCustomerPayload()
    fallback = billing or ProviderCustomerPayload()
    return CustomerDetails(
        name=_join_name(
            primary.first_name or fallback.first_name,
            primary.last_name or fallback.last_name,
        ),
        email=primary.email or fallback.email,
        phone=primary.phone or fallback.phone,
        ip=primary.ip or fallback.ip,
        country=primary.country or fallback.country,
        city=primary.city or fallback.city,
    )


def _normalize_provider_transaction(
    payload: Optional[ProviderTransactionPayload],
    channel: SourceChannel,
    raw: Dict[str, Any],
) -> Transaction:
    if payload is None:
        raise ValidationError("transaction", "payload has no transaction object")

    uid = validate_uid(payload.uid)
    normalized, transaction_type = _resolve_status(payload.status, payload.type)
    currency = payload.currency.upper() if payload.currency else None
    card = payload.credit_card

    try:
        occurred_at = coerce_datetime(payload.paid_at) or coerce_datetime(payload.created_at)
    except ValueError as e:
        raise ValidationError("occurred_at", str(e)) from e

    return Transaction(
        uid=uid,
        tracking_id=payload.tracking_id,
        amount=minor_to_major(payload.amount, currency),
        currency=currency,
        status=payload.status,
        normalized_status=normalized,
        transaction_type=transaction_type,
        occurred_at=occurred_at,
        message=payload.message,
        description=payload.description,
        card=CardDetails(
            holder=card.holder if card else None,
            last4=card.last_4 if card else None,
            brand=card.brand if card else None,
            bank=card.issuer_name if card else None,
            bank_country=card.issuer_country if card else None,
        ),
        customer=_customer_from_provider(payload.customer, payload.billing_address),
        source_channel=channel,
        observed_channels=[channel],
        raw_payload={channel.value: raw},
    )


def _normalize_statement_row(
    row: StatementRowPayload,
    channel: SourceChannel,
    raw: Dict[str, Any],
) -> Transaction:
    uid = validate_uid(row.uid)
    normalized, transaction_type = _resolve_status(row.status, row.transaction_type)
    last4 = row.card_last4[-4:] if row.card_last4 else None

    return Transaction(
        uid=uid,
        tracking_id=row.tracking_id,
        amount=row.amount,
        currency=row.currency.upper() if row.currency else None,
        status=row.status,
        normalized_status=normalized,
        transaction_type=transaction_type,
        occurred_at=row.occurred_at,
        message=row.message,
        description=row.description,
        card=CardDetails(
            holder=row.card_holder,
            last4=last4,
            brand=row.card_brand,
            bank=row.bank_name,
            bank_country=row.bank_country,
        ),
        customer=CustomerDetails(
            name=row.customer_name or _join_name(row.first_name, row.last_name),
            email=row.email,
            phone=row.phone,
            ip=row.ip,
            country=row.country,
            city=row.city,
        ),
        source_channel=channel,
        observed_channels=[channel],
        raw_payload={channel.value: raw},
    )


def _resolve_status(raw_status: Optional[str], raw_type: Optional[str]):
    status = to_normalized_status(raw_status)
    if status is None:
        raise ValidationError("status", "missing or unrecognised status", raw_status)
    transaction_type = to_transaction_type(raw_type) if raw_type else None
    if transaction_type is not None:
        status = bucket_status(status, transaction_type)
    return status, transaction_type


def normalize_payload(raw: Dict[str, Any], channel: SourceChannel) -> Transaction:
    """Convert one raw payload from ``channel`` into a canonical ``Transaction``.

    Args:
        raw: Raw payload as received (webhook body, API record or statement row).
        channel: Source channel; selects the payload shape.

    Returns:
        The canonical transaction.

    Raises:
        ValidationError: If the UID is missing or malformed, the status is not
            recognised, or the payload does not fit the channel's shape.
    """
    if not isinstance(raw, dict):
        raise ValidationError("payload", f"expected an object, got {type(raw).__name__}")

    shape = PAYLOAD_SHAPES[channel]
    try:
        parsed = shape.model_validate(raw)
    except PydanticValidationError as e:
        first = e.errors()[0]
        field = ".".join(str(part) for part in first.get("loc", ())) or "payload"
        raise ValidationError(field, first.get("msg", "invalid value")) from e

    if isinstance(parsed, StatementRowPayload):
        return _normalize_statement_row(parsed, channel, raw)
    return _normalize_provider_transaction(parsed.transaction, channel, raw)


def _pick(existing: Any, incoming: Any) -> Any:
    return incoming if incoming is not None else existing


def _earliest(a, b):
    if a is None:
        return b
    if b is None:
        return a
    return min(a, b)


def _merge_flat(existing: BaseModel, incoming: BaseModel) -> Dict[str, Any]:
    return {
        name: _pick(getattr(existing, name), getattr(incoming, name))
        for name in type(existing).model_fields
    }


def merge_transactions(existing: Transaction, incoming: Transaction) -> Transaction:
    """Merge a new observation into an existing one with the same UID.

    Non-null values win over nulls, the incoming value wins when both are
    non-null, and ``occurred_at`` keeps the earliest non-null timestamp. Card
    and customer sub-objects merge field by field; raw payloads accumulate per
    channel. The source channel is the highest-precedence channel observed, so
    it does not depend on arrival order.
    """
    if existing.uid != incoming.uid:
        raise ValueError(f"Cannot merge {incoming.uid} into {existing.uid}")

    channels = set(existing.observed_channels) | set(incoming.observed_channels)
    channels.update([existing.source_channel, incoming.source_channel])
    ordered_channels = [c for c in CHANNEL_PRECEDENCE if c in channels]

    status = _pick(existing.status, incoming.status)
    transaction_type = _pick(existing.transaction_type, incoming.transaction_type)
    normalized = to_normalized_status(status) if status else None
    if normalized is None:
        normalized = _pick(existing.normalized_status, incoming.normalized_status)
    if transaction_type is not None:
        normalized = bucket_status(normalized, transaction_type)

    raw_payload = dict(existing.raw_payload)
    raw_payload.update(incoming.raw_payload)

    return Transaction(
        uid=existing.uid,
        tracking_id=_pick(existing.tracking_id, incoming.tracking_id),
        amount=_pick(existing.amount, incoming.amount),
        currency=_pick(existing.currency, incoming.currency),
        status=status,
        normalized_status=normalized,
        transaction_type=transaction_type,
        occurred_at=_earliest(existing.occurred_at, incoming.occurred_at),
        message=_pick(existing.message, incoming.message),
        description=_pick(existing.description, incoming.description),
        card=CardDetails(**_merge_flat(existing.card, incoming.card)),
        customer=CustomerDetails(**_merge_flat(existing.customer, incoming.customer)),
        source_channel=ordered_channels[0],
        observed_channels=ordered_channels,
        raw_payload=raw_payload,
    )
