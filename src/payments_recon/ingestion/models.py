"""Canonical transaction model and the known raw payload shapes.

Each source channel has its own payload model. The normalizer picks the shape
by channel, so a raw dict never travels past the ingestion boundary except as
``Transaction.raw_payload``.
"""

import re
from datetime import date, datetime, time, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .statuses import NormalizedStatus, SourceChannel, TransactionType

_DATETIME_FORMATS = (
    "%d.%m.%Y %H:%M:%S",
    "%d.%m.%Y %H:%M",
    "%d.%m.%Y",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y-%m-%d",
)


def coerce_datetime(value: Any) -> Optional[datetime]:
    """Parse provider and statement timestamps into naive UTC datetimes.

    Accepts ``datetime``/``date`` objects (as produced by spreadsheet readers),
    ISO 8601 strings with or without an offset, and the ``dd.mm.yyyy`` forms
    found in localized statements. Blank values become ``None``.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime.combine(value, time())
    else:
        text = str(value).strip()
        if not text:
            return None
        parsed = None
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            for fmt in _DATETIME_FORMATS:
                try:
                    parsed = datetime.strptime(text, fmt)
                    break
                except ValueError:
                    continue
        if parsed is None:
            raise ValueError(f"Unrecognised timestamp: {text!r}")
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_decimal(value: Any) -> Optional[Decimal]:
    """Parse an amount written in any of the common locale formats.

    ``1 234,56``, ``1,234.56``, ``1234.56`` and ``-100`` are all accepted.
    """
    if value is None:
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, bool):
        raise ValueError("Boolean is not an amount")
    if isinstance(value, (int, float)):
        return Decimal(str(value))
    text = re.sub(r"[^\d,.\-]", "", str(value).strip())
    if not text or text in ("-", ".", ","):
        return None
    if "," in text and "." in text:
        # whichever separator comes last is the decimal point
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif text.count(",") > 1:
        text = text.replace(",", "")
    elif "," in text:
        head, _, tail = text.rpartition(",")
        digits = head.lstrip("-")
        if len(tail) == 3 and digits and digits != "0" and "," not in head and len(digits) <= 3:
            # "1,234" is a thousands separator, "12,5" is a decimal comma
            text = head + tail
        else:
            text = text.replace(",", ".")
    try:
        return Decimal(text)
    except InvalidOperation as e:
        raise ValueError(f"Unrecognised amount: {value!r}") from e


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, str) and not value.strip():
        return None
    return value


class _Payload(BaseModel):
    """Base for raw payload shapes: unknown keys are tolerated and blanks are nulls."""
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    @field_validator("*", mode="before")
    @classmethod
    def _blanks(cls, value: Any) -> Any:
        return _blank_to_none(value)


class ProviderCardPayload(_Payload):
    """``credit_card`` object of a provider transaction."""
    holder: Optional[str] = None
    last_4: Optional[str] = None
    brand: Optional[str] = None
    issuer_name: Optional[str] = None
    issuer_country: Optional[str] = None


class ProviderCustomerPayload(_Payload):
    """``customer`` / ``billing_address`` object of a provider transaction."""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    ip: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None


class ProviderTransactionPayload(_Payload):
    """Transaction object as the provider API and webhooks deliver it.

    ``amount`` is in minor currency units.
    """
    uid: Optional[str] = None
    tracking_id: Optional[str] = None
    status: Optional[str] = None
    type: Optional[str] = None
    amount: Optional[int] = None
    currency: Optional[str] = None
    message: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[str] = None
    paid_at: Optional[str] = None
    credit_card: Optional[ProviderCardPayload] = None
    customer: Optional[ProviderCustomerPayload] = None
    billing_address: Optional[ProviderCustomerPayload] = None

    @field_validator("amount", mode="before")
    @classmethod
    def _amount(cls, value: Any) -> Any:
        """Minor units must be a whole number; ``"1250"`` and ``1250.0`` pass."""
        value = _blank_to_none(value)
        if value is None or isinstance(value, (int, bool)):
            return value
        try:
            minor = Decimal(str(value).strip())
        except InvalidOperation as e:
            raise ValueError(f"Unrecognised amount: {value!r}") from e
        if not minor.is_finite() or minor != minor.to_integral_value():
            raise ValueError(f"Amount in minor units must be a whole number, got {value!r}")
        return int(minor)


class WebhookPayload(_Payload):
    """Webhook body: the transaction wrapped in a ``transaction`` key."""
    transaction: Optional[ProviderTransactionPayload] = None


class ApiRecordPayload(_Payload):
    """Single-record API response, same envelope as the webhook."""
    transaction: Optional[ProviderTransactionPayload] = None


class StatementRowPayload(_Payload):
    """One parsed row of an uploaded statement file. Amounts are in major units."""
    uid: Optional[str] = None
    tracking_id: Optional[str] = None
    status: Optional[str] = None
    transaction_type: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    occurred_at: Optional[datetime] = None
    message: Optional[str] = None
    description: Optional[str] = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    customer_name: Optional[str] = None
    phone: Optional[str] = None
    ip: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    card_holder: Optional[str] = None
    card_last4: Optional[str] = None
    card_brand: Optional[str] = None
    bank_name: Optional[str] = None
    bank_country: Optional[str] = None
    commission_total: Optional[Decimal] = None
    payout_amount: Optional[Decimal] = None

    @field_validator("amount", "commission_total", "payout_amount", mode="before")
    @classmethod
    def _amounts(cls, value: Any) -> Any:
        return parse_decimal(_blank_to_none(value))

    @field_validator("occurred_at", mode="before")
    @classmethod
    def _timestamp(cls, value: Any) -> Any:
        return coerce_datetime(_blank_to_none(value))


class CardDetails(BaseModel):
    """Card data attached to a transaction; every field is optional."""
    holder: Optional[str] = None
    last4: Optional[str] = None
    brand: Optional[str] = None
    bank: Optional[str] = None
    bank_country: Optional[str] = None


class CustomerDetails(BaseModel):
    """Customer data attached to a transaction; every field is optional."""
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None
    ip: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None


class Transaction(BaseModel):
    """Canonical, post-normalization view of one provider transaction."""
    uid: str = Field(..., description="Provider transaction UID (dedup key)")
    tracking_id: Optional[str] = Field(None, description="Merchant correlation key")
    amount: Optional[Decimal] = Field(None, description="Amount in major currency units")
    currency: Optional[str] = Field(None, description="Three-letter currency code")
    status: Optional[str] = Field(None, description="Raw provider status")
    normalized_status: NormalizedStatus = Field(..., description="Canonical status bucket")
    transaction_type: Optional[TransactionType] = Field(
        None, description="Canonical type; None when the observation did not carry one"
    )
    occurred_at: Optional[datetime] = Field(None, description="Provider-reported timestamp")
    message: Optional[str] = None
    description: Optional[str] = None
    card: CardDetails = Field(default_factory=CardDetails)
    customer: CustomerDetails = Field(default_factory=CustomerDetails)
    source_channel: SourceChannel = Field(..., description="Channel of this observation")
    observed_channels: List[SourceChannel] = Field(default_factory=list)
    raw_payload: Dict[str, Any] = Field(
        default_factory=dict, description="Raw payloads keyed by source channel"
    )

    @property
    def effective_type(self) -> TransactionType:
        return self.transaction_type or TransactionType.PAYMENT
