"""SQLAlchemy models for the transaction store and the order/payment ledger."""

import enum
import json
import uuid
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Index,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from ..ingestion.models import CardDetails, CustomerDetails, Transaction
from ..ingestion.statuses import NormalizedStatus, SourceChannel, TransactionType
from ..ingestion.names import normalize_name


def utcnow() -> datetime:
    """Naive UTC timestamp, the convention for every column in this schema."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    """Base class for all models."""
    pass


class OrderStatus(str, enum.Enum):
    """Internal order lifecycle states."""
    PENDING = "pending"
    PAID = "paid"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class MatchType(str, enum.Enum):
    """How a transaction was linked to a contact."""
    MANUAL = "manual"
    EMAIL = "email"
    CARD_HOLDER_NAME = "cardHolderName"
    NONE = "none"


class ManualLinkKind(str, enum.Enum):
    """Key kinds a manual contact link can be recorded under."""
    UID = "uid"
    EMAIL = "email"
    CARD_HOLDER = "card_holder"
    CARD = "card"


class RecoveryKind(str, enum.Enum):
    """Recovery operations that go through the preview/execute cycle."""
    SINGLE_RECORD = "single_record"
    BULK_RESYNC = "bulk_resync"
    SOFT_CANCEL = "soft_cancel"


class RecoveryState(str, enum.Enum):
    """Recovery plan state machine: idle -> previewed -> executed | stopped."""
    IDLE = "idle"
    PREVIEWED = "previewed"
    STOPPED = "stopped"
    EXECUTED = "executed"


class HistoryAction(str, enum.Enum):
    """Types of status transitions tracked in history."""
    OBSERVED = "observed"
    SOFT_CANCEL = "soft_cancel"
    RESYNC = "resync"
    RECOVERED = "recovered"
    CONTACT_LINKED = "contact_linked"


class _JsonColumnsMixin:
    @staticmethod
    def _load(value: Optional[str]) -> Any:
        return json.loads(value) if value else None

    @staticmethod
    def _dump(value: Any) -> Optional[str]:
        return json.dumps(value, default=str) if value is not None else None


class Contact(Base):
    """Minimal contact directory used for matching."""
    __tablename__ = "contacts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    full_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    name_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)


class TransactionRecord(_JsonColumnsMixin, Base):
    """Canonical transaction store: exactly one row per provider UID."""
    __tablename__ = "transactions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    uid: Mapped[str] = mapped_column(String(36), nullable=False)
    tracking_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    normalized_status: Mapped[str] = mapped_column(String(20), nullable=False)
    transaction_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    occurred_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    card_holder: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    card_holder_key: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    card_last4: Mapped[Optional[str]] = mapped_column(String(4), nullable=True)
    card_brand: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    card_bank: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    card_bank_country: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)

    customer_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    customer_ip: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    customer_country: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    customer_city: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    source_channel: Mapped[str] = mapped_column(String(20), nullable=False)
    observed_channels_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    raw_payload_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Contact linkage written by the matcher
    contact_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("contacts.id"), nullable=True
    )
    match_type: Mapped[str] = mapped_column(String(20), nullable=False, default=MatchType.NONE.value)
    match_low_confidence: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    # Soft-cancel marker; the row itself is never deleted
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    ingested_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    history: Mapped[List["TransactionHistory"]] = relationship(
        "TransactionHistory",
        back_populates="transaction",
        cascade="all, delete-orphan",
        order_by="TransactionHistory.created_at.desc()",
    )

    __table_args__ = (
        Index("ix_transactions_uid", "uid", unique=True),
        Index("ix_transactions_normalized_status", "normalized_status"),
        Index("ix_transactions_occurred_at", "occurred_at"),
        Index("ix_transactions_customer_email", "customer_email"),
        Index("ix_transactions_match_type", "match_type"),
        Index("ix_transactions_card_holder_key", "card_holder_key"),
    )

    @property
    def observed_channels(self) -> List[str]:
        return self._load(self.observed_channels_json) or []

    @observed_channels.setter
    def observed_channels(self, value: Optional[List[str]]) -> None:
        self.observed_channels_json = self._dump(value)

    @property
    def raw_payload(self) -> Dict[str, Any]:
        return self._load(self.raw_payload_json) or {}

    @raw_payload.setter
    def raw_payload(self, value: Optional[Dict[str, Any]]) -> None:
        self.raw_payload_json = self._dump(value)

    @property
    def is_cancelled(self) -> bool:
        return self.cancelled_at is not None

    def to_transaction(self) -> Transaction:
        """Rebuild the canonical value from the stored row."""
        return Transaction(
            uid=self.uid,
            tracking_id=self.tracking_id,
            amount=self.amount,
            currency=self.currency,
            status=self.status,
            normalized_status=NormalizedStatus(self.normalized_status),
            transaction_type=TransactionType(self.transaction_type) if self.transaction_type else None,
            occurred_at=self.occurred_at,
            message=self.message,
            description=self.description,
            card=CardDetails(
                holder=self.card_holder,
                last4=self.card_last4,
                brand=self.card_brand,
                bank=self.card_bank,
                bank_country=self.card_bank_country,
            ),
            customer=CustomerDetails(
                name=self.customer_name,
                email=self.customer_email,
                phone=self.customer_phone,
                ip=self.customer_ip,
                country=self.customer_country,
                city=self.customer_city,
            ),
            source_channel=SourceChannel(self.source_channel),
            observed_channels=[SourceChannel(c) for c in self.observed_channels],
            raw_payload=self.raw_payload,
        )

    def apply(self, transaction: Transaction) -> None:
        """Copy a (merged) canonical value onto this row.

        A soft-cancelled row keeps its ``cancelled`` bucket: later observations
        still update the raw status and every other field for audit, but only
        an explicit recovery operation can move it out of the cancelled state.
        """
        self.uid = transaction.uid
        self.tracking_id = transaction.tracking_id
        self.amount = transaction.amount
        self.currency = transaction.currency
        self.status = transaction.status
        if self.cancelled_at is None:
            self.normalized_status = transaction.normalized_status.value
        self.transaction_type = (
            transaction.transaction_type.value if transaction.transaction_type else None
        )
        self.occurred_at = transaction.occurred_at
        self.message = transaction.message
        self.description = transaction.description
        self.card_holder = transaction.card.holder
        self.card_holder_key = normalize_name(transaction.card.holder)
        self.card_last4 = transaction.card.last4
        self.card_brand = transaction.card.brand
        self.card_bank = transaction.card.bank
        self.card_bank_country = transaction.card.bank_country
        self.customer_name = transaction.customer.name
        self.customer_email = transaction.customer.email
        self.customer_phone = transaction.customer.phone
        self.customer_ip = transaction.customer.ip
        self.customer_country = transaction.customer.country
        self.customer_city = transaction.customer.city
        self.source_channel = transaction.source_channel.value
        self.observed_channels = [c.value for c in transaction.observed_channels]
        self.raw_payload = transaction.raw_payload

    def to_dict(self) -> Dict[str, Any]:
        """Convert the stored transaction to a dictionary (without raw payloads)."""
        return {
            "id": self.id,
            "uid": self.uid,
            "tracking_id": self.tracking_id,
            "amount": str(self.amount) if self.amount is not None else None,
            "currency": self.currency,
            "status": self.status,
            "normalized_status": self.normalized_status,
            "transaction_type": self.transaction_type,
            "occurred_at": self.occurred_at.isoformat() if self.occurred_at else None,
            "card_holder": self.card_holder,
            "card_last4": self.card_last4,
            "card_brand": self.card_brand,
            "customer_name": self.customer_name,
            "customer_email": self.customer_email,
            "source_channel": self.source_channel,
            "contact_id": self.contact_id,
            "match_type": self.match_type,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "ingested_at": self.ingested_at.isoformat() if self.ingested_at else None,
        }


class ManualLink(Base):
    """Operator-confirmed contact link, keyed by a normalized attribute."""
    __tablename__ = "manual_links"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    key: Mapped[str] = mapped_column(String(255), nullable=False)
    contact_id: Mapped[str] = mapped_column(String(36), ForeignKey("contacts.id"), nullable=False)
    source_uid: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        UniqueConstraint("kind", "key", name="uq_manual_links_kind_key"),
        Index("ix_manual_links_contact_id", "contact_id"),
    )


class Order(Base):
    """Internal order; ``provider_uid`` is the UID of the payment that settled it."""
    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    order_number: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    contact_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("contacts.id"), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=OrderStatus.PENDING.value)
    provider_uid: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(14, 2), nullable=True)
    currency: Mapped[Optional[str]] = mapped_column(String(3), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    payments: Mapped[List["Payment"]] = relationship("Payment", back_populates="order")

    __table_args__ = (
        Index("ix_orders_status", "status"),
        Index("ix_orders_provider_uid", "provider_uid"),
    )


class Payment(Base):
    """Ledger payment row. Each payment belongs to exactly one order."""
    __tablename__ = "payments"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("orders.id"), nullable=False)
    contact_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("contacts.id"), nullable=True)
    provider_uid: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    transaction_type: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    order: Mapped["Order"] = relationship("Order", back_populates="payments")

    __table_args__ = (
        Index("ix_payments_provider_uid", "provider_uid"),
        Index("ix_payments_order_id", "order_id"),
        Index("ix_payments_paid_at", "paid_at"),
    )


class RecoveryPlan(_JsonColumnsMixin, Base):
    """Persisted preview of a recovery operation.

    The plan id is the token an execute call must present. Execute refuses a
    plan whose stored params and candidates no longer hash to ``fingerprint``,
    and the cached result makes a repeated execute a replay instead of a
    second mutation.
    """
    __tablename__ = "recovery_plans"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    kind: Mapped[str] = mapped_column(String(20), nullable=False)
    state: Mapped[str] = mapped_column(String(20), nullable=False, default=RecoveryState.PREVIEWED.value)
    params_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    candidates_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    fingerprint: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    stop_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    result_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_recovery_plans_expires_at", "expires_at"),
    )

    @property
    def params(self) -> Dict[str, Any]:
        return self._load(self.params_json) or {}

    @params.setter
    def params(self, value: Optional[Dict[str, Any]]) -> None:
        self.params_json = self._dump(value)

    @property
    def candidates(self) -> List[Any]:
        return self._load(self.candidates_json) or []

    @candidates.setter
    def candidates(self, value: Optional[List[Any]]) -> None:
        self.candidates_json = self._dump(value)

    @property
    def result(self) -> Optional[Dict[str, Any]]:
        return self._load(self.result_json)

    @result.setter
    def result(self, value: Optional[Dict[str, Any]]) -> None:
        self.result_json = self._dump(value)

    def is_expired(self) -> bool:
        """Check if the plan token has expired."""
        return utcnow() > self.expires_at


class TransactionHistory(_JsonColumnsMixin, Base):
    """Audit trail of status transitions on stored transactions."""
    __tablename__ = "transaction_history"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    transaction_id: Mapped[str] = mapped_column(String(36), ForeignKey("transactions.id"), nullable=False, index=True)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    previous_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    new_status: Mapped[str] = mapped_column(String(20), nullable=False)
    source_channel: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    plan_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    detail_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    transaction: Mapped["TransactionRecord"] = relationship("TransactionRecord", back_populates="history")

    __table_args__ = (
        Index("ix_transaction_history_action", "action"),
        Index("ix_transaction_history_created_at", "created_at"),
    )

    @property
    def detail(self) -> Optional[Dict[str, Any]]:
        return self._load(self.detail_json)

    @detail.setter
    def detail(self, value: Optional[Dict[str, Any]]) -> None:
        self.detail_json = self._dump(value)

    def to_dict(self) -> Dict[str, Any]:
        """Convert the history entry to a dictionary."""
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "action": self.action,
            "previous_status": self.previous_status,
            "new_status": self.new_status,
            "source_channel": self.source_channel,
            "plan_id": self.plan_id,
            "detail": self.detail,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
