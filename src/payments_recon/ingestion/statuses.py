"""Closed vocabularies for transaction status and type.

Provider strings arrive in English and Russian, in any case and with stray
whitespace. They are mapped once at ingestion time; every comparison after the
normalizer works on these enums only.
"""

import enum
from typing import Optional, Tuple


class NormalizedStatus(str, enum.Enum):
    """Canonical transaction status buckets."""
    SUCCESSFUL = "successful"
    PENDING = "pending"
    FAILED = "failed"
    REFUNDED = "refunded"
    CANCELLED = "cancelled"


class TransactionType(str, enum.Enum):
    """Canonical transaction types."""
    PAYMENT = "payment"
    REFUND = "refund"
    VOID = "void"
    FEE = "fee"


class SourceChannel(str, enum.Enum):
    """Where an observation of a transaction came from."""
    WEBHOOK = "webhook"
    API_PULL = "api_pull"
    FILE_IMPORT = "file_import"
    MANUAL_RECOVERY = "manual_recovery"


# Lower index wins when a record has been observed through several channels.
CHANNEL_PRECEDENCE: Tuple[SourceChannel, ...] = (
    SourceChannel.WEBHOOK,
    SourceChannel.API_PULL,
    SourceChannel.MANUAL_RECOVERY,
    SourceChannel.FILE_IMPORT,
)

_EXACT_STATUSES = {
    "successful": NormalizedStatus.SUCCESSFUL,
    "succeeded": NormalizedStatus.SUCCESSFUL,
    "success": NormalizedStatus.SUCCESSFUL,
    "completed": NormalizedStatus.SUCCESSFUL,
    "processed": NormalizedStatus.SUCCESSFUL,
    "captured": NormalizedStatus.SUCCESSFUL,
    "paid": NormalizedStatus.SUCCESSFUL,
    "успешно": NormalizedStatus.SUCCESSFUL,
    "успешный": NormalizedStatus.SUCCESSFUL,
    "refund": NormalizedStatus.REFUNDED,
    "refunded": NormalizedStatus.REFUNDED,
    "возврат": NormalizedStatus.REFUNDED,
    "возврат средств": NormalizedStatus.REFUNDED,
    "cancel": NormalizedStatus.CANCELLED,
    "canceled": NormalizedStatus.CANCELLED,
    "cancelled": NormalizedStatus.CANCELLED,
    "void": NormalizedStatus.CANCELLED,
    "voided": NormalizedStatus.CANCELLED,
    "authorization_void": NormalizedStatus.CANCELLED,
    "отмена": NormalizedStatus.CANCELLED,
    "отменен": NormalizedStatus.CANCELLED,
    "failed": NormalizedStatus.FAILED,
    "declined": NormalizedStatus.FAILED,
    "expired": NormalizedStatus.FAILED,
    "incomplete": NormalizedStatus.FAILED,
    "error": NormalizedStatus.FAILED,
    "ошибка": NormalizedStatus.FAILED,
    "неуспешно": NormalizedStatus.FAILED,
    "pending": NormalizedStatus.PENDING,
    "processing": NormalizedStatus.PENDING,
    "ожидание": NormalizedStatus.PENDING,
    "в обработке": NormalizedStatus.PENDING,
}

# Substring fallbacks, checked in order. Refund and cancel come first so that
# "successful_refund"-style strings are not read as plain successes, and the
# negative "неуспешн" before the positive "успешн".
_PARTIAL_STATUSES = (
    ("возврат", NormalizedStatus.REFUNDED),
    ("refund", NormalizedStatus.REFUNDED),
    ("отмен", NormalizedStatus.CANCELLED),
    ("cancel", NormalizedStatus.CANCELLED),
    ("void", NormalizedStatus.CANCELLED),
    ("неуспешн", NormalizedStatus.FAILED),
    ("ошибк", NormalizedStatus.FAILED),
    ("fail", NormalizedStatus.FAILED),
    ("declin", NormalizedStatus.FAILED),
    ("error", NormalizedStatus.FAILED),
    ("unsuccess", NormalizedStatus.FAILED),
    ("успешн", NormalizedStatus.SUCCESSFUL),
    ("success", NormalizedStatus.SUCCESSFUL),
    ("pending", NormalizedStatus.PENDING),
    ("ожидан", NormalizedStatus.PENDING),
)


def to_normalized_status(raw: Optional[str]) -> Optional[NormalizedStatus]:
    """Map a raw provider status to its bucket, or ``None`` if unrecognised."""
    if raw is None:
        return None
    value = str(raw).strip().lower()
    if not value:
        return None
    exact = _EXACT_STATUSES.get(value)
    if exact is not None:
        return exact
    for fragment, status in _PARTIAL_STATUSES:
        if fragment in value:
            return status
    return None


def to_transaction_type(raw: Optional[str]) -> TransactionType:
    """Map a raw transaction type. Missing or unknown types are payments."""
    if raw is None:
        return TransactionType.PAYMENT
    value = str(raw).strip().lower()
    if not value:
        return TransactionType.PAYMENT
    if "возврат" in value or "refund" in value:
        return TransactionType.REFUND
    if "отмен" in value or "void" in value or "cancel" in value:
        return TransactionType.VOID
    if "комисс" in value or value == "fee" or value.startswith("fee_"):
        return TransactionType.FEE
    return TransactionType.PAYMENT


def bucket_status(
    status: NormalizedStatus,
    transaction_type: TransactionType,
) -> NormalizedStatus:
    """Fold the transaction type into the status bucket.

    A successful refund is money going back (``refunded``) and a successful
    void is a cancelled authorisation (``cancelled``); anything else keeps its
    own bucket.
    """
    if status == NormalizedStatus.SUCCESSFUL:
        if transaction_type == TransactionType.REFUND:
            return NormalizedStatus.REFUNDED
        if transaction_type == TransactionType.VOID:
            return NormalizedStatus.CANCELLED
    return status
