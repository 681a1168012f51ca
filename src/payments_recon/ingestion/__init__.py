"""Ingestion: status vocabulary, payload shapes, normalization and statement parsing.

``IngestionService`` lives in ``payments_recon.ingestion.service``; it is not
re-exported here because it depends on the database layer, which itself
imports the canonical models from this package.
"""

from .statuses import (
    NormalizedStatus,
    TransactionType,
    SourceChannel,
    CHANNEL_PRECEDENCE,
    to_normalized_status,
    to_transaction_type,
    bucket_status,
)
from .models import (
    Transaction,
    CardDetails,
    CustomerDetails,
    WebhookPayload,
    ApiRecordPayload,
    StatementRowPayload,
)
from .normalizer import (
    normalize_payload,
    merge_transactions,
    validate_uid,
    is_valid_uid,
    minor_to_major,
)
from .names import normalize_email, normalize_name, transliterate
from .statement_parser import StatementParser, StatementParseResult, StatementStats

__all__ = [
    "NormalizedStatus",
    "TransactionType",
    "SourceChannel",
    "CHANNEL_PRECEDENCE",
    "to_normalized_status",
    "to_transaction_type",
    "bucket_status",
    "Transaction",
    "CardDetails",
    "CustomerDetails",
    "WebhookPayload",
    "ApiRecordPayload",
    "StatementRowPayload",
    "normalize_payload",
    "merge_transactions",
    "validate_uid",
    "is_valid_uid",
    "minor_to_major",
    "normalize_email",
    "normalize_name",
    "transliterate",
    "StatementParser",
    "StatementParseResult",
    "StatementStats",
]
