"""Models for statement reconciliation and ledger diagnostics."""

import enum
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from ..database.models import utcnow
from ..ingestion.statuses import NormalizedStatus, TransactionType


class DiscrepancyType(str, enum.Enum):
    """Types of discrepancies found when diffing a statement against the ledger."""
    MISSING_IN_LEDGER = "missing_in_ledger"
    EXTRA_IN_LEDGER = "extra_in_ledger"
    STATUS_MISMATCH = "status_mismatch"
    AMOUNT_MISMATCH = "amount_mismatch"
    TYPE_MISMATCH = "type_mismatch"


class ReconciliationStatus(str, enum.Enum):
    """Status of a reconciliation run."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class Diagnosis(str, enum.Enum):
    """Ledger anomalies, most severe first."""
    MISMATCH_DUPLICATE_ORDER = "MISMATCH_DUPLICATE_ORDER"
    MISSING_PAYMENT_RECORD = "MISSING_PAYMENT_RECORD"
    NO_PROVIDER_UID = "NO_PROVIDER_UID"


class StatementEntry(BaseModel):
    """External (statement) side of the diff."""
    uid: str = Field(..., description="Provider transaction UID")
    status: NormalizedStatus = Field(..., description="Normalized status bucket")
    transaction_type: TransactionType = Field(default=TransactionType.PAYMENT)
    amount: Optional[Decimal] = Field(None, description="Amount in major currency units")
    currency: Optional[str] = None
    occurred_at: Optional[datetime] = None


class LedgerEntry(BaseModel):
    """Internal side of the diff: one order/payment pair."""
    order_id: str = Field(..., description="Internal order ID")
    payment_id: Optional[str] = Field(None, description="Internal payment ID")
    contact_id: Optional[str] = None
    linked_uid: Optional[str] = Field(None, description="Provider UID the payment is linked to")
    order_status: Optional[str] = None
    status: Optional[NormalizedStatus] = Field(None, description="Payment status bucket")
    transaction_type: Optional[TransactionType] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    paid_at: Optional[datetime] = None


class MatchedRecord(BaseModel):
    """A UID present on both sides."""
    uid: str
    order_id: str
    payment_id: Optional[str] = None
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    status: NormalizedStatus


class UnmatchedRecord(BaseModel):
    """A UID present on one side only."""
    source: str = Field(..., description="Side the record exists on ('statement' or 'ledger')")
    uid: str
    amount: Optional[Decimal] = None
    currency: Optional[str] = None
    status: Optional[NormalizedStatus] = None
    occurred_at: Optional[datetime] = None
    order_id: Optional[str] = None
    payment_id: Optional[str] = None
    reason: DiscrepancyType


class DiscrepancyRecord(BaseModel):
    """A field that differs between the two sides of a matched UID."""
    uid: str
    order_id: str
    payment_id: Optional[str] = None
    discrepancy_type: DiscrepancyType
    field_name: str
    statement_value: Any = None
    ledger_value: Any = None


class BucketTotal(BaseModel):
    """Count and amount for one status bucket."""
    count: int = 0
    amount: Decimal = Decimal("0")


class SideSummary(BaseModel):
    """Totals per normalized status for one side of the diff."""
    total_count: int = 0
    total_amount: Decimal = Decimal("0")
    by_status: Dict[str, BucketTotal] = Field(
        default_factory=lambda: {s.value: BucketTotal() for s in NormalizedStatus}
    )

    def add(self, status: Optional[NormalizedStatus], amount: Optional[Decimal]) -> None:
        value = abs(amount) if amount is not None else Decimal("0")
        self.total_count += 1
        self.total_amount += value
        if status is not None:
            bucket = self.by_status[status.value]
            bucket.count += 1
            bucket.amount += value

    @property
    def net_revenue(self) -> Decimal:
        return (
            self.by_status[NormalizedStatus.SUCCESSFUL.value].amount
            - self.by_status[NormalizedStatus.REFUNDED.value].amount
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_count": self.total_count,
            "total_amount": str(self.total_amount),
            "net_revenue": str(self.net_revenue),
            "by_status": {
                status: {"count": bucket.count, "amount": str(bucket.amount)}
                for status, bucket in self.by_status.items()
            },
        }


class ReconciliationReport(BaseModel):
    """Statement-vs-ledger diff. Counts are exact; record lists are samples."""
    id: str = Field(..., description="Report ID")
    status: ReconciliationStatus = Field(default=ReconciliationStatus.PENDING)
    start_time: Optional[datetime] = Field(None, description="Start of the reconciled window")
    end_time: Optional[datetime] = Field(None, description="End of the reconciled window")
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    sample_size: int = Field(default=20)

    # Statistics
    statement_count: int = Field(default=0, description="Distinct statement UIDs compared")
    ledger_count: int = Field(default=0, description="Distinct ledger UIDs compared")
    matched_count: int = 0
    missing_in_ledger_count: int = 0
    extra_in_ledger_count: int = 0
    status_mismatch_count: int = 0
    amount_mismatch_count: int = 0
    type_mismatch_count: int = 0
    statement_duplicates: int = Field(default=0, description="Repeated UIDs merged in the statement")
    statement_invalid_rows: int = Field(default=0, description="Statement rows skipped by validation")
    statement_out_of_window: int = 0
    ledger_duplicates: int = 0
    ledger_without_uid: int = Field(default=0, description="Ledger payments with no provider UID")

    # Samples
    matched: List[MatchedRecord] = Field(default_factory=list)
    missing_in_ledger: List[UnmatchedRecord] = Field(default_factory=list)
    extra_in_ledger: List[UnmatchedRecord] = Field(default_factory=list)
    status_mismatches: List[DiscrepancyRecord] = Field(default_factory=list)
    amount_mismatches: List[DiscrepancyRecord] = Field(default_factory=list)
    type_mismatches: List[DiscrepancyRecord] = Field(default_factory=list)

    statement_summary: SideSummary = Field(default_factory=SideSummary)
    ledger_summary: SideSummary = Field(default_factory=SideSummary)

    error_message: Optional[str] = None

    @property
    def has_findings(self) -> bool:
        return bool(
            self.missing_in_ledger_count
            or self.extra_in_ledger_count
            or self.status_mismatch_count
            or self.amount_mismatch_count
            or self.type_mismatch_count
        )

    def to_summary_dict(self) -> Dict[str, Any]:
        """Return the report statistics without sample records."""
        return {
            "id": self.id,
            "status": self.status.value,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "statistics": {
                "statement_count": self.statement_count,
                "ledger_count": self.ledger_count,
                "matched": self.matched_count,
                "missing_in_ledger": self.missing_in_ledger_count,
                "extra_in_ledger": self.extra_in_ledger_count,
                "status_mismatch": self.status_mismatch_count,
                "amount_mismatch": self.amount_mismatch_count,
                "type_mismatch": self.type_mismatch_count,
                "statement_duplicates": self.statement_duplicates,
                "statement_invalid_rows": self.statement_invalid_rows,
                "statement_out_of_window": self.statement_out_of_window,
                "ledger_duplicates": self.ledger_duplicates,
                "ledger_without_uid": self.ledger_without_uid,
                "match_rate": (
                    f"{(self.matched_count / self.statement_count * 100):.2f}%"
                    if self.statement_count > 0 else "N/A"
                ),
            },
            "statement_summary": self.statement_summary.to_dict(),
            "ledger_summary": self.ledger_summary.to_dict(),
            "error_message": self.error_message,
        }

    def to_full_dict(self) -> Dict[str, Any]:
        """Return the report including sample records."""
        result = self.to_summary_dict()
        for name in (
            "matched",
            "missing_in_ledger",
            "extra_in_ledger",
            "status_mismatches",
            "amount_mismatches",
            "type_mismatches",
        ):
            result[name] = [r.model_dump(mode="json") for r in getattr(self, name)]
        return result


class ReconciliationRequest(BaseModel):
    """Request model for reconciling already-parsed statement rows."""
    rows: List[Dict[str, Any]] = Field(..., description="Statement rows (statement field names)")
    start_time: Optional[datetime] = Field(None, description="Start of the window to reconcile")
    end_time: Optional[datetime] = Field(None, description="End of the window to reconcile")
    include_details: bool = Field(default=True, description="Include sample records in the response")


class DiagnosisRecord(BaseModel):
    """One anomaly found on a paid order."""
    order_id: str
    diagnosis: Diagnosis
    detail: str = Field(..., description="Human-readable explanation")
    provider_uid: Optional[str] = None
    payment_id: Optional[str] = None
    conflicting_order_id: Optional[str] = None
    conflicting_payment_id: Optional[str] = None


class DiagnosticsReport(BaseModel):
    """Result of a ledger diagnostics scan."""
    scanned_orders: int = 0
    records: List[DiagnosisRecord] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)

    def counts(self) -> Dict[str, int]:
        counts = {d.value: 0 for d in Diagnosis}
        for record in self.records:
            counts[record.diagnosis.value] += 1
        return counts
