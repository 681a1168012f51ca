"""Service layer for reconciliation and diagnostics runs."""

import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from ..config import RecoverySettings
from ..database.models import Payment, new_id, utcnow
from ..database.repository import LedgerRepository
from ..errors import ValidationError
from ..ingestion.models import Transaction
from ..ingestion.normalizer import normalize_payload
from ..ingestion.statement_parser import StatementParser
from ..ingestion.statuses import (
    SourceChannel,
    bucket_status,
    to_normalized_status,
    to_transaction_type,
)
from .diagnostics import DiagnosticsAnalyzer
from .models import (
    DiagnosticsReport,
    LedgerEntry,
    ReconciliationReport,
    ReconciliationStatus,
    StatementEntry,
)
from .reconciler import Reconciler
from .report import ReportGenerator

logger = logging.getLogger(__name__)


def statement_entry(transaction: Transaction) -> StatementEntry:
    """Project a canonical transaction onto the statement side of the diff."""
    return StatementEntry(
        uid=transaction.uid,
        status=transaction.normalized_status,
        transaction_type=transaction.effective_type,
        amount=transaction.amount,
        currency=transaction.currency,
        occurred_at=transaction.occurred_at,
    )


def ledger_entry(payment: Payment, order_status: Optional[str] = None) -> LedgerEntry:
    """Project a ledger payment onto the ledger side of the diff."""
    transaction_type = to_transaction_type(payment.transaction_type) if payment.transaction_type else None
    status = to_normalized_status(payment.status)
    if status is not None and transaction_type is not None:
        status = bucket_status(status, transaction_type)
    return LedgerEntry(
        order_id=payment.order_id,
        payment_id=payment.id,
        contact_id=payment.contact_id,
        linked_uid=payment.provider_uid.strip().lower() if payment.provider_uid else None,
        order_status=order_status,
        status=status,
        transaction_type=transaction_type,
        amount=payment.amount,
        currency=payment.currency,
        paid_at=payment.paid_at or payment.created_at,
    )


class ReconciliationService:
    """Service for running statement reconciliation and ledger diagnostics."""

    def __init__(
        self,
        session: AsyncSession,
        settings: Optional[RecoverySettings] = None,
        amount_tolerance: Decimal = Decimal("0"),
    ):
        """Initialize the reconciliation service.

        Args:
            session: Async database session.
            settings: Runtime settings; read from the environment if omitted.
            amount_tolerance: Amount difference still treated as equal.
        """
        self.session = session
        self.settings = settings or RecoverySettings.from_env()
        self.ledger = LedgerRepository(session)
        self.amount_tolerance = amount_tolerance

    @staticmethod
    def _statement_window(
        transactions: Sequence[Transaction],
        start_time: Optional[datetime],
        end_time: Optional[datetime],
    ) -> Tuple[Optional[datetime], Optional[datetime]]:
        """Fill an open window edge from the statement's own timestamp range."""
        stamps = [t.occurred_at for t in transactions if t.occurred_at is not None]
        if start_time is None and stamps:
            start_time = min(stamps)
        if end_time is None and stamps:
            end_time = max(stamps)
        return start_time, end_time

    async def fetch_ledger_entries(
        self,
        start_time: Optional[datetime],
        end_time: Optional[datetime],
    ) -> List[LedgerEntry]:
        """Fetch the ledger side of the diff for a window.

        Args:
            start_time: Start of the window (inclusive).
            end_time: End of the window (inclusive).

        Returns:
            List of LedgerEntry objects, one per payment.
        """
        payments = await self.ledger.list_payments_in_window(start_time, end_time)
        orders = await self.ledger.get_orders_by_id(p.order_id for p in payments)
        entries = [
            ledger_entry(p, orders[p.order_id].status if p.order_id in orders else None)
            for p in payments
        ]
        logger.info(f"Fetched {len(entries)} ledger payments")
        return entries

    async def reconcile_statement(
        self,
        transactions: Sequence[Transaction],
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
        invalid_rows: int = 0,
    ) -> ReconciliationReport:
        """Diff normalized statement transactions against the ledger.

        When a window edge is omitted it is taken from the statement itself.
        Statement rows outside the window are counted and left out of the diff.

        Args:
            transactions: Normalized statement transactions.
            start_time: Start of the window to reconcile.
            end_time: End of the window to reconcile.
            invalid_rows: Rows already rejected while parsing, carried into the report.

        Returns:
            ReconciliationReport with results.
        """
        report_id = new_id()
        start_time, end_time = self._statement_window(transactions, start_time, end_time)

        in_window: List[StatementEntry] = []
        out_of_window = 0
        for transaction in transactions:
            ts = transaction.occurred_at
            if ts is not None and (
                (start_time is not None and ts < start_time)
                or (end_time is not None and ts > end_time)
            ):
                out_of_window += 1
                continue
            in_window.append(statement_entry(transaction))

        logger.info(
            f"Starting reconciliation job {report_id} "
            f"from {start_time} to {end_time}"
        )

        try:
            ledger_entries = await self.fetch_ledger_entries(start_time, end_time)
            reconciler = Reconciler(
                amount_tolerance=self.amount_tolerance,
                sample_size=self.settings.sample_size,
            )
            report = reconciler.reconcile(in_window, ledger_entries, report_id=report_id)
        except Exception as e:
            logger.error(f"Reconciliation job {report_id} failed: {e}")
            report = ReconciliationReport(
                id=report_id,
                status=ReconciliationStatus.FAILED,
                error_message=str(e),
                completed_at=utcnow(),
            )

        report.start_time = start_time
        report.end_time = end_time
        report.statement_invalid_rows = invalid_rows
        report.statement_out_of_window = out_of_window
        return report

    async def reconcile_rows(
        self,
        rows: Sequence[Dict[str, Any]],
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> ReconciliationReport:
        """Normalize already-parsed statement rows and reconcile them.

        Rows that fail validation are skipped and counted.
        """
        transactions: List[Transaction] = []
        invalid = 0
        for index, row in enumerate(rows):
            try:
                transactions.append(normalize_payload(row, SourceChannel.FILE_IMPORT))
            except ValidationError as e:
                invalid += 1
                logger.warning(f"Skipping statement row {index}: {e}")
        return await self.reconcile_statement(transactions, start_time, end_time, invalid_rows=invalid)

    async def reconcile_file(
        self,
        content: bytes,
        filename: str,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None,
    ) -> ReconciliationReport:
        """Parse a CSV/XLSX statement and reconcile it.

        Raises:
            ValidationError: If the file cannot be parsed at all.
        """
        parsed = StatementParser().parse(content, filename)
        return await self.reconcile_statement(
            parsed.transactions,
            start_time,
            end_time,
            invalid_rows=parsed.invalid_rows,
        )

    async def run_diagnostics(self) -> DiagnosticsReport:
        """Scan paid orders for ledger anomalies."""
        return await DiagnosticsAnalyzer(self.session).run()

    def generate_report(
        self,
        report: ReconciliationReport,
        format: str = "json",
        include_details: bool = True,
    ) -> str:
        """Generate a formatted report from reconciliation results.

        Args:
            report: ReconciliationReport to format.
            format: Output format ('json', 'csv', 'text', 'detailed_text').
            include_details: Include sample records (for JSON format).

        Returns:
            Formatted report string.
        """
        generator = ReportGenerator(report)

        if format == "json":
            return generator.to_json(include_details=include_details)
        elif format == "csv":
            return generator.to_csv(record_type="all")
        elif format == "text":
            return generator.to_summary_text()
        elif format == "detailed_text":
            return generator.to_detailed_text()
        else:
            raise ValueError(f"Unsupported report format: {format}")
