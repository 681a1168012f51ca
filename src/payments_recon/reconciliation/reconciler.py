"""Three-way diff between a provider statement and the internal ledger."""

import logging
from decimal import Decimal
from typing import Dict, List, Optional, Sequence, Tuple

from ..database.models import new_id, utcnow
from .models import (
    DiscrepancyRecord,
    DiscrepancyType,
    LedgerEntry,
    MatchedRecord,
    ReconciliationReport,
    ReconciliationStatus,
    StatementEntry,
    UnmatchedRecord,
)

logger = logging.getLogger(__name__)


class Reconciler:
    """Reconciliation engine comparing statement entries with ledger entries by UID.

    Every UID is classified exactly once per side: present on both sides is
    ``matched`` (status, amount and type mismatches are subsets of matched),
    statement-only is ``missing_in_ledger``, ledger-only is ``extra_in_ledger``.
    Nothing is mutated; the report is the only output.
    """

    def __init__(
        self,
        amount_tolerance: Decimal = Decimal("0"),
        sample_size: int = 20,
    ):
        """Initialize the reconciler.

        Args:
            amount_tolerance: Largest absolute difference, in major currency
                units, still treated as equal. Set to 0 for exact matching.
            sample_size: Records kept per report bucket.
        """
        self.amount_tolerance = Decimal(amount_tolerance)
        self.sample_size = sample_size

    def _amounts_match(self, statement: StatementEntry, ledger: LedgerEntry) -> bool:
        """Compare amounts in major units; refunds may be signed on either side."""
        if statement.currency and ledger.currency and statement.currency.upper() != ledger.currency.upper():
            return False
        if statement.amount is None or ledger.amount is None:
            return statement.amount is None and ledger.amount is None
        return abs(abs(statement.amount) - abs(ledger.amount)) <= self.amount_tolerance

    def _compare(
        self,
        uid: str,
        statement: StatementEntry,
        ledger: LedgerEntry,
    ) -> List[DiscrepancyRecord]:
        discrepancies: List[DiscrepancyRecord] = []

        if statement.status != ledger.status:
            discrepancies.append(DiscrepancyRecord(
                uid=uid,
                order_id=ledger.order_id,
                payment_id=ledger.payment_id,
                discrepancy_type=DiscrepancyType.STATUS_MISMATCH,
                field_name="status",
                statement_value=statement.status.value,
                ledger_value=ledger.status.value if ledger.status else None,
            ))

        if not self._amounts_match(statement, ledger):
            discrepancies.append(DiscrepancyRecord(
                uid=uid,
                order_id=ledger.order_id,
                payment_id=ledger.payment_id,
                discrepancy_type=DiscrepancyType.AMOUNT_MISMATCH,
                field_name="amount",
                statement_value=f"{statement.amount} {statement.currency or ''}".strip(),
                ledger_value=f"{ledger.amount} {ledger.currency or ''}".strip(),
            ))

        if ledger.transaction_type is not None and statement.transaction_type != ledger.transaction_type:
            discrepancies.append(DiscrepancyRecord(
                uid=uid,
                order_id=ledger.order_id,
                payment_id=ledger.payment_id,
                discrepancy_type=DiscrepancyType.TYPE_MISMATCH,
                field_name="transaction_type",
                statement_value=statement.transaction_type.value,
                ledger_value=ledger.transaction_type.value,
            ))

        return discrepancies

    @staticmethod
    def _index_ledger(ledger_entries: Sequence[LedgerEntry]) -> Tuple[Dict[str, LedgerEntry], int, int]:
        by_uid: Dict[str, LedgerEntry] = {}
        duplicates = 0
        without_uid = 0
        for entry in ledger_entries:
            if not entry.linked_uid:
                without_uid += 1
                continue
            if entry.linked_uid in by_uid:
                duplicates += 1
                continue
            by_uid[entry.linked_uid] = entry
        return by_uid, duplicates, without_uid

    def _sample(self, items: List, item) -> None:
        if len(items) < self.sample_size:
            items.append(item)

    def reconcile(
        self,
        statement_entries: Sequence[StatementEntry],
        ledger_entries: Sequence[LedgerEntry],
        report_id: Optional[str] = None,
    ) -> ReconciliationReport:
        """Diff ``statement_entries`` against ``ledger_entries``.

        The reconciliation process:
        1. Build UID-keyed maps for both sides (first occurrence wins)
        2. Classify statement UIDs as matched or missing in the ledger
        3. Compare matched pairs field by field
        4. Classify the remaining ledger UIDs as extra in the ledger

        Args:
            statement_entries: Statement side, in statement order.
            ledger_entries: Ledger side for the same window.
            report_id: Optional report id; generated when omitted.

        Returns:
            ReconciliationReport with exact counts, samples and summaries.
        """
        report = ReconciliationReport(
            id=report_id or new_id(),
            status=ReconciliationStatus.IN_PROGRESS,
            sample_size=self.sample_size,
        )

        statement_by_uid: Dict[str, StatementEntry] = {}
        for entry in statement_entries:
            if entry.uid in statement_by_uid:
                report.statement_duplicates += 1
                continue
            statement_by_uid[entry.uid] = entry

        ledger_by_uid, report.ledger_duplicates, report.ledger_without_uid = self._index_ledger(ledger_entries)
        report.statement_count = len(statement_by_uid)
        report.ledger_count = len(ledger_by_uid)

        logger.info(
            f"Starting reconciliation: {report.statement_count} statement, "
            f"{report.ledger_count} ledger transactions"
        )

        for uid, statement in statement_by_uid.items():
            report.statement_summary.add(statement.status, statement.amount)
            ledger = ledger_by_uid.get(uid)
            if ledger is None:
                report.missing_in_ledger_count += 1
                self._sample(report.missing_in_ledger, UnmatchedRecord(
                    source="statement",
                    uid=uid,
                    amount=statement.amount,
                    currency=statement.currency,
                    status=statement.status,
                    occurred_at=statement.occurred_at,
                    reason=DiscrepancyType.MISSING_IN_LEDGER,
                ))
                continue

            report.matched_count += 1
            self._sample(report.matched, MatchedRecord(
                uid=uid,
                order_id=ledger.order_id,
                payment_id=ledger.payment_id,
                amount=statement.amount,
                currency=statement.currency,
                status=statement.status,
            ))
            for discrepancy in self._compare(uid, statement, ledger):
                if discrepancy.discrepancy_type == DiscrepancyType.STATUS_MISMATCH:
                    report.status_mismatch_count += 1
                    self._sample(report.status_mismatches, discrepancy)
                elif discrepancy.discrepancy_type == DiscrepancyType.AMOUNT_MISMATCH:
                    report.amount_mismatch_count += 1
                    self._sample(report.amount_mismatches, discrepancy)
                else:
                    report.type_mismatch_count += 1
                    self._sample(report.type_mismatches, discrepancy)

        for uid, ledger in ledger_by_uid.items():
            report.ledger_summary.add(ledger.status, ledger.amount)
            if uid in statement_by_uid:
                continue
            report.extra_in_ledger_count += 1
            self._sample(report.extra_in_ledger, UnmatchedRecord(
                source="ledger",
                uid=uid,
                amount=ledger.amount,
                currency=ledger.currency,
                status=ledger.status,
                occurred_at=ledger.paid_at,
                order_id=ledger.order_id,
                payment_id=ledger.payment_id,
                reason=DiscrepancyType.EXTRA_IN_LEDGER,
            ))

        report.status = ReconciliationStatus.COMPLETED
        report.completed_at = utcnow()

        logger.info(
            f"Reconciliation complete: {report.matched_count} matched, "
            f"{report.missing_in_ledger_count} missing in ledger, "
            f"{report.extra_in_ledger_count} extra in ledger"
        )
        return report
