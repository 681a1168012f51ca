"""Tests for the statement-vs-ledger reconciler and its service."""

from datetime import datetime
from decimal import Decimal

import pytest

from payments_recon.ingestion.statuses import NormalizedStatus, TransactionType
from payments_recon.reconciliation import (
    DiscrepancyType,
    LedgerEntry,
    ReconciliationService,
    ReconciliationStatus,
    Reconciler,
    StatementEntry,
)


def statement(uid, status=NormalizedStatus.SUCCESSFUL, amount="100.00", currency="BYN",
              transaction_type=TransactionType.PAYMENT):
    return StatementEntry(
        uid=uid,
        status=status,
        amount=Decimal(amount) if amount is not None else None,
        currency=currency,
        transaction_type=transaction_type,
        occurred_at=datetime(2024, 1, 15, 10, 0),
    )


def ledger(uid, status=NormalizedStatus.SUCCESSFUL, amount="100.00", currency="BYN",
           transaction_type=TransactionType.PAYMENT, order_id="order_001"):
    return LedgerEntry(
        order_id=order_id,
        payment_id=f"pay_{order_id}",
        linked_uid=uid,
        status=status,
        amount=Decimal(amount) if amount is not None else None,
        currency=currency,
        transaction_type=transaction_type,
        paid_at=datetime(2024, 1, 15, 10, 0),
    )


class TestReconciler:
    """Tests for the Reconciler class."""

    def test_missing_in_ledger(self, uid_factory):
        """Test a settled statement payment with no ledger record."""
        uid = uid_factory(1)
        report = Reconciler().reconcile([statement(uid)], [])

        assert report.status == ReconciliationStatus.COMPLETED
        assert report.missing_in_ledger_count == 1
        assert report.matched_count == 0
        missing = report.missing_in_ledger[0]
        assert missing.uid == uid
        assert missing.amount == Decimal("100.00")
        assert missing.currency == "BYN"
        assert missing.reason == DiscrepancyType.MISSING_IN_LEDGER
        assert report.statement_summary.net_revenue == Decimal("100.00")
        assert report.ledger_summary.net_revenue == Decimal("0")

    def test_every_uid_classified_once(self, uid_factory):
        """Test that matched + missing and matched + extra add up per side."""
        statements = [statement(uid_factory(n)) for n in range(1, 6)]
        ledgers = [ledger(uid_factory(n), order_id=f"o{n}") for n in range(4, 9)]

        report = Reconciler().reconcile(statements, ledgers)

        assert report.matched_count == 2
        assert report.missing_in_ledger_count == 3
        assert report.extra_in_ledger_count == 3
        assert report.matched_count + report.missing_in_ledger_count == report.statement_count
        assert report.matched_count + report.extra_in_ledger_count == report.ledger_count
        assert report.has_findings

    def test_status_mismatch_is_subset_of_matched(self, uid_factory):
        """Test that a status difference is reported on a matched UID."""
        uid = uid_factory(10)
        report = Reconciler().reconcile(
            [statement(uid)],
            [ledger(uid, status=NormalizedStatus.FAILED)],
        )

        assert report.matched_count == 1
        assert report.status_mismatch_count == 1
        mismatch = report.status_mismatches[0]
        assert mismatch.statement_value == "successful"
        assert mismatch.ledger_value == "failed"

    @pytest.mark.parametrize("tolerance,expected", [
        (Decimal("0"), 1),
        (Decimal("0.01"), 0),
    ])
    def test_amount_tolerance(self, uid_factory, tolerance, expected):
        """Test that the tolerance absorbs rounding differences."""
        uid = uid_factory(11)
        report = Reconciler(amount_tolerance=tolerance).reconcile(
            [statement(uid, amount="100.00")],
            [ledger(uid, amount="100.01")],
        )
        assert report.amount_mismatch_count == expected

    def test_signed_refund_matches(self, uid_factory):
        """Test that amounts are compared by absolute value."""
        uid = uid_factory(12)
        report = Reconciler().reconcile(
            [statement(uid, status=NormalizedStatus.REFUNDED, amount="-50.00",
                       transaction_type=TransactionType.REFUND)],
            [ledger(uid, status=NormalizedStatus.REFUNDED, amount="50.00",
                    transaction_type=TransactionType.REFUND)],
        )
        assert report.amount_mismatch_count == 0
        assert not report.has_findings

    def test_currency_mismatch_is_amount_mismatch(self, uid_factory):
        """Test that equal numbers in different currencies do not match."""
        uid = uid_factory(13)
        report = Reconciler().reconcile([statement(uid)], [ledger(uid, currency="USD")])
        assert report.amount_mismatch_count == 1

    def test_type_mismatch_needs_ledger_type(self, uid_factory):
        """Test that a ledger without a type never reports a type mismatch."""
        uid_a, uid_b = uid_factory(14), uid_factory(15)
        report = Reconciler().reconcile(
            [statement(uid_a), statement(uid_b)],
            [
                ledger(uid_a, transaction_type=TransactionType.REFUND, order_id="a"),
                ledger(uid_b, transaction_type=None, order_id="b"),
            ],
        )
        assert report.type_mismatch_count == 1
        assert report.type_mismatches[0].uid == uid_a

    def test_duplicates_and_missing_uids_counted(self, uid_factory):
        """Test that repeated UIDs and unlinked payments are counted, not diffed."""
        uid = uid_factory(16)
        unlinked = ledger(None, order_id="no-uid")
        report = Reconciler().reconcile(
            [statement(uid), statement(uid)],
            [ledger(uid), ledger(uid, order_id="dup"), unlinked],
        )

        assert report.statement_duplicates == 1
        assert report.ledger_duplicates == 1
        assert report.ledger_without_uid == 1
        assert report.matched_count == 1

    def test_samples_are_bounded_counts_are_exact(self, uid_factory):
        """Test that record lists are samples while counts stay exact."""
        statements = [statement(uid_factory(n)) for n in range(100, 105)]
        report = Reconciler(sample_size=2).reconcile(statements, [])

        assert report.missing_in_ledger_count == 5
        assert len(report.missing_in_ledger) == 2


class TestReconciliationService:
    """Tests for the ReconciliationService class."""

    async def test_rows_against_ledger(self, db_session, settings, add_payment, statement_row, uid_factory):
        """Test reconciling parsed rows against stored ledger payments."""
        await add_payment(uid_factory(1))
        await add_payment(uid_factory(2), status="failed")
        service = ReconciliationService(db_session, settings)

        report = await service.reconcile_rows(
            [
                statement_row(uid_factory(1)),
                statement_row(uid_factory(2)),
                statement_row(uid_factory(3)),
                statement_row("broken"),
            ],
            datetime(2024, 1, 1),
            datetime(2024, 1, 31),
        )

        assert report.status == ReconciliationStatus.COMPLETED
        assert report.statement_count == 3
        assert report.ledger_count == 2
        assert report.matched_count == 2
        assert report.missing_in_ledger_count == 1
        assert report.missing_in_ledger[0].uid == uid_factory(3)
        assert report.status_mismatch_count == 1
        assert report.statement_invalid_rows == 1

    async def test_open_window_taken_from_statement(self, db_session, settings, add_payment, statement_row, uid_factory):
        """Test that a missing window is derived from the statement rows."""
        await add_payment(uid_factory(5), paid_at=datetime(2024, 3, 1))
        service = ReconciliationService(db_session, settings)

        report = await service.reconcile_rows([statement_row(uid_factory(6))])

        assert report.start_time == datetime(2024, 1, 15, 10, 0)
        assert report.end_time == datetime(2024, 1, 15, 10, 0)
        assert report.extra_in_ledger_count == 0
        assert report.missing_in_ledger_count == 1

    async def test_out_of_window_rows_counted(self, db_session, settings, statement_row, uid_factory):
        """Test that rows outside an explicit window are left out of the diff."""
        service = ReconciliationService(db_session, settings)

        report = await service.reconcile_rows(
            [
                statement_row(uid_factory(7)),
                statement_row(uid_factory(8), occurred_at="2024-02-20 10:00:00"),
            ],
            datetime(2024, 1, 1),
            datetime(2024, 1, 31),
        )

        assert report.statement_out_of_window == 1
        assert report.statement_count == 1

    async def test_refund_bucketed_on_ledger_side(self, db_session, settings, add_payment, statement_row, uid_factory):
        """Test that a successful ledger refund compares as refunded."""
        await add_payment(uid_factory(9), amount="40.00", transaction_type="refund")
        service = ReconciliationService(db_session, settings)

        report = await service.reconcile_rows(
            [statement_row(uid_factory(9), status="Успешно", transaction_type="Возврат", amount="-40,00")],
            datetime(2024, 1, 1),
            datetime(2024, 1, 31),
        )

        assert report.matched_count == 1
        assert not report.has_findings

    async def test_unknown_report_format(self, db_session, settings):
        """Test that an unsupported format raises ValueError."""
        service = ReconciliationService(db_session, settings)
        report = Reconciler().reconcile([], [])
        with pytest.raises(ValueError):
            service.generate_report(report, format="xml")
