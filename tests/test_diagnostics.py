"""Tests for ledger diagnostics."""

from decimal import Decimal

from payments_recon.database import Order, Payment
from payments_recon.reconciliation import Diagnosis, DiagnosticsAnalyzer, diagnostics_to_text


async def add_order(session, provider_uid=None, status="paid", order_number=None):
    order = Order(status=status, provider_uid=provider_uid, order_number=order_number)
    session.add(order)
    await session.flush()
    return order


async def add_payment_row(session, order, provider_uid=None):
    payment = Payment(
        order_id=order.id,
        provider_uid=provider_uid,
        amount=Decimal("100.00"),
        currency="BYN",
        status="successful",
    )
    session.add(payment)
    await session.flush()
    return payment


class TestDiagnosticsAnalyzer:
    """Tests for the DiagnosticsAnalyzer class."""

    async def test_healthy_order_has_no_diagnosis(self, db_session, uid_factory):
        """Test that a paid order with its payment record is clean."""
        order = await add_order(db_session, uid_factory(1))
        await add_payment_row(db_session, order, uid_factory(1))

        report = await DiagnosticsAnalyzer(db_session).run()

        assert report.scanned_orders == 1
        assert report.records == []

    async def test_duplicate_reported_once_per_pair(self, db_session, uid_factory):
        """Test that two orders sharing a UID produce one diagnosis."""
        uid = uid_factory(2)
        first = await add_order(db_session, uid)
        second = await add_order(db_session, uid)
        await add_payment_row(db_session, first, uid)
        await add_payment_row(db_session, second, uid)

        report = await DiagnosticsAnalyzer(db_session).run()

        assert len(report.records) == 1
        record = report.records[0]
        assert record.diagnosis == Diagnosis.MISMATCH_DUPLICATE_ORDER
        assert record.provider_uid == uid
        assert {record.order_id, record.conflicting_order_id} == {first.id, second.id}
        assert record.conflicting_payment_id is not None

    async def test_missing_payment_record(self, db_session, uid_factory):
        """Test a paid order whose UID has no payment row."""
        order = await add_order(db_session, uid_factory(3), order_number="A-1001")

        report = await DiagnosticsAnalyzer(db_session).run()

        assert [r.diagnosis for r in report.records] == [Diagnosis.MISSING_PAYMENT_RECORD]
        assert report.records[0].order_id == order.id
        assert "A-1001" in report.records[0].detail

    async def test_no_provider_uid(self, db_session):
        """Test a paid order with no UID anywhere."""
        order = await add_order(db_session)
        await add_payment_row(db_session, order)

        report = await DiagnosticsAnalyzer(db_session).run()

        assert [r.diagnosis for r in report.records] == [Diagnosis.NO_PROVIDER_UID]

    async def test_duplicate_outranks_missing_payment(self, db_session, uid_factory):
        """Test that the most severe diagnosis wins for an order."""
        uid = uid_factory(4)
        # no payment row of its own, and the UID belongs to another order's payment
        await add_order(db_session, uid)
        other = await add_order(db_session)
        await add_payment_row(db_session, other, uid)

        report = await DiagnosticsAnalyzer(db_session).run()

        counts = report.counts()
        assert counts[Diagnosis.MISMATCH_DUPLICATE_ORDER.value] == 1
        assert counts[Diagnosis.MISSING_PAYMENT_RECORD.value] == 0
        assert counts[Diagnosis.NO_PROVIDER_UID.value] == 0

    async def test_unpaid_orders_not_scanned(self, db_session, uid_factory):
        """Test that only paid orders are diagnosed."""
        await add_order(db_session, status="pending")
        await add_order(db_session, uid_factory(5), status="cancelled")

        report = await DiagnosticsAnalyzer(db_session).run()

        assert report.scanned_orders == 0
        assert report.records == []

    async def test_text_rendering(self, db_session):
        """Test the plain-text rendering."""
        await add_order(db_session, order_number="A-2002")

        report = await DiagnosticsAnalyzer(db_session).run()
        text = diagnostics_to_text(report)

        assert "Paid orders scanned: 1" in text
        assert "NO_PROVIDER_UID: 1" in text
        assert "A-2002" in text
