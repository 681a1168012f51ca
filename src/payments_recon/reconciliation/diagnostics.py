"""Ledger diagnostics: anomalies on paid orders, independent of any statement."""

import logging
from collections import defaultdict
from typing import Dict, List, Optional, Set, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import Order, Payment
from ..database.repository import LedgerRepository
from .models import Diagnosis, DiagnosisRecord, DiagnosticsReport

logger = logging.getLogger(__name__)

# (order_id, payment_id or None when the claim is the order's own provider_uid)
_Claim = Tuple[str, Optional[str]]


class DiagnosticsAnalyzer:
    """Classifies paid orders into at most one diagnosis each.

    Priority, most severe first: ``MISMATCH_DUPLICATE_ORDER`` (the same
    provider UID is attributed to another order), ``MISSING_PAYMENT_RECORD``
    (no payment row of the order carries its UID), ``NO_PROVIDER_UID``.
    A duplicate is reported once per pair of orders.
    """

    def __init__(self, session: AsyncSession):
        self.ledger = LedgerRepository(session)

    @staticmethod
    def _order_uids(order: Order, payments: List[Payment]) -> List[str]:
        uids = {p.provider_uid for p in payments if p.provider_uid}
        if order.provider_uid:
            uids.add(order.provider_uid)
        return sorted(uids)

    async def _load_claims(self, uids: Set[str]) -> Dict[str, List[_Claim]]:
        claims: Dict[str, List[_Claim]] = defaultdict(list)
        if not uids:
            return claims
        for order in await self.ledger.list_orders_with_uid(uids):
            claims[order.provider_uid].append((order.id, None))
        for payment in await self.ledger.list_payments_with_uid(uids):
            claims[payment.provider_uid].append((payment.order_id, payment.id))
        return claims

    async def run(self) -> DiagnosticsReport:
        """Scan every paid order and return the diagnoses found.

        Returns:
            DiagnosticsReport listing one record per anomalous order.
        """
        orders = await self.ledger.list_paid_orders()
        payments_by_order: Dict[str, List[Payment]] = defaultdict(list)
        for payment in await self.ledger.list_payments_for_orders(o.id for o in orders):
            payments_by_order[payment.order_id].append(payment)

        all_uids: Set[str] = set()
        for order in orders:
            all_uids.update(self._order_uids(order, payments_by_order[order.id]))
        claims = await self._load_claims(all_uids)

        report = DiagnosticsReport(scanned_orders=len(orders))
        covered: Set[str] = set()

        for order in orders:
            if order.id in covered:
                continue
            payments = payments_by_order[order.id]
            record = self._diagnose(order, payments, claims)
            if record is None:
                continue
            if record.conflicting_order_id:
                covered.add(record.conflicting_order_id)
            report.records.append(record)

        logger.info(
            f"Diagnostics scanned {report.scanned_orders} paid orders: "
            + ", ".join(f"{k}={v}" for k, v in report.counts().items())
        )
        return report

    def _diagnose(
        self,
        order: Order,
        payments: List[Payment],
        claims: Dict[str, List[_Claim]],
    ) -> Optional[DiagnosisRecord]:
        for uid in self._order_uids(order, payments):
            others = [c for c in claims.get(uid, []) if c[0] != order.id]
            if not others:
                continue
            # prefer a conflicting payment row over a bare order reference
            others.sort(key=lambda c: (c[1] is None, c[0]))
            other_order_id, other_payment_id = others[0]
            own_payment = next((p for p in payments if p.provider_uid == uid), None)
            return DiagnosisRecord(
                order_id=order.id,
                diagnosis=Diagnosis.MISMATCH_DUPLICATE_ORDER,
                detail=f"Provider UID {uid} is linked to orders {order.id} and {other_order_id}",
                provider_uid=uid,
                payment_id=own_payment.id if own_payment else None,
                conflicting_order_id=other_order_id,
                conflicting_payment_id=other_payment_id,
            )

        if not order.provider_uid:
            if any(p.provider_uid for p in payments):
                return None
            return DiagnosisRecord(
                order_id=order.id,
                diagnosis=Diagnosis.NO_PROVIDER_UID,
                detail=f"Paid order {order.order_number or order.id} has no provider UID",
            )

        if not any(p.provider_uid == order.provider_uid for p in payments):
            return DiagnosisRecord(
                order_id=order.id,
                diagnosis=Diagnosis.MISSING_PAYMENT_RECORD,
                detail=(
                    f"Paid order {order.order_number or order.id} has no payment record "
                    f"for provider UID {order.provider_uid}"
                ),
                provider_uid=order.provider_uid,
            )
        return None
