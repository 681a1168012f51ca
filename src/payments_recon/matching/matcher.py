"""Contact matching for stored transactions.

Resolution order, first hit wins:

1. a manual link recorded for the transaction's UID
2. a manual link recorded for its normalized customer email
3. a manual link recorded for its card (last 4 + holder) or card-holder name
4. the only directory contact with the same email
5. the only directory contact with the same normalized full name

Card-holder names are not identifiers, so every name-derived match is typed
``cardHolderName`` and flagged low-confidence unless the card's last four
digits also matched.
"""

import logging
from typing import List, Optional

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from ..database.models import HistoryAction, ManualLinkKind, MatchType, TransactionRecord
from ..database.repository import (
    ContactRepository,
    ManualLinkRepository,
    TransactionHistoryRepository,
    TransactionRepository,
)
from ..errors import NotFoundError
from ..ingestion.names import normalize_email, normalize_name
from ..ingestion.models import Transaction

logger = logging.getLogger(__name__)


class MatchResult(BaseModel):
    """Contact resolution for one transaction."""
    transaction_uid: str = Field(..., description="Provider UID of the transaction")
    contact_id: Optional[str] = Field(None, description="Matched contact, if any")
    match_type: MatchType = Field(MatchType.NONE, description="How the contact was found")
    low_confidence: bool = Field(False, description="Name-only match; never use for money movement")
    source: Optional[str] = Field(None, description="Rule that produced the match")


class LinkResult(BaseModel):
    """Outcome of a manual link, including propagation."""
    transaction_uid: str
    contact_id: str
    links_recorded: List[str] = Field(default_factory=list)
    propagated: List[MatchResult] = Field(default_factory=list)


def card_key(last4: Optional[str], holder: Optional[str]) -> Optional[str]:
    """Manual-link key for a physical card: last four digits plus normalized holder."""
    holder_key = normalize_name(holder)
    if not last4 or not holder_key:
        return None
    return f"{last4}|{holder_key}"


class ContactMatcher:
    """Resolves transactions to contacts and records manual links."""

    def __init__(self, session: AsyncSession):
        self.session = session
        self.transactions = TransactionRepository(session)
        self.links = ManualLinkRepository(session)
        self.contacts = ContactRepository(session)
        self.history = TransactionHistoryRepository(session)

    async def match(self, transaction: Transaction) -> MatchResult:
        """Resolve ``transaction`` to a contact without writing anything."""
        uid = transaction.uid
        email = normalize_email(transaction.customer.email)
        holder_key = normalize_name(transaction.card.holder)
        card = card_key(transaction.card.last4, transaction.card.holder)

        link = await self.links.get(ManualLinkKind.UID.value, uid)
        if link is not None:
            return MatchResult(
                transaction_uid=uid, contact_id=link.contact_id,
                match_type=MatchType.MANUAL, source="manual_uid",
            )

        if email:
            link = await self.links.get(ManualLinkKind.EMAIL.value, email)
            if link is not None:
                return MatchResult(
                    transaction_uid=uid, contact_id=link.contact_id,
                    match_type=MatchType.MANUAL, source="manual_email",
                )

        if card:
            link = await self.links.get(ManualLinkKind.CARD.value, card)
            if link is not None:
                return MatchResult(
                    transaction_uid=uid, contact_id=link.contact_id,
                    match_type=MatchType.CARD_HOLDER_NAME, source="manual_card",
                )

        if holder_key:
            link = await self.links.get(ManualLinkKind.CARD_HOLDER.value, holder_key)
            if link is not None:
                return MatchResult(
                    transaction_uid=uid, contact_id=link.contact_id,
                    match_type=MatchType.CARD_HOLDER_NAME, low_confidence=True,
                    source="manual_card_holder",
                )

        # a directory key shared by several contacts is no match at all
        if email:
            contacts = await self.contacts.find_by_email(email)
            if len(contacts) == 1:
                return MatchResult(
                    transaction_uid=uid, contact_id=contacts[0].id,
                    match_type=MatchType.EMAIL, source="directory_email",
                )

        name_key = normalize_name(transaction.customer.name) or holder_key
        if name_key:
            contacts = await self.contacts.find_by_name_key(name_key)
            if len(contacts) == 1:
                return MatchResult(
                    transaction_uid=uid, contact_id=contacts[0].id,
                    match_type=MatchType.CARD_HOLDER_NAME, low_confidence=True,
                    source="directory_name",
                )

        return MatchResult(transaction_uid=uid)

    async def match_record(self, record: TransactionRecord) -> MatchResult:
        """Match a stored transaction and save the result on it.

        Manual matches are never recomputed, and an existing match is not
        downgraded to ``none``.
        """
        if record.match_type == MatchType.MANUAL.value:
            return MatchResult(
                transaction_uid=record.uid,
                contact_id=record.contact_id,
                match_type=MatchType.MANUAL,
                source="existing",
            )

        result = await self.match(record.to_transaction())
        if result.match_type == MatchType.NONE and record.match_type != MatchType.NONE.value:
            return MatchResult(
                transaction_uid=record.uid,
                contact_id=record.contact_id,
                match_type=MatchType(record.match_type),
                low_confidence=record.match_low_confidence,
                source="existing",
            )

        await self.transactions.set_match(
            record, result.contact_id, result.match_type.value, result.low_confidence
        )
        return result

    async def link_manually(self, uid: str, contact_id: str) -> LinkResult:
        """Link a transaction to a contact and propagate to unmatched peers.

        The link is recorded under the transaction's UID, email, card and
        card-holder name. Other transactions sharing the email or holder name
        are linked too, but only while their match type is ``none``.

        Args:
            uid: Provider UID of the stored transaction.
            contact_id: Contact to link to.

        Returns:
            LinkResult listing the recorded link keys and propagated matches.

        Raises:
            NotFoundError: If the transaction or the contact does not exist.
        """
        record = await self.transactions.get_by_uid(uid)
        if record is None:
            raise NotFoundError("transaction", uid)
        contact = await self.contacts.get_by_id(contact_id)
        if contact is None:
            raise NotFoundError("contact", contact_id)

        result = LinkResult(transaction_uid=uid, contact_id=contact_id)
        email = normalize_email(record.customer_email)
        holder_key = record.card_holder_key
        card = card_key(record.card_last4, record.card_holder)

        for kind, key in (
            (ManualLinkKind.UID, uid),
            (ManualLinkKind.EMAIL, email),
            (ManualLinkKind.CARD, card),
            (ManualLinkKind.CARD_HOLDER, holder_key),
        ):
            if key:
                await self.links.save(kind.value, key, contact_id, source_uid=uid)
                result.links_recorded.append(f"{kind.value}:{key}")

        await self.transactions.set_match(record, contact_id, MatchType.MANUAL.value)
        await self.history.create(
            transaction_id=record.id,
            action=HistoryAction.CONTACT_LINKED.value,
            new_status=record.normalized_status,
            previous_status=record.normalized_status,
            detail={"contact_id": contact_id},
        )

        seen = {uid}
        if email:
            for peer in await self.transactions.list_unmatched_by_email(email):
                if peer.uid in seen:
                    continue
                seen.add(peer.uid)
                await self.transactions.set_match(peer, contact_id, MatchType.MANUAL.value)
                result.propagated.append(MatchResult(
                    transaction_uid=peer.uid, contact_id=contact_id,
                    match_type=MatchType.MANUAL, source="propagated_email",
                ))

        if holder_key:
            for peer in await self.transactions.list_unmatched_by_holder_key(holder_key):
                if peer.uid in seen:
                    continue
                seen.add(peer.uid)
                await self.transactions.set_match(
                    peer, contact_id, MatchType.CARD_HOLDER_NAME.value, low_confidence=True
                )
                result.propagated.append(MatchResult(
                    transaction_uid=peer.uid, contact_id=contact_id,
                    match_type=MatchType.CARD_HOLDER_NAME, low_confidence=True,
                    source="propagated_card_holder",
                ))

        logger.info(
            f"Linked {uid} to contact {contact_id}; propagated to {len(result.propagated)} transactions"
        )
        return result
