"""Shared test fixtures and configuration."""

import os
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

import pytest

# Set up test environment variables before importing modules
os.environ.setdefault("API_KEY", "test_api_key_12345")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.pop("BEPAID_SHOP_ID", None)
os.environ.pop("BEPAID_SECRET_KEY", None)

from payments_recon.config import RecoverySettings
from payments_recon.database import (
    Order,
    Payment,
    create_all_tables,
    create_async_engine,
    get_async_session_factory,
)

PAID_AT = datetime(2024, 1, 15, 10, 0, 0)


def make_uid(n: int) -> str:
    """Deterministic UID in the provider's 8-4-4-4-12 hex shape."""
    return f"{n:08x}-0000-4000-8000-{n:012x}"


@pytest.fixture
def uid_factory():
    """Return the UID builder."""
    return make_uid


@pytest.fixture
def settings() -> RecoverySettings:
    """Settings with production-like limits."""
    return RecoverySettings(
        batch_size=100,
        safety_threshold=1000,
        provider_max_attempts=3,
        sample_size=20,
    )


@pytest.fixture
def webhook_payload():
    """Build a provider webhook body (amount in minor units)."""
    def _build(
        uid: str,
        status: str = "successful",
        amount: Optional[int] = 10000,
        currency: str = "BYN",
        paid_at: Optional[str] = "2024-01-15T10:00:00Z",
        email: Optional[str] = "ivan@example.com",
        holder: Optional[str] = "IVAN PETROV",
        transaction_type: str = "payment",
        tracking_id: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        transaction: Dict[str, Any] = {
            "uid": uid,
            "status": status,
            "type": transaction_type,
            "amount": amount,
            "currency": currency,
            "paid_at": paid_at,
            "tracking_id": tracking_id,
            "customer": {"email": email, "first_name": first_name, "last_name": last_name},
            "credit_card": {"holder": holder, "last_4": "1111", "brand": "visa"},
        }
        return {"transaction": transaction}
    return _build


@pytest.fixture
def statement_row():
    """Build a parsed statement row (amount in major units)."""
    def _build(uid: str, status: str = "successful", **fields: Any) -> Dict[str, Any]:
        row: Dict[str, Any] = {
            "uid": uid,
            "status": status,
            "amount": "100.00",
            "currency": "BYN",
            "occurred_at": "2024-01-15 10:00:00",
        }
        row.update(fields)
        return {k: v for k, v in row.items() if v is not None}
    return _build


# Database fixtures
@pytest.fixture
async def db_engine():
    """Create an in-memory SQLite database for testing."""
    engine = create_async_engine(
        database_url="sqlite+aiosqlite:///:memory:",
        echo=False
    )
    await create_all_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db_session(db_engine):
    """Create a database session for testing."""
    session_factory = get_async_session_factory(db_engine)
    async with session_factory() as session:
        yield session


@pytest.fixture
def add_payment(db_session):
    """Add an order and one ledger payment linked to a provider UID."""
    async def _add(
        uid: Optional[str],
        amount: str = "100.00",
        currency: str = "BYN",
        status: str = "successful",
        transaction_type: Optional[str] = "payment",
        paid_at: Optional[datetime] = PAID_AT,
        order: Optional[Order] = None,
        order_status: str = "paid",
    ) -> Payment:
        if order is None:
            order = Order(
                status=order_status,
                provider_uid=uid,
                amount=Decimal(amount),
                currency=currency,
                paid_at=paid_at,
            )
            db_session.add(order)
            await db_session.flush()
        payment = Payment(
            order_id=order.id,
            provider_uid=uid,
            amount=Decimal(amount),
            currency=currency,
            status=status,
            transaction_type=transaction_type,
            paid_at=paid_at,
        )
        db_session.add(payment)
        await db_session.flush()
        return payment
    return _add


@pytest.fixture
def auth_headers():
    """Return headers with authentication."""
    return {"Authorization": f"Bearer {os.environ['API_KEY']}"}
