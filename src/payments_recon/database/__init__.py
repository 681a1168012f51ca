"""Database module: transaction store, ledger tables and recovery plans."""

from .models import (
    Base,
    Contact,
    TransactionRecord,
    ManualLink,
    Order,
    Payment,
    RecoveryPlan,
    TransactionHistory,
    OrderStatus,
    MatchType,
    ManualLinkKind,
    RecoveryKind,
    RecoveryState,
    HistoryAction,
)
from .session import (
    get_db,
    get_database_url,
    init_db,
    close_db,
    create_async_engine,
    create_all_tables,
    get_async_session_factory,
)
from .repository import (
    BatchUpsertResult,
    TransactionRepository,
    ManualLinkRepository,
    ContactRepository,
    LedgerRepository,
    RecoveryPlanRepository,
    TransactionHistoryRepository,
)

__all__ = [
    # Models
    "Base",
    "Contact",
    "TransactionRecord",
    "ManualLink",
    "Order",
    "Payment",
    "RecoveryPlan",
    "TransactionHistory",
    "OrderStatus",
    "MatchType",
    "ManualLinkKind",
    "RecoveryKind",
    "RecoveryState",
    "HistoryAction",
    # Session management
    "get_db",
    "get_database_url",
    "init_db",
    "close_db",
    "create_async_engine",
    "create_all_tables",
    "get_async_session_factory",
    # Repositories
    "BatchUpsertResult",
    "TransactionRepository",
    "ManualLinkRepository",
    "ContactRepository",
    "LedgerRepository",
    "RecoveryPlanRepository",
    "TransactionHistoryRepository",
]
