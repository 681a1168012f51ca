# payments_recon package
__version__ = "0.1.0"

from .config import RecoverySettings
from .errors import (
    ReconciliationError,
    ValidationError,
    ConflictError,
    SafetyViolation,
    ProviderFetchError,
    CapacityExceededError,
    PlanStateError,
    NotFoundError,
)
from .database import (
    TransactionRecord,
    Order,
    Payment,
    Contact,
    init_db,
    close_db,
    get_db,
)
from .ingestion import (
    Transaction,
    NormalizedStatus,
    SourceChannel,
    normalize_payload,
    merge_transactions,
)
from .ingestion.service import IngestionService
from .matching import ContactMatcher

# Reconciliation exports
from .reconciliation import (
    ReconciliationService,
    ReconciliationReport,
    Reconciler,
    DiagnosticsAnalyzer,
    StatementReader,
    ReportGenerator,
)

# Recovery exports
from .recovery import (
    RecoveryService,
    RecoveryPlanView,
    RecoveryResult,
    DateRange,
    get_provider_client,
)
