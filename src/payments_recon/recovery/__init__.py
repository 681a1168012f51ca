"""Recovery operations with preview/execute plans."""

from .models import (
    DateRange,
    RecoveryAction,
    RecoveryCandidate,
    RecoveryItemOutcome,
    RecoveryPlanView,
    RecoveryResult,
)
from .provider_client import (
    BepaidClient,
    ProviderClientBase,
    StaticProviderClient,
    get_provider_client,
)
from .service import RecoveryService

__all__ = [
    "BepaidClient",
    "DateRange",
    "ProviderClientBase",
    "RecoveryAction",
    "RecoveryCandidate",
    "RecoveryItemOutcome",
    "RecoveryPlanView",
    "RecoveryResult",
    "RecoveryService",
    "StaticProviderClient",
    "get_provider_client",
]
