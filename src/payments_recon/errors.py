"""Exception taxonomy for the reconciliation engine.

Per-item errors (validation, conflicts, provider failures) are normally
collected into report models instead of being raised past a batch boundary.
Only storage outages and authentication failures abort a whole operation.
"""

from typing import Optional


class ReconciliationError(Exception):
    """Base class for all engine errors."""


class ValidationError(ReconciliationError):
    """A payload or statement row failed validation before reaching the store."""

    def __init__(self, field: str, message: str, value: Optional[object] = None):
        self.field = field
        self.message = message
        self.value = value
        super().__init__(f"{field}: {message}")


class ConflictError(ReconciliationError):
    """An action targeted a UID that is already corroborated by the ledger."""

    def __init__(self, uid: str, reason: str):
        self.uid = uid
        self.reason = reason
        super().__init__(f"{uid}: {reason}")


class SafetyViolation(ConflictError):
    """A soft-cancel candidate overlaps a corroborated ledger payment."""


class ProviderFetchError(ReconciliationError):
    """The payment provider could not return a record (timeout, 4xx, 5xx)."""

    def __init__(
        self,
        message: str,
        uid: Optional[str] = None,
        status_code: Optional[int] = None,
        retryable: bool = True,
    ):
        self.uid = uid
        self.status_code = status_code
        self.retryable = retryable
        super().__init__(message)


class CapacityExceededError(ReconciliationError):
    """A bulk candidate set is larger than the configured safety threshold.

    This is a confirmation signal, not a failure: the preview is returned in
    the ``stopped`` state and the operator must re-run it with confirmation.
    """

    def __init__(self, count: int, threshold: int):
        self.count = count
        self.threshold = threshold
        super().__init__(
            f"{count} candidate records exceed the safety threshold of {threshold}"
        )


class PlanStateError(ReconciliationError):
    """A recovery plan cannot be executed in its current state."""

    def __init__(self, plan_id: str, state: str, message: Optional[str] = None):
        self.plan_id = plan_id
        self.state = state
        super().__init__(message or f"Plan {plan_id} is {state} and cannot be executed")


class NotFoundError(ReconciliationError):
    """A referenced transaction, contact or plan does not exist."""

    def __init__(self, kind: str, key: str):
        self.kind = kind
        self.key = key
        super().__init__(f"{kind} {key} not found")
