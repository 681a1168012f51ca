"""Models for recovery previews (plans) and their execution results."""

import enum
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator

from ..database.models import RecoveryKind, RecoveryState


class RecoveryAction(str, enum.Enum):
    """Per-record outcome of a recovery preview or execution."""
    CREATED = "created"
    ALREADY_EXISTS = "already_exists"
    NOT_FOUND = "not_found"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    CANCELLED = "cancelled"
    CONFLICT = "conflict"
    SKIPPED = "skipped"
    ERROR = "error"


class DateRange(BaseModel):
    """Inclusive time window; either edge may be open."""
    start: Optional[datetime] = None
    end: Optional[datetime] = None

    @model_validator(mode="after")
    def _ordered(self) -> "DateRange":
        if self.start and self.end and self.start > self.end:
            raise ValueError("start must not be after end")
        return self


class RecoveryCandidate(BaseModel):
    """One record a plan would act on."""
    uid: str
    tracking_id: Optional[str] = None
    normalized_status: Optional[str] = None
    amount: Optional[str] = None
    currency: Optional[str] = None
    occurred_at: Optional[str] = None
    missing_fields: List[str] = Field(default_factory=list)


class RecoveryItemOutcome(BaseModel):
    """What happened (or would happen) to one record."""
    uid: Optional[str] = None
    action: RecoveryAction
    message: Optional[str] = None
    contact_id: Optional[str] = None


class RecoveryPlanView(BaseModel):
    """Preview returned to the operator; ``plan_id`` is the token for execute."""
    plan_id: str = Field(..., description="Plan token to pass to execute")
    kind: RecoveryKind
    state: RecoveryState
    action: Optional[RecoveryAction] = Field(None, description="Single-record preview action")
    candidate_count: int = 0
    conflict_count: int = 0
    candidates: List[RecoveryCandidate] = Field(default_factory=list, description="Sample of candidates")
    conflicts: List[RecoveryItemOutcome] = Field(default_factory=list, description="Sample of excluded records")
    stop_reason: Optional[str] = None
    message: Optional[str] = None
    fingerprint: Optional[str] = None
    expires_at: Optional[datetime] = None

    @property
    def executable(self) -> bool:
        if self.state != RecoveryState.PREVIEWED:
            return False
        if self.kind == RecoveryKind.SINGLE_RECORD:
            return self.action == RecoveryAction.CREATED
        return True


class RecoveryResult(BaseModel):
    """Outcome of executing a plan. Counts are exact, outcomes are a sample."""
    plan_id: str
    kind: RecoveryKind
    state: RecoveryState = RecoveryState.EXECUTED
    processed: int = 0
    counts: Dict[str, int] = Field(default_factory=dict)
    outcomes: List[RecoveryItemOutcome] = Field(default_factory=list)
    errors: List[RecoveryItemOutcome] = Field(default_factory=list)
    executed_at: Optional[datetime] = None
    replayed: bool = Field(default=False, description="True when served from an earlier execution")

    def record(self, outcome: RecoveryItemOutcome, sample_size: int) -> None:
        """Count an outcome and keep it if the sample has room."""
        self.processed += 1
        key = outcome.action.value
        self.counts[key] = self.counts.get(key, 0) + 1
        if outcome.action == RecoveryAction.ERROR:
            self.errors.append(outcome)
        elif len(self.outcomes) < sample_size:
            self.outcomes.append(outcome)

    def count(self, action: RecoveryAction) -> int:
        return self.counts.get(action.value, 0)

    def to_dict(self) -> Dict[str, Any]:
        return self.model_dump(mode="json")
