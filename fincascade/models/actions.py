"""
Action Models

Side-effecting actions never run straight from a model's suggestion:
they get a single-use confirmation first, and when the backend is
unreachable they wait in the offline queue.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator


class ActionScope(str, Enum):
    FINANCIAL_DATA = "financial_data"
    USER_DATA = "user_data"
    SYSTEM_SETTINGS = "system_settings"
    DATA_EXPORT = "data_export"


class ConfirmationStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    EXECUTED = "executed"
    FAILED = "failed"
    QUEUED = "queued"
    CANCELLED = "cancelled"
    EXPIRED = "expired"

    @property
    def is_consumed(self) -> bool:
        return self is not ConfirmationStatus.PENDING


class ActionConfirmation(BaseModel):
    """
    A pending request to run one mutating action.

    The token is single-use: once confirmed (or cancelled, or expired)
    it can never execute again.
    """

    confirmation_token: str
    idempotency_key: str
    action_id: str = Field(default_factory=lambda: str(uuid4()))
    action_type: str
    scope: ActionScope
    parameters: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: datetime
    status: ConfirmationStatus = ConfirmationStatus.PENDING

    @model_validator(mode="after")
    def validate_expiry(self) -> "ActionConfirmation":
        if self.expires_at <= self.created_at:
            raise ValueError("expires_at must be after created_at")
        return self

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at


class ActionExecutionResult(BaseModel):
    """Outcome of confirming an action."""

    action_id: str
    action_type: str
    success: bool
    queued: bool = False
    queued_action_id: Optional[str] = None
    result: dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


# =============================================================================
# Offline queue
# =============================================================================

class QueuedActionType(str, Enum):
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


class EntityType(str, Enum):
    BUDGET = "BUDGET"
    GOAL = "GOAL"
    TRANSACTION = "TRANSACTION"
    RECURRING_EXPENSE = "RECURRING_EXPENSE"
    DATA_EXPORT = "DATA_EXPORT"
    REMINDER = "REMINDER"
    PREFERENCES = "PREFERENCES"


class ActionPriority(str, Enum):
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"

    @property
    def weight(self) -> int:
        return {"HIGH": 3, "MEDIUM": 2, "LOW": 1}[self.value]


class QueuedAction(BaseModel):
    """
    An action waiting for connectivity.

    retry_count only ever grows, and never past max_retries. Timestamps
    are epoch seconds from the queue's clock.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    type: QueuedActionType
    entity: EntityType
    data: dict[str, Any] = Field(default_factory=dict)
    timestamp: float
    retry_count: int = Field(default=0, ge=0)
    max_retries: int = Field(default=3, ge=1)
    priority: ActionPriority = ActionPriority.MEDIUM
    next_attempt_at: float = Field(
        default=0.0,
        description="Earliest time the next attempt may run"
    )
    last_error: Optional[str] = None
    idempotency_key: Optional[str] = Field(
        default=None,
        description="Key of the confirmation that queued the action"
    )

    @model_validator(mode="after")
    def validate_retries(self) -> "QueuedAction":
        if self.retry_count > self.max_retries:
            raise ValueError("retry_count cannot exceed max_retries")
        return self

    @property
    def exhausted(self) -> bool:
        return self.retry_count >= self.max_retries


class QueueRunSummary(BaseModel):
    """What one process_queue() call did."""

    skipped_reentrant: bool = False
    offline: bool = False
    executed: list[str] = Field(default_factory=list)
    failed: list[str] = Field(default_factory=list)
    dropped: list[str] = Field(default_factory=list)
    deferred: list[str] = Field(default_factory=list)

    @property
    def ran(self) -> bool:
        return not (self.skipped_reentrant or self.offline)


class QueueStatus(BaseModel):
    total: int
    by_priority: dict[str, int]
    by_entity: dict[str, int]
    oldest_timestamp: Optional[float] = None
    processing: bool = False
