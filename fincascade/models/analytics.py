"""
Analytics Models

Every cascade stage, confirmation and queue outcome emits one of these.
They feed cost dashboards and quality reviews, so they carry token
counts and decision paths but NEVER raw personal data (the emitter
scrubs payloads before they leave the process).

DESIGN DECISION: Events are append-only. We never delete or modify them.
"""

import json
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional
from uuid import UUID, uuid4

from pydantic import BaseModel, Field


class AnalyticsEventType(str, Enum):
    """
    Types of events we emit.

    Every step in the cascade has its own event type.
    """
    # Cascade stages
    CASCADE_START = "ai.cascade_start"
    CACHE_HIT = "ai.cache_hit"
    WRITER_DONE = "ai.writer_done"
    GUARD_FAIL = "ai.guard_fail"
    CRITIC_DONE = "ai.critic_done"
    DECISION = "ai.decision"
    IMPROVER_USED = "ai.improver_used"
    CASCADE_COMPLETE = "ai.cascade_complete"
    CASCADE_ERROR = "ai.cascade_error"

    # Shadow testing
    SHADOW_RESULT = "ai.shadow_result"

    # Confirmations
    CONFIRMATION_REQUESTED = "action.confirmation_requested"
    CONFIRMED = "action.confirmed"
    CONFIRMATION_REJECTED = "action.confirmation_rejected"
    CANCELLED = "action.cancelled"

    # Offline queue
    QUEUE_ENQUEUED = "queue.action_enqueued"
    QUEUE_EXECUTED = "queue.action_executed"
    QUEUE_DROPPED = "queue.action_dropped"

    # Modes
    MODE_TRANSITION = "mode.transition"

    # User feedback on an answer
    USER_OUTCOME = "user.outcome"


# Event types kept regardless of the sampling rate
ALWAYS_KEPT_EVENTS = frozenset({
    AnalyticsEventType.GUARD_FAIL,
    AnalyticsEventType.CASCADE_ERROR,
    AnalyticsEventType.SHADOW_RESULT,
    AnalyticsEventType.CONFIRMATION_REJECTED,
    AnalyticsEventType.QUEUE_DROPPED,
})


class AnalyticsEvent(BaseModel):
    """
    A single analytics event.

    Envelope: type, session_id, message_id, timestamp. Everything
    event-specific goes in payload.
    """

    event_id: UUID = Field(
        default_factory=uuid4,
        description="Unique event identifier"
    )
    type: AnalyticsEventType
    session_id: str
    message_id: Optional[str] = Field(
        default=None,
        description="Correlates all events of one query"
    )
    timestamp: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="When the event occurred (UTC)"
    )
    payload: dict[str, Any] = Field(default_factory=dict)

    def to_log_dict(self) -> dict:
        """
        Convert to a dictionary suitable for structured logging.
        """
        return {
            "event_id": str(self.event_id),
            "timestamp": self.timestamp.isoformat(),
            "type": self.type.value,
            "session_id": self.session_id,
            "message_id": self.message_id,
            "payload": self.payload,
        }

    def to_sheets_row(self) -> list:
        """
        Convert to a row suitable for Google Sheets storage.

        Returns columns in order:
        [event_id, timestamp, type, session_id, message_id, payload_json]
        """
        return [
            str(self.event_id),
            self.timestamp.isoformat(),
            self.type.value,
            self.session_id,
            self.message_id or "",
            json.dumps(self.payload, default=str) if self.payload else "",
        ]


ANALYTICS_COLUMNS = [
    "event_id",
    "timestamp",
    "type",
    "session_id",
    "message_id",
    "payload_json",
]


class UserOutcome(str, Enum):
    """What the user did with an answer."""
    ACCEPTED = "accepted"
    REPHRASED = "rephrased"
    ABANDONED = "abandoned"
    THUMBS_UP = "thumbs_up"
    THUMBS_DOWN = "thumbs_down"
