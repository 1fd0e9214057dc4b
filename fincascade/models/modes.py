"""
Mode Models

The assistant surface is always in exactly one mode. Transitions are
recorded, including the ones that were refused.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class Mode(str, Enum):
    CHAT = "CHAT"
    INSIGHTS = "INSIGHTS"
    ACTIONS = "ACTIONS"
    ANALYTICS = "ANALYTICS"


class ModeEventType(str, Enum):
    USER_QUERY = "USER_QUERY"
    ACTION_TAKEN = "ACTION_TAKEN"
    INSIGHT_ACK = "INSIGHT_ACK"
    OPEN_ANALYTICS = "OPEN_ANALYTICS"
    BACK = "BACK"
    FORCE_MODE = "FORCE_MODE"


class ModeEvent(BaseModel):
    """An input to the state machine. USER_QUERY carries an intent, FORCE_MODE a target."""

    model_config = ConfigDict(frozen=True)

    type: ModeEventType
    intent: Optional[str] = None
    target: Optional[Mode] = None
    reason: Optional[str] = None


class ModeTransition(BaseModel):
    model_config = ConfigDict(frozen=True)

    from_mode: Mode
    to_mode: Mode
    event: ModeEventType
    accepted: bool
    reason: str = ""
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class ModeState(BaseModel):
    """Snapshot of the machine; history is the last 10 records."""

    model_config = ConfigDict(frozen=True)

    current: Mode = Mode.CHAT
    history: tuple[ModeTransition, ...] = ()
    last_transition: Optional[ModeTransition] = None
    is_stable: bool = True
