"""Assistant mode state machine."""

from fincascade.modes.state_machine import (
    ALLOWED_TRANSITIONS,
    HISTORY_LIMIT,
    ModeStateMachine,
    is_allowed,
    mode_for_intent,
)

__all__ = [
    "ALLOWED_TRANSITIONS",
    "HISTORY_LIMIT",
    "ModeStateMachine",
    "is_allowed",
    "mode_for_intent",
]
