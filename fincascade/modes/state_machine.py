"""
Mode State Machine

The assistant surface is always in one of CHAT, INSIGHTS, ACTIONS or
ANALYTICS. An event resolves a target mode; the target is applied only
when the allow-list permits it.

CRITICAL: Refused events never change the current mode, but they are
still written to history as accepted=False.
"""

import threading
import time
from typing import Callable, Optional, Union

import structlog

from fincascade.analytics.emitter import AnalyticsEmitter
from fincascade.models.analytics import AnalyticsEventType
from fincascade.models.cascade import IntentType
from fincascade.models.modes import Mode, ModeEvent, ModeEventType, ModeState, ModeTransition


logger = structlog.get_logger(__name__)


HISTORY_LIMIT = 10

ALLOWED_TRANSITIONS: dict[Mode, frozenset[Mode]] = {
    Mode.CHAT: frozenset({Mode.INSIGHTS, Mode.ACTIONS, Mode.ANALYTICS}),
    Mode.INSIGHTS: frozenset({Mode.CHAT, Mode.ACTIONS, Mode.ANALYTICS}),
    Mode.ACTIONS: frozenset({Mode.CHAT, Mode.INSIGHTS}),
    Mode.ANALYTICS: frozenset({Mode.CHAT, Mode.INSIGHTS}),
}

_ACTION_INTENTS = frozenset({
    IntentType.CREATE_BUDGET,
    IntentType.ADJUST_BUDGET,
    IntentType.CREATE_GOAL,
    IntentType.EXPORT_DATA,
})

_INSIGHT_INTENTS = frozenset({
    IntentType.ANALYZE_SPENDING,
    IntentType.FORECAST_SPEND,
    IntentType.OPTIMIZE_SPENDING,
})


def mode_for_intent(intent: Union[str, IntentType, None]) -> Mode:
    """The mode a query with this intent belongs in."""
    if intent is None:
        return Mode.CHAT
    resolved = IntentType.coerce(intent)
    if resolved in _ACTION_INTENTS:
        return Mode.ACTIONS
    if resolved in _INSIGHT_INTENTS:
        return Mode.INSIGHTS
    return Mode.CHAT


def is_allowed(from_mode: Mode, to_mode: Mode) -> bool:
    return to_mode in ALLOWED_TRANSITIONS[from_mode]


ModeListener = Callable[[ModeState, ModeTransition], None]


class ModeStateMachine:
    """
    Owns the current mode.

    RESPONSIBILITIES:
    - Resolve events to target modes
    - Enforce the allow-list
    - Keep a bounded history and notify subscribers

    BOUNDARIES:
    - Knows nothing about the cascade; it only sees events
    """

    def __init__(
        self,
        initial: Mode = Mode.CHAT,
        stability_window_seconds: float = 2.0,
        emitter: Optional[AnalyticsEmitter] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._state = ModeState(current=initial)
        self._stability_window = stability_window_seconds
        self._emitter = emitter
        self._clock = clock
        self._last_accepted_at: Optional[float] = None
        self._listeners: list[ModeListener] = []
        self._lock = threading.Lock()

    @property
    def state(self) -> ModeState:
        return self._state

    @property
    def current(self) -> Mode:
        return self._state.current

    def subscribe(self, listener: ModeListener) -> Callable[[], None]:
        """Register a listener; returns a callable that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def _previous_mode(self) -> Optional[Mode]:
        for record in reversed(self._state.history):
            if record.accepted:
                return record.from_mode
        return None

    def _resolve(self, event: ModeEvent) -> tuple[Optional[Mode], str]:
        """Target mode for an event, or None with the reason it has none."""
        current = self._state.current
        if event.type == ModeEventType.USER_QUERY:
            return mode_for_intent(event.intent), f"intent:{event.intent}"
        if event.type == ModeEventType.ACTION_TAKEN:
            if current != Mode.ACTIONS:
                return None, "action_taken_outside_actions"
            return Mode.CHAT, "action_taken"
        if event.type == ModeEventType.INSIGHT_ACK:
            if current != Mode.INSIGHTS:
                return None, "insight_ack_outside_insights"
            return Mode.CHAT, "insight_ack"
        if event.type == ModeEventType.OPEN_ANALYTICS:
            return Mode.ANALYTICS, "open_analytics"
        if event.type == ModeEventType.BACK:
            previous = self._previous_mode()
            if previous is None:
                return None, "no_previous_mode"
            return previous, "back"
        if event.type == ModeEventType.FORCE_MODE:
            if event.target is None:
                return None, "force_without_target"
            return event.target, event.reason or "forced"
        return None, "unknown_event"

    def transition(self, event: ModeEvent) -> tuple[ModeState, ModeTransition]:
        """
        Apply one event.

        Returns the new state and the recorded transition (accepted or not).
        """
        with self._lock:
            current = self._state.current
            target, reason = self._resolve(event)

            if target is None:
                accepted, to_mode = False, current
            elif target == current:
                accepted, to_mode, reason = False, current, "already_in_mode"
            elif not is_allowed(current, target):
                accepted, to_mode, reason = False, current, f"not_allowed:{current.value}->{target.value}"
            else:
                accepted, to_mode = True, target

            record = ModeTransition(
                from_mode=current,
                to_mode=to_mode,
                event=event.type,
                accepted=accepted,
                reason=reason,
            )
            history = (self._state.history + (record,))[-HISTORY_LIMIT:]

            is_stable = True
            if accepted:
                now = self._clock()
                if (
                    self._last_accepted_at is not None
                    and now - self._last_accepted_at < self._stability_window
                ):
                    is_stable = False
                self._last_accepted_at = now

            self._state = ModeState(
                current=to_mode,
                history=history,
                last_transition=record,
                is_stable=is_stable,
            )
            state = self._state

        if accepted:
            logger.info("mode_transition", from_mode=current.value, to_mode=to_mode.value, reason=reason)
        else:
            logger.debug("mode_transition_refused", mode=current.value, event_type=event.type.value, reason=reason)

        for listener in list(self._listeners):
            try:
                listener(state, record)
            except Exception as e:
                logger.error("mode_listener_failed", error=str(e))
        return state, record

    async def dispatch(self, event: ModeEvent) -> ModeState:
        """Apply an event and report it to analytics."""
        state, record = self.transition(event)
        if self._emitter is not None:
            await self._emitter.emit(
                AnalyticsEventType.MODE_TRANSITION,
                {
                    "from_mode": record.from_mode.value,
                    "to_mode": record.to_mode.value,
                    "event": record.event.value,
                    "accepted": record.accepted,
                    "reason": record.reason,
                    "is_stable": state.is_stable,
                },
            )
        return state
