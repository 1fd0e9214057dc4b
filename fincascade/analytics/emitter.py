"""
Analytics Emitter

DESIGN DECISION: Every cascade stage reports what it did.
This provides:
1. Cost visibility (tokens and tier per stage)
2. Quality signals (guard failures, escalations, shadow agreement)
3. A trail for debugging a single query via its message_id

The emitter:
- Is async and never raises into the caller
- Scrubs personal data before anything leaves the process
- Samples routine events, always keeps failures
- Buffers failed deliveries locally and retries them on flush
"""

import hashlib
import logging
import random
import re
import sys
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Optional
from uuid import uuid4

import structlog

from fincascade.models.analytics import (
    ALWAYS_KEPT_EVENTS,
    AnalyticsEvent,
    AnalyticsEventType,
)
from fincascade.services.storage.interface import AnalyticsStorageInterface


def configure_logging(level: str = "INFO", json_logs: bool = True) -> None:
    """Configure structlog (and the stdlib root logger it writes through)."""
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=getattr(logging, level.upper(), logging.INFO),
    )
    renderer = (
        structlog.processors.JSONRenderer()
        if json_logs
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            renderer,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


# Configure structlog for local logging
configure_logging()


# =============================================================================
# PII scrubbing
# =============================================================================

REDACTED = "[REDACTED]"

_PII_PATTERNS = [
    ("ssn", re.compile(r"\b\d{3}-\d{2}-\d{4}\b")),
    ("card", re.compile(r"\b(?:\d[ -]?){11,18}\d\b")),
    ("email", re.compile(r"[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}")),
    ("phone", re.compile(r"(?:\+?\d{1,2}[\s.-]?)?\(?\d{3}\)?[\s.-]\d{3}[\s.-]\d{4}\b")),
]

PII_KEYS = frozenset({
    "email",
    "phone",
    "phone_number",
    "full_name",
    "first_name",
    "last_name",
    "address",
    "account_number",
    "card_number",
    "ssn",
})


def hash_user_id(user_id: str) -> str:
    """Stable pseudonymous id for a user."""
    return hashlib.sha256(user_id.encode("utf-8")).hexdigest()[:16]


def scrub_text(text: str) -> str:
    for name, pattern in _PII_PATTERNS:
        text = pattern.sub(f"[{name.upper()}]", text)
    return text


def scrub_pii(value: Any) -> Any:
    """Return a copy of a payload with personal data removed."""
    if isinstance(value, dict):
        scrubbed = {}
        for key, item in value.items():
            key_lower = str(key).lower()
            if key_lower == "user_id" and isinstance(item, str):
                scrubbed["user_hash"] = hash_user_id(item)
            elif key_lower in PII_KEYS:
                scrubbed[key] = REDACTED
            else:
                scrubbed[key] = scrub_pii(item)
        return scrubbed
    if isinstance(value, (list, tuple)):
        return [scrub_pii(item) for item in value]
    if isinstance(value, str):
        return scrub_text(value)
    return value


# =============================================================================
# Sinks
# =============================================================================

class AnalyticsSinkInterface(ABC):
    """Where analytics events are delivered."""

    @abstractmethod
    async def send(self, event: AnalyticsEvent) -> None:
        """
        Deliver one event.

        Raises:
            Exception: Any delivery failure; the emitter buffers the event
        """
        pass


class InMemoryAnalyticsSink(AnalyticsSinkInterface):
    """Keeps delivered events in a list."""

    def __init__(self):
        self.events: list[AnalyticsEvent] = []

    async def send(self, event: AnalyticsEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: AnalyticsEventType) -> list[AnalyticsEvent]:
        return [e for e in self.events if e.type == event_type]


class StorageAnalyticsSink(AnalyticsSinkInterface):
    """Delivers events to an analytics storage backend (e.g. Google Sheets)."""

    def __init__(self, storage: AnalyticsStorageInterface):
        self._storage = storage

    async def send(self, event: AnalyticsEvent) -> None:
        await self._storage.append_event(event)


# =============================================================================
# Emitter
# =============================================================================

class AnalyticsEmitter:
    """
    Central analytics service.

    Emits events both to:
    1. Structured local log (for debugging)
    2. The configured sink (for dashboards), when one is set
    """

    def __init__(
        self,
        sink: Optional[AnalyticsSinkInterface] = None,
        sample_rate: float = 1.0,
        session_id: Optional[str] = None,
        max_pending: int = 500,
        rng: Optional[random.Random] = None,
    ):
        """
        Initialize the emitter.

        Args:
            sink: Delivery target. If None, only logs locally.
            sample_rate: Fraction of routine events kept (0..1)
            session_id: Session stamped on every event
            max_pending: Failed deliveries kept for flush_pending()
            rng: Random source for sampling
        """
        if not 0.0 <= sample_rate <= 1.0:
            raise ValueError("sample_rate must be between 0 and 1")
        self._sink = sink
        self._sample_rate = sample_rate
        self.session_id = session_id or str(uuid4())
        self._pending: deque[AnalyticsEvent] = deque(maxlen=max_pending)
        self._rng = rng or random.Random()
        self._logger = structlog.get_logger(__name__)

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    def _sampled(self, event_type: AnalyticsEventType) -> bool:
        if event_type in ALWAYS_KEPT_EVENTS or self._sample_rate >= 1.0:
            return True
        return self._rng.random() < self._sample_rate

    async def emit(
        self,
        event_type: AnalyticsEventType,
        payload: Optional[dict[str, Any]] = None,
        message_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> Optional[AnalyticsEvent]:
        """
        Emit an event.

        Returns the event as delivered (scrubbed), or None if sampled out.
        """
        if not self._sampled(event_type):
            return None

        event = AnalyticsEvent(
            type=event_type,
            session_id=session_id or self.session_id,
            message_id=message_id,
            payload=scrub_pii(payload or {}),
        )

        # Always log locally
        self._logger.info("analytics_event", **event.to_log_dict())

        if self._sink is not None:
            try:
                await self._sink.send(event)
            except Exception as e:
                self._pending.append(event)
                self._logger.warning(
                    "analytics_delivery_failed",
                    error=str(e),
                    event_id=str(event.event_id),
                    pending=len(self._pending),
                )
        return event

    async def flush_pending(self) -> int:
        """
        Retry buffered deliveries.

        Stops at the first failure and keeps the rest buffered.
        Returns the number of events delivered.
        """
        if self._sink is None:
            return 0
        delivered = 0
        while self._pending:
            event = self._pending[0]
            try:
                await self._sink.send(event)
            except Exception as e:
                self._logger.warning(
                    "analytics_flush_failed",
                    error=str(e),
                    remaining=len(self._pending),
                )
                break
            self._pending.popleft()
            delivered += 1
        return delivered


def new_message_id() -> str:
    """
    Create a new message ID for tracking the events of one query.

    Use this at the start of a query; pass it through every stage.
    """
    return str(uuid4())
