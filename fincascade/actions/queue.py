"""
Offline Action Queue

Holds confirmed mutating actions while the backend is unreachable and
replays them when connectivity returns.

DESIGN DECISION: Backoff is explicit state, not sleeps.
Each action carries next_attempt_at; process_queue() skips actions that
are not due yet. Tests drive the queue with an injected clock and random
source instead of waiting.

Guarantees:
- Persisted (one JSON document under "actionQueue") after every mutation
- Entries older than the TTL (24h) are purged on load, retries or not
- retry_count only grows; at max_retries the action is dropped and reported
- Overlapping process_queue() calls are no-ops; enqueue() never waits on one
"""

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Any, Callable, Optional

import structlog
from pydantic import ValidationError

from fincascade.actions.executor import (
    ActionExecutorInterface,
    ConnectivityProbe,
    StaticConnectivityProbe,
)
from fincascade.analytics.emitter import AnalyticsEmitter
from fincascade.models.actions import (
    ActionPriority,
    EntityType,
    QueuedAction,
    QueuedActionType,
    QueueRunSummary,
    QueueStatus,
)
from fincascade.models.analytics import AnalyticsEventType
from fincascade.services.storage.interface import (
    ACTION_QUEUE_KEY,
    KeyValueStorageInterface,
    StorageError,
)


logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff with additive jitter, capped."""

    base_delay: float = 5.0
    max_delay: float = 300.0
    jitter: float = 1.0

    def next_delay(self, retry_count: int, rng: random.Random) -> float:
        """Delay before the attempt following failure number `retry_count`."""
        if retry_count < 1:
            return 0.0
        raw = self.base_delay * 2 ** (retry_count - 1)
        if self.jitter > 0:
            raw += rng.uniform(0, self.jitter)
        return min(self.max_delay, raw)


def _priority_order(action: QueuedAction) -> tuple:
    return (-action.priority.weight, action.timestamp)


class ActionQueue:
    """
    Persistent retry queue for mutating actions.

    RESPONSIBILITIES:
    - Keep actions across restarts
    - Replay them by priority, then age, when online

    BOUNDARIES:
    - Does not decide whether an action is allowed; callers confirm first
    """

    def __init__(
        self,
        storage: KeyValueStorageInterface,
        executor: ActionExecutorInterface,
        connectivity_probe: Optional[ConnectivityProbe] = None,
        backoff: Optional[BackoffPolicy] = None,
        max_queue_size: int = 100,
        max_retries: int = 3,
        ttl_seconds: float = 24 * 60 * 60,
        emitter: Optional[AnalyticsEmitter] = None,
        on_drop: Optional[Callable[[QueuedAction], None]] = None,
        clock: Callable[[], float] = time.time,
        rng: Optional[random.Random] = None,
    ):
        if max_queue_size < 1:
            raise ValueError("max_queue_size must be at least 1")
        self._storage = storage
        self._executor = executor
        self._probe = connectivity_probe or StaticConnectivityProbe(online=True)
        self._backoff = backoff or BackoffPolicy()
        self._max_queue_size = max_queue_size
        self._max_retries = max_retries
        self._ttl = ttl_seconds
        self._emitter = emitter
        self._on_drop = on_drop
        self._clock = clock
        self._rng = rng or random.Random()
        self._actions: list[QueuedAction] = []
        self._processing = False

    # -------------------------------------------------------------------------
    # Persistence
    # -------------------------------------------------------------------------

    async def load(self) -> int:
        """
        Load persisted actions, purging expired ones.

        Returns the number of actions kept.
        """
        try:
            raw = await self._storage.get_json(ACTION_QUEUE_KEY) or []
        except StorageError as e:
            logger.error("queue_load_failed", error=str(e))
            raw = []

        now = self._clock()
        kept: list[QueuedAction] = []
        purged = 0
        for item in raw:
            try:
                action = QueuedAction.model_validate(item)
            except ValidationError as e:
                logger.warning("queue_entry_invalid", error=str(e))
                purged += 1
                continue
            if now - action.timestamp > self._ttl:
                purged += 1
                continue
            kept.append(action)

        self._actions = sorted(kept, key=_priority_order)[: self._max_queue_size]
        if purged:
            logger.info("queue_purged_on_load", purged=purged, kept=len(self._actions))
            await self._save()
        return len(self._actions)

    async def _save(self) -> None:
        snapshot = [a.model_dump(mode="json") for a in self._actions]
        try:
            await self._storage.set_json(ACTION_QUEUE_KEY, snapshot)
        except StorageError as e:
            # In-memory state stays authoritative; the next mutation retries the write
            logger.error("queue_save_failed", error=str(e), size=len(snapshot))

    # -------------------------------------------------------------------------
    # Mutations
    # -------------------------------------------------------------------------

    async def enqueue(
        self,
        action_type: QueuedActionType,
        entity: EntityType,
        data: dict[str, Any],
        priority: ActionPriority = ActionPriority.MEDIUM,
        max_retries: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> str:
        """
        Add an action. When the queue is full the lowest-priority, oldest
        action is dropped to make room. idempotency_key is stored with the
        action and sent with every attempt.

        Returns the action id.
        """
        action = QueuedAction(
            type=action_type,
            entity=entity,
            data=data,
            timestamp=self._clock(),
            max_retries=max_retries or self._max_retries,
            priority=priority,
            idempotency_key=idempotency_key,
        )
        self._actions.append(action)

        evicted: Optional[QueuedAction] = None
        if len(self._actions) > self._max_queue_size:
            evicted = min(self._actions, key=lambda a: (a.priority.weight, a.timestamp))
            self._actions.remove(evicted)
            logger.warning("queue_full_evicted", action_id=evicted.id, priority=evicted.priority.value)

        await self._save()
        logger.info(
            "queue_action_enqueued",
            action_id=action.id,
            type=action_type.value,
            entity=entity.value,
            priority=priority.value,
        )
        await self._emit(
            AnalyticsEventType.QUEUE_ENQUEUED,
            action_id=action.id,
            type=action_type.value,
            entity=entity.value,
            priority=priority.value,
        )
        if evicted is not None:
            await self._report_drop(evicted, reason="queue_full")
        return action.id

    async def remove_action(self, action_id: str) -> bool:
        before = len(self._actions)
        self._actions = [a for a in self._actions if a.id != action_id]
        if len(self._actions) == before:
            return False
        await self._save()
        return True

    async def clear(self) -> None:
        self._actions = []
        await self._save()

    # -------------------------------------------------------------------------
    # Processing
    # -------------------------------------------------------------------------

    async def process_queue(self, force: bool = False) -> QueueRunSummary:
        """
        Try every due action once.

        Args:
            force: Ignore next_attempt_at and try every action now

        Returns:
            What happened to each action in this pass
        """
        if self._processing:
            return QueueRunSummary(skipped_reentrant=True)
        self._processing = True
        try:
            if not await self._probe.is_online():
                return QueueRunSummary(offline=True)
            return await self._drain(force)
        finally:
            self._processing = False

    async def _drain(self, force: bool) -> QueueRunSummary:
        summary = QueueRunSummary()
        for queued in sorted(self._actions, key=_priority_order):
            current = self._find(queued.id)
            if current is None:
                continue
            now = self._clock()
            if not force and current.next_attempt_at > now:
                summary.deferred.append(current.id)
                continue

            try:
                await self._executor.execute(
                    current.type,
                    current.entity,
                    current.data,
                    idempotency_key=current.idempotency_key,
                )
            except Exception as e:
                await self._record_failure(current, str(e), summary)
                continue

            self._actions = [a for a in self._actions if a.id != current.id]
            summary.executed.append(current.id)
            await self._save()
            logger.info("queue_action_executed", action_id=current.id, retries=current.retry_count)
            await self._emit(
                AnalyticsEventType.QUEUE_EXECUTED,
                action_id=current.id,
                entity=current.entity.value,
                retry_count=current.retry_count,
            )
        return summary

    async def _record_failure(self, action: QueuedAction, error: str, summary: QueueRunSummary) -> None:
        retry_count = action.retry_count + 1
        if retry_count >= action.max_retries:
            dropped = action.model_copy(update={"retry_count": retry_count, "last_error": error})
            self._actions = [a for a in self._actions if a.id != action.id]
            summary.dropped.append(action.id)
            await self._save()
            await self._report_drop(dropped, reason="max_retries")
            return

        delay = self._backoff.next_delay(retry_count, self._rng)
        updated = action.model_copy(update={
            "retry_count": retry_count,
            "next_attempt_at": self._clock() + delay,
            "last_error": error,
        })
        self._actions = [updated if a.id == action.id else a for a in self._actions]
        summary.failed.append(action.id)
        await self._save()
        logger.warning(
            "queue_action_failed",
            action_id=action.id,
            retry_count=retry_count,
            next_delay=round(delay, 2),
            error=error,
        )

    async def _report_drop(self, action: QueuedAction, reason: str) -> None:
        logger.error(
            "queue_action_dropped",
            action_id=action.id,
            reason=reason,
            retry_count=action.retry_count,
            last_error=action.last_error,
        )
        await self._emit(
            AnalyticsEventType.QUEUE_DROPPED,
            action_id=action.id,
            entity=action.entity.value,
            reason=reason,
            retry_count=action.retry_count,
        )
        if self._on_drop is not None:
            try:
                self._on_drop(action)
            except Exception as e:
                logger.error("queue_drop_callback_failed", action_id=action.id, error=str(e))

    async def run_periodic(self, interval_seconds: float, stop_event: asyncio.Event) -> None:
        """Call process_queue() every interval until stop_event is set."""
        while not stop_event.is_set():
            await self.process_queue()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def _find(self, action_id: str) -> Optional[QueuedAction]:
        for action in self._actions:
            if action.id == action_id:
                return action
        return None

    def get_action(self, action_id: str) -> Optional[QueuedAction]:
        return self._find(action_id)

    def get_queued_actions(self) -> list[QueuedAction]:
        """All actions in processing order."""
        return sorted(self._actions, key=_priority_order)

    def get_actions_by_entity(self, entity: EntityType) -> list[QueuedAction]:
        return [a for a in self.get_queued_actions() if a.entity == entity]

    def get_actions_by_priority(self, priority: ActionPriority) -> list[QueuedAction]:
        return [a for a in self.get_queued_actions() if a.priority == priority]

    def status(self) -> QueueStatus:
        by_priority = {p.value: 0 for p in ActionPriority}
        by_entity = {e.value: 0 for e in EntityType}
        for action in self._actions:
            by_priority[action.priority.value] += 1
            by_entity[action.entity.value] += 1
        return QueueStatus(
            total=len(self._actions),
            by_priority=by_priority,
            by_entity=by_entity,
            oldest_timestamp=min((a.timestamp for a in self._actions), default=None),
            processing=self._processing,
        )

    def __len__(self) -> int:
        return len(self._actions)

    async def _emit(self, event_type: AnalyticsEventType, **payload) -> None:
        if self._emitter is not None:
            await self._emitter.emit(event_type, payload)
