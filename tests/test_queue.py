"""Tests for the offline action queue."""

import asyncio
import random
from unittest.mock import AsyncMock

import pytest

from conftest import FakeExecutor
from fincascade.actions.executor import ActionExecutorInterface, StaticConnectivityProbe
from fincascade.actions.queue import ActionQueue, BackoffPolicy
from fincascade.models.actions import ActionPriority, EntityType, QueuedActionType
from fincascade.models.analytics import AnalyticsEventType
from fincascade.services.storage.interface import ACTION_QUEUE_KEY, StorageError
from fincascade.services.storage.local import InMemoryKeyValueStorage


class FakeClock:
    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class FailingStorage(InMemoryKeyValueStorage):
    async def set_json(self, key, value):
        raise StorageError("disk full")


def make_queue(storage, executor, clock, **kwargs) -> ActionQueue:
    return ActionQueue(
        storage,
        executor,
        backoff=BackoffPolicy(base_delay=5, max_delay=300, jitter=0),
        clock=clock,
        rng=random.Random(7),
        **kwargs,
    )


class TestBackoffPolicy:
    """Tests for BackoffPolicy."""

    def test_exponential_without_jitter(self):
        """Test 5s, 10s, 20s, ... doubling."""
        policy = BackoffPolicy(base_delay=5, max_delay=300, jitter=0)
        rng = random.Random(0)
        assert [policy.next_delay(n, rng) for n in (1, 2, 3, 4)] == [5, 10, 20, 40]

    def test_capped_at_max_delay(self):
        """Test that delays never exceed the cap."""
        policy = BackoffPolicy(base_delay=5, max_delay=300, jitter=1)
        assert policy.next_delay(20, random.Random(0)) == 300

    def test_jitter_bounded(self):
        """Test that jitter adds at most one jitter unit."""
        policy = BackoffPolicy(base_delay=5, max_delay=300, jitter=1)
        rng = random.Random(42)
        delays = [policy.next_delay(1, rng) for _ in range(100)]
        assert all(5 <= d <= 6 for d in delays)


class TestEnqueue:
    """Tests for adding actions."""

    async def test_enqueue_persists(self, storage, executor):
        """Test that the queue is written to storage on every change."""
        queue = make_queue(storage, executor, FakeClock())
        action_id = await queue.enqueue(QueuedActionType.CREATE, EntityType.BUDGET, {"name": "Travel"})

        stored = await storage.get_json(ACTION_QUEUE_KEY)
        assert [item["id"] for item in stored] == [action_id]
        assert len(queue) == 1

    async def test_full_queue_drops_lowest_priority_oldest(self, storage, executor, emitter, analytics_sink):
        """Test eviction when the queue is at capacity."""
        clock = FakeClock()
        dropped = []
        queue = make_queue(storage, executor, clock, max_queue_size=2, emitter=emitter, on_drop=dropped.append)

        low = await queue.enqueue(QueuedActionType.CREATE, EntityType.GOAL, {}, priority=ActionPriority.LOW)
        clock.now += 1
        high = await queue.enqueue(QueuedActionType.CREATE, EntityType.BUDGET, {}, priority=ActionPriority.HIGH)
        clock.now += 1
        medium = await queue.enqueue(QueuedActionType.UPDATE, EntityType.BUDGET, {}, priority=ActionPriority.MEDIUM)

        assert {a.id for a in queue.get_queued_actions()} == {high, medium}
        assert [a.id for a in dropped] == [low]
        drops = analytics_sink.of_type(AnalyticsEventType.QUEUE_DROPPED)
        assert drops[0].payload["reason"] == "queue_full"

    async def test_storage_failure_does_not_raise(self, executor):
        """Test that a failed write is logged and the action is kept in memory."""
        queue = make_queue(FailingStorage(), executor, FakeClock())
        await queue.enqueue(QueuedActionType.CREATE, EntityType.BUDGET, {})
        assert len(queue) == 1


class TestLoad:
    """Tests for restoring the queue."""

    async def test_load_purges_expired_entries(self, executor):
        """Test that entries older than the TTL are purged on load."""
        clock = FakeClock()
        storage = InMemoryKeyValueStorage({
            ACTION_QUEUE_KEY: [
                {"id": "fresh", "type": "CREATE", "entity": "BUDGET", "data": {}, "timestamp": clock.now - 60},
                {"id": "stale", "type": "CREATE", "entity": "GOAL", "data": {}, "timestamp": clock.now - 90_000},
                {"id": "broken", "type": "EXPLODE", "entity": "GOAL", "timestamp": clock.now},
            ],
        })
        queue = make_queue(storage, executor, clock)

        assert await queue.load() == 1
        assert queue.get_action("fresh") is not None
        assert [item["id"] for item in await storage.get_json(ACTION_QUEUE_KEY)] == ["fresh"]

    async def test_load_empty_storage(self, storage, executor):
        """Test loading when nothing was persisted."""
        queue = make_queue(storage, executor, FakeClock())
        assert await queue.load() == 0


class TestProcessQueue:
    """Tests for process_queue."""

    async def test_executes_by_priority_then_age(self, storage):
        """Test drain order: HIGH before MEDIUM before LOW, oldest first."""
        executor = FakeExecutor()
        clock = FakeClock()
        queue = make_queue(storage, executor, clock)
        await queue.enqueue(QueuedActionType.CREATE, EntityType.GOAL, {"n": "low"}, priority=ActionPriority.LOW)
        clock.now += 1
        await queue.enqueue(QueuedActionType.CREATE, EntityType.BUDGET, {"n": "high-1"}, priority=ActionPriority.HIGH)
        clock.now += 1
        await queue.enqueue(QueuedActionType.CREATE, EntityType.BUDGET, {"n": "high-2"}, priority=ActionPriority.HIGH)

        summary = await queue.process_queue()

        assert [data["n"] for _, _, data in executor.executed] == ["high-1", "high-2", "low"]
        assert len(summary.executed) == 3
        assert len(queue) == 0
        assert await storage.get_json(ACTION_QUEUE_KEY) == []

    async def test_offline_does_nothing(self, storage, executor):
        """Test that nothing runs while the probe reports offline."""
        queue = make_queue(storage, executor, FakeClock(), connectivity_probe=StaticConnectivityProbe(online=False))
        await queue.enqueue(QueuedActionType.CREATE, EntityType.BUDGET, {})

        summary = await queue.process_queue()

        assert summary.offline
        assert not summary.ran
        assert executor.attempts == 0

    async def test_failure_backs_off(self, storage):
        """Test that a failed action waits for its backoff before retrying."""
        executor = FakeExecutor(failures=["offline"])
        clock = FakeClock()
        queue = make_queue(storage, executor, clock)
        action_id = await queue.enqueue(QueuedActionType.CREATE, EntityType.BUDGET, {})

        first = await queue.process_queue()
        action = queue.get_action(action_id)
        assert first.failed == [action_id]
        assert action.retry_count == 1
        assert action.next_attempt_at == clock.now + 5
        assert action.last_error == "backend unreachable"

        clock.now += 2
        second = await queue.process_queue()
        assert second.deferred == [action_id]
        assert executor.attempts == 1

        clock.now += 3
        third = await queue.process_queue()
        assert third.executed == [action_id]

    async def test_force_ignores_backoff(self, storage):
        """Test that force=True retries immediately."""
        executor = FakeExecutor(failures=["offline"])
        queue = make_queue(storage, executor, FakeClock())
        action_id = await queue.enqueue(QueuedActionType.CREATE, EntityType.BUDGET, {})

        await queue.process_queue()
        summary = await queue.process_queue(force=True)
        assert summary.executed == [action_id]

    async def test_dropped_after_max_retries(self, storage, emitter, analytics_sink):
        """Test that an action failing max_retries times is dropped and reported."""
        executor = FakeExecutor(failures=["reject"] * 5)
        dropped = []
        queue = make_queue(storage, executor, FakeClock(), max_retries=3, emitter=emitter, on_drop=dropped.append)
        action_id = await queue.enqueue(QueuedActionType.DELETE, EntityType.TRANSACTION, {"id": "tx_1"})

        for _ in range(3):
            await queue.process_queue(force=True)

        assert executor.attempts == 3
        assert len(queue) == 0
        assert dropped[0].id == action_id
        assert dropped[0].retry_count == 3
        drops = analytics_sink.of_type(AnalyticsEventType.QUEUE_DROPPED)
        assert drops[0].payload["reason"] == "max_retries"

    async def test_overlapping_runs_are_skipped(self, storage, executor):
        """Test that a process_queue call during another is a no-op."""
        queue = make_queue(storage, executor, FakeClock())
        queue._processing = True
        summary = await queue.process_queue()
        assert summary.skipped_reentrant
        assert executor.attempts == 0

    async def test_status(self, storage, executor):
        """Test the status counts."""
        queue = make_queue(storage, executor, FakeClock())
        await queue.enqueue(QueuedActionType.CREATE, EntityType.BUDGET, {}, priority=ActionPriority.HIGH)
        await queue.enqueue(QueuedActionType.CREATE, EntityType.GOAL, {})

        status = queue.status()
        assert status.total == 2
        assert status.by_priority["HIGH"] == 1
        assert status.by_entity["GOAL"] == 1
        assert len(queue.get_actions_by_entity(EntityType.BUDGET)) == 1


class TestMaintenance:
    """Tests for remove_action, clear and run_periodic."""

    async def test_remove_and_clear(self, storage, executor):
        """Test removing one action and clearing the rest."""
        queue = make_queue(storage, executor, FakeClock())
        first = await queue.enqueue(QueuedActionType.CREATE, EntityType.BUDGET, {})
        await queue.enqueue(QueuedActionType.CREATE, EntityType.GOAL, {})

        assert await queue.remove_action(first) is True
        assert await queue.remove_action(first) is False
        assert len(queue) == 1

        await queue.clear()
        assert len(queue) == 0
        assert await storage.get_json(ACTION_QUEUE_KEY) == []

    async def test_run_periodic_stops_on_event(self, storage):
        """Test that the periodic runner drains and exits when stopped."""
        executor = AsyncMock(spec=ActionExecutorInterface)
        executor.execute.return_value = {"ok": True}
        queue = make_queue(storage, executor, FakeClock())
        await queue.enqueue(QueuedActionType.CREATE, EntityType.BUDGET, {"name": "Travel"})

        stop = asyncio.Event()
        runner = asyncio.create_task(queue.run_periodic(0.01, stop))
        for _ in range(100):
            if len(queue) == 0:
                break
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(runner, timeout=1.0)

        executor.execute.assert_awaited_once_with(
            QueuedActionType.CREATE, EntityType.BUDGET, {"name": "Travel"}, idempotency_key=None
        )
        assert len(queue) == 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
