"""Tests for the shadow A/B harness."""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from fincascade.models.analytics import AnalyticsEventType
from fincascade.models.cascade import (
    AnswerResult,
    CascadeAnalytics,
    ClarifyResult,
    ClarifyUI,
    DecisionPath,
    ModelTier,
    WriterOutput,
)
from fincascade.services.storage.interface import SHADOW_DAILY_COUNT_KEY
from fincascade.services.storage.local import InMemoryKeyValueStorage
from fincascade.shadow.harness import (
    ShadowABHarness,
    bucket_for,
    responses_agree,
    result_meta,
)


class FakeClock:
    def __init__(self):
        self.now = datetime(2025, 8, 15, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now


class SlowStorage(InMemoryKeyValueStorage):
    """In-memory storage whose writes take `delay` seconds."""

    def __init__(self, delay: float):
        super().__init__()
        self.delay = delay

    async def set_json(self, key, value) -> None:
        await asyncio.sleep(self.delay)
        await super().set_json(key, value)


def answer(text: str, fact_ids=(), writer_tokens: int = 100) -> AnswerResult:
    return AnswerResult(
        data=WriterOutput(answer_text=text, used_fact_ids=tuple(fact_ids)),
        analytics=CascadeAnalytics(
            writer_tokens=writer_tokens,
            decision_path=DecisionPath.RETURN,
            model_tier=ModelTier.STD,
        ),
    )


def clarify(question: str) -> ClarifyResult:
    return ClarifyResult(
        data=ClarifyUI(question=question),
        analytics=CascadeAnalytics(decision_path=DecisionPath.CLARIFY),
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


def make_harness(storage, emitter=None, clock=None, **kwargs) -> ShadowABHarness:
    kwargs.setdefault("sample_rate", 1.0)
    return ShadowABHarness(storage, emitter=emitter, clock=clock or FakeClock(), **kwargs)


class TestBucketing:
    """Tests for user bucketing."""

    def test_bucket_is_stable(self):
        """Test that a user always lands in the same bucket."""
        assert bucket_for("user-123") == bucket_for("user-123")
        assert 0.0 <= bucket_for("user-123") < 1.0

    def test_five_percent_of_users_sampled(self, storage):
        """Test that a 5% rate selects about 5% of users."""
        harness = ShadowABHarness(storage, sample_rate=0.05)
        selected = sum(harness.in_shadow(f"user-{i}") for i in range(10_000))
        assert abs(selected / 10_000 - 0.05) <= 0.01

    def test_invalid_rate(self, storage):
        """Test that rates outside [0, 1] are refused."""
        with pytest.raises(ValueError):
            ShadowABHarness(storage, sample_rate=1.5)


class TestAgreement:
    """Tests for responses_agree."""

    def test_same_fact_ids_agree(self):
        """Test agreement on cited facts."""
        assert responses_agree(answer("a", ["f1"]), answer("a much longer text", ["f1"])) == (True, "fact_ids")

    def test_different_fact_ids_disagree(self):
        """Test disagreement on cited facts."""
        assert responses_agree(answer("a", ["f1"]), answer("a", ["f2"])) == (False, "fact_ids")

    def test_different_kinds_disagree(self):
        """Test that an answer and a clarification disagree."""
        assert responses_agree(answer("Hello"), clarify("Which one?")) == (False, "result_kind")

    def test_two_clarifications_agree(self):
        """Test that two clarifications agree on kind."""
        assert responses_agree(clarify("Which?"), clarify("Which account do you mean?")) == (True, "result_kind")

    def test_length_heuristic(self):
        """Test the length fallback for answers without facts."""
        assert responses_agree(answer("x" * 100), answer("y" * 90)) == (True, "length_heuristic")
        assert responses_agree(answer("x" * 100), answer("y" * 50)) == (False, "length_heuristic")

    def test_plain_values(self):
        """Test that non-cascade outputs are compared by length."""
        assert responses_agree("", "") == (True, "length_heuristic")
        assert responses_agree("short", "a much much longer reply")[0] is False

    def test_result_meta(self):
        """Test route/model/tokens extraction."""
        assert result_meta(answer("a", writer_tokens=42)) == {"route": "return", "model": "std", "tokens": 42}
        assert result_meta("plain") == {}


class TestDualRun:
    """Tests for dual_run_if_needed."""

    async def test_returns_current_and_reports_in_background(self, storage, emitter, analytics_sink):
        """Test that the user gets the current result and the comparison is emitted."""
        harness = make_harness(storage, emitter)
        current = answer("You have $10.", ["f1"])

        async def current_fn():
            return current

        async def candidate_fn():
            return answer("You have $10 left.", ["f1"])

        result = await harness.dual_run_if_needed("user-123", current_fn, candidate_fn)
        assert result is current

        await harness.drain()
        events = analytics_sink.of_type(AnalyticsEventType.SHADOW_RESULT)
        assert len(events) == 1
        payload = events[0].payload
        assert payload["agree"] is True
        assert payload["agreement_basis"] == "fact_ids"
        assert "user_id" not in payload
        assert "user_hash" in payload
        assert payload["current_meta"]["route"] == "return"

    async def test_candidate_does_not_delay_current(self, storage):
        """Test that a slow candidate does not hold up the caller."""
        harness = make_harness(storage)
        release = asyncio.Event()

        async def current_fn():
            return "fast"

        async def candidate_fn():
            await release.wait()
            return "slow"

        result = await asyncio.wait_for(
            harness.dual_run_if_needed("user-123", current_fn, candidate_fn),
            timeout=1.0,
        )
        assert result == "fast"
        assert harness.stats()["agreed"] + harness.stats()["disagreed"] == 0

        release.set()
        await harness.drain()
        assert harness.stats()["in_flight"] == 0

    async def test_slow_counter_store_does_not_delay_current(self):
        """Test that persisting the daily count happens off the response path."""
        storage = SlowStorage(delay=1.0)
        harness = make_harness(storage)

        async def run():
            return "ok"

        loop = asyncio.get_running_loop()
        started = loop.time()
        result = await harness.dual_run_if_needed("user-123", run, run)
        elapsed = loop.time() - started

        assert result == "ok"
        assert elapsed < 0.5
        await harness.drain()
        assert await storage.get_json(SHADOW_DAILY_COUNT_KEY) == {"date": "2025-08-15", "count": 1}


    async def test_candidate_error_is_contained(self, storage, emitter, analytics_sink):
        """Test that a failing candidate is reported and never raised."""
        harness = make_harness(storage, emitter)

        async def current_fn():
            return "ok"

        async def candidate_fn():
            raise RuntimeError("candidate exploded")

        assert await harness.dual_run_if_needed("user-123", current_fn, candidate_fn) == "ok"
        await harness.drain()

        payload = analytics_sink.of_type(AnalyticsEventType.SHADOW_RESULT)[0].payload
        assert payload["agree"] is False
        assert payload["agreement_basis"] == "candidate_error"
        assert harness.stats()["candidate_errors"] == 1

    async def test_unsampled_user_skips_candidate(self, storage):
        """Test that users outside the bucket never run the candidate."""
        harness = make_harness(storage, sample_rate=0.0)
        calls = []

        async def current_fn():
            return "ok"

        async def candidate_fn():
            calls.append(1)
            return "ok"

        await harness.dual_run_if_needed("user-123", current_fn, candidate_fn)
        await harness.drain()
        assert calls == []
        assert harness.daily_count == 0

    async def test_current_error_propagates(self, storage):
        """Test that the current pipeline's errors reach the caller."""
        harness = make_harness(storage)

        async def current_fn():
            raise ValueError("production failed")

        async def candidate_fn():
            return "ok"

        with pytest.raises(ValueError):
            await harness.dual_run_if_needed("user-123", current_fn, candidate_fn)

    async def test_high_token_routes_skipped(self, storage):
        """Test that expensive current runs are not shadowed."""
        harness = make_harness(storage, token_threshold=500)

        async def current_fn():
            return answer("long", writer_tokens=900)

        async def candidate_fn():
            return answer("long")

        await harness.dual_run_if_needed("user-123", current_fn, candidate_fn)
        assert harness.stats()["skipped_tokens"] == 1
        assert harness.daily_count == 0


class TestDailyCap:
    """Tests for the persisted daily cap."""

    async def test_cap_stops_candidates(self, storage):
        """Test that no more candidates run once the cap is reached."""
        harness = make_harness(storage, daily_cap=2)
        ran = []

        async def current_fn():
            return "ok"

        async def candidate_fn():
            ran.append(1)
            return "ok"

        for i in range(4):
            await harness.dual_run_if_needed(f"user-{i}", current_fn, candidate_fn)
        await harness.drain()

        assert len(ran) == 2
        assert harness.stats()["skipped_cap"] == 2

    async def test_count_persisted_and_restored(self, storage, clock):
        """Test that the count survives a restart on the same day."""
        harness = make_harness(storage, clock=clock)

        async def run():
            return "ok"

        await harness.dual_run_if_needed("user-1", run, run)
        await harness.drain()
        assert await storage.get_json(SHADOW_DAILY_COUNT_KEY) == {"date": "2025-08-15", "count": 1}

        restarted = make_harness(storage, clock=clock)
        assert await restarted.load() == 1

    async def test_count_resets_on_new_day(self, storage, clock):
        """Test that yesterday's count is ignored."""
        await storage.set_json(SHADOW_DAILY_COUNT_KEY, {"date": "2025-08-14", "count": 999})
        harness = make_harness(storage, clock=clock, daily_cap=1000)
        assert await harness.load() == 0

        clock.now += timedelta(days=1)
        assert harness.daily_count == 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
