"""Tests for the end-to-end assistant flow."""

import asyncio

import pytest

from conftest import FakeExecutor, ScriptedCompletionProvider, critic_payload, writer_payload
from fincascade.actions.confirmation import ActionConfirmationService, ConfirmationConsumedError
from fincascade.cascade.orchestrator import CascadeOrchestrator
from fincascade.config import get_settings
from fincascade.facts.builder import FactPackBuilder
from fincascade.models.actions import EntityType, QueuedActionType
from fincascade.models.analytics import AnalyticsEventType, UserOutcome
from fincascade.models.cascade import DecisionPath
from fincascade.models.modes import Mode
from fincascade.modes.state_machine import ModeStateMachine
from fincascade.orchestrator import AssistantFlow, create_app_components
from fincascade.services.storage.local import InMemoryKeyValueStorage
from fincascade.shadow.harness import ShadowABHarness


TRAVEL_BUDGET = {"label": "Create a Travel budget", "action": "create_budget", "payload": {"name": "Travel", "limit": 300}}
SHOW_CHART = {"label": "Show chart", "action": "show_chart", "payload": {}}


def make_flow(provider, data_provider, executor, emitter, shadow=None, candidate=None) -> AssistantFlow:
    return AssistantFlow(
        fact_builder=FactPackBuilder(data_provider),
        cascade=CascadeOrchestrator.from_provider(provider, emitter=emitter),
        state_machine=ModeStateMachine(emitter=emitter),
        confirmations=ActionConfirmationService(executor, emitter=emitter),
        shadow=shadow,
        candidate_cascade=candidate,
        emitter=emitter,
    )


class TestAssistantFlow:
    """Tests for AssistantFlow."""

    async def test_status_question_stays_in_chat(self, data_provider, executor, emitter, august_window):
        """Test a plain budget question end to end."""
        provider = ScriptedCompletionProvider({"writer": [writer_payload()], "critic": [critic_payload()]})
        flow = make_flow(provider, data_provider, executor, emitter)

        reply = await flow.ask("user-123", "get_budget_status", "How is my groceries budget?", august_window)

        assert reply.result.kind == "answer"
        assert "$212.17" in reply.result.data.answer_text
        assert reply.mode == Mode.CHAT
        assert reply.confirmations == []
        assert data_provider.calls == {"budgets": 1}

    async def test_action_intent_requests_confirmation(self, data_provider, executor, emitter, august_window):
        """Test that suggested mutating actions come back as confirmations, not side effects."""
        provider = ScriptedCompletionProvider({
            "writer": [writer_payload(suggested_actions=[TRAVEL_BUDGET, SHOW_CHART])],
            "critic": [critic_payload()],
        })
        flow = make_flow(provider, data_provider, executor, emitter)

        reply = await flow.ask("user-123", "create_budget", "Set up a travel budget", august_window)

        assert reply.mode == Mode.ACTIONS
        assert [c.action_type for c in reply.confirmations] == ["create_budget"]
        assert executor.executed == []

    async def test_confirm_action_executes_and_returns_to_chat(self, data_provider, executor, emitter, august_window):
        """Test redeeming a confirmation runs the action once and leaves ACTIONS."""
        provider = ScriptedCompletionProvider({
            "writer": [writer_payload(suggested_actions=[TRAVEL_BUDGET])],
            "critic": [critic_payload()],
        })
        flow = make_flow(provider, data_provider, executor, emitter)
        reply = await flow.ask("user-123", "create_budget", "Set up a travel budget", august_window)
        confirmation = reply.confirmations[0]

        result = await flow.confirm_action(confirmation.confirmation_token, confirmation.idempotency_key)

        assert result.success
        assert len(executor.executed) == 1
        assert flow.mode == Mode.CHAT
        with pytest.raises(ConfirmationConsumedError):
            await flow.confirm_action(confirmation.confirmation_token, confirmation.idempotency_key)

    async def test_cancel_action(self, data_provider, executor, emitter, august_window):
        """Test that a cancelled suggestion never executes."""
        provider = ScriptedCompletionProvider({
            "writer": [writer_payload(suggested_actions=[TRAVEL_BUDGET])],
            "critic": [critic_payload()],
        })
        flow = make_flow(provider, data_provider, executor, emitter)
        reply = await flow.ask("user-123", "create_budget", "Set up a travel budget", august_window)

        await flow.cancel_action(reply.confirmations[0].confirmation_token)
        assert executor.executed == []

    async def test_record_outcome(self, data_provider, executor, emitter, analytics_sink):
        """Test that user feedback is reported against the message."""
        flow = make_flow(ScriptedCompletionProvider(), data_provider, executor, emitter)
        await flow.record_outcome("msg-1", UserOutcome.THUMBS_DOWN, detail="wrong total")

        event = analytics_sink.of_type(AnalyticsEventType.USER_OUTCOME)[0]
        assert event.message_id == "msg-1"
        assert event.payload == {"outcome": "thumbs_down", "detail": "wrong total"}

    async def test_shadow_candidate_compared(self, data_provider, executor, emitter, analytics_sink, august_window):
        """Test that a sampled user's question is also answered by the candidate."""
        provider = ScriptedCompletionProvider({"writer": [writer_payload()], "critic": [critic_payload()]})
        shadow = ShadowABHarness(InMemoryKeyValueStorage(), emitter=emitter, sample_rate=1.0)
        candidate = CascadeOrchestrator.from_provider(provider)
        flow = make_flow(provider, data_provider, executor, emitter, shadow=shadow, candidate=candidate)

        reply = await flow.ask("user-123", "get_budget_status", "How is my groceries budget?", august_window)
        await shadow.drain()

        assert reply.result.kind == "answer"
        payload = analytics_sink.of_type(AnalyticsEventType.SHADOW_RESULT)[0].payload
        assert payload["agree"] is True
        assert payload["agreement_basis"] == "fact_ids"

    async def test_deadline_bounds_current_and_candidate(self, data_provider, executor, august_window):
        """Test that a caller deadline reaches both the current and the shadow cascade."""
        provider = ScriptedCompletionProvider({"writer": [writer_payload()], "critic": [critic_payload()]})
        shadow = ShadowABHarness(InMemoryKeyValueStorage(), sample_rate=1.0)
        flow = AssistantFlow(
            fact_builder=FactPackBuilder(data_provider),
            cascade=CascadeOrchestrator.from_provider(provider, clock=lambda: 100.0),
            state_machine=ModeStateMachine(),
            confirmations=ActionConfirmationService(executor),
            shadow=shadow,
            candidate_cascade=CascadeOrchestrator.from_provider(provider, clock=lambda: 100.0),
        )

        reply = await flow.ask(
            "user-123", "get_budget_status", "How is my groceries budget?", august_window, deadline=99.0
        )
        await shadow.drain()

        assert reply.result.analytics.decision_path == DecisionPath.ERROR_FALLBACK
        assert shadow.stats()["sampled"] == 1
        assert provider.calls == []

    def test_shadow_requires_candidate(self, data_provider, executor, emitter):

        """Test that a harness without a candidate cascade is refused."""
        with pytest.raises(ValueError):
            make_flow(
                ScriptedCompletionProvider(),
                data_provider,
                executor,
                emitter,
                shadow=ShadowABHarness(InMemoryKeyValueStorage()),
            )


class TestCreateAppComponents:
    """Tests for the component factory."""

    @pytest.fixture(autouse=True)
    def memory_env(self, monkeypatch, tmp_path):
        monkeypatch.chdir(tmp_path)
        monkeypatch.setenv("STORAGE_BACKEND", "memory")
        monkeypatch.setenv("ANALYTICS_SINK", "log")
        monkeypatch.delenv("SHADOW_AB_ENABLED", raising=False)
        get_settings.cache_clear()
        yield
        get_settings.cache_clear()

    async def test_wires_a_working_flow(self, data_provider, august_window):
        """Test that the factory builds a flow that answers questions."""
        provider = ScriptedCompletionProvider({"writer": [writer_payload()], "critic": [critic_payload()]})
        components = await create_app_components(data_provider, FakeExecutor(), provider=provider)

        reply = await components.flow.ask("user-123", "get_budget_status", "How is my groceries budget?", august_window)

        assert reply.result.kind == "answer"
        assert components.shadow is None
        assert isinstance(components.storage, InMemoryKeyValueStorage)
        assert len(components.queue) == 0

    async def test_shadow_enabled_with_candidate_prompt(self, monkeypatch, tmp_path, data_provider):
        """Test that enabling shadow testing loads the candidate prompt and counter."""
        prompt_path = tmp_path / "candidate.txt"
        prompt_path.write_text("Answer only from the facts provided. Reply with JSON.")
        monkeypatch.setenv("SHADOW_AB_ENABLED", "true")
        monkeypatch.setenv("SHADOW_AB_CANDIDATE_PROMPT_PATH", str(prompt_path))

        components = await create_app_components(data_provider, FakeExecutor(), provider=ScriptedCompletionProvider())

        assert components.shadow is not None
        assert components.shadow.daily_count == 0

    async def test_queue_worker_uses_poll_interval(self, monkeypatch, data_provider):
        """Test that the queue worker drains on the configured interval and stops on request."""
        monkeypatch.setenv("ACTION_QUEUE_POLL_INTERVAL_SECONDS", "0.01")
        executor = FakeExecutor()
        components = await create_app_components(data_provider, executor, provider=ScriptedCompletionProvider())
        await components.queue.enqueue(QueuedActionType.CREATE, EntityType.BUDGET, {"name": "Travel"})

        stop = asyncio.Event()
        worker = asyncio.create_task(components.run_queue_worker(stop))
        for _ in range(100):
            if len(components.queue) == 0:
                break
            await asyncio.sleep(0.01)
        stop.set()
        await asyncio.wait_for(worker, timeout=1.0)

        assert components.queue_poll_interval == 0.01
        assert executor.executed == [(QueuedActionType.CREATE, EntityType.BUDGET, {"name": "Travel"})]



if __name__ == "__main__":
    pytest.main([__file__, "-v"])
