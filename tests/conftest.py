"""Shared fixtures: a fixed FactPack, scripted providers and fake backends."""

import json
from datetime import date
from typing import Any, Optional

import pytest

from fincascade.actions.executor import (
    ActionExecutorInterface,
    ExecutorError,
    ExecutorUnavailableError,
)
from fincascade.agents.provider import CompletionProvider
from fincascade.analytics.emitter import AnalyticsEmitter, InMemoryAnalyticsSink
from fincascade.facts.builder import FinancialDataProvider
from fincascade.models.actions import EntityType, QueuedActionType
from fincascade.models.cascade import ModelTier
from fincascade.models.facts import (
    BalanceFact,
    BudgetFact,
    FactPack,
    GoalFact,
    TimeWindow,
)
from fincascade.services.storage.local import InMemoryKeyValueStorage


class ScriptedCompletionProvider(CompletionProvider):
    """
    Answers by role (writer / critic / improver) from a script.

    Each role has a list of responses; a str is returned, an Exception is
    raised. The last response of a role repeats once the list runs out.
    """

    def __init__(self, script: Optional[dict[str, list]] = None):
        self.script: dict[str, list] = {role: list(items) for role, items in (script or {}).items()}
        self.calls: list[tuple[str, ModelTier]] = []

    @staticmethod
    def role_of(system_prompt: str) -> str:
        if system_prompt.startswith("You review"):
            return "critic"
        if system_prompt.startswith("You improve"):
            return "improver"
        return "writer"

    async def complete(self, system_prompt: str, user_prompt: str, *, tier: ModelTier) -> str:
        role = self.role_of(system_prompt)
        self.calls.append((role, tier))
        responses = self.script.get(role)
        if not responses:
            raise AssertionError(f"No scripted response for {role}")
        response = responses.pop(0) if len(responses) > 1 else responses[0]
        if isinstance(response, Exception):
            raise response
        return response

    def roles_called(self) -> list[str]:
        return [role for role, _ in self.calls]


class FakeDataProvider(FinancialDataProvider):
    """Serves fixed records and counts calls per category."""

    def __init__(self, **records: list[dict]):
        self.records = records
        self.calls: dict[str, int] = {}

    def _serve(self, name: str) -> list[dict]:
        self.calls[name] = self.calls.get(name, 0) + 1
        return list(self.records.get(name, []))

    async def get_balances(self, user_id: str) -> list[dict]:
        return self._serve("balances")

    async def get_budgets(self, user_id: str, start: date, end: date) -> list[dict]:
        return self._serve("budgets")

    async def get_goals(self, user_id: str) -> list[dict]:
        return self._serve("goals")

    async def get_recurring(self, user_id: str) -> list[dict]:
        return self._serve("recurring")

    async def get_transactions(self, user_id: str, start: date, end: date) -> list[dict]:
        return self._serve("transactions")


class FakeExecutor(ActionExecutorInterface):
    """
    Records executed actions and the idempotency key of every attempt.

    `failures` is consumed one entry per call: None succeeds, "offline"
    raises ExecutorUnavailableError, "reject" raises ExecutorError.
    """

    def __init__(self, failures: Optional[list[Optional[str]]] = None):
        self.failures = list(failures or [])
        self.executed: list[tuple[QueuedActionType, EntityType, dict]] = []
        self.attempt_keys: list[Optional[str]] = []
        self.attempts = 0

    async def execute(
        self,
        action_type: QueuedActionType,
        entity: EntityType,
        data: dict[str, Any],
        idempotency_key: Optional[str] = None,
    ) -> dict:
        self.attempts += 1
        self.attempt_keys.append(idempotency_key)
        failure = self.failures.pop(0) if self.failures else None
        if failure == "offline":
            raise ExecutorUnavailableError("backend unreachable")
        if failure == "reject":
            raise ExecutorError("backend rejected the action")
        self.executed.append((action_type, entity, data))
        return {"ok": True, "id": f"{entity.value.lower()}-{len(self.executed)}"}


def writer_payload(**overrides) -> str:
    """A grounded writer answer about the Groceries budget, as JSON."""
    payload = {
        "version": "1.0",
        "answer_text": "You've spent $212.17 of your $400.00 Groceries budget, leaving $187.83.",
        "used_fact_ids": ["bud_groceries"],
        "numeric_mentions": [
            {"value": 212.17, "unit": "USD", "kind": "spent", "fact_id": "bud_groceries"},
            {"value": 400.00, "unit": "USD", "kind": "limit", "fact_id": "bud_groceries"},
            {"value": 187.83, "unit": "USD", "kind": "remaining", "fact_id": "bud_groceries"},
        ],
        "requires_clarification": False,
        "clarifying_questions": [],
        "suggested_actions": [],
        "content_kind": "status",
        "uncertainty_notes": [],
    }
    payload.update(overrides)
    return json.dumps(payload)


def critic_payload(**overrides) -> str:
    payload = {"ok": True, "issues": [], "risk": "low", "recommend_escalation": False}
    payload.update(overrides)
    return json.dumps(payload)


@pytest.fixture
def august_window() -> TimeWindow:
    return TimeWindow(start=date(2025, 8, 1), end=date(2025, 8, 31), tz="UTC")


@pytest.fixture
def fact_pack(august_window) -> FactPack:
    return FactPack.seal(
        user_id="user-123",
        time_window=august_window,
        balances=(BalanceFact(id="acct_checking", name="Checking", current=2450.00),),
        budgets=(
            BudgetFact.create("bud_dining", "Dining", spent=180.00, limit=150.00, category="dining"),
            BudgetFact.create("bud_groceries", "Groceries", spent=212.17, limit=400.00, category="groceries"),
        ),
        goals=(
            GoalFact.create(
                "goal_emergency",
                "Emergency fund",
                target_amount=5000.00,
                current_amount=1250.00,
                deadline=date(2025, 12, 31),
                start_date=date(2025, 1, 1),
                as_of=date(2025, 8, 15),
            ),
        ),
    )


@pytest.fixture
def grounded_writer() -> str:
    return writer_payload()


@pytest.fixture
def ok_critic() -> str:
    return critic_payload()


@pytest.fixture
def analytics_sink() -> InMemoryAnalyticsSink:
    return InMemoryAnalyticsSink()


@pytest.fixture
def emitter(analytics_sink) -> AnalyticsEmitter:
    return AnalyticsEmitter(sink=analytics_sink, session_id="session-test")


@pytest.fixture
def storage() -> InMemoryKeyValueStorage:
    return InMemoryKeyValueStorage()


@pytest.fixture
def executor() -> FakeExecutor:
    return FakeExecutor()


@pytest.fixture
def data_provider() -> FakeDataProvider:
    return FakeDataProvider(
        balances=[
            {"id": "acct_checking", "name": "Checking", "accountType": "checking", "current": 2450.00},
            {"id": "acct_savings", "name": "Savings", "account_type": "savings", "current": 8000.00},
        ],
        budgets=[
            {"id": "bud_groceries", "name": "Groceries", "category": "groceries", "spent": 212.17, "limit": 400.00},
            {"id": "bud_dining", "name": "Dining", "category": "dining", "spent": 180.00, "limit": 150.00},
            {"id": "bud_fuel", "name": "Fuel", "category": "transportation", "spent": 40.00, "limit": 200.00},
        ],
        goals=[
            {
                "id": "goal_emergency",
                "name": "Emergency fund",
                "targetAmount": 5000.00,
                "currentAmount": 1250.00,
                "deadline": "2025-12-31",
                "startDate": "2025-01-01",
            },
        ],
        recurring=[
            {"id": "rec_rent", "name": "Rent", "amount": 1500.00, "frequency": "monthly"},
            {"id": "rec_gym", "name": "Gym", "amount": 45.00, "isActive": False},
        ],
        transactions=[
            {"id": "tx_1", "amount": -60.00, "category": "groceries", "date": "2025-08-02"},
            {"id": "tx_2", "amount": -40.00, "category": "dining", "date": "2025-08-05"},
            {"id": "tx_3", "amount": -100.00, "category": "groceries", "date": "2025-08-12"},
            {"id": "tx_4", "amount": 3000.00, "category": "salary", "date": "2025-08-01"},
            {"id": "tx_old", "amount": -999.00, "category": "travel", "date": "2025-07-20"},
        ],
    )
