"""
FactPack Builder

DESIGN DECISION: The builder is the ONLY component that talks to the
financial data provider. Writers, critics and guards see nothing but the
FactPack it returns, so the set of citable facts is decided here, once
per query.

The builder:
- Fetches only the categories the intent needs
- Keeps the top-N facts per category by relevance
- Derives spending patterns from every expense in the window
- Reuses a pack for the same user/intent/window for a short time
"""

import asyncio
import time
from abc import ABC, abstractmethod
from collections import defaultdict
from datetime import date, datetime
from typing import Any, Callable, Optional, TypeVar, Union
from zoneinfo import ZoneInfo

import structlog

from fincascade.models.cascade import IntentType
from fincascade.models.facts import (
    BalanceFact,
    BudgetFact,
    CategoryTotal,
    FactPack,
    GoalFact,
    RecurringFact,
    SpendingPatterns,
    SpendingTrend,
    TimeWindow,
    TransactionFact,
    TransactionType,
)


logger = structlog.get_logger(__name__)

T = TypeVar("T")


BALANCES = "balances"
BUDGETS = "budgets"
GOALS = "goals"
RECURRING = "recurring"
TRANSACTIONS = "transactions"
ALL_CATEGORIES = frozenset({BALANCES, BUDGETS, GOALS, RECURRING, TRANSACTIONS})

# Which fact categories each intent needs
INTENT_SCOPES: dict[IntentType, frozenset[str]] = {
    IntentType.GET_BALANCE: frozenset({BALANCES}),
    IntentType.GET_BUDGET_STATUS: frozenset({BUDGETS}),
    IntentType.GET_GOAL_STATUS: frozenset({GOALS}),
    IntentType.FORECAST_SPEND: frozenset({BUDGETS, RECURRING, TRANSACTIONS}),
    IntentType.ANALYZE_SPENDING: frozenset({BUDGETS, TRANSACTIONS}),
    IntentType.OPTIMIZE_SPENDING: frozenset({BUDGETS, RECURRING, TRANSACTIONS}),
    IntentType.CREATE_BUDGET: frozenset({BUDGETS, TRANSACTIONS}),
    IntentType.ADJUST_BUDGET: frozenset({BUDGETS, TRANSACTIONS}),
    IntentType.CREATE_GOAL: frozenset({GOALS, BALANCES}),
}

TREND_BAND = 0.10


class FinancialDataProvider(ABC):
    """
    Abstract source of a user's raw financial records.

    Records are plain dicts as returned by the ledger API. Both
    snake_case and camelCase keys are accepted by the builder.
    """

    @abstractmethod
    async def get_balances(self, user_id: str) -> list[dict]:
        """Accounts: id, name, account_type, current."""
        pass

    @abstractmethod
    async def get_budgets(self, user_id: str, start: date, end: date) -> list[dict]:
        """Budgets with spend in range: id, name, category, period, spent, limit."""
        pass

    @abstractmethod
    async def get_goals(self, user_id: str) -> list[dict]:
        """Goals: id, name, target_amount, current_amount, deadline, start_date."""
        pass

    @abstractmethod
    async def get_recurring(self, user_id: str) -> list[dict]:
        """Recurring expenses: id, name, amount, frequency, next_due, category, is_active."""
        pass

    @abstractmethod
    async def get_transactions(self, user_id: str, start: date, end: date) -> list[dict]:
        """Transactions in range: id, amount, category, date, type, description."""
        pass


# =============================================================================
# Record conversion
# =============================================================================

def _get(record: dict, name: str, default: Any = None) -> Any:
    """Read a field by snake_case name, falling back to camelCase."""
    if name in record:
        return record[name]
    head, *rest = name.split("_")
    camel = head + "".join(part.capitalize() for part in rest)
    return record.get(camel, default)


def _as_date(value: Any) -> Optional[date]:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def to_balance(record: dict) -> BalanceFact:
    return BalanceFact(
        id=str(_get(record, "id")),
        name=str(_get(record, "name", "Account")),
        account_type=str(_get(record, "account_type", "checking")),
        current=float(_get(record, "current", _get(record, "balance", 0.0))),
    )


def to_budget(record: dict) -> BudgetFact:
    return BudgetFact.create(
        id=str(_get(record, "id")),
        name=str(_get(record, "name", "Budget")),
        spent=float(_get(record, "spent", 0.0)),
        limit=float(_get(record, "limit", _get(record, "amount", 0.0))),
        category=_get(record, "category"),
        period=str(_get(record, "period", "monthly")),
    )


def to_goal(record: dict, as_of: date) -> GoalFact:
    return GoalFact.create(
        id=str(_get(record, "id")),
        name=str(_get(record, "name", "Goal")),
        target_amount=float(_get(record, "target_amount")),
        current_amount=float(_get(record, "current_amount", 0.0)),
        deadline=_as_date(_get(record, "deadline")),
        start_date=_as_date(_get(record, "start_date")),
        as_of=as_of,
    )


def to_recurring(record: dict) -> RecurringFact:
    return RecurringFact(
        id=str(_get(record, "id")),
        name=str(_get(record, "name", "Recurring expense")),
        amount=abs(float(_get(record, "amount", 0.0))),
        frequency=str(_get(record, "frequency", "monthly")),
        next_due=_as_date(_get(record, "next_due")),
        category=_get(record, "category"),
        is_active=bool(_get(record, "is_active", True)),
    )


def to_transaction(record: dict) -> TransactionFact:
    amount = float(_get(record, "amount", 0.0))
    raw_type = _get(record, "type")
    if raw_type is None:
        tx_type = TransactionType.INCOME if amount > 0 else TransactionType.EXPENSE
    else:
        tx_type = TransactionType(str(raw_type).lower())
    return TransactionFact(
        id=str(_get(record, "id")),
        amount=abs(amount),
        category=str(_get(record, "category") or "uncategorized"),
        occurred_on=_as_date(_get(record, "date", _get(record, "occurred_on"))),
        type=tx_type,
        description=str(_get(record, "description", "")),
    )


def convert_records(kind: str, records: list[dict], convert: Callable[[dict], T]) -> list[T]:
    """
    Convert provider records one at a time.

    A malformed record (missing date, non-numeric amount, non-positive
    goal target) is logged and left out; it never fails the whole pack.
    """
    facts: list[T] = []
    for record in records:
        try:
            facts.append(convert(record))
        except (ValueError, TypeError, KeyError, AttributeError) as e:
            logger.warning(
                "fact_record_skipped",
                kind=kind,
                record_id=str(_get(record, "id")) if isinstance(record, dict) else None,
                error=str(e),
            )
    return facts


# =============================================================================
# Derived facts
# =============================================================================


def compute_spending_patterns(
    transactions: list[TransactionFact],
    window: TimeWindow,
    as_of: date,
    top_n: int = 5,
) -> SpendingPatterns:
    """
    Aggregate every expense in the window.

    The average is per elapsed day (window start through as_of);
    projected_total extrapolates it to the whole window.
    """
    expenses = [
        t for t in transactions
        if t.type == TransactionType.EXPENSE and window.contains(t.occurred_on)
    ]
    last_day = min(max(as_of, window.start), window.end)
    elapsed_days = (last_day - window.start).days + 1
    total = round(sum(t.amount for t in expenses), 2)
    average_daily = round(total / elapsed_days, 2)

    by_category: dict[str, list[float]] = defaultdict(list)
    for t in expenses:
        by_category[t.category].append(t.amount)
    ranked = sorted(by_category.items(), key=lambda item: (-sum(item[1]), item[0]))
    top_categories = tuple(
        CategoryTotal(
            category=category,
            total=round(sum(amounts), 2),
            count=len(amounts),
            percentage=round(sum(amounts) / total * 100) if total else 0,
        )
        for category, amounts in ranked[:top_n]
    )

    trend = SpendingTrend.STABLE
    if elapsed_days >= 2:
        half = elapsed_days // 2
        first_days, second_days = half, elapsed_days - half
        first = sum(t.amount for t in expenses if (t.occurred_on - window.start).days < half)
        second = total - first
        first_rate, second_rate = first / first_days, second / second_days
        if first_rate > 0:
            if second_rate > first_rate * (1 + TREND_BAND):
                trend = SpendingTrend.INCREASING
            elif second_rate < first_rate * (1 - TREND_BAND):
                trend = SpendingTrend.DECREASING
        elif second_rate > 0:
            trend = SpendingTrend.INCREASING

    return SpendingPatterns(
        total_spent=total,
        average_daily=average_daily,
        projected_total=round(average_daily * window.days, 2),
        top_categories=top_categories,
        trend=trend,
    )


# =============================================================================
# Builder
# =============================================================================

class FactPackBuilder:
    """
    Builds FactPacks for the cascade.

    RESPONSIBILITIES:
    - Select the facts relevant to an intent
    - Compute derived values and the content hash

    BOUNDARIES:
    - NEVER calls a model
    - NEVER invents a fact the provider did not return
    """

    def __init__(
        self,
        data_provider: FinancialDataProvider,
        top_n: int = 5,
        reuse_seconds: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        today: Optional[Callable[[str], date]] = None,
    ):
        if top_n < 1:
            raise ValueError("top_n must be at least 1")
        self._provider = data_provider
        self._top_n = top_n
        self._reuse_seconds = reuse_seconds
        self._clock = clock
        self._today = today or (lambda tz: datetime.now(ZoneInfo(tz)).date())
        self._recent: dict[tuple, tuple[float, FactPack]] = {}

    @staticmethod
    def scope_for(intent: IntentType) -> frozenset[str]:
        return INTENT_SCOPES.get(intent, ALL_CATEGORIES)

    async def build(
        self,
        user_id: str,
        intent: Union[str, IntentType],
        time_window: Optional[TimeWindow] = None,
    ) -> FactPack:
        """
        Build (or reuse) the FactPack for one query.

        Args:
            user_id: Whose data to load
            intent: Classified intent; decides which categories are loaded
            time_window: Defaults to the current month in UTC

        Returns:
            A sealed, immutable FactPack
        """
        intent = IntentType.coerce(intent)
        window = time_window or TimeWindow.current_month("UTC", today=self._today("UTC"))
        key = (user_id, intent, window.start, window.end, window.tz)

        now = self._clock()
        self._recent = {
            k: v for k, v in self._recent.items() if now - v[0] < self._reuse_seconds
        }
        if key in self._recent:
            logger.debug("fact_pack_reused", intent=intent.value)
            return self._recent[key][1]

        pack = await self._build_fresh(user_id, intent, window)
        if self._reuse_seconds > 0:
            self._recent[key] = (now, pack)
        logger.info(
            "fact_pack_built",
            intent=intent.value,
            facts=pack.fact_count,
            hash=pack.hash[:12],
        )
        return pack

    async def _build_fresh(self, user_id: str, intent: IntentType, window: TimeWindow) -> FactPack:
        scope = self.scope_for(intent)
        as_of = self._today(window.tz)
        n = self._top_n

        async def empty() -> list[dict]:
            return []

        balances, budgets, goals, recurring, transactions = await asyncio.gather(
            self._provider.get_balances(user_id) if BALANCES in scope else empty(),
            self._provider.get_budgets(user_id, window.start, window.end) if BUDGETS in scope else empty(),
            self._provider.get_goals(user_id) if GOALS in scope else empty(),
            self._provider.get_recurring(user_id) if RECURRING in scope else empty(),
            self._provider.get_transactions(user_id, window.start, window.end) if TRANSACTIONS in scope else empty(),
        )

        balance_facts = sorted(
            convert_records("balance", balances, to_balance),
            key=lambda b: (-abs(b.current), b.id),
        )
        budget_facts = sorted(
            convert_records("budget", budgets, to_budget),
            key=lambda b: (-b.pressure, b.id),
        )
        goal_facts = sorted(
            convert_records("goal", goals, lambda r: to_goal(r, as_of)),
            key=lambda g: (-g.target_amount, g.id),
        )
        recurring_facts = sorted(
            (f for f in convert_records("recurring", recurring, to_recurring) if f.is_active),
            key=lambda r: (-r.amount, r.id),
        )
        transaction_facts = [
            t for t in convert_records("transaction", transactions, to_transaction)
            if window.contains(t.occurred_on)
        ]

        recent = sorted(transaction_facts, key=lambda t: (t.occurred_on, t.amount, t.id), reverse=True)

        patterns = (
            compute_spending_patterns(transaction_facts, window, as_of, top_n=n)
            if TRANSACTIONS in scope
            else None
        )

        return FactPack.seal(
            user_id=user_id,
            time_window=window,
            balances=tuple(balance_facts[:n]),
            budgets=tuple(budget_facts[:n]),
            goals=tuple(goal_facts[:n]),
            recurring=tuple(recurring_facts[:n]),
            recent_transactions=tuple(recent[:n]),
            spending_patterns=patterns,
        )
