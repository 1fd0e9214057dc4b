"""
Fact Models for the Grounded Response Cascade

A FactPack is the ONLY source of truth a model may cite. Every number the
assistant says must trace back to a fact in the pack the answer was
generated from.

DESIGN DECISION: FactPacks are immutable (frozen models, tuples).
Building a pack computes a SHA-256 content hash over every fact value,
so two packs with equal hashes are interchangeable for caching, and a
changed value always changes the hash.

CRITICAL: Derived values (remaining, utilization, status, progress) are
computed here, deterministically. A model is never asked to compute them.
"""

import hashlib
import json
from datetime import date, datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


FACT_PACK_SPEC_VERSION = "1.0"
SPENDING_PATTERNS_FACT_ID = "spending_patterns"

# Budget status thresholds (fraction of the limit)
AT_LIMIT_THRESHOLD = 0.95
OVER_LIMIT_THRESHOLD = 1.0


class ValueKind(str, Enum):
    """Which value of a fact a numeric mention refers to."""
    SPENT = "spent"
    LIMIT = "limit"
    REMAINING = "remaining"
    BALANCE = "balance"
    TARGET = "target"
    CURRENT = "current"
    AMOUNT = "amount"
    AVERAGE = "average"
    FORECAST = "forecast"


class BudgetStatus(str, Enum):
    UNDER = "under"
    AT_LIMIT = "at_limit"
    OVER = "over"


class GoalStatus(str, Enum):
    BEHIND = "behind"
    ON_TRACK = "on_track"
    AHEAD = "ahead"


class TransactionType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


class SpendingTrend(str, Enum):
    INCREASING = "increasing"
    DECREASING = "decreasing"
    STABLE = "stable"


# =============================================================================
# Time window
# =============================================================================

class TimeWindow(BaseModel):
    """
    Inclusive date range the facts were selected for.

    Dates are calendar dates in the user's timezone (IANA name).
    """

    model_config = ConfigDict(frozen=True)

    start: date
    end: date
    tz: str = Field(default="UTC", description="IANA timezone name")

    @field_validator("tz")
    @classmethod
    def validate_tz(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError):
            raise ValueError(f"Unknown timezone: {v}")
        return v

    @model_validator(mode="after")
    def validate_order(self) -> "TimeWindow":
        if self.end < self.start:
            raise ValueError("time window end must not precede start")
        return self

    @property
    def days(self) -> int:
        """Number of days in the window (inclusive)."""
        return (self.end - self.start).days + 1

    @property
    def label(self) -> str:
        """Human label, e.g. 'Aug 1–31, 2025 (America/New_York)'."""
        if (self.start.year, self.start.month) == (self.end.year, self.end.month):
            span = f"{self.start:%b} {self.start.day}–{self.end.day}, {self.start.year}"
        elif self.start.year == self.end.year:
            span = (
                f"{self.start:%b} {self.start.day}–"
                f"{self.end:%b} {self.end.day}, {self.end.year}"
            )
        else:
            span = (
                f"{self.start:%b} {self.start.day}, {self.start.year}–"
                f"{self.end:%b} {self.end.day}, {self.end.year}"
            )
        return f"{span} ({self.tz})"

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end

    @classmethod
    def current_month(cls, tz: str = "UTC", today: Optional[date] = None) -> "TimeWindow":
        """Window from the 1st of the current month to the end of the month."""
        today = today or datetime.now(ZoneInfo(tz)).date()
        start = today.replace(day=1)
        next_month = (start + timedelta(days=32)).replace(day=1)
        return cls(start=start, end=next_month - timedelta(days=1), tz=tz)

    @classmethod
    def last_n_days(cls, days: int, tz: str = "UTC", today: Optional[date] = None) -> "TimeWindow":
        """Window covering the last `days` days, today included."""
        if days < 1:
            raise ValueError("days must be at least 1")
        today = today or datetime.now(ZoneInfo(tz)).date()
        return cls(start=today - timedelta(days=days - 1), end=today, tz=tz)


# =============================================================================
# Facts
# =============================================================================

class BalanceFact(BaseModel):
    """Current balance of one account."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    account_type: str = "checking"
    current: float

    def values(self) -> dict[str, float]:
        return {ValueKind.BALANCE.value: self.current}


class BudgetFact(BaseModel):
    """A budget with its spend for the window and derived status."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    category: Optional[str] = None
    period: str = "monthly"
    spent: float = Field(..., ge=0)
    limit: float = Field(..., ge=0)
    remaining: float
    utilization: int = Field(..., ge=0, le=100, description="Percent of limit used, capped at 100")
    status: BudgetStatus

    @classmethod
    def create(
        cls,
        id: str,
        name: str,
        spent: float,
        limit: float,
        category: Optional[str] = None,
        period: str = "monthly",
    ) -> "BudgetFact":
        """Build a budget fact, computing remaining/utilization/status."""
        spent = round(spent, 2)
        limit = round(limit, 2)
        if limit > 0:
            ratio = spent / limit
        else:
            ratio = float("inf") if spent > 0 else 0.0

        if ratio > OVER_LIMIT_THRESHOLD:
            status = BudgetStatus.OVER
        elif ratio >= AT_LIMIT_THRESHOLD:
            status = BudgetStatus.AT_LIMIT
        else:
            status = BudgetStatus.UNDER

        return cls(
            id=id,
            name=name,
            category=category,
            period=period,
            spent=spent,
            limit=limit,
            remaining=round(max(0.0, limit - spent), 2),
            utilization=min(100, round(ratio * 100)) if ratio != float("inf") else 100,
            status=status,
        )

    @property
    def pressure(self) -> float:
        """Spent relative to limit; used to rank budgets by relevance."""
        return self.spent / self.limit if self.limit > 0 else float(self.spent > 0) * 10

    def values(self) -> dict[str, float]:
        return {
            ValueKind.SPENT.value: self.spent,
            ValueKind.LIMIT.value: self.limit,
            ValueKind.REMAINING.value: self.remaining,
        }


class GoalFact(BaseModel):
    """A savings goal with derived progress and pace."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    target_amount: float = Field(..., gt=0)
    current_amount: float = Field(..., ge=0)
    remaining: float
    progress: int = Field(..., ge=0, le=100)
    deadline: Optional[date] = None
    status: GoalStatus

    @classmethod
    def create(
        cls,
        id: str,
        name: str,
        target_amount: float,
        current_amount: float,
        deadline: Optional[date] = None,
        start_date: Optional[date] = None,
        as_of: Optional[date] = None,
    ) -> "GoalFact":
        """
        Build a goal fact.

        Pace is judged against linear progress between start_date and
        deadline; without both dates a goal is on track until completed.

        Raises ValueError when target_amount is not positive.
        """
        target_amount = round(target_amount, 2)
        current_amount = round(current_amount, 2)
        if target_amount <= 0:
            raise ValueError(f"Goal {id!r} has a non-positive target: {target_amount}")
        ratio = current_amount / target_amount

        status = GoalStatus.AHEAD if ratio >= 1.0 else GoalStatus.ON_TRACK
        if ratio < 1.0 and deadline and start_date and deadline > start_date:
            as_of = as_of or date.today()
            total_days = (deadline - start_date).days
            elapsed = min(max((as_of - start_date).days, 0), total_days)
            expected = elapsed / total_days
            if ratio < expected - 0.1:
                status = GoalStatus.BEHIND
            elif ratio > expected + 0.1:
                status = GoalStatus.AHEAD

        return cls(
            id=id,
            name=name,
            target_amount=target_amount,
            current_amount=current_amount,
            remaining=round(max(0.0, target_amount - current_amount), 2),
            progress=min(100, round(ratio * 100)),
            deadline=deadline,
            status=status,
        )

    def values(self) -> dict[str, float]:
        return {
            ValueKind.TARGET.value: self.target_amount,
            ValueKind.CURRENT.value: self.current_amount,
            ValueKind.REMAINING.value: self.remaining,
        }


class RecurringFact(BaseModel):
    """A recurring expense (rent, subscriptions, ...)."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    amount: float = Field(..., ge=0)
    frequency: str = "monthly"
    next_due: Optional[date] = None
    category: Optional[str] = None
    is_active: bool = True

    def values(self) -> dict[str, float]:
        return {ValueKind.AMOUNT.value: self.amount}


class TransactionFact(BaseModel):
    """A single transaction. Amount is always positive; type carries the sign."""

    model_config = ConfigDict(frozen=True)

    id: str
    amount: float = Field(..., ge=0)
    category: str = "uncategorized"
    occurred_on: date
    type: TransactionType = TransactionType.EXPENSE
    description: str = ""

    def values(self) -> dict[str, float]:
        return {ValueKind.AMOUNT.value: self.amount}


class CategoryTotal(BaseModel):
    model_config = ConfigDict(frozen=True)

    category: str
    total: float
    count: int
    percentage: int


class SpendingPatterns(BaseModel):
    """Aggregates derived from every expense in the window."""

    model_config = ConfigDict(frozen=True)

    total_spent: float
    average_daily: float
    projected_total: float = Field(
        ...,
        description="average_daily extrapolated over the whole window"
    )
    top_categories: tuple[CategoryTotal, ...] = ()
    trend: SpendingTrend = SpendingTrend.STABLE

    def values(self) -> dict[str, float]:
        return {
            ValueKind.SPENT.value: self.total_spent,
            ValueKind.AVERAGE.value: self.average_daily,
            ValueKind.FORECAST.value: self.projected_total,
        }


# =============================================================================
# FactPack
# =============================================================================

class FactPack(BaseModel):
    """
    Immutable bundle of facts for one user, one intent, one time window.

    The content hash is stamped on validation, so a pack built through
    the constructor or model_validate always carries a hash consistent
    with its facts. A caller-supplied hash is overwritten.
    """

    model_config = ConfigDict(frozen=True)

    spec_version: str = FACT_PACK_SPEC_VERSION
    user_id: str
    generated_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc),
        description="Build time; excluded from the hash"
    )
    time_window: TimeWindow

    balances: tuple[BalanceFact, ...] = ()
    budgets: tuple[BudgetFact, ...] = ()
    goals: tuple[GoalFact, ...] = ()
    recurring: tuple[RecurringFact, ...] = ()
    recent_transactions: tuple[TransactionFact, ...] = ()
    spending_patterns: Optional[SpendingPatterns] = None

    hash: str = Field(default="", description="SHA-256 over the canonical content")

    @model_validator(mode="after")
    def stamp_hash(self) -> "FactPack":
        # Frozen model: write through object to set the derived field
        object.__setattr__(self, "hash", self.compute_hash())
        return self

    @classmethod
    def seal(cls, **fields: Any) -> "FactPack":
        """Create a FactPack. Same as the constructor; kept for call sites."""
        fields.pop("hash", None)
        return cls(**fields)

    def canonical_json(self) -> str:
        content = self.model_dump(mode="json", exclude={"generated_at", "hash"})
        return json.dumps(content, sort_keys=True, separators=(",", ":"))

    def compute_hash(self) -> str:
        return hashlib.sha256(self.canonical_json().encode("utf-8")).hexdigest()

    def verify_hash(self) -> bool:
        """True when the stored hash still matches the content."""
        return bool(self.hash) and self.hash == self.compute_hash()

    # -------------------------------------------------------------------------
    # Lookup
    # -------------------------------------------------------------------------

    def fact_index(self) -> dict[str, dict[str, float]]:
        """Map of fact id -> {value kind: value}."""
        index: dict[str, dict[str, float]] = {}
        for group in (
            self.balances,
            self.budgets,
            self.goals,
            self.recurring,
            self.recent_transactions,
        ):
            for fact in group:
                index[fact.id] = fact.values()
        if self.spending_patterns is not None:
            index[SPENDING_PATTERNS_FACT_ID] = self.spending_patterns.values()
        return index

    def has_fact(self, fact_id: str) -> bool:
        return fact_id in self.fact_index()

    @property
    def fact_count(self) -> int:
        return len(self.fact_index())

    def prompt_view(self, per_category: int = 5, include_patterns: bool = True) -> dict:
        """
        JSON-ready view of the pack for prompts.

        At most `per_category` facts per category, in the order the
        builder ranked them.
        """
        view: dict[str, Any] = {
            "time_window": {
                "start": self.time_window.start.isoformat(),
                "end": self.time_window.end.isoformat(),
                "tz": self.time_window.tz,
                "label": self.time_window.label,
            },
        }
        for name in ("budgets", "goals", "balances", "recurring", "recent_transactions"):
            facts = getattr(self, name)[:per_category]
            if facts:
                view[name] = [fact.model_dump(mode="json") for fact in facts]
        if include_patterns and self.spending_patterns is not None:
            view["spending_patterns"] = {
                "id": SPENDING_PATTERNS_FACT_ID,
                **self.spending_patterns.model_dump(mode="json"),
            }
        return view
