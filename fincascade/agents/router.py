"""
Model Tier Router

Picks the cheapest tier likely to answer well. Pure functions only:
the same (intent, query) always routes to the same tier.

Precedence:
1. Pro keywords in the query (plan, optimize, strategy, invest, ...)
2. Standard keywords in the query (forecast, trend, pattern, compare)
3. OPTIMIZE_SPENDING intent -> pro
4. Per-intent table
5. Mini
"""

from typing import Mapping, Optional, Union

from fincascade.guards.rules import HIGH_STAKES_RULES, PatternRule, RuleSet
from fincascade.models.cascade import IntentType, ModelTier


PRO_QUERY_RULES = RuleSet("pro_keywords", [
    PatternRule("plan", r"\bplan"),
    PatternRule("optimize", r"optimi[sz]e"),
    PatternRule("strategy", r"strateg"),
    PatternRule("invest", r"\binvest"),
    PatternRule("analyze", r"analy[sz]"),
    PatternRule("recommend", r"recommend"),
])

STD_QUERY_RULES = RuleSet("std_keywords", [
    PatternRule("forecast", r"forecast"),
    PatternRule("trend", r"\btrend"),
    PatternRule("pattern", r"\bpattern"),
    PatternRule("compare", r"\bcompar"),
])

INTENT_TIERS: Mapping[IntentType, ModelTier] = {
    IntentType.OPTIMIZE_SPENDING: ModelTier.PRO,
    IntentType.FORECAST_SPEND: ModelTier.STD,
    IntentType.GET_BUDGET_STATUS: ModelTier.STD,
    IntentType.ANALYZE_SPENDING: ModelTier.STD,
    IntentType.GET_BALANCE: ModelTier.MINI,
    IntentType.GET_GOAL_STATUS: ModelTier.MINI,
}

DEFAULT_COST_PER_1K: Mapping[ModelTier, float] = {
    ModelTier.MINI: 0.0002,
    ModelTier.STD: 0.002,
    ModelTier.PRO: 0.03,
}


def pick_model(intent: Union[str, IntentType], user_query: str) -> ModelTier:
    """Choose the writer tier for a query."""
    if PRO_QUERY_RULES.matches(user_query):
        return ModelTier.PRO
    if STD_QUERY_RULES.matches(user_query):
        return ModelTier.STD
    return INTENT_TIERS.get(IntentType.coerce(intent), ModelTier.MINI)


def high_stakes_rule(user_query: str) -> Optional[PatternRule]:
    """The planning/strategy rule a query trips, if any."""
    return HIGH_STAKES_RULES.first_match(user_query)


def is_high_stakes_query(user_query: str) -> bool:
    return high_stakes_rule(user_query) is not None


def estimate_cost(
    tier: ModelTier,
    tokens: int,
    cost_per_1k: Optional[Mapping[ModelTier, float]] = None,
) -> float:
    """Estimated USD cost of `tokens` tokens on a tier."""
    table = cost_per_1k or DEFAULT_COST_PER_1K
    return round(tokens / 1000 * table[tier], 6)
