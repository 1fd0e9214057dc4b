"""Guardrail engine package."""

from fincascade.guards.engine import (
    extract_amounts,
    extract_dates,
    guard_claims,
    guard_numbers,
    guard_time_window,
    run_guards,
    run_post_improvement_guards,
)
from fincascade.guards.rules import (
    FORBIDDEN_CLAIM_RULES,
    HIGH_STAKES_RULES,
    PatternRule,
    RuleSet,
)

__all__ = [
    "FORBIDDEN_CLAIM_RULES",
    "HIGH_STAKES_RULES",
    "PatternRule",
    "RuleSet",
    "extract_amounts",
    "extract_dates",
    "guard_claims",
    "guard_numbers",
    "guard_time_window",
    "run_guards",
    "run_post_improvement_guards",
]
