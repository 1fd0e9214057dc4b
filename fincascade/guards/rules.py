"""
Named pattern rules.

Each rule is a compiled regex with a name and a human description, so a
match can be reported ("claims_guaranteed_return") rather than just
"something matched". Rule sets are plain tuples; adding a rule never
touches the code that evaluates them.
"""

import re
from dataclasses import dataclass, field
from typing import Iterable, Optional


@dataclass(frozen=True)
class PatternRule:
    """A single named regex rule (case-insensitive by default)."""

    name: str
    pattern: str
    description: str = ""
    flags: int = re.IGNORECASE
    _compiled: re.Pattern = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "_compiled", re.compile(self.pattern, self.flags))

    def search(self, text: str) -> Optional[re.Match]:
        return self._compiled.search(text)

    def matches(self, text: str) -> bool:
        return self._compiled.search(text) is not None


class RuleSet:
    """An ordered collection of rules evaluated against text."""

    def __init__(self, name: str, rules: Iterable[PatternRule]):
        self.name = name
        self._rules: tuple[PatternRule, ...] = tuple(rules)
        names = [rule.name for rule in self._rules]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate rule names in {name}")

    @property
    def rules(self) -> tuple[PatternRule, ...]:
        return self._rules

    def extended(self, *rules: PatternRule) -> "RuleSet":
        """A new rule set with extra rules appended."""
        return RuleSet(self.name, self._rules + rules)

    def first_match(self, text: str) -> Optional[PatternRule]:
        for rule in self._rules:
            if rule.matches(text):
                return rule
        return None

    def all_matches(self, text: str) -> list[PatternRule]:
        return [rule for rule in self._rules if rule.matches(text)]

    def matches(self, text: str) -> bool:
        return self.first_match(text) is not None

    def __len__(self) -> int:
        return len(self._rules)


# =============================================================================
# Forbidden claims
# =============================================================================

_INSTRUMENTS = r"(?:stocks?|shares?|crypto(?:currency)?|bitcoin|btc|eth(?:ereum)?|(?:call |put )?options?|tickers?|etfs?|bonds?|mutual funds?)"

FORBIDDEN_CLAIM_RULES = RuleSet("forbidden_claims", [
    PatternRule(
        name="guaranteed_return",
        pattern=r"\bguarantee(?:d|s)?\b.*\breturns?\b",
        description="Promises a guaranteed return",
    ),
    PatternRule(
        name="risk_free",
        pattern=r"\brisk[-\s]?free\b",
        description="Describes an investment as risk-free",
    ),
    PatternRule(
        name="trade_directive",
        pattern=rf"\b(?:buy|sell|short|load up on)\b.*\b{_INSTRUMENTS}\b",
        description="Tells the user to trade a specific instrument",
    ),
    PatternRule(
        name="invest_for_return",
        pattern=rf"\binvest\w*\b.*\bmoney\b.*\b{_INSTRUMENTS}\b.*\breturns?\b",
        description="Recommends investing money for a return",
    ),
    PatternRule(
        name="should_invest",
        pattern=r"\bshould\b.*\binvest\b.*\bmoney\b",
        description="Directs the user to invest",
    ),
])


# =============================================================================
# High-stakes questions
# =============================================================================

HIGH_STAKES_RULES = RuleSet("high_stakes", [
    PatternRule("rebuild_savings", r"rebuild.*\d+.*month.*savings", "Multi-month savings rebuild"),
    PatternRule("rebuild_plan", r"rebuild.*\d+.*month.*plan", "Multi-month rebuild plan"),
    PatternRule("emergency_fund_plan", r"emergency.*fund.*plan", "Emergency fund planning"),
    PatternRule("retirement_strategy", r"retirement.*plan.*strategy", "Retirement strategy"),
    PatternRule("debt_payoff_plan", r"debt.*payoff.*plan", "Debt payoff planning"),
    PatternRule("major_purchase_plan", r"major.*purchase.*plan", "Major purchase planning"),
    PatternRule("life_insurance_plan", r"life.*insurance.*plan", "Insurance planning"),
    PatternRule("estate_planning", r"estate.*planning", "Estate planning"),
    PatternRule("consolidate_debt", r"consolidate.*debt", "Debt consolidation"),
    PatternRule("optimize_taxes", r"optimi[sz]e.*taxes", "Tax optimization"),
    PatternRule("investment_strategy", r"investment.*strategy", "Investment strategy"),
    PatternRule("financial_planning", r"financial.*planning", "Financial planning"),
    PatternRule("wealth_management", r"wealth.*management", "Wealth management"),
])
