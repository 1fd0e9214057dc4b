"""
Guardrail Engine

Pure validators run between the Writer and the user. They never mutate
their input and never raise on bad content: a failed check is data
(a GuardFailure in a GuardReport), because the orchestrator needs to
decide what to do with it.

CRITICAL: The numeric guard is what makes answers trustworthy.
- Every amount in answer_text must match a numeric_mention
- Every numeric_mention must reference a fact in the FactPack
- The mentioned value must equal that fact's value (to the cent)
"""

import math
import re
from datetime import date
from typing import Optional

from fincascade.guards.rules import FORBIDDEN_CLAIM_RULES, RuleSet
from fincascade.models.cascade import GuardFailure, GuardReport, WriterOutput
from fincascade.models.facts import FactPack


VALUE_TOLERANCE = 0.005

# $212.17, $1,200, $ 40 or bare 212.17 (two decimals); never percentages
_AMOUNT_PATTERN = re.compile(
    r"\$\s?(?P<dollar>\d[\d,]*(?:\.\d+)?)"
    r"|(?<![\d.,$\w])(?P<plain>\d[\d,]*\.\d{2})(?!\d)(?!\s?%)"
)

_ISO_DATE = re.compile(r"\b(\d{4})-(\d{1,2})-(\d{1,2})\b")
_US_DATE = re.compile(r"\b(\d{1,2})/(\d{1,2})/(\d{4})\b")
_NAMED_DATE = re.compile(
    r"\b(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)[a-z]*\.?\s+"
    r"(\d{1,2})(?:st|nd|rd|th)?,?\s+(\d{4})\b",
    re.IGNORECASE,
)
_MONTHS = {
    name: index
    for index, name in enumerate(
        ["jan", "feb", "mar", "apr", "may", "jun", "jul", "aug", "sep", "oct", "nov", "dec"],
        start=1,
    )
}


def _same_amount(a: float, b: float) -> bool:
    return math.isclose(a, b, abs_tol=VALUE_TOLERANCE)


def extract_amounts(text: str) -> list[float]:
    """Monetary amounts written in text, as positive floats."""
    amounts = []
    for match in _AMOUNT_PATTERN.finditer(text):
        raw = (match.group("dollar") or match.group("plain")).rstrip(",")
        try:
            amounts.append(float(raw.replace(",", "")))
        except ValueError:
            continue
    return amounts


def extract_dates(text: str) -> list[date]:
    """Calendar dates written in text; impossible dates are ignored."""
    found: list[date] = []

    def add(year: int, month: int, day: int) -> None:
        try:
            found.append(date(year, month, day))
        except ValueError:
            pass

    for m in _ISO_DATE.finditer(text):
        add(int(m.group(1)), int(m.group(2)), int(m.group(3)))
    for m in _US_DATE.finditer(text):
        add(int(m.group(3)), int(m.group(1)), int(m.group(2)))
    for m in _NAMED_DATE.finditer(text):
        add(int(m.group(3)), _MONTHS[m.group(1).lower()], int(m.group(2)))
    return found


def guard_numbers(output: WriterOutput, fact_pack: FactPack) -> GuardReport:
    """
    Check every cited number against the FactPack.

    A mention of a kind the fact does not carry is accepted if it
    matches any of that fact's values.
    """
    index = fact_pack.fact_index()
    failures: list[GuardFailure] = []
    details: list[str] = []

    def fail(failure: GuardFailure, detail: str) -> None:
        if failure not in failures:
            failures.append(failure)
        details.append(detail)

    for mention in output.numeric_mentions:
        values = index.get(mention.fact_id)
        if values is None:
            fail(
                GuardFailure.REFERENCES_MISSING_FACT,
                f"mention {mention.value} references unknown fact {mention.fact_id!r}",
            )
            continue
        expected: Optional[float] = values.get(mention.kind.value)
        if expected is not None:
            matched = _same_amount(mention.value, expected)
        else:
            matched = any(_same_amount(mention.value, v) for v in values.values())
        if not matched:
            fail(
                GuardFailure.MISMATCHED_VALUE,
                f"mention {mention.value} ({mention.kind.value}) does not match fact {mention.fact_id!r}",
            )

    mentioned = [abs(m.value) for m in output.numeric_mentions]
    for amount in extract_amounts(output.answer_text):
        if not any(_same_amount(amount, value) for value in mentioned):
            fail(
                GuardFailure.UNKNOWN_AMOUNT,
                f"amount {amount:.2f} in answer has no numeric mention",
            )

    return GuardReport(ok=not failures, failures=tuple(failures), details=tuple(details))


def guard_time_window(output: WriterOutput, fact_pack: FactPack) -> GuardReport:
    """Every date in the answer must fall inside the pack's time window."""
    window = fact_pack.time_window
    outside = [d for d in extract_dates(output.answer_text) if not window.contains(d)]
    if not outside:
        return GuardReport.passed()
    return GuardReport(
        ok=False,
        failures=(GuardFailure.OUT_OF_WINDOW_DATE,),
        details=tuple(
            f"date {d.isoformat()} outside {window.start.isoformat()}..{window.end.isoformat()}"
            for d in outside
        ),
    )


def guard_claims(output: WriterOutput, rules: RuleSet = FORBIDDEN_CLAIM_RULES) -> GuardReport:
    """Reject forbidden financial claims (guarantees, trade directives, ...)."""
    matched = rules.all_matches(output.answer_text)
    if not matched:
        return GuardReport.passed()
    return GuardReport(
        ok=False,
        failures=(GuardFailure.CLAIMS_FORBIDDEN_PHRASE,),
        details=tuple(f"forbidden claim: {rule.name}" for rule in matched),
    )


def run_guards(
    output: WriterOutput,
    fact_pack: FactPack,
    claim_rules: RuleSet = FORBIDDEN_CLAIM_RULES,
) -> GuardReport:
    """Numeric, time-window and claims guards, merged."""
    return GuardReport.merge(
        guard_numbers(output, fact_pack),
        guard_time_window(output, fact_pack),
        guard_claims(output, claim_rules),
    )


def run_post_improvement_guards(
    output: WriterOutput,
    fact_pack: FactPack,
    claim_rules: RuleSet = FORBIDDEN_CLAIM_RULES,
) -> GuardReport:
    """Guards re-run on the Pro Improver's output: numeric and claims."""
    return GuardReport.merge(
        guard_numbers(output, fact_pack),
        guard_claims(output, claim_rules),
    )
