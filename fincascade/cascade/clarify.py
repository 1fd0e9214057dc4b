"""
Clarification prompts.

When the cascade cannot answer safely it asks one question back. The
question comes from the strongest signal available, in this order:
guard failures, critic issues, the writer's own questions.
"""

from typing import Optional, Sequence

from fincascade.models.cascade import (
    ClarifyOption,
    ClarifyUI,
    CriticIssueType,
    CriticReport,
    GuardFailure,
    WriterOutput,
)
from fincascade.models.facts import FactPack


_NUMBER_FAILURES = frozenset({
    GuardFailure.UNKNOWN_AMOUNT,
    GuardFailure.MISMATCHED_VALUE,
    GuardFailure.REFERENCES_MISSING_FACT,
})

_TIME_OPTIONS = (
    ClarifyOption(label="This month", action="set_time_window", payload={"period": "current_month"}),
    ClarifyOption(label="Last month", action="set_time_window", payload={"period": "last_month"}),
    ClarifyOption(label="Last 3 months", action="set_time_window", payload={"period": "last_90_days"}),
)

_DEPTH_OPTIONS = (
    ClarifyOption(label="General overview", action="set_content_kind", payload={"content_kind": "explanation"}),
    ClarifyOption(label="Step-by-step plan", action="set_content_kind", payload={"content_kind": "strategy"}),
)

_SCOPE_OPTIONS = (
    ClarifyOption(label="My budgets", action="set_scope", payload={"scope": "budgets"}),
    ClarifyOption(label="My goals", action="set_scope", payload={"scope": "goals"}),
    ClarifyOption(label="My accounts", action="set_scope", payload={"scope": "balances"}),
)

_DEFAULT_CATEGORIES = ("Groceries", "Dining", "Transportation")


def clarify_from_guard_failures(failures: Sequence[GuardFailure]) -> ClarifyUI:
    if GuardFailure.OUT_OF_WINDOW_DATE in failures:
        return ClarifyUI(
            question="Which time period are you asking about?",
            options=_TIME_OPTIONS,
        )
    if GuardFailure.CLAIMS_FORBIDDEN_PHRASE in failures:
        return ClarifyUI(
            question="Are you looking for general information or a detailed plan?",
            options=_DEPTH_OPTIONS,
        )
    if _NUMBER_FAILURES.intersection(failures):
        return ClarifyUI(
            question="I found some numbers that don't match your data. Which part of your finances should I look at?",
            options=_SCOPE_OPTIONS,
        )
    return ClarifyUI(
        question="Could you rephrase your question so I can answer it accurately?",
        options=_SCOPE_OPTIONS,
    )


def clarify_from_critic(
    report: CriticReport,
    writer: Optional[WriterOutput] = None,
    fact_pack: Optional[FactPack] = None,
) -> ClarifyUI:
    """
    Clarification for the most serious critic issue.

    An ambiguity is phrased with the writer's own question when the writer
    supplied one.
    """
    if report.has_issue(CriticIssueType.SAFETY):
        return ClarifyUI(
            question="This needs a personalised plan. Would general educational information help instead?",
            options=_DEPTH_OPTIONS,
        )
    if report.has_issue(CriticIssueType.FACT_MISMATCH):
        return ClarifyUI(
            question="I want to get the numbers right. Which budget, goal or account do you mean?",
            options=_SCOPE_OPTIONS,
        )
    if report.has_issue(CriticIssueType.AMBIGUITY):
        if writer is not None and writer.clarifying_questions and fact_pack is not None:
            return clarify_from_writer(writer, fact_pack)
        return ClarifyUI(
            question="Could you tell me a bit more about what you'd like to know?",
            options=_SCOPE_OPTIONS + (_TIME_OPTIONS[0],),
        )
    return ClarifyUI(
        question="Could you rephrase your question so I can answer it accurately?",
        options=_SCOPE_OPTIONS,
    )


def clarify_from_writer(output: WriterOutput, fact_pack: FactPack) -> ClarifyUI:
    question = (
        output.clarifying_questions[0]
        if output.clarifying_questions
        else "Which category did you mean?"
    )
    if output.suggested_actions:
        options = tuple(
            ClarifyOption(label=a.label, action=a.action, payload=a.payload)
            for a in output.suggested_actions
        )
    else:
        names = [b.name for b in fact_pack.budgets[:3]] or list(_DEFAULT_CATEGORIES)
        options = tuple(
            ClarifyOption(label=name, action="select_category", payload={"category": name})
            for name in names
        )
    return ClarifyUI(question=question, options=options)


def build_clarify_ui(
    guard_failures: Sequence[GuardFailure],
    critic: CriticReport,
    writer: WriterOutput,
    fact_pack: FactPack,
) -> ClarifyUI:
    """Pick the clarification from the highest-priority signal."""
    if guard_failures:
        return clarify_from_guard_failures(guard_failures)
    if critic.issues:
        return clarify_from_critic(critic, writer, fact_pack)
    return clarify_from_writer(writer, fact_pack)
