"""
Cascade decision.

decide() is a pure function of the writer output, the critic report and
the FactPack (plus guard failures when the caller already has them).
It returns where the run goes next and why.
"""

from typing import Optional, Sequence

from fincascade.guards.engine import run_guards
from fincascade.models.cascade import (
    CascadeDecision,
    CriticIssueType,
    CriticReport,
    DecisionPath,
    GuardFailure,
    RiskLevel,
    WriterOutput,
)
from fincascade.models.facts import FactPack


def decide(
    writer: WriterOutput,
    critic: CriticReport,
    fact_pack: FactPack,
    guard_failures: Optional[Sequence[GuardFailure]] = None,
) -> CascadeDecision:
    """
    Choose return / clarify / escalate.

    Order:
    1. Writer asked for clarification -> clarify
    2. Critic rates risk high -> escalate
    3. Critic recommends escalation -> escalate
    4. Any guard failed -> escalate
    5. Critic flagged ambiguity -> clarify
    6. Otherwise -> return
    """
    if guard_failures is None:
        guard_failures = run_guards(writer, fact_pack).failures

    if writer.requires_clarification:
        return CascadeDecision(path=DecisionPath.CLARIFY, reason="writer_requested_clarification")
    if critic.risk == RiskLevel.HIGH:
        return CascadeDecision(path=DecisionPath.ESCALATE, reason="critic_high_risk")
    if critic.recommend_escalation:
        return CascadeDecision(path=DecisionPath.ESCALATE, reason="critic_recommends_escalation")
    if guard_failures:
        return CascadeDecision(path=DecisionPath.ESCALATE, reason="guard_failures")
    if critic.has_issue(CriticIssueType.AMBIGUITY):
        return CascadeDecision(path=DecisionPath.CLARIFY, reason="critic_ambiguity")
    return CascadeDecision(path=DecisionPath.RETURN, reason="grounded")
