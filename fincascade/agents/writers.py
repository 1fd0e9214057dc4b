"""
Tiered Writers

Three roles share one completion provider:

1. MINI WRITER:
   - CAN: Answer from the FactPack, cite the facts it used
   - CANNOT: Use a number that is not in the FactPack
   - MUST: Ask for clarification instead of guessing

2. MINI CRITIC:
   - CAN: Flag ambiguity, safety problems and fact mismatches
   - CANNOT: Rewrite the answer

3. PRO IMPROVER:
   - CAN: Rewrite a flagged answer using the same facts
   - CANNOT: Introduce facts, advice on specific securities, or guarantees
   - MUST: Keep every number traceable

The model is a WRITER, not an ORACLE.
It phrases facts the builder selected. It NEVER makes up financial data.
"""

import json
from dataclasses import dataclass
from typing import Generic, Optional, Sequence, TypeVar

from fincascade.agents.provider import (
    CompletionProvider,
    estimate_tokens,
    parse_payload,
)
from fincascade.models.cascade import (
    ContentKind,
    CriticIssue,
    CriticIssueType,
    CriticReport,
    GuardFailure,
    IntentType,
    ModelTier,
    RiskLevel,
    WriterOutput,
)
from fincascade.models.facts import FactPack


T = TypeVar("T")

DISCLAIMER = (
    "This information is for educational purposes only and should not be "
    "considered as financial advice."
)


@dataclass(frozen=True)
class StageResult(Generic[T]):
    """A parsed stage payload plus the tokens the stage consumed."""

    output: T
    tokens: int


WRITER_OUTPUT_SCHEMA = """{
  "version": "1.0",
  "answer_text": "string shown to the user",
  "used_fact_ids": ["ids of every fact you relied on"],
  "numeric_mentions": [
    {"value": 212.17, "unit": "USD", "kind": "spent|limit|remaining|balance|target|current|amount|average|forecast", "fact_id": "id of the fact"}
  ],
  "requires_clarification": false,
  "clarifying_questions": [],
  "suggested_actions": [{"label": "string", "action": "string", "payload": {}}],
  "content_kind": "status|explanation|strategy",
  "uncertainty_notes": []
}"""

WRITER_SYSTEM_PROMPT = f"""You are the answer writer for a personal-finance assistant.

Answer ONLY from the facts provided. Rules:
- Every dollar amount in answer_text must appear in numeric_mentions with the
  fact_id it comes from and the exact value from that fact.
- Never compute new totals, never estimate, never round differently.
- Only mention dates inside the time window.
- Never recommend buying or selling specific securities and never promise returns.
- If the question is ambiguous or the facts do not cover it, set
  requires_clarification to true and ask one short question.

Respond with ONLY a JSON object in this exact format:
{WRITER_OUTPUT_SCHEMA}"""

CRITIC_SYSTEM_PROMPT = """You review answers written by a personal-finance assistant.

Check the answer against the facts and the question:
- ambiguity: the question could mean several things and the answer picked one
- safety: the answer gives risky or personalised investment advice
- fact_mismatch: a number or claim is not supported by the facts
- missing_disclaimer: strategy content without an educational disclaimer

Respond with ONLY a JSON object in this exact format:
{"ok": true, "issues": [{"type": "ambiguity|safety|fact_mismatch|missing_disclaimer", "detail": "string"}], "risk": "low|medium|high", "recommend_escalation": false}"""

IMPROVER_SYSTEM_PROMPT = f"""You improve answers for a personal-finance assistant.

You receive the question, the facts, a draft answer and a review of it.
Rewrite the answer so that it resolves every issue in the review.
- Use ONLY numbers from the facts; cite each one in numeric_mentions.
- Strategy content must end with this disclaimer: "{DISCLAIMER}"
- Never recommend specific securities, never promise returns.

Respond with ONLY a JSON object in this exact format:
{WRITER_OUTPUT_SCHEMA}"""


def _facts_json(fact_pack: FactPack, per_category: int) -> str:
    return json.dumps(fact_pack.prompt_view(per_category=per_category), indent=2, sort_keys=True)


class MiniWriter:
    """
    First-pass answer writer.

    RESPONSIBILITIES:
    - Produce a WriterOutput grounded in the FactPack

    BOUNDARIES:
    - Sees at most `facts_per_category` facts per category
    - Does not judge its own output; guards and the critic do
    """

    def __init__(
        self,
        provider: CompletionProvider,
        system_prompt: str = WRITER_SYSTEM_PROMPT,
        facts_per_category: int = 5,
    ):
        self._provider = provider
        self._system_prompt = system_prompt
        self._facts_per_category = facts_per_category

    def build_prompt(self, user_query: str, fact_pack: FactPack, intent: IntentType) -> str:
        return f"""Question: {user_query}
Intent: {intent.value}
Time window: {fact_pack.time_window.label}

Facts:
{_facts_json(fact_pack, self._facts_per_category)}"""

    async def write(
        self,
        user_query: str,
        fact_pack: FactPack,
        intent: IntentType,
        tier: ModelTier = ModelTier.MINI,
    ) -> StageResult[WriterOutput]:
        if not user_query.strip():
            raise ValueError("user_query cannot be empty")
        prompt = self.build_prompt(user_query, fact_pack, intent)
        text = await self._provider.complete(self._system_prompt, prompt, tier=tier)
        output = parse_payload(text, WriterOutput)
        return StageResult(output=output, tokens=estimate_tokens(prompt) + estimate_tokens(text))


class MiniCritic:
    """Reviews a writer output. Always runs on the mini tier."""

    def __init__(
        self,
        provider: CompletionProvider,
        system_prompt: str = CRITIC_SYSTEM_PROMPT,
        facts_per_category: int = 5,
    ):
        self._provider = provider
        self._system_prompt = system_prompt
        self._facts_per_category = facts_per_category

    def build_prompt(self, user_query: str, draft: WriterOutput, fact_pack: FactPack) -> str:
        return f"""Question: {user_query}

Draft answer:
{draft.model_dump_json(indent=2)}

Facts:
{_facts_json(fact_pack, self._facts_per_category)}"""

    async def review(
        self,
        user_query: str,
        draft: WriterOutput,
        fact_pack: FactPack,
    ) -> StageResult[CriticReport]:
        prompt = self.build_prompt(user_query, draft, fact_pack)
        text = await self._provider.complete(self._system_prompt, prompt, tier=ModelTier.MINI)
        report = parse_payload(text, CriticReport)
        return StageResult(output=report, tokens=estimate_tokens(prompt) + estimate_tokens(text))


class ProImprover:
    """Rewrites a flagged answer on the pro tier."""

    def __init__(
        self,
        provider: CompletionProvider,
        system_prompt: str = IMPROVER_SYSTEM_PROMPT,
        facts_per_category: int = 8,
    ):
        self._provider = provider
        self._system_prompt = system_prompt
        self._facts_per_category = facts_per_category

    def build_prompt(
        self,
        user_query: str,
        draft: WriterOutput,
        review: CriticReport,
        fact_pack: FactPack,
        guard_failures: Sequence[GuardFailure] = (),
    ) -> str:
        failures = ", ".join(f.value for f in guard_failures) or "none"
        return f"""Question: {user_query}
Time window: {fact_pack.time_window.label}

Draft answer:
{draft.model_dump_json(indent=2)}

Review:
{review.model_dump_json(indent=2)}

Automated check failures: {failures}

Facts:
{_facts_json(fact_pack, self._facts_per_category)}"""

    async def improve(
        self,
        user_query: str,
        draft: WriterOutput,
        review: CriticReport,
        fact_pack: FactPack,
        guard_failures: Sequence[GuardFailure] = (),
    ) -> StageResult[WriterOutput]:
        prompt = self.build_prompt(user_query, draft, review, fact_pack, guard_failures)
        text = await self._provider.complete(self._system_prompt, prompt, tier=ModelTier.PRO)
        output = parse_payload(text, WriterOutput)
        return StageResult(output=output, tokens=estimate_tokens(prompt) + estimate_tokens(text))


# =============================================================================
# Synthetic inputs for the high-stakes path
# =============================================================================

def high_stakes_draft(intent: IntentType) -> WriterOutput:
    """Minimal draft handed to the improver when the writer is skipped."""
    topic = intent.value.lower().replace("_", " ")
    return WriterOutput(
        answer_text=f"I understand you're asking about {topic}. This requires careful analysis.",
        content_kind=ContentKind.STRATEGY,
        uncertainty_notes=("Complex financial planning question",),
    )


def high_stakes_review(rule_name: Optional[str] = None) -> CriticReport:
    detail = "High-stakes financial planning question"
    if rule_name:
        detail = f"{detail} ({rule_name})"
    return CriticReport(
        ok=False,
        issues=(CriticIssue(type=CriticIssueType.SAFETY, detail=detail),),
        risk=RiskLevel.HIGH,
        recommend_escalation=True,
    )
