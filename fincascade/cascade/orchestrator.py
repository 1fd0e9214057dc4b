"""
Cascade Orchestrator

Runs one question through write -> guard -> critique -> decide -> escalate.

CRITICAL: run() never raises and never returns an unguarded answer.
- Provider errors, timeouts and malformed payloads become the safe
  template (decision_path = error_fallback)
- An improved answer that fails its guards becomes the safe template
  (decision_path = escalate_fallback)

Stages are sequential within a run and each one is bounded by
min(stage timeout, time left before the caller's deadline).
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Mapping, Optional, TypeVar, Union

import structlog

from fincascade.agents.provider import CompletionProvider, ProviderTimeoutError
from fincascade.agents.router import DEFAULT_COST_PER_1K, high_stakes_rule, pick_model
from fincascade.agents.writers import (
    MiniCritic,
    MiniWriter,
    ProImprover,
    high_stakes_draft,
    high_stakes_review,
)
from fincascade.analytics.emitter import AnalyticsEmitter, new_message_id
from fincascade.cascade.clarify import build_clarify_ui
from fincascade.cascade.decision import decide
from fincascade.facts.cache import GroundingCache, make_cache_key
from fincascade.guards.engine import run_guards, run_post_improvement_guards
from fincascade.guards.rules import FORBIDDEN_CLAIM_RULES, RuleSet
from fincascade.models.analytics import AnalyticsEventType
from fincascade.models.cascade import (
    AnswerResult,
    CascadeAnalytics,
    CascadeDecision,
    ClarifyResult,
    ContentKind,
    CriticReport,
    DecisionPath,
    EscalatedResponse,
    EscalatedResult,
    GuardFailure,
    IntentType,
    ModelTier,
    RiskLevel,
    WriterOutput,
)
from fincascade.models.facts import FactPack


logger = structlog.get_logger(__name__)

T = TypeVar("T")

Result = Union[AnswerResult, ClarifyResult, EscalatedResult]

SAFE_TEMPLATE_TEXT = (
    "I'm experiencing technical difficulties. Please try asking your question "
    "again, or check back in a few minutes."
)

FALLBACK_PATHS = frozenset({DecisionPath.ESCALATE_FALLBACK, DecisionPath.ERROR_FALLBACK})


def safe_template() -> WriterOutput:
    """Deterministic answer used whenever the cascade cannot answer safely."""
    return WriterOutput(
        answer_text=SAFE_TEMPLATE_TEXT,
        content_kind=ContentKind.STATUS,
        uncertainty_notes=("fallback_response",),
    )


def finalize_answer(output: WriterOutput, fact_pack: FactPack) -> WriterOutput:
    """Append the evidence sentence naming the window and the facts used."""
    used = len(set(output.used_fact_ids))
    if used == 0:
        return output
    evidence = f"Based on {used} data points from {fact_pack.time_window.label}."
    return output.model_copy(update={"answer_text": f"{output.answer_text}\n\n{evidence}"})


@dataclass
class _RunAccounting:
    """Mutable per-run counters; survives a stage failure."""

    tier: Optional[ModelTier] = None
    writer_tokens: int = 0
    critic_tokens: int = 0
    improver_tokens: int = 0
    guard_failures: list[GuardFailure] = field(default_factory=list)

    def add_failures(self, failures) -> None:
        for failure in failures:
            if failure not in self.guard_failures:
                self.guard_failures.append(failure)

    def analytics(
        self,
        path: DecisionPath,
        reason: str,
        cost_per_1k: Mapping[ModelTier, float],
    ) -> CascadeAnalytics:
        cost = (
            self.writer_tokens * cost_per_1k[self.tier or ModelTier.MINI]
            + self.critic_tokens * cost_per_1k[ModelTier.MINI]
            + self.improver_tokens * cost_per_1k[ModelTier.PRO]
        ) / 1000
        return CascadeAnalytics(
            writer_tokens=self.writer_tokens,
            critic_tokens=self.critic_tokens,
            improver_tokens=self.improver_tokens,
            guard_failures=tuple(self.guard_failures),
            decision_path=path,
            decision_reason=reason,
            model_tier=self.tier,
            estimated_cost_usd=round(cost, 6),
        )


class CascadeOrchestrator:
    """
    Runs the grounded response cascade.

    RESPONSIBILITIES:
    - Sequence the stages and apply the decision
    - Serve and populate the grounding cache
    - Report every stage to analytics

    BOUNDARIES:
    - NEVER loads financial data (the FactPack is given)
    - NEVER executes actions an answer suggests
    """

    def __init__(
        self,
        writer: MiniWriter,
        critic: MiniCritic,
        improver: ProImprover,
        cache: Optional[GroundingCache] = None,
        emitter: Optional[AnalyticsEmitter] = None,
        stage_timeout: float = 20.0,
        claim_rules: RuleSet = FORBIDDEN_CLAIM_RULES,
        high_stakes_bypass: bool = True,
        cost_per_1k: Optional[Mapping[ModelTier, float]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        """
        Args:
            cache: Grounding cache; None disables caching (shadow candidates)
            emitter: Analytics emitter; None disables events
            stage_timeout: Upper bound in seconds for one model stage
            clock: Monotonic clock that `deadline` values are measured on
        """
        self._writer = writer
        self._critic = critic
        self._improver = improver
        self._cache = cache
        self._emitter = emitter
        self._stage_timeout = stage_timeout
        self._claim_rules = claim_rules
        self._high_stakes_bypass = high_stakes_bypass
        self._cost_per_1k = cost_per_1k or DEFAULT_COST_PER_1K
        self._clock = clock

    @classmethod
    def from_provider(
        cls,
        provider: CompletionProvider,
        writer_prompt: Optional[str] = None,
        writer_facts_per_category: int = 5,
        improver_facts_per_category: int = 8,
        **kwargs,
    ) -> "CascadeOrchestrator":
        """Build the three roles on one provider."""
        writer = (
            MiniWriter(provider, system_prompt=writer_prompt, facts_per_category=writer_facts_per_category)
            if writer_prompt
            else MiniWriter(provider, facts_per_category=writer_facts_per_category)
        )
        return cls(
            writer=writer,
            critic=MiniCritic(provider, facts_per_category=writer_facts_per_category),
            improver=ProImprover(provider, facts_per_category=improver_facts_per_category),
            **kwargs,
        )

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    async def run(
        self,
        user_id: str,
        intent: Union[str, IntentType],
        user_query: str,
        fact_pack: FactPack,
        *,
        tier: Optional[ModelTier] = None,
        deadline: Optional[float] = None,
        session_id: Optional[str] = None,
        message_id: Optional[str] = None,
    ) -> Result:
        """
        Answer one question from one FactPack.

        Args:
            user_id: Who is asking (analytics only; hashed before emission)
            intent: Classified intent
            user_query: The question as typed
            fact_pack: The facts the answer may cite
            tier: Writer tier; chosen by the router when None
            deadline: Absolute time on the orchestrator clock by which the
                run must finish
            session_id / message_id: Correlation ids for analytics

        Returns:
            AnswerResult, ClarifyResult or EscalatedResult. Never raises.
        """
        intent = IntentType.coerce(intent)
        message_id = message_id or new_message_id()
        ids = {"message_id": message_id, "session_id": session_id}

        cache_key = None
        if self._cache is not None:
            cache_key = make_cache_key(intent, user_query, fact_pack.hash)
            cached = self._cache.get(cache_key)
            if cached is not None:
                await self._emit(
                    AnalyticsEventType.CACHE_HIT,
                    ids,
                    intent=intent.value,
                    decision_path=cached.analytics.decision_path.value,
                )
                return cached.model_copy(update={
                    "analytics": CascadeAnalytics(
                        decision_path=cached.analytics.decision_path,
                        decision_reason=cached.analytics.decision_reason,
                        model_tier=cached.analytics.model_tier,
                        cache_hit=True,
                    )
                })

        acc = _RunAccounting()
        await self._emit(
            AnalyticsEventType.CASCADE_START,
            ids,
            user_id=user_id,
            intent=intent.value,
            user_query=user_query,
            fact_count=fact_pack.fact_count,
            fact_pack_hash=fact_pack.hash,
        )

        try:
            result = await self._run_stages(intent, user_query, fact_pack, tier, deadline, acc, ids)
        except Exception as e:
            logger.error(
                "cascade_failed",
                intent=intent.value,
                error_type=type(e).__name__,
                error=str(e),
            )
            await self._emit(
                AnalyticsEventType.CASCADE_ERROR,
                ids,
                error_type=type(e).__name__,
                error=str(e),
            )
            result = self._safe_result(DecisionPath.ERROR_FALLBACK, "cascade_error", acc)

        analytics = result.analytics
        await self._emit(
            AnalyticsEventType.CASCADE_COMPLETE,
            ids,
            kind=result.kind,
            decision_path=analytics.decision_path.value,
            decision_reason=analytics.decision_reason,
            model_tier=analytics.model_tier.value if analytics.model_tier else None,
            total_tokens=analytics.total_tokens,
            estimated_cost_usd=analytics.estimated_cost_usd,
        )
        logger.info(
            "cascade_decision",
            intent=intent.value,
            decision_path=analytics.decision_path.value,
            reason=analytics.decision_reason,
            tokens=analytics.total_tokens,
        )

        if cache_key is not None and analytics.decision_path not in FALLBACK_PATHS:
            self._cache.set(cache_key, result)
        return result

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------

    async def _run_stages(
        self,
        intent: IntentType,
        user_query: str,
        fact_pack: FactPack,
        tier: Optional[ModelTier],
        deadline: Optional[float],
        acc: _RunAccounting,
        ids: dict,
    ) -> Result:
        rule = high_stakes_rule(user_query) if self._high_stakes_bypass else None
        if rule is not None:
            return await self._run_high_stakes(intent, user_query, fact_pack, rule.name, deadline, acc, ids)

        acc.tier = tier or pick_model(intent, user_query)
        written = await self._stage(
            "writer",
            self._writer.write(user_query, fact_pack, intent, acc.tier),
            deadline,
        )
        draft = written.output
        acc.writer_tokens = written.tokens
        await self._emit(
            AnalyticsEventType.WRITER_DONE,
            ids,
            tier=acc.tier.value,
            tokens=written.tokens,
            content_kind=draft.content_kind.value,
            requires_clarification=draft.requires_clarification,
            used_fact_count=len(draft.used_fact_ids),
        )

        guards = run_guards(draft, fact_pack, self._claim_rules)
        acc.add_failures(guards.failures)
        if not guards.ok:
            await self._emit(
                AnalyticsEventType.GUARD_FAIL,
                ids,
                stage="writer",
                failures=[f.value for f in guards.failures],
                details=list(guards.details),
            )

        if draft.requires_clarification:
            review = CriticReport.clarification_requested()
        else:
            reviewed = await self._stage(
                "critic",
                self._critic.review(user_query, draft, fact_pack),
                deadline,
            )
            review = reviewed.output
            acc.critic_tokens = reviewed.tokens
            await self._emit(
                AnalyticsEventType.CRITIC_DONE,
                ids,
                tokens=reviewed.tokens,
                ok=review.ok,
                risk=review.risk.value,
                issues=[i.type.value for i in review.issues],
                recommend_escalation=review.recommend_escalation,
            )

        decision = decide(draft, review, fact_pack, guards.failures)
        await self._emit(
            AnalyticsEventType.DECISION,
            ids,
            path=decision.path.value,
            reason=decision.reason,
        )

        if decision.path == DecisionPath.RETURN:
            return AnswerResult(
                data=finalize_answer(draft, fact_pack),
                analytics=self._analytics(acc, decision),
            )
        if decision.path == DecisionPath.CLARIFY:
            return ClarifyResult(
                data=build_clarify_ui(guards.failures, review, draft, fact_pack),
                analytics=self._analytics(acc, decision),
            )

        improved = await self._improve(user_query, draft, review, fact_pack, guards.failures, deadline, acc, ids)
        if improved is None:
            return self._safe_result(DecisionPath.ESCALATE_FALLBACK, "post_improvement_guards_failed", acc)
        return AnswerResult(
            data=finalize_answer(improved, fact_pack),
            analytics=self._analytics(acc, decision),
        )

    async def _run_high_stakes(
        self,
        intent: IntentType,
        user_query: str,
        fact_pack: FactPack,
        rule_name: str,
        deadline: Optional[float],
        acc: _RunAccounting,
        ids: dict,
    ) -> Result:
        """Skip the writer and go straight to the pro tier."""
        acc.tier = ModelTier.PRO
        await self._emit(
            AnalyticsEventType.DECISION,
            ids,
            path=DecisionPath.HIGH_STAKES_BYPASS.value,
            reason="high_stakes_query",
            rule=rule_name,
        )
        improved = await self._improve(
            user_query,
            high_stakes_draft(intent),
            high_stakes_review(rule_name),
            fact_pack,
            (),
            deadline,
            acc,
            ids,
        )
        if improved is None:
            return self._safe_result(DecisionPath.ESCALATE_FALLBACK, "post_improvement_guards_failed", acc)
        return EscalatedResult(
            data=EscalatedResponse(
                improved_answer=finalize_answer(improved, fact_pack),
                escalation_reason="high_stakes_query",
                risk_level=RiskLevel.HIGH,
            ),
            analytics=acc.analytics(DecisionPath.HIGH_STAKES_BYPASS, "high_stakes_query", self._cost_per_1k),
        )

    async def _improve(
        self,
        user_query: str,
        draft: WriterOutput,
        review: CriticReport,
        fact_pack: FactPack,
        guard_failures,
        deadline: Optional[float],
        acc: _RunAccounting,
        ids: dict,
    ) -> Optional[WriterOutput]:
        """Run the improver and its guards; None when the guards reject it."""
        improved = await self._stage(
            "improver",
            self._improver.improve(user_query, draft, review, fact_pack, guard_failures),
            deadline,
        )
        acc.improver_tokens = improved.tokens
        post = run_post_improvement_guards(improved.output, fact_pack, self._claim_rules)
        await self._emit(
            AnalyticsEventType.IMPROVER_USED,
            ids,
            tokens=improved.tokens,
            post_guards_ok=post.ok,
            failures=[f.value for f in post.failures],
        )
        if not post.ok:
            acc.add_failures(post.failures)
            await self._emit(
                AnalyticsEventType.GUARD_FAIL,
                ids,
                stage="improver",
                failures=[f.value for f in post.failures],
                details=list(post.details),
            )
            return None
        return improved.output

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    async def _stage(self, name: str, coro: Awaitable[T], deadline: Optional[float]) -> T:
        timeout = self._stage_timeout
        if deadline is not None:
            timeout = min(timeout, deadline - self._clock())
        if timeout <= 0:
            # Never started; close it so no "never awaited" warning leaks
            if asyncio.iscoroutine(coro):
                coro.close()
            raise ProviderTimeoutError(f"{name} stage skipped: deadline already passed")
        try:
            return await asyncio.wait_for(coro, timeout=timeout)
        except asyncio.TimeoutError:
            raise ProviderTimeoutError(f"{name} stage timed out after {timeout:.1f}s")

    def _analytics(self, acc: _RunAccounting, decision: CascadeDecision) -> CascadeAnalytics:
        return acc.analytics(decision.path, decision.reason, self._cost_per_1k)

    def _safe_result(self, path: DecisionPath, reason: str, acc: _RunAccounting) -> AnswerResult:
        return AnswerResult(
            data=safe_template(),
            analytics=acc.analytics(path, reason, self._cost_per_1k),
        )

    async def _emit(self, event_type: AnalyticsEventType, ids: dict, **payload) -> None:
        if self._emitter is None:
            return
        await self._emitter.emit(
            event_type,
            payload,
            message_id=ids.get("message_id"),
            session_id=ids.get("session_id"),
        )
