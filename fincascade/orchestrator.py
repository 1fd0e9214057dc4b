"""
Assistant Flow

This module ties the components together and defines the end-to-end
flow for one user question:

    question -> FactPack -> tier -> cascade (shadowed) -> mode -> confirmations

and for the follow-ups the UI sends back: confirming or cancelling a
suggested action, and reporting what the user did with an answer.

DESIGN DECISION: The flow enforces the boundaries:
- No answer without a FactPack
- No side effect without a confirmation the user redeemed
- Every step is reported to analytics

This is the "glue" that keeps the system correct even when a model
behaves unexpectedly.
"""

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Union

import structlog

from fincascade.actions.confirmation import (
    ActionConfirmationService,
    UnknownActionError,
    is_mutating_action,
)
from fincascade.actions.executor import (
    ActionExecutorInterface,
    ConnectivityProbe,
)
from fincascade.actions.queue import ActionQueue, BackoffPolicy
from fincascade.agents.provider import CompletionProvider, GeminiCompletionProvider
from fincascade.agents.router import DEFAULT_COST_PER_1K, pick_model
from fincascade.analytics.emitter import (
    AnalyticsEmitter,
    StorageAnalyticsSink,
    configure_logging,
    new_message_id,
)
from fincascade.cascade.orchestrator import CascadeOrchestrator
from fincascade.config import Settings, get_settings
from fincascade.facts.builder import FactPackBuilder, FinancialDataProvider
from fincascade.facts.cache import GroundingCache
from fincascade.models.actions import ActionConfirmation, ActionExecutionResult
from fincascade.models.analytics import AnalyticsEventType, UserOutcome
from fincascade.models.cascade import (
    AnswerResult,
    ClarifyResult,
    EscalatedResult,
    IntentType,
    ModelTier,
    answer_of,
)
from fincascade.models.facts import TimeWindow
from fincascade.models.modes import Mode, ModeEvent, ModeEventType
from fincascade.modes.state_machine import ModeStateMachine
from fincascade.services.storage import (
    GoogleSheetsAnalyticsStorage,
    GoogleSheetsClient,
    GoogleSheetsKeyValueStorage,
    InMemoryKeyValueStorage,
    JsonFileKeyValueStorage,
    KeyValueStorageInterface,
)
from fincascade.shadow.harness import ShadowABHarness


logger = structlog.get_logger(__name__)


Result = Union[AnswerResult, ClarifyResult, EscalatedResult]


@dataclass
class AssistantReply:
    """What the UI renders for one question."""

    message_id: str
    result: Result
    mode: Mode
    confirmations: list[ActionConfirmation] = field(default_factory=list)


class AssistantFlow:
    """
    Orchestrates the question flow.

    Flow:
    1. Build the FactPack for the intent and window
    2. Pick the writer tier
    3. Run the cascade (and the shadow candidate, when sampled)
    4. Move the mode state machine
    5. Request confirmations for suggested mutating actions

    Suggested actions are NEVER executed here. They only run when the
    user redeems a confirmation through confirm_action().
    """

    def __init__(
        self,
        fact_builder: FactPackBuilder,
        cascade: CascadeOrchestrator,
        state_machine: ModeStateMachine,
        confirmations: ActionConfirmationService,
        shadow: Optional[ShadowABHarness] = None,
        candidate_cascade: Optional[CascadeOrchestrator] = None,
        emitter: Optional[AnalyticsEmitter] = None,
    ):
        if shadow is not None and candidate_cascade is None:
            raise ValueError("A shadow harness needs a candidate cascade")
        self._fact_builder = fact_builder
        self._cascade = cascade
        self._modes = state_machine
        self._confirmations = confirmations
        self._shadow = shadow
        self._candidate = candidate_cascade
        self._emitter = emitter

    @property
    def mode(self) -> Mode:
        return self._modes.current

    async def ask(
        self,
        user_id: str,
        intent: Union[str, IntentType],
        user_query: str,
        time_window: Optional[TimeWindow] = None,
        session_id: Optional[str] = None,
        deadline: Optional[float] = None,
    ) -> AssistantReply:
        """
        Answer one question.

        deadline is an absolute time on the cascade's clock; it bounds the
        current run and, when sampled, the shadow candidate.

        Returns:
            The cascade result, the mode after the question, and any
            confirmations the UI must present
        """
        intent = IntentType.coerce(intent)
        message_id = new_message_id()

        fact_pack = await self._fact_builder.build(user_id, intent, time_window)
        tier = pick_model(intent, user_query)

        async def run_current() -> Result:
            return await self._cascade.run(
                user_id,
                intent,
                user_query,
                fact_pack,
                tier=tier,
                deadline=deadline,
                session_id=session_id,
                message_id=message_id,
            )

        if self._shadow is not None:
            async def run_candidate() -> Result:
                return await self._candidate.run(
                    user_id,
                    intent,
                    user_query,
                    fact_pack,
                    tier=tier,
                    deadline=deadline,
                    session_id=session_id,
                    message_id=message_id,
                )

            result = await self._shadow.dual_run_if_needed(user_id, run_current, run_candidate)
        else:
            result = await run_current()

        state = await self._modes.dispatch(
            ModeEvent(type=ModeEventType.USER_QUERY, intent=intent.value)
        )
        confirmations = await self._request_confirmations(result)

        logger.info(
            "assistant_reply",
            message_id=message_id,
            kind=result.kind,
            decision_path=result.analytics.decision_path.value,
            mode=state.current.value,
            confirmations=len(confirmations),
        )
        return AssistantReply(
            message_id=message_id,
            result=result,
            mode=state.current,
            confirmations=confirmations,
        )

    async def _request_confirmations(self, result: Result) -> list[ActionConfirmation]:
        answer = answer_of(result)
        if answer is None:
            return []
        confirmations = []
        for suggestion in answer.suggested_actions:
            if not is_mutating_action(suggestion.action):
                continue
            try:
                confirmations.append(
                    await self._confirmations.request_confirmation(
                        suggestion.action,
                        suggestion.payload,
                    )
                )
            except UnknownActionError as e:
                logger.warning("suggested_action_skipped", action=suggestion.action, error=str(e))
        return confirmations

    # -------------------------------------------------------------------------
    # Follow-ups from the UI
    # -------------------------------------------------------------------------

    async def confirm_action(self, token: str, idempotency_key: str) -> ActionExecutionResult:
        """
        Redeem a confirmation. Confirmation errors propagate to the caller.
        """
        result = await self._confirmations.confirm(token, idempotency_key)
        if self._modes.current == Mode.ACTIONS:
            await self._modes.dispatch(ModeEvent(type=ModeEventType.ACTION_TAKEN))
        return result

    async def cancel_action(self, token: str) -> ActionConfirmation:
        return await self._confirmations.cancel(token)

    async def record_outcome(
        self,
        message_id: str,
        outcome: UserOutcome,
        detail: Optional[str] = None,
    ) -> None:
        """Report what the user did with an answer."""
        if self._emitter is None:
            return
        payload = {"outcome": outcome.value}
        if detail:
            payload["detail"] = detail
        await self._emitter.emit(AnalyticsEventType.USER_OUTCOME, payload, message_id=message_id)


@dataclass
class AppComponents:
    """Everything create_app_components() wires, for the host to start and stop."""

    flow: AssistantFlow
    queue: ActionQueue
    emitter: AnalyticsEmitter
    storage: KeyValueStorageInterface
    shadow: Optional[ShadowABHarness] = None
    queue_poll_interval: float = 30.0

    async def run_queue_worker(self, stop_event: asyncio.Event) -> None:
        """Drain the action queue every queue_poll_interval seconds until stop_event is set."""
        logger.info("queue_worker_started", interval_seconds=self.queue_poll_interval)
        await self.queue.run_periodic(self.queue_poll_interval, stop_event)
        logger.info("queue_worker_stopped", pending=len(self.queue))



def _build_storage(settings: Settings, sheets_client: Optional[GoogleSheetsClient]) -> KeyValueStorageInterface:
    backend = settings.storage.backend
    if backend == "memory":
        return InMemoryKeyValueStorage()
    if backend == "google_sheets":
        return GoogleSheetsKeyValueStorage(sheets_client)
    return JsonFileKeyValueStorage(settings.storage.directory)


def _cost_table(provider: CompletionProvider) -> dict[ModelTier, float]:
    table = dict(DEFAULT_COST_PER_1K)
    for tier in ModelTier:
        config = provider.tier_config(tier)
        if config is not None:
            table[tier] = config.cost_per_1k_tokens
    return table


async def create_app_components(
    data_provider: FinancialDataProvider,
    executor: ActionExecutorInterface,
    settings: Optional[Settings] = None,
    provider: Optional[CompletionProvider] = None,
    connectivity_probe: Optional[ConnectivityProbe] = None,
) -> AppComponents:
    """
    Factory function to create all application components.

    Loads the persisted queue and shadow counter before returning.

    Args:
        data_provider: Source of the user's financial records
        executor: Backend that runs confirmed actions
        settings: Defaults to get_settings()
        provider: Completion provider; Gemini from settings when None
        connectivity_probe: Queue's online check; always online when None
    """
    settings = settings or get_settings()
    app = settings.app
    configure_logging(app.log_level, app.json_logs)

    sheets_client = None
    if settings.storage.backend == "google_sheets" or settings.analytics.sink == "google_sheets":
        sheets_client = GoogleSheetsClient(settings.google_sheets)

    storage = _build_storage(settings, sheets_client)

    analytics_settings = settings.analytics
    sink = (
        StorageAnalyticsSink(GoogleSheetsAnalyticsStorage(sheets_client))
        if analytics_settings.sink == "google_sheets"
        else None
    )
    emitter = AnalyticsEmitter(
        sink=sink,
        sample_rate=analytics_settings.sample_rate,
        max_pending=analytics_settings.max_pending,
    )

    provider = provider or GeminiCompletionProvider(settings.gemini)
    cascade_settings = settings.cascade
    cache_settings = settings.cache
    cost_per_1k = _cost_table(provider)

    cascade = CascadeOrchestrator.from_provider(
        provider,
        writer_facts_per_category=cascade_settings.writer_facts_per_category,
        improver_facts_per_category=cascade_settings.improver_facts_per_category,
        cache=GroundingCache(
            capacity=cache_settings.capacity,
            ttl_seconds=cache_settings.ttl_seconds,
        ),
        emitter=emitter,
        stage_timeout=cascade_settings.stage_timeout_seconds,
        high_stakes_bypass=cascade_settings.high_stakes_bypass,
        cost_per_1k=cost_per_1k,
    )

    shadow = None
    candidate = None
    shadow_settings = settings.shadow
    if shadow_settings.enabled:
        candidate_prompt = None
        if shadow_settings.candidate_prompt_path:
            candidate_prompt = Path(shadow_settings.candidate_prompt_path).read_text(encoding="utf-8")
        # Candidate runs uncached and silent; only ai.shadow_result reports on it
        candidate = CascadeOrchestrator.from_provider(
            provider,
            writer_prompt=candidate_prompt,
            writer_facts_per_category=cascade_settings.writer_facts_per_category,
            improver_facts_per_category=cascade_settings.improver_facts_per_category,
            stage_timeout=cascade_settings.stage_timeout_seconds,
            high_stakes_bypass=cascade_settings.high_stakes_bypass,
            cost_per_1k=cost_per_1k,
        )
        shadow = ShadowABHarness(
            storage,
            emitter=emitter,
            sample_rate=shadow_settings.sample_rate,
            daily_cap=shadow_settings.daily_cap,
            skip_high_token_routes=shadow_settings.skip_high_token_routes,
            token_threshold=shadow_settings.token_threshold,
        )
        await shadow.load()

    queue_settings = settings.queue
    queue = ActionQueue(
        storage,
        executor,
        connectivity_probe=connectivity_probe,
        backoff=BackoffPolicy(
            base_delay=queue_settings.base_delay_seconds,
            max_delay=queue_settings.max_delay_seconds,
            jitter=queue_settings.jitter_seconds,
        ),
        max_queue_size=queue_settings.max_queue_size,
        max_retries=queue_settings.max_retries,
        ttl_seconds=queue_settings.ttl_seconds,
        emitter=emitter,
    )
    await queue.load()

    flow = AssistantFlow(
        fact_builder=FactPackBuilder(
            data_provider,
            top_n=cascade_settings.writer_facts_per_category,
            reuse_seconds=cache_settings.fact_pack_reuse_seconds,
        ),
        cascade=cascade,
        state_machine=ModeStateMachine(emitter=emitter),
        confirmations=ActionConfirmationService(
            executor,
            queue=queue,
            ttl_seconds=settings.confirmation.ttl_seconds,
            emitter=emitter,
        ),
        shadow=shadow,
        candidate_cascade=candidate,
        emitter=emitter,
    )
    logger.info(
        "app_components_created",
        environment=app.app_environment,
        storage=settings.storage.backend,
        analytics_sink=analytics_settings.sink,
        shadow_enabled=shadow is not None,
    )
    return AppComponents(
        flow=flow,
        queue=queue,
        emitter=emitter,
        storage=storage,
        shadow=shadow,
        queue_poll_interval=queue_settings.poll_interval_seconds,
    )
