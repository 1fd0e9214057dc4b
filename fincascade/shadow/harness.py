"""
Shadow A/B Harness

Runs a candidate pipeline next to the production one for a small, stable
slice of users and reports whether the two agree.

CRITICAL: The user only ever sees the current pipeline's result.
The candidate runs as a background task after the current result is
already in hand; its output and its failures never reach the caller.

Sampling:
1. Bucket = first 32 bits of SHA-256(user_id) / 2^32, so a user is
   either always in the shadow slice or never
2. A daily cap bounds candidate spend; the count survives restarts
3. Optionally, routes that already used many tokens are skipped
"""

import asyncio
import hashlib
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Coroutine, Optional

import structlog

from fincascade.analytics.emitter import AnalyticsEmitter
from fincascade.models.analytics import AnalyticsEventType
from fincascade.models.cascade import (
    AnswerResult,
    ClarifyResult,
    EscalatedResult,
    answer_of,
)
from fincascade.services.storage.interface import (
    SHADOW_DAILY_COUNT_KEY,
    KeyValueStorageInterface,
    StorageError,
)


logger = structlog.get_logger(__name__)


LENGTH_AGREEMENT_THRESHOLD = 0.2

_CASCADE_RESULTS = (AnswerResult, ClarifyResult, EscalatedResult)


def bucket_for(user_id: str) -> float:
    """Stable position of a user in [0, 1)."""
    digest = hashlib.sha256(user_id.encode("utf-8")).hexdigest()
    return int(digest[:8], 16) / 2 ** 32


def result_meta(result: Any) -> dict[str, Any]:
    """route/model/tokens for a cascade result; empty for anything else."""
    if not isinstance(result, _CASCADE_RESULTS):
        return {}
    analytics = result.analytics
    return {
        "route": analytics.decision_path.value,
        "model": analytics.model_tier.value if analytics.model_tier else None,
        "tokens": analytics.total_tokens,
    }


def _fact_ids(result: Any) -> frozenset[str]:
    answer = answer_of(result) if isinstance(result, _CASCADE_RESULTS) else None
    return frozenset(answer.used_fact_ids) if answer else frozenset()


def _text(result: Any) -> str:
    if isinstance(result, ClarifyResult):
        return result.data.question
    if isinstance(result, _CASCADE_RESULTS):
        return answer_of(result).answer_text
    return "" if result is None else str(result)


def responses_agree(current: Any, candidate: Any) -> tuple[bool, str]:
    """
    Whether two pipeline outputs say the same thing.

    Returns (agree, basis). The strongest available signal decides:
    cited fact ids, then result kind, then answer length.
    """
    current_ids = _fact_ids(current)
    candidate_ids = _fact_ids(candidate)
    if current_ids or candidate_ids:
        return current_ids == candidate_ids, "fact_ids"

    if isinstance(current, _CASCADE_RESULTS) and isinstance(candidate, _CASCADE_RESULTS):
        if current.kind != candidate.kind:
            return False, "result_kind"
        if not isinstance(current, AnswerResult):
            return True, "result_kind"

    current_len = len(_text(current))
    candidate_len = len(_text(candidate))
    longest = max(current_len, candidate_len)
    if longest == 0:
        return True, "length_heuristic"
    return abs(current_len - candidate_len) / longest < LENGTH_AGREEMENT_THRESHOLD, "length_heuristic"


@dataclass
class ShadowStats:
    checked: int = 0
    sampled: int = 0
    skipped_bucket: int = 0
    skipped_cap: int = 0
    skipped_tokens: int = 0
    agreed: int = 0
    disagreed: int = 0
    candidate_errors: int = 0


class ShadowABHarness:
    """
    Dual-runs a candidate pipeline for a sampled slice of users.

    RESPONSIBILITIES:
    - Decide, per call, whether the candidate runs
    - Keep the persisted daily count
    - Compare outputs and report the result

    BOUNDARIES:
    - NEVER changes what the caller receives
    - NEVER lets a candidate failure propagate
    """

    def __init__(
        self,
        storage: KeyValueStorageInterface,
        emitter: Optional[AnalyticsEmitter] = None,
        sample_rate: float = 0.05,
        daily_cap: int = 1000,
        skip_high_token_routes: bool = True,
        token_threshold: int = 500,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        if not 0.0 <= sample_rate <= 1.0:
            raise ValueError("sample_rate must be between 0 and 1")
        self._storage = storage
        self._emitter = emitter
        self.sample_rate = sample_rate
        self.daily_cap = daily_cap
        self.skip_high_token_routes = skip_high_token_routes
        self.token_threshold = token_threshold
        self._clock = clock
        self._count_date: Optional[str] = None
        self._count = 0
        self._tasks: set[asyncio.Task] = set()
        self._stats = ShadowStats()

    # -------------------------------------------------------------------------
    # Daily count
    # -------------------------------------------------------------------------

    def _today(self) -> str:
        return self._clock().date().isoformat()

    async def load(self) -> int:
        """Restore today's count from storage. Returns the count."""
        try:
            stored = await self._storage.get_json(SHADOW_DAILY_COUNT_KEY)
        except StorageError as e:
            logger.error("shadow_count_load_failed", error=str(e))
            stored = None

        today = self._today()
        if isinstance(stored, dict) and stored.get("date") == today:
            self._count = int(stored.get("count", 0))
        else:
            self._count = 0
        self._count_date = today
        return self._count

    def _roll_day(self) -> None:
        today = self._today()
        if self._count_date != today:
            self._count_date = today
            self._count = 0

    async def _save_count(self) -> None:
        try:
            await self._storage.set_json(
                SHADOW_DAILY_COUNT_KEY,
                {"date": self._count_date, "count": self._count},
            )
        except StorageError as e:
            logger.error("shadow_count_save_failed", error=str(e))

    @property
    def daily_count(self) -> int:
        self._roll_day()
        return self._count

    # -------------------------------------------------------------------------
    # Sampling
    # -------------------------------------------------------------------------

    def in_shadow(self, user_id: str) -> bool:
        return bucket_for(user_id) < self.sample_rate

    def _should_run(self, user_id: str, current_tokens: Optional[int]) -> bool:
        self._stats.checked += 1
        if not self.in_shadow(user_id):
            self._stats.skipped_bucket += 1
            return False
        self._roll_day()
        if self._count >= self.daily_cap:
            self._stats.skipped_cap += 1
            return False
        if (
            self.skip_high_token_routes
            and current_tokens is not None
            and current_tokens > self.token_threshold
        ):
            self._stats.skipped_tokens += 1
            return False
        return True

    # -------------------------------------------------------------------------
    # Dual run
    # -------------------------------------------------------------------------

    async def dual_run_if_needed(
        self,
        user_id: str,
        current_fn: Callable[[], Awaitable[Any]],
        candidate_fn: Callable[[], Awaitable[Any]],
        current_meta: Optional[dict[str, Any]] = None,
    ) -> Any:
        """
        Run current_fn and return its result. When the user is sampled,
        also start candidate_fn in the background.
        """
        current = await current_fn()

        meta = dict(result_meta(current))
        meta.update(current_meta or {})
        if not self._should_run(user_id, meta.get("tokens")):
            return current

        self._count += 1
        self._stats.sampled += 1
        # Neither the counter write nor the candidate is awaited here
        self._spawn(self._save_count())
        self._spawn(self._run_candidate(user_id, current, meta, candidate_fn))
        return current

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run_candidate(
        self,
        user_id: str,
        current: Any,
        current_meta: dict[str, Any],
        candidate_fn: Callable[[], Awaitable[Any]],
    ) -> None:
        try:
            candidate = await candidate_fn()
        except Exception as e:
            self._stats.candidate_errors += 1
            logger.warning("shadow_candidate_failed", error=str(e))
            await self._emit(
                user_id,
                agree=False,
                agreement_basis="candidate_error",
                current_meta=current_meta,
                candidate_meta={},
                error=str(e),
            )
            return

        agree, basis = responses_agree(current, candidate)
        if agree:
            self._stats.agreed += 1
        else:
            self._stats.disagreed += 1
        await self._emit(
            user_id,
            agree=agree,
            agreement_basis=basis,
            current_meta=current_meta,
            candidate_meta=result_meta(candidate),
        )

    async def _emit(self, user_id: str, **payload) -> None:
        if self._emitter is not None:
            await self._emitter.emit(
                AnalyticsEventType.SHADOW_RESULT,
                {"user_id": user_id, **payload},
            )

    async def drain(self) -> None:
        """Wait for every in-flight candidate run and counter write."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    def stats(self) -> dict[str, Any]:
        return {
            **vars(self._stats),
            "daily_count": self.daily_count,
            "daily_cap": self.daily_cap,
            "sample_rate": self.sample_rate,
            "in_flight": len(self._tasks),
        }
