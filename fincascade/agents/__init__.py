"""Model-facing agents: provider contract, tier router and writer roles."""

from fincascade.agents.provider import (
    CompletionProvider,
    GeminiCompletionProvider,
    PayloadValidationError,
    ProviderError,
    ProviderTimeoutError,
    TierConfig,
    estimate_tokens,
    parse_payload,
)
from fincascade.agents.router import (
    estimate_cost,
    high_stakes_rule,
    is_high_stakes_query,
    pick_model,
)
from fincascade.agents.writers import (
    DISCLAIMER,
    WRITER_SYSTEM_PROMPT,
    MiniCritic,
    MiniWriter,
    ProImprover,
    StageResult,
)

__all__ = [
    # Provider
    "CompletionProvider",
    "GeminiCompletionProvider",
    "PayloadValidationError",
    "ProviderError",
    "ProviderTimeoutError",
    "TierConfig",
    "estimate_tokens",
    "parse_payload",
    # Router
    "estimate_cost",
    "high_stakes_rule",
    "is_high_stakes_query",
    "pick_model",
    # Writers
    "DISCLAIMER",
    "WRITER_SYSTEM_PROMPT",
    "MiniCritic",
    "MiniWriter",
    "ProImprover",
    "StageResult",
]
