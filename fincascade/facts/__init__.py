"""FactPack building and grounding cache."""

from fincascade.facts.builder import (
    INTENT_SCOPES,
    FactPackBuilder,
    FinancialDataProvider,
    compute_spending_patterns,
)
from fincascade.facts.cache import (
    CacheStats,
    GroundingCache,
    canonicalize_query,
    make_cache_key,
)

__all__ = [
    "INTENT_SCOPES",
    "CacheStats",
    "FactPackBuilder",
    "FinancialDataProvider",
    "GroundingCache",
    "canonicalize_query",
    "compute_spending_patterns",
    "make_cache_key",
]
