"""Analytics package."""

from fincascade.analytics.emitter import (
    AnalyticsEmitter,
    AnalyticsSinkInterface,
    InMemoryAnalyticsSink,
    StorageAnalyticsSink,
    configure_logging,
    hash_user_id,
    new_message_id,
    scrub_pii,
)

__all__ = [
    "AnalyticsEmitter",
    "AnalyticsSinkInterface",
    "InMemoryAnalyticsSink",
    "StorageAnalyticsSink",
    "configure_logging",
    "hash_user_id",
    "new_message_id",
    "scrub_pii",
]
