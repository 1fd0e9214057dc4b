"""Shadow testing of candidate pipelines."""

from fincascade.shadow.harness import (
    ShadowABHarness,
    bucket_for,
    responses_agree,
    result_meta,
)

__all__ = [
    "ShadowABHarness",
    "bucket_for",
    "responses_agree",
    "result_meta",
]
