"""Grounded response cascade."""

from fincascade.cascade.clarify import build_clarify_ui
from fincascade.cascade.decision import decide
from fincascade.cascade.orchestrator import (
    SAFE_TEMPLATE_TEXT,
    CascadeOrchestrator,
    finalize_answer,
    safe_template,
)

__all__ = [
    "SAFE_TEMPLATE_TEXT",
    "CascadeOrchestrator",
    "build_clarify_ui",
    "decide",
    "finalize_answer",
    "safe_template",
]
