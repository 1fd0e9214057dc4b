"""
Data Models Package

This package contains all Pydantic models used by the cascade.
All data flowing between stages must conform to these schemas.
"""

from fincascade.models.facts import (
    BalanceFact,
    BudgetFact,
    BudgetStatus,
    CategoryTotal,
    FactPack,
    GoalFact,
    GoalStatus,
    RecurringFact,
    SpendingPatterns,
    SpendingTrend,
    TimeWindow,
    TransactionFact,
    TransactionType,
    ValueKind,
)
from fincascade.models.cascade import (
    AnswerResult,
    CascadeAnalytics,
    CascadeDecision,
    CascadeResult,
    ClarifyOption,
    ClarifyResult,
    ClarifyUI,
    ContentKind,
    CriticIssue,
    CriticIssueType,
    CriticReport,
    DecisionPath,
    EscalatedResponse,
    EscalatedResult,
    GuardFailure,
    GuardReport,
    IntentType,
    ModelTier,
    NumericMention,
    RiskLevel,
    SuggestedAction,
    WriterOutput,
    answer_of,
)
from fincascade.models.actions import (
    ActionConfirmation,
    ActionExecutionResult,
    ActionPriority,
    ActionScope,
    ConfirmationStatus,
    EntityType,
    QueuedAction,
    QueuedActionType,
    QueueRunSummary,
    QueueStatus,
)
from fincascade.models.analytics import (
    AnalyticsEvent,
    AnalyticsEventType,
    UserOutcome,
)
from fincascade.models.modes import (
    Mode,
    ModeEvent,
    ModeEventType,
    ModeState,
    ModeTransition,
)

__all__ = [
    # Fact models
    "BalanceFact",
    "BudgetFact",
    "BudgetStatus",
    "CategoryTotal",
    "FactPack",
    "GoalFact",
    "GoalStatus",
    "RecurringFact",
    "SpendingPatterns",
    "SpendingTrend",
    "TimeWindow",
    "TransactionFact",
    "TransactionType",
    "ValueKind",
    # Cascade models
    "AnswerResult",
    "CascadeAnalytics",
    "CascadeDecision",
    "CascadeResult",
    "ClarifyOption",
    "ClarifyResult",
    "ClarifyUI",
    "ContentKind",
    "CriticIssue",
    "CriticIssueType",
    "CriticReport",
    "DecisionPath",
    "EscalatedResponse",
    "EscalatedResult",
    "GuardFailure",
    "GuardReport",
    "IntentType",
    "ModelTier",
    "NumericMention",
    "RiskLevel",
    "SuggestedAction",
    "WriterOutput",
    "answer_of",
    # Action models
    "ActionConfirmation",
    "ActionExecutionResult",
    "ActionPriority",
    "ActionScope",
    "ConfirmationStatus",
    "EntityType",
    "QueuedAction",
    "QueuedActionType",
    "QueueRunSummary",
    "QueueStatus",
    # Analytics models
    "AnalyticsEvent",
    "AnalyticsEventType",
    "UserOutcome",
    # Mode models
    "Mode",
    "ModeEvent",
    "ModeEventType",
    "ModeState",
    "ModeTransition",
]
