"""
Cascade Models

Payloads exchanged between the cascade stages and the final result
returned to callers.

The Writer, Critic and Improver all speak JSON; these models are the
schemas their payloads are validated against. A payload that does not
validate is a hard failure for that stage.
"""

from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from fincascade.models.facts import ValueKind


WRITER_OUTPUT_VERSION = "1.0"


class IntentType(str, Enum):
    """Classified user intents the cascade understands."""
    GET_BALANCE = "GET_BALANCE"
    GET_BUDGET_STATUS = "GET_BUDGET_STATUS"
    GET_GOAL_STATUS = "GET_GOAL_STATUS"
    FORECAST_SPEND = "FORECAST_SPEND"
    ANALYZE_SPENDING = "ANALYZE_SPENDING"
    OPTIMIZE_SPENDING = "OPTIMIZE_SPENDING"
    CREATE_BUDGET = "CREATE_BUDGET"
    ADJUST_BUDGET = "ADJUST_BUDGET"
    CREATE_GOAL = "CREATE_GOAL"
    EXPORT_DATA = "EXPORT_DATA"
    GENERAL_QA = "GENERAL_QA"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def coerce(cls, value: Union[str, "IntentType"]) -> "IntentType":
        """Accept loose intent strings; anything unrecognised is UNKNOWN."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().upper())
        except ValueError:
            return cls.UNKNOWN


class ModelTier(str, Enum):
    MINI = "mini"
    STD = "std"
    PRO = "pro"


class ContentKind(str, Enum):
    STATUS = "status"
    EXPLANATION = "explanation"
    STRATEGY = "strategy"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class CriticIssueType(str, Enum):
    AMBIGUITY = "ambiguity"
    SAFETY = "safety"
    FACT_MISMATCH = "fact_mismatch"
    MISSING_DISCLAIMER = "missing_disclaimer"


class GuardFailure(str, Enum):
    """Reasons a guard rejects a writer output."""
    UNKNOWN_AMOUNT = "unknown_amount"
    MISMATCHED_VALUE = "mismatched_value"
    REFERENCES_MISSING_FACT = "references_missing_fact"
    OUT_OF_WINDOW_DATE = "out_of_window_date"
    CLAIMS_FORBIDDEN_PHRASE = "claims_forbidden_phrase"


class DecisionPath(str, Enum):
    RETURN = "return"
    CLARIFY = "clarify"
    ESCALATE = "escalate"
    ESCALATE_FALLBACK = "escalate_fallback"
    HIGH_STAKES_BYPASS = "high_stakes_bypass"
    ERROR_FALLBACK = "error_fallback"


# =============================================================================
# Writer output
# =============================================================================

class NumericMention(BaseModel):
    """A number cited in the answer and the fact it comes from."""

    model_config = ConfigDict(frozen=True)

    value: float
    unit: str = "USD"
    kind: ValueKind
    fact_id: str = Field(..., description="Must resolve in the FactPack")


class SuggestedAction(BaseModel):
    """A follow-up the answer proposes; mutating ones need confirmation."""

    model_config = ConfigDict(frozen=True)

    label: str
    action: str
    payload: dict[str, Any] = Field(default_factory=dict)


class WriterOutput(BaseModel):
    """
    Structured answer produced by the Writer or the Improver.

    answer_text is what the user reads. Every amount in it must be backed
    by a numeric_mentions entry, and every mention by a fact.
    """

    model_config = ConfigDict(frozen=True)

    version: Literal["1.0"] = WRITER_OUTPUT_VERSION
    answer_text: str = Field(..., min_length=1)
    used_fact_ids: tuple[str, ...] = ()
    numeric_mentions: tuple[NumericMention, ...] = ()
    requires_clarification: bool = False
    clarifying_questions: tuple[str, ...] = ()
    suggested_actions: tuple[SuggestedAction, ...] = ()
    content_kind: ContentKind = ContentKind.STATUS
    uncertainty_notes: tuple[str, ...] = ()

    @field_validator("answer_text")
    @classmethod
    def strip_answer(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("answer_text cannot be empty")
        return v


class CriticIssue(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: CriticIssueType
    detail: str = ""

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, v: Any) -> Any:
        # providers sometimes say "factuality"
        if isinstance(v, str) and v.strip().lower() == "factuality":
            return CriticIssueType.FACT_MISMATCH.value
        return v


class CriticReport(BaseModel):
    """The Critic's verdict on a writer output."""

    model_config = ConfigDict(frozen=True)

    ok: bool
    issues: tuple[CriticIssue, ...] = ()
    risk: RiskLevel = RiskLevel.LOW
    recommend_escalation: bool = False

    def has_issue(self, issue_type: CriticIssueType) -> bool:
        return any(issue.type == issue_type for issue in self.issues)

    @classmethod
    def clarification_requested(cls) -> "CriticReport":
        """Synthetic report used when the Writer asked for clarification."""
        return cls(
            ok=False,
            issues=(
                CriticIssue(
                    type=CriticIssueType.AMBIGUITY,
                    detail="Writer requested clarification",
                ),
            ),
            risk=RiskLevel.LOW,
            recommend_escalation=False,
        )


# =============================================================================
# Guards and decisions
# =============================================================================

class GuardReport(BaseModel):
    model_config = ConfigDict(frozen=True)

    ok: bool
    failures: tuple[GuardFailure, ...] = ()
    details: tuple[str, ...] = ()

    @classmethod
    def passed(cls) -> "GuardReport":
        return cls(ok=True)

    @classmethod
    def merge(cls, *reports: "GuardReport") -> "GuardReport":
        """Combine reports, keeping failure order and dropping duplicates."""
        failures: list[GuardFailure] = []
        details: list[str] = []
        for report in reports:
            for failure in report.failures:
                if failure not in failures:
                    failures.append(failure)
            details.extend(report.details)
        return cls(ok=not failures, failures=tuple(failures), details=tuple(details))


class CascadeDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    path: DecisionPath
    reason: str


# =============================================================================
# Results
# =============================================================================

class ClarifyOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    label: str
    action: str
    payload: dict[str, Any] = Field(default_factory=dict)


class ClarifyUI(BaseModel):
    """A question for the user plus tappable options."""

    model_config = ConfigDict(frozen=True)

    question: str
    options: tuple[ClarifyOption, ...] = ()


class EscalatedResponse(BaseModel):
    model_config = ConfigDict(frozen=True)

    improved_answer: WriterOutput
    escalation_reason: str
    risk_level: RiskLevel


class CascadeAnalytics(BaseModel):
    """Per-run accounting attached to every result."""

    model_config = ConfigDict(frozen=True)

    writer_tokens: int = 0
    critic_tokens: int = 0
    improver_tokens: int = 0
    guard_failures: tuple[GuardFailure, ...] = ()
    decision_path: DecisionPath
    decision_reason: str = ""
    model_tier: Optional[ModelTier] = None
    cache_hit: bool = False
    estimated_cost_usd: float = 0.0

    @property
    def total_tokens(self) -> int:
        return self.writer_tokens + self.critic_tokens + self.improver_tokens


class AnswerResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["answer"] = "answer"
    data: WriterOutput
    analytics: CascadeAnalytics


class ClarifyResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["clarify"] = "clarify"
    data: ClarifyUI
    analytics: CascadeAnalytics


class EscalatedResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    kind: Literal["escalated"] = "escalated"
    data: EscalatedResponse
    analytics: CascadeAnalytics


CascadeResult = Annotated[
    Union[AnswerResult, ClarifyResult, EscalatedResult],
    Field(discriminator="kind"),
]


def answer_of(result: Union[AnswerResult, ClarifyResult, EscalatedResult]) -> Optional[WriterOutput]:
    """The WriterOutput a result delivers to the user, if any."""
    if isinstance(result, AnswerResult):
        return result.data
    if isinstance(result, EscalatedResult):
        return result.data.improved_answer
    return None
