"""
Completion Provider

The cascade depends on a single contract:

    complete(system_prompt, user_prompt, tier) -> JSON text

Which model answers is a configuration detail of the provider. The
Gemini implementation maps each tier to a model and retries transient
errors; any provider can be swapped in (tests use a scripted one).

CRITICAL: Payloads are validated strictly. Text that is not a JSON
object matching the expected schema is a hard failure for that stage;
the orchestrator turns it into the safe fallback answer.
"""

import json
import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional, Type, TypeVar

import google.generativeai as genai
import structlog
from pydantic import BaseModel, ValidationError
from tenacity import (
    AsyncRetrying,
    retry_if_not_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from fincascade.config import GeminiSettings, get_settings
from fincascade.models.cascade import ModelTier


logger = structlog.get_logger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


class ProviderError(Exception):
    """Base exception for completion provider failures."""
    pass


class ProviderTimeoutError(ProviderError):
    """A stage did not finish before its deadline."""
    pass


class PayloadValidationError(ProviderError):
    """The provider returned text that is not a valid payload."""
    pass


@dataclass(frozen=True)
class TierConfig:
    model_name: str
    max_output_tokens: int
    cost_per_1k_tokens: float


def estimate_tokens(text: str) -> int:
    """Rough token count (4 characters per token)."""
    return math.ceil(len(text) / 4) if text else 0


def parse_payload(text: str, model_cls: Type[ModelT]) -> ModelT:
    """
    Parse provider text into a payload model.

    Tolerates prose or code fences around the JSON object, nothing else.

    Raises:
        PayloadValidationError: If no JSON object is found or it fails validation
    """
    start = text.find("{")
    end = text.rfind("}") + 1
    if start < 0 or end <= start:
        raise PayloadValidationError(f"No JSON object in {model_cls.__name__} payload")
    try:
        data = json.loads(text[start:end])
    except json.JSONDecodeError as e:
        raise PayloadValidationError(f"Malformed JSON in {model_cls.__name__} payload: {e}")
    if not isinstance(data, dict):
        raise PayloadValidationError(f"{model_cls.__name__} payload must be an object")
    try:
        return model_cls.model_validate(data)
    except ValidationError as e:
        raise PayloadValidationError(
            f"{model_cls.__name__} payload failed validation: {e.error_count()} errors"
        ) from e


class CompletionProvider(ABC):
    """Abstract completion engine used by every cascade stage."""

    @abstractmethod
    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        tier: ModelTier,
    ) -> str:
        """
        Run one completion.

        Returns:
            The raw response text (expected to be JSON)

        Raises:
            ProviderError: On any failure to obtain a response
        """
        pass

    def tier_config(self, tier: ModelTier) -> Optional[TierConfig]:
        """Model/cost details for a tier, when the provider knows them."""
        return None


class GeminiCompletionProvider(CompletionProvider):
    """
    Gemini-backed completion provider.

    Each tier maps to its own model name and output budget.
    Responses are requested as JSON.
    """

    def __init__(self, settings: Optional[GeminiSettings] = None):
        self._settings = settings or get_settings().gemini
        self._tiers = {
            ModelTier.MINI: TierConfig(
                self._settings.mini_model,
                self._settings.mini_max_tokens,
                self._settings.mini_cost_per_1k,
            ),
            ModelTier.STD: TierConfig(
                self._settings.std_model,
                self._settings.std_max_tokens,
                self._settings.std_cost_per_1k,
            ),
            ModelTier.PRO: TierConfig(
                self._settings.pro_model,
                self._settings.pro_max_tokens,
                self._settings.pro_cost_per_1k,
            ),
        }
        self._configure_genai()

    def _configure_genai(self):
        """Configure Google Generative AI."""
        genai.configure(api_key=self._settings.api_key)

    def tier_config(self, tier: ModelTier) -> TierConfig:
        return self._tiers[tier]

    def _model_for(self, tier: ModelTier, system_prompt: str) -> "genai.GenerativeModel":
        config = self._tiers[tier]
        return genai.GenerativeModel(
            model_name=config.model_name,
            system_instruction=system_prompt,
            generation_config={
                "temperature": self._settings.temperature,
                "max_output_tokens": config.max_output_tokens,
                "response_mime_type": "application/json",
            },
        )

    async def complete(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        tier: ModelTier,
    ) -> str:
        model = self._model_for(tier, system_prompt)
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self._settings.retry_attempts),
                wait=wait_exponential(multiplier=1, min=2, max=10),
                retry=retry_if_not_exception_type(PayloadValidationError),
                reraise=True,
            ):
                with attempt:
                    response = await model.generate_content_async(user_prompt)
                    try:
                        text = response.text
                    except ValueError as e:
                        # Blocked or empty candidates; retrying will not help
                        raise PayloadValidationError(f"Response has no text: {e}")
                    return text.strip()
        except ProviderError:
            raise
        except Exception as e:
            logger.warning(
                "completion_failed",
                tier=tier.value,
                model=self._tiers[tier].model_name,
                error=str(e),
            )
            raise ProviderError(f"Gemini completion failed: {e}") from e
        raise ProviderError("Gemini completion returned no result")
