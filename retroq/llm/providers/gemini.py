"""
Gemini provider on Vertex AI.

Uses vertexai.generative_models with a JSON response mime type. Transient
failures (503 / UNAVAILABLE / overloaded / 429 / RESOURCE_EXHAUSTED) are
retried with tenacity; the first such failure on a "pro" model switches the
remaining attempts to the flash model.
"""

from __future__ import annotations

import json
from collections.abc import Callable
from functools import lru_cache
from typing import Any

from tenacity import AsyncRetrying, retry_if_exception, stop_after_attempt, wait_exponential

from retroq.config import CHUNK_PROMPT_MAX_CHARS, CHUNK_SUMMARY_MAX_CHARS, GEMINI_FALLBACK_MODEL
from retroq.contracts.insights import Insight, InsightSections
from retroq.contracts.providers import ChunkSummary
from retroq.llm.errors import ProviderInitializationError
from retroq.llm.monitor import PerformanceMonitor, RequestStatus
from retroq.llm.prompt_builder import Prompt, PromptBuilder
from retroq.llm.prompts import get_loader
from retroq.llm.providers.base import BaseProvider
from retroq.llm.providers.config import ProviderConfig
from retroq.llm.response_parser import ResponseParser
from retroq.observability.logging import get_logger
from retroq.observability.telemetry import counter
from retroq.utils.redaction import redact_text

logger = get_logger(__name__)

TOP_P = 0.8
RETRY_MAX_WAIT_SECONDS = 15
PARTIAL_DETAILS_CHARS = 500


@lru_cache(maxsize=4)
def get_generative_model(model_name: str, project: str | None, location: str):
    """
    Get or create a shared GenerativeModel for (model, project, location).

    Raises:
        ProviderInitializationError: SDK missing, project unset, or init failed
    """
    try:
        import vertexai
        from vertexai.generative_models import GenerativeModel
    except ImportError as e:
        raise ProviderInitializationError(
            "Vertex AI SDK not available. Install google-cloud-aiplatform."
        ) from e

    if not project:
        raise ProviderInitializationError("GOOGLE_CLOUD_PROJECT not set")

    try:
        vertexai.init(project=project, location=location)
        model = GenerativeModel(model_name)
    except Exception as e:
        logger.error("Failed to initialize Gemini model: %s", e)
        raise ProviderInitializationError(f"Failed to initialize Gemini: {e}") from e

    logger.info("Initialized Gemini model (Vertex AI): project=%s, location=%s, model=%s", project, location, model_name)
    return model


def clear_model_cache() -> None:
    get_generative_model.cache_clear()
    logger.info("Cleared Gemini model cache")


def is_retryable_gemini_error(error: BaseException) -> bool:
    if isinstance(error, ProviderInitializationError):
        return False
    code = getattr(error, "code", None)
    status = str(getattr(error, "status", "") or "").upper()
    message = str(error).lower()
    return (
        code in (503, 429)
        or status in ("UNAVAILABLE", "RESOURCE_EXHAUSTED")
        or "overloaded" in message
        or "503" in message
        or "resource_exhausted" in message
        or "unavailable" in message
    )


def strip_code_fences(text: str | None) -> str:
    if not text:
        return ""
    trimmed = text.strip()
    if trimmed.startswith("```"):
        trimmed = trimmed[3:]
        if trimmed.lower().startswith("json"):
            trimmed = trimmed[4:]
    if trimmed.endswith("```"):
        trimmed = trimmed[:-3]
    return trimmed.strip()


def response_text(response: Any) -> str:
    """Text from a GenerateContentResponse, or "" if the model returned none."""
    try:
        text = response.text
    except (AttributeError, ValueError, IndexError):
        # .text raises ValueError when the candidate has no text part
        text = None
    if text:
        return text
    try:
        return response.candidates[0].content.parts[0].text or ""
    except (AttributeError, IndexError, TypeError):
        return ""


class GeminiProvider(BaseProvider):
    """
    LLMProvider for Gemini models.

    Args:
        config: Provider settings (project/location come from env by default)
        monitor: Optional PerformanceMonitor for request tracking
        model_factory: Callable(model_name) -> model with generate_content_async;
            defaults to the cached Vertex AI GenerativeModel
    """

    def __init__(
        self,
        config: ProviderConfig,
        monitor: PerformanceMonitor | None = None,
        model_factory: Callable[[str], Any] | None = None,
    ):
        super().__init__(config, monitor)
        self._model_factory = model_factory or (
            lambda name: get_generative_model(name, self.config.project, self.config.location)
        )
        self.prompt_builder = PromptBuilder.for_model(
            "gemini", self.get_model(), safety_margin=0.95, total_headroom=0.98, target_utilization=0.9
        )
        self.parser = ResponseParser()

    def _generation_config(self) -> dict[str, Any]:
        return {
            "response_mime_type": "application/json",
            "temperature": self.config.temperature,
            "top_p": TOP_P,
            "max_output_tokens": self.config.max_tokens,
        }

    async def _generate(self, text: str) -> tuple[str, str]:
        """
        Call the model with retry and pro -> flash fallback.

        Returns:
            (response text, model name that answered)
        """
        active_model = self.get_model()
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.config.retry_attempts),
            wait=wait_exponential(multiplier=self.config.retry_delay_seconds, max=RETRY_MAX_WAIT_SECONDS),
            retry=retry_if_exception(is_retryable_gemini_error),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                try:
                    model = self._model_factory(active_model)
                    response = await model.generate_content_async(text, generation_config=self._generation_config())
                except Exception as exc:
                    if is_retryable_gemini_error(exc) and "pro" in active_model and active_model != GEMINI_FALLBACK_MODEL:
                        logger.warning("Gemini %s overloaded, switching to %s", active_model, GEMINI_FALLBACK_MODEL)
                        counter("llm.model_fallback")
                        active_model = GEMINI_FALLBACK_MODEL
                    else:
                        logger.warning(
                            "Gemini request failed (attempt %d/%d, model %s): %s",
                            attempt.retry_state.attempt_number,
                            self.config.retry_attempts,
                            active_model,
                            exc,
                        )
                    raise
                return response_text(response), active_model
        raise RuntimeError("unreachable: tenacity reraises the last error")

    async def generate_insights(self, sanitized_data: dict[str, Any], context: dict[str, Any]) -> InsightSections:
        """
        Generate retro insights for the given (already sanitized) team data.

        Uses context["prompt"] when the caller already built one, otherwise
        builds and clamps a Gemini-sized prompt.

        Raises:
            ProviderInitializationError: the Vertex AI model could not be created
            RuntimeError: empty output or a failed call after retries
        """
        prompt = context.get("prompt")
        if not isinstance(prompt, Prompt):
            prompt = self.prompt_builder.build_prompt(sanitized_data, {**context, "provider": "gemini", "model": self.get_model()})
        prompt = self.prompt_builder.clamp_prompt_to_budget(prompt)

        text = f"{prompt.system}\n\n{prompt.user}"
        input_tokens = self.estimate_token_count(text)
        request_id = self.start_tracking(input_tokens)
        logger.info(
            "Gemini call start: model=%s est_input_tokens=%d max_data_tokens=%s",
            self.get_model(),
            input_tokens,
            prompt.metadata.get("max_data_tokens"),
        )

        try:
            output, answered_by = await self._generate(text)
            if not output:
                raise RuntimeError("Empty response from Gemini")
        except ProviderInitializationError:
            self.complete_tracking(request_id, 0, RequestStatus.ERROR)
            raise
        except Exception as exc:
            self.complete_tracking(request_id, 0, RequestStatus.ERROR)
            raise RuntimeError(f"Failed to generate insights: {exc}") from exc

        self.complete_tracking(request_id, self.estimate_token_count(output), RequestStatus.SUCCESS)
        logger.debug("Gemini raw output: %s", redact_text(output))
        return self._parse_output(strip_code_fences(output), answered_by, prompt)

    def _parse_output(self, cleaned: str, model_name: str, prompt: Prompt) -> InsightSections:
        try:
            payload = json.loads(cleaned)
        except json.JSONDecodeError:
            payload = None

        if isinstance(payload, dict) and all(key in payload for key in ("wentWell", "didntGoWell", "actionItems")):
            parsed = self.parser.parse_json_response(cleaned, "gemini")
            if parsed is not None:
                return parsed.model_copy(
                    update={
                        "metadata": {
                            **parsed.metadata,
                            "model": model_name,
                            "prompt_tokens": prompt.metadata.get("estimated_tokens"),
                        }
                    }
                )

        # Partial insight so the run still returns something usable
        logger.warning("Gemini output was not the expected JSON shape, returning partial insight")
        counter("llm.parse.partial")
        partial = Insight(
            title="AI Analysis Available",
            details=cleaned[:PARTIAL_DETAILS_CHARS],
            source="ai",
            llm_provider="gemini",
        )
        return InsightSections(went_well=(partial,), metadata={"provider": "gemini", "model": model_name, "parse_error": True})

    def build_chunk_summary_prompt(self, chunk_data: dict[str, Any], context: dict[str, Any]) -> str:
        body = json.dumps(chunk_data, indent=2, default=str)
        if len(body) > CHUNK_PROMPT_MAX_CHARS:
            body = body[:CHUNK_PROMPT_MAX_CHARS] + "..."
        label = f"{context.get('source') or 'unknown'} {context.get('part') or ''}".strip()
        return f"{get_loader().get_chunk_summary_header()}\n\nChunk Context: {label}\n\nData:\n{body}\n\nReturn JSON now:"

    async def generate_chunk_summary(self, chunk_data: dict[str, Any], context: dict[str, Any]) -> ChunkSummary:
        text = self.build_chunk_summary_prompt(chunk_data, context)
        request_id = self.start_tracking(self.estimate_token_count(text))
        try:
            output, _ = await self._generate(text)
        except Exception:
            self.complete_tracking(request_id, 0, RequestStatus.ERROR)
            raise
        self.complete_tracking(request_id, self.estimate_token_count(output), RequestStatus.SUCCESS)

        cleaned = strip_code_fences(output)
        try:
            payload = json.loads(cleaned)
        except json.JSONDecodeError:
            payload = None
        summary = payload.get("summary") if isinstance(payload, dict) else None
        if not isinstance(summary, str):
            summary = cleaned
        return {
            "summary": summary[:CHUNK_SUMMARY_MAX_CHARS],
            "source": context.get("source"),
            "part": context.get("part"),
        }

    async def validate_connection(self) -> bool:
        try:
            output, _ = await self._generate("ping")
        except Exception as exc:
            logger.error("Gemini connection validation failed: %s", exc)
            return False
        return bool(output)
