"""
Shared behavior for LLM providers.

Concrete providers implement generate_insights, generate_chunk_summary and
validate_connection. Request tracking against the PerformanceMonitor lives
here so every provider reports tokens, latency and status the same way.
"""

from __future__ import annotations

import math
from typing import Any

from retroq.contracts.providers import ChunkSummary, ProviderResponse
from retroq.llm.monitor import PerformanceMonitor, RequestStatus
from retroq.llm.providers.config import ProviderConfig
from retroq.observability.logging import get_logger

logger = get_logger(__name__)


class BaseProvider:
    def __init__(self, config: ProviderConfig, monitor: PerformanceMonitor | None = None):
        self.config = config
        self.monitor = monitor

    async def generate_insights(self, sanitized_data: dict[str, Any], context: dict[str, Any]) -> ProviderResponse:
        raise NotImplementedError("generate_insights must be implemented by provider")

    async def generate_chunk_summary(self, chunk_data: dict[str, Any], context: dict[str, Any]) -> ChunkSummary:
        raise NotImplementedError("generate_chunk_summary must be implemented by provider")

    async def validate_connection(self) -> bool:
        raise NotImplementedError("validate_connection must be implemented by provider")

    async def is_available(self) -> bool:
        """validate_connection(), with any failure reported as unavailable."""
        try:
            return await self.validate_connection()
        except Exception as exc:
            logger.warning("%s provider unavailable: %s", self.get_provider_name(), exc)
            return False

    def start_tracking(self, input_tokens: int) -> str | None:
        if self.monitor is None:
            return None
        return self.monitor.start_request(self.get_provider_name(), self.get_model(), input_tokens)

    def complete_tracking(
        self, request_id: str | None, output_tokens: int = 0, status: RequestStatus = RequestStatus.SUCCESS
    ) -> None:
        if self.monitor is None or request_id is None:
            return
        self.monitor.complete_request(request_id, output_tokens, status)

    def estimate_token_count(self, text: str | None) -> int:
        """Rough estimate: ceil(len / 4)."""
        if not text:
            return 0
        return math.ceil(len(text) / 4)

    def get_provider_name(self) -> str:
        return self.config.provider or "unknown"

    def get_model(self) -> str:
        return self.config.resolved_model
