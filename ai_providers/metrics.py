"""
Usage and performance metrics: normalization, per-request storage and
cumulative token accounting.
"""

from dataclasses import dataclass
from typing import Optional

from ai_providers.config import ProviderDescriptor
from ai_providers.schema import TokenUsage, UsageMetrics


def tokens_per_second(metrics: UsageMetrics) -> Optional[float]:
    """
    Generation throughput.

    Uses the backend's eval (generation) duration when reported, else the
    whole request duration.
    """
    completion_tokens = metrics.usage.completion_tokens
    if not completion_tokens:
        return None
    duration_ms = metrics.eval_duration_ms or metrics.duration_ms
    if not duration_ms or duration_ms <= 0:
        return None
    return completion_tokens / (duration_ms / 1000)


def normalize_metrics(metrics: UsageMetrics, provider: ProviderDescriptor) -> UsageMetrics:
    """Attach derived throughput and provider identity to a raw usage report."""
    return metrics.model_copy(update={
        "tokens_per_second": tokens_per_second(metrics),
        "provider_id": provider.id,
        "model_name": provider.model,
    })


class MetricsStore:
    """
    Holds metrics captured during a request until its end event fires,
    and remembers the latest metrics per provider.
    """

    def __init__(self):
        self._pending: dict[str, UsageMetrics] = {}
        self._last_by_provider: dict[str, UsageMetrics] = {}

    def put(self, request_id: str, metrics: UsageMetrics) -> None:
        self._pending[request_id] = metrics
        if metrics.provider_id is not None:
            self._last_by_provider[metrics.provider_id] = metrics

    def pop(self, request_id: str) -> Optional[UsageMetrics]:
        return self._pending.pop(request_id, None)

    def discard(self, request_id: str) -> None:
        self._pending.pop(request_id, None)

    def last(self, provider_id: str) -> Optional[UsageMetrics]:
        return self._last_by_provider.get(provider_id)


@dataclass
class TokenConsumptionStats:
    total_prompt_tokens: int
    total_completion_tokens: int
    total_tokens_consumed: int
    generation_speed: Optional[float]  # completion tokens per second


@dataclass
class _RequestRecord:
    duration_ms: float
    completion_tokens: int


class TokenUsageManager:
    """Running token totals across requests."""

    def __init__(self):
        self.reset_stats()

    def record_usage(self, usage: TokenUsage, duration_ms: float) -> None:
        if usage.prompt_tokens:
            self._total_prompt_tokens += usage.prompt_tokens
        if usage.completion_tokens:
            self._total_completion_tokens += usage.completion_tokens
        if usage.total_tokens:
            self._total_tokens_consumed += usage.total_tokens
        elif usage.prompt_tokens and usage.completion_tokens:
            self._total_tokens_consumed += usage.prompt_tokens + usage.completion_tokens

        if usage.completion_tokens and duration_ms > 0:
            self._records.append(_RequestRecord(duration_ms, usage.completion_tokens))

    def get_stats(self) -> TokenConsumptionStats:
        total_duration_ms = sum(r.duration_ms for r in self._records)
        total_completion = sum(r.completion_tokens for r in self._records)
        generation_speed = (
            total_completion / (total_duration_ms / 1000)
            if total_duration_ms > 0 and total_completion > 0
            else None
        )
        return TokenConsumptionStats(
            total_prompt_tokens=self._total_prompt_tokens,
            total_completion_tokens=self._total_completion_tokens,
            total_tokens_consumed=self._total_tokens_consumed,
            generation_speed=generation_speed,
        )

    def reset_stats(self) -> None:
        self._total_prompt_tokens = 0
        self._total_completion_tokens = 0
        self._total_tokens_consumed = 0
        self._records: list[_RequestRecord] = []
