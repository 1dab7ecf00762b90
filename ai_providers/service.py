"""
AIProvidersService - the single entry point a host application calls.

Routes each request to the handler for its provider family, turns raw
usage reports into performance callbacks, and reports every failure to
the host exactly once before re-raising it.
"""

import logging
import time
import uuid
from typing import Any, Literal, Optional, Union

import httpx

from ai_providers.capabilities import detect_capabilities, get_model_capabilities
from ai_providers.config import (
    SERVICE_VERSION,
    AICapability,
    ProviderDescriptor,
    ProviderFamily,
    ProvidersSettings,
    ProviderType,
    get_logger,
)
from ai_providers.errors import (
    CompatibilityError,
    PerformanceMetricsError,
    PerformanceMetricsException,
)
from ai_providers.handlers import AIHandler, OllamaHandler, OpenAIHandler
from ai_providers.host import Confirmation, LoggingNotifier, Notifier, SettingsStore
from ai_providers.metrics import MetricsStore, TokenConsumptionStats, TokenUsageManager, normalize_metrics
from ai_providers.schema import (
    EmbedRequest,
    ExecuteRequest,
    PerformanceCallback,
    UsageMetrics,
    coerce_request,
)
from ai_providers.stream import ChunkHandler

# Fields that identify "the same provider" during migration
MIGRATION_MATCH_FIELDS = ("type", "api_key", "url", "model")


class AIProvidersService:
    """
    Provider-agnostic dispatch over the configured providers.

    One handler instance per provider family is shared by every provider
    of that family.
    """

    version: int = SERVICE_VERSION

    def __init__(
        self,
        settings: ProvidersSettings,
        notifier: Optional[Notifier] = None,
        confirmation: Optional[Confirmation] = None,
        store: Optional[SettingsStore] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        log: Optional[logging.Logger] = None,
    ):
        self.settings = settings
        self._log = log or get_logger("ai_providers", debug=settings.debug_logging)
        self._notifier = notifier or LoggingNotifier(self._log)
        self._confirmation = confirmation
        self._store = store

        self._ollama = OllamaHandler(settings, transport=transport, log=self._log.getChild("ollama"))
        self._handlers: dict[ProviderFamily, AIHandler] = {
            ProviderFamily.HTTP_CHAT: OpenAIHandler(settings, transport=transport, log=self._log.getChild("openai")),
            ProviderFamily.LOCAL_INFERENCE: self._ollama,
        }
        self._metrics = MetricsStore()
        self.token_usage = TokenUsageManager()

    @property
    def providers(self) -> list[ProviderDescriptor]:
        return self.settings.providers

    def get_provider(self, provider_id: str) -> Optional[ProviderDescriptor]:
        return next((p for p in self.settings.providers if p.id == provider_id), None)

    def _get_handler(self, provider: ProviderDescriptor) -> AIHandler:
        return self._handlers[provider.family]

    def _notify(self, error: BaseException, fallback: str) -> None:
        self._notifier.notice(str(error) or fallback)

    # ─────────────────────────────────────────────────────────────────
    # Requests
    # ─────────────────────────────────────────────────────────────────

    async def fetch_models(self, provider: ProviderDescriptor) -> list[str]:
        try:
            return await self._get_handler(provider).fetch_models(provider)
        except Exception as exc:
            self._notify(exc, "Failed to fetch models")
            raise

    async def embed(self, request: Union[EmbedRequest, dict]) -> list[list[float]]:
        try:
            request = coerce_request(EmbedRequest, request)
            return await self._get_handler(request.provider).embed(request)
        except Exception as exc:
            self._notify(exc, "Failed to embed")
            raise

    def execute(self, request: Union[ExecuteRequest, dict]) -> ChunkHandler:
        """
        Start a streaming completion and return its ChunkHandler.

        Must be called from a running event loop. The performance callback
        (top-level `on_performance_data`, else `callbacks.on_performance_data`)
        fires once after the caller's own end listeners; it is never called
        for an aborted request.
        """
        try:
            request = coerce_request(ExecuteRequest, request)
        except Exception as exc:
            self._notify(exc, "Failed to execute request")
            raise

        provider = request.provider
        on_performance = request.performance_callback
        on_error = request.callbacks.on_error if request.callbacks is not None else None
        request_id = uuid.uuid4().hex
        started = time.perf_counter()

        def report_usage(metrics: UsageMetrics) -> None:
            self.token_usage.record_usage(metrics.usage, metrics.duration_ms)
            if provider.family == ProviderFamily.LOCAL_INFERENCE:
                self._metrics.put(request_id, normalize_metrics(metrics, provider))

        try:
            handler = self._get_handler(provider).execute(request, report_usage)
        except Exception as exc:
            self._notify(exc, "Failed to execute request")
            if on_performance is not None:
                on_performance(None, PerformanceMetricsException(
                    PerformanceMetricsError.CALCULATION_FAILED,
                    f"Performance calculation failed: {exc}",
                    details=exc,
                ))
            raise

        def settle(full_text: str, error: Optional[Exception]) -> None:
            metrics = self._metrics.pop(request_id)
            if error is not None:
                if on_error is not None:
                    on_error(error)
                if on_performance is not None:
                    on_performance(None, PerformanceMetricsException(
                        PerformanceMetricsError.CALCULATION_FAILED,
                        f"Performance calculation failed: {error}",
                        details=error,
                    ))
                return
            if on_performance is not None:
                elapsed_ms = (time.perf_counter() - started) * 1000
                self._deliver_performance(on_performance, provider, metrics, elapsed_ms)

        handler.add_done_callback(settle)
        # Aborted requests skip settle; drop whatever usage they reported
        handler.add_finalizer(lambda: self._metrics.discard(request_id))
        return handler

    def _deliver_performance(
        self,
        callback: PerformanceCallback,
        provider: ProviderDescriptor,
        metrics: Optional[UsageMetrics],
        elapsed_ms: float,
    ) -> None:
        if provider.family != ProviderFamily.LOCAL_INFERENCE:
            callback(None, PerformanceMetricsException(
                PerformanceMetricsError.PROVIDER_NOT_SUPPORTED,
                f"Performance metrics are not supported for provider type '{provider.type.value}'",
                details={"provider_id": provider.id, "provider_type": provider.type.value},
            ))
        elif metrics is None:
            callback(None, PerformanceMetricsException(
                PerformanceMetricsError.DATA_INCOMPLETE,
                "Performance data incomplete: backend reported no usage",
                details={"provider_id": provider.id, "elapsed_ms": elapsed_ms},
            ))
        else:
            callback(metrics, None)

    # ─────────────────────────────────────────────────────────────────
    # Capabilities
    # ─────────────────────────────────────────────────────────────────

    def detect_capabilities(
        self,
        request: Union[ExecuteRequest, dict],
        provider_type: Optional[ProviderType] = None,
    ) -> list[AICapability]:
        return detect_capabilities(coerce_request(ExecuteRequest, request), provider_type)

    def get_model_capabilities(self, provider: ProviderDescriptor) -> list[AICapability]:
        return get_model_capabilities(provider)

    async def detect_model_capabilities(self, provider: ProviderDescriptor) -> list[AICapability]:
        """Ask the backend when it can tell us (Ollama), else use the static probe."""
        if provider.user_defined_capabilities:
            return list(provider.user_defined_capabilities)
        if provider.family == ProviderFamily.LOCAL_INFERENCE:
            return await self._ollama.detect_model_capabilities(provider)
        return get_model_capabilities(provider)

    # ─────────────────────────────────────────────────────────────────
    # Versioning and migration
    # ─────────────────────────────────────────────────────────────────

    def check_compatibility(self, required_version: int) -> None:
        if required_version > self.version:
            error = CompatibilityError(required_version, self.version)
            self._notify(error, "AI providers service must be updated")
            raise error

    async def migrate_provider(
        self,
        candidate: Union[ProviderDescriptor, dict[str, Any]],
    ) -> Union[ProviderDescriptor, Literal[False]]:
        """
        Adopt a provider handed over by another plugin.

        An exact match on type, api_key, url and model returns the existing
        entry; otherwise the user is asked and the candidate is appended and
        saved only on confirmation. Declining resolves to False.
        """
        provider = coerce_request(ProviderDescriptor, candidate)
        for existing in self.settings.providers:
            if all(getattr(existing, f) == getattr(provider, f) for f in MIGRATION_MATCH_FIELDS):
                return existing

        if self._confirmation is None:
            self._log.warning("No confirmation handler; provider %s not migrated", provider.name)
            return False

        confirmed = await self._confirmation.show(f"Migrate provider {provider.name}?")
        if not confirmed:
            return False

        self.settings.providers.append(provider)
        if self._store is not None:
            await self._store.save_settings(self.settings)
        return provider

    # ─────────────────────────────────────────────────────────────────
    # Stats and lifecycle
    # ─────────────────────────────────────────────────────────────────

    def get_last_metrics(self, provider_id: str) -> Optional[UsageMetrics]:
        return self._metrics.last(provider_id)

    def get_token_usage_stats(self) -> TokenConsumptionStats:
        return self.token_usage.get_stats()

    def reset_token_usage_stats(self) -> None:
        self.token_usage.reset_stats()

    async def aclose(self) -> None:
        for handler in self._handlers.values():
            await handler.aclose()
