"""
OllamaHandler - local inference implementation of AIHandler.

Talks to an Ollama daemon over its native API:
- GET  /api/tags   model discovery
- POST /api/show   model metadata (context limit, capabilities)
- POST /api/embed  embeddings
- POST /api/chat   streaming chat (NDJSON)

Key differences from OpenAIHandler:
- Images travel as raw base64 on the message (`images`), not as content blocks
- Context window is sized per request and cached per (URL, model)
- Final NDJSON frame carries token counts and nanosecond durations
"""

import logging
import re
import time
from typing import Any, Optional

import httpx
from pydantic import BaseModel, ValidationError

from ai_providers.config import AICapability, ProviderDescriptor, ProvidersSettings
from ai_providers.context import (
    DEFAULT_CONTEXT_LENGTH,
    EMBEDDING_CONTEXT_LENGTH,
    ModelInfo,
    ModelInfoCache,
    optimize_context,
)
from ai_providers.errors import ProviderError
from ai_providers.schema import (
    ChatMessage,
    EmbedRequest,
    ExecuteRequest,
    ImageUrlBlock,
    ReportUsageCallback,
    TokenUsage,
    UsageMetrics,
)
from ai_providers.stream import ChunkHandler, ChunkStream
from ai_providers.transport import ClientFactory, raise_for_status

logger = logging.getLogger(__name__)

DATA_URL_PREFIX = re.compile(r"^data:image/[^;]*;base64,")

# Request keys that belong at the top level of /api/chat; the rest are model options
TOP_LEVEL_KEYS = frozenset({"format", "keep_alive", "tools", "think"})

NS_PER_MS = 1_000_000

VISION_KEYWORDS = ("vision", "llava", "clip", "image")
EMBEDDING_KEYWORDS = ("embed", "bge", "bert")

_CAPABILITY_NAMES = {
    "completion": AICapability.DIALOGUE,
    "vision": AICapability.VISION,
    "tools": AICapability.TOOL_USE,
    "embedding": AICapability.EMBEDDING,
}


# ─────────────────────────────────────────────────────────────────────
# BACKEND RESPONSE SCHEMA
# ─────────────────────────────────────────────────────────────────────

class OllamaModelDetails(BaseModel):
    family: Optional[str] = None
    families: Optional[list[str]] = None


class OllamaShowResponse(BaseModel):
    """Subset of /api/show used here; unknown fields are ignored."""
    model_info: Optional[dict[str, Any]] = None
    parameters: Optional[str] = None
    template: Optional[str] = None
    details: Optional[OllamaModelDetails] = None
    capabilities: Optional[list[str]] = None

    def context_length(self) -> int:
        """First positive `*.context_length` / `num_ctx` value, else 0."""
        for key, value in (self.model_info or {}).items():
            if key.endswith(".context_length") or key == "num_ctx":
                if _is_positive_number(value):
                    return int(value)
        for line in (self.parameters or "").splitlines():
            parts = line.split()
            if len(parts) >= 2 and parts[0] == "num_ctx":
                try:
                    value = float(parts[1])
                except ValueError:
                    continue
                if value > 0:
                    return int(value)
        return 0

    def architecture_text(self) -> str:
        parts = []
        architecture = (self.model_info or {}).get("general.architecture")
        if isinstance(architecture, str):
            parts.append(architecture)
        if self.details is not None:
            if self.details.family:
                parts.append(self.details.family)
            parts.extend(self.details.families or [])
        return " ".join(parts).lower()


class OllamaChatMessage(BaseModel):
    role: Optional[str] = None
    content: str = ""


class OllamaChatChunk(BaseModel):
    """One NDJSON frame of /api/chat."""
    message: Optional[OllamaChatMessage] = None
    done: bool = False
    error: Optional[str] = None
    total_duration: Optional[int] = None
    load_duration: Optional[int] = None
    prompt_eval_count: Optional[int] = None
    prompt_eval_duration: Optional[int] = None
    eval_count: Optional[int] = None
    eval_duration: Optional[int] = None

    def has_final_stats(self) -> bool:
        return (
            self.total_duration is not None
            and self.eval_count is not None
            and self.prompt_eval_count is not None
        )


def _is_positive_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and value > 0


def _ns_to_ms(value: Optional[int]) -> Optional[float]:
    return value / NS_PER_MS if value is not None else None


# ─────────────────────────────────────────────────────────────────────
# MESSAGE NORMALIZATION
# ─────────────────────────────────────────────────────────────────────

def strip_data_url(image: str) -> str:
    """Ollama expects raw base64, not data URLs."""
    return DATA_URL_PREFIX.sub("", image, count=1)


def _message_to_ollama(message: ChatMessage) -> dict:
    images = []
    if isinstance(message.content, str):
        text = message.content
    else:
        texts = []
        for block in message.content:
            if isinstance(block, ImageUrlBlock):
                images.append(strip_data_url(block.image_url.url))
            else:
                texts.append(block.text)
        text = "\n".join(texts)
    images.extend(strip_data_url(image) for image in message.images or [])

    result: dict[str, Any] = {"role": message.role, "content": text}
    if images:
        result["images"] = images
    return result


def build_ollama_messages(request: ExecuteRequest) -> list[dict]:
    """
    Build the outgoing /api/chat message list.

    Request-level images go onto the last user message, else the last
    message of any role, else a synthesized empty user message.
    """
    if request.messages is not None:
        messages = [_message_to_ollama(m) for m in request.messages]
    else:
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.prompt})

    images = [strip_data_url(image) for image in request.images or []]
    if images:
        target = next((m for m in reversed(messages) if m["role"] == "user"), None)
        if target is None and messages:
            target = messages[-1]
        if target is None:
            target = {"role": "user", "content": ""}
            messages.append(target)
        target.setdefault("images", []).extend(images)
    return messages


def _split_options(options: dict[str, Any]) -> tuple[dict[str, Any], dict[str, Any]]:
    top_level = {k: v for k, v in options.items() if k in TOP_LEVEL_KEYS}
    model_options = {k: v for k, v in options.items() if k not in TOP_LEVEL_KEYS}
    return top_level, model_options


def _build_metrics(
    final: Optional[OllamaChatChunk],
    started: float,
    first_token_at: Optional[float],
) -> UsageMetrics:
    first_token_latency_ms = (first_token_at - started) * 1000 if first_token_at is not None else None

    if final is None:
        # Stream ended without a stats frame: duration only
        return UsageMetrics(
            usage=TokenUsage(),
            duration_ms=(time.perf_counter() - started) * 1000,
            first_token_latency_ms=first_token_latency_ms,
        )

    return UsageMetrics(
        usage=TokenUsage(
            prompt_tokens=final.prompt_eval_count,
            completion_tokens=final.eval_count,
            total_tokens=final.prompt_eval_count + final.eval_count,
        ),
        duration_ms=_ns_to_ms(final.total_duration),
        first_token_latency_ms=first_token_latency_ms,
        prompt_eval_duration_ms=_ns_to_ms(final.prompt_eval_duration),
        eval_duration_ms=_ns_to_ms(final.eval_duration),
        load_duration_ms=_ns_to_ms(final.load_duration),
    )


# ─────────────────────────────────────────────────────────────────────
# HANDLER
# ─────────────────────────────────────────────────────────────────────

class OllamaHandler:
    """
    Ollama implementation of the AIHandler protocol.

    The model-info cache is keyed by (URL, model), so one handler instance
    is safely shared by every Ollama provider.
    """

    def __init__(
        self,
        settings: ProvidersSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        log: Optional[logging.Logger] = None,
    ):
        self._log = log or logger
        self._clients = ClientFactory(settings, transport=transport, log=self._log)
        self._model_info = ModelInfoCache()

    # ─────────────────────────────────────────────────────────────────
    # Model metadata
    # ─────────────────────────────────────────────────────────────────

    async def _show_model(self, provider: ProviderDescriptor, model: str) -> OllamaShowResponse:
        async with self._clients.create(provider.api_key) as client:
            response = await client.post(f"{provider.base_url}/api/show", json={"model": model})
            await raise_for_status(response, f"Failed to query model '{model}'")
            return OllamaShowResponse.model_validate(response.json())

    async def get_cached_model_info(self, provider: ProviderDescriptor, model: str) -> ModelInfo:
        """
        Context limits for `model`, queried once per (URL, model).

        A failed query returns defaults without caching so a later call retries.
        """
        cached = self._model_info.get(provider.base_url, model)
        if cached is not None:
            return cached

        try:
            show = await self._show_model(provider, model)
        except (httpx.HTTPError, ProviderError, ValueError) as exc:
            self._log.warning("Model info unavailable for '%s': %s", model, exc)
            return ModelInfo(context_length=0, last_context_length=DEFAULT_CONTEXT_LENGTH)

        info = ModelInfo(context_length=show.context_length(), last_context_length=DEFAULT_CONTEXT_LENGTH)
        self._model_info.put(provider.base_url, model, info)
        self._log.debug("Cached model info for '%s': %s", model, info)
        return info

    async def _size_context(
        self,
        provider: ProviderDescriptor,
        model: str,
        input_length: int,
        default_context_length: int,
    ) -> Optional[int]:
        info = await self.get_cached_model_info(provider, model)
        sizing = optimize_context(
            input_length,
            info.last_context_length,
            default_context_length,
            info.context_length or None,
        )
        if sizing.should_update:
            self._model_info.remember_context_length(provider.base_url, model, sizing.num_ctx)
            self._log.debug("Context window for '%s' grown to %d", model, sizing.num_ctx)
        return sizing.num_ctx

    async def detect_model_capabilities(
        self,
        provider: ProviderDescriptor,
        model: Optional[str] = None,
    ) -> list[AICapability]:
        """
        Infer what `model` can do from /api/show.

        Prefers the explicit `capabilities` field; otherwise falls back to
        architecture, template and name keywords. Always includes dialogue.
        """
        model = model or provider.model or ""
        try:
            show = await self._show_model(provider, model)
        except Exception as exc:
            self._log.warning("Capability detection failed for '%s': %s", model, exc)
            return [AICapability.DIALOGUE]

        capabilities = [AICapability.DIALOGUE]
        if show.capabilities:
            for name in show.capabilities:
                capability = _CAPABILITY_NAMES.get(name.lower())
                if capability is not None:
                    capabilities.append(capability)
        else:
            architecture = show.architecture_text()
            template = (show.template or "").lower()
            name = model.lower()
            if any(k in text for text in (architecture, name) for k in VISION_KEYWORDS):
                capabilities.append(AICapability.VISION)
            if "<image>" in template or "[img]" in template:
                capabilities.append(AICapability.VISION)
            if ".tools" in template:
                capabilities.append(AICapability.TOOL_USE)
            if any(k in text for text in (architecture, name) for k in EMBEDDING_KEYWORDS):
                capabilities.append(AICapability.EMBEDDING)

        return list(dict.fromkeys(capabilities))

    # ─────────────────────────────────────────────────────────────────
    # AIHandler
    # ─────────────────────────────────────────────────────────────────

    async def fetch_models(self, provider: ProviderDescriptor) -> list[str]:
        async with self._clients.create(provider.api_key) as client:
            response = await client.get(f"{provider.base_url}/api/tags")
            await raise_for_status(response, f"Failed to fetch models from {provider.name}")
            data = response.json()
        return [m["name"] for m in data.get("models", [])]

    async def embed(self, request: EmbedRequest) -> list[list[float]]:
        provider = request.provider
        model = provider.model or ""
        value = request.resolve_input()

        num_ctx = await self._size_context(
            provider, model, request.input_length(), EMBEDDING_CONTEXT_LENGTH
        )
        payload: dict[str, Any] = {"model": model, "input": value}
        if num_ctx is not None:
            payload["options"] = {"num_ctx": num_ctx}

        async with self._clients.create(provider.api_key) as client:
            response = await client.post(f"{provider.base_url}/api/embed", json=payload)
            await raise_for_status(response, f"Embedding failed for '{model}'")
            data = response.json()

        embeddings = data.get("embeddings")
        if not embeddings:
            raise ProviderError(f"Embedding failed for '{model}': no embeddings returned")
        return embeddings

    def execute(
        self,
        request: ExecuteRequest,
        report_usage: Optional[ReportUsageCallback] = None,
    ) -> ChunkHandler:
        provider = request.provider
        model = provider.model or ""
        messages = build_ollama_messages(request)
        has_images = any(m.get("images") for m in messages)
        top_level, model_options = _split_options(request.options)

        async def produce(stream: ChunkStream) -> None:
            started = time.perf_counter()
            options = dict(model_options)

            # Multimodal prompts and caller-pinned windows are sent untouched
            if not has_images and "num_ctx" not in options:
                input_length = sum(len(m["content"]) for m in messages)
                num_ctx = await self._size_context(provider, model, input_length, DEFAULT_CONTEXT_LENGTH)
                if num_ctx is not None:
                    options["num_ctx"] = num_ctx

            payload: dict[str, Any] = {"model": model, "messages": messages, "stream": True, **top_level}
            if options:
                payload["options"] = options

            first_token_at: Optional[float] = None
            final: Optional[OllamaChatChunk] = None

            async with self._clients.create(provider.api_key) as client:
                async with client.stream("POST", f"{provider.base_url}/api/chat", json=payload) as response:
                    await raise_for_status(response, f"Chat failed for '{model}'")

                    async for line in response.aiter_lines():
                        if stream.is_aborted:
                            break
                        line = line.strip()
                        if not line:
                            continue
                        try:
                            chunk = OllamaChatChunk.model_validate_json(line)
                        except ValidationError:
                            continue

                        if chunk.error:
                            raise ProviderError(f"Chat failed for '{model}': {chunk.error}")
                        content = chunk.message.content if chunk.message else ""
                        if content:
                            if first_token_at is None:
                                first_token_at = time.perf_counter()
                            stream.publish(content)
                        if chunk.has_final_stats():
                            final = chunk

            if stream.is_aborted:
                return
            if report_usage is not None:
                report_usage(_build_metrics(final, started, first_token_at))
            stream.finish()

        return ChunkStream(self._log).start(produce)

    async def aclose(self) -> None:
        self._model_info.clear()
