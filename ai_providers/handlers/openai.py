"""
OpenAIHandler - OpenAI-compatible HTTP implementation of AIHandler.

Serves every HTTP-chat provider type (OpenAI, OpenRouter, Gemini's OpenAI
endpoint, LM Studio, Groq, custom). Chat completions stream as SSE.
"""

import json
import logging
import time
from typing import Any, Optional

import httpx

from ai_providers.config import ProviderDescriptor, ProvidersSettings
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


def _normalize_tools_for_openai(tools: list[dict]) -> list[dict]:
    """
    Normalize tool definitions to OpenAI format.

    Flat format:
        {"name": "...", "description": "...", "parameters": {...}}

    OpenAI nested format:
        {"type": "function", "function": {"name": "...", ...}}

    Already-wrapped tools are returned as-is.
    """
    normalized = []
    for tool in tools:
        if tool.get("type") == "function" and "function" in tool:
            normalized.append(tool)
        else:
            normalized.append({"type": "function", "function": tool})
    return normalized


def _image_part(url: str) -> dict:
    return {"type": "image_url", "image_url": {"url": url}}


def _message_to_openai(message: ChatMessage) -> dict:
    """Map a ChatMessage 1:1 onto the OpenAI wire format."""
    if isinstance(message.content, str):
        if not message.images:
            return {"role": message.role, "content": message.content}
        parts: list[dict] = [{"type": "text", "text": message.content}]
    else:
        parts = []
        for block in message.content:
            if isinstance(block, ImageUrlBlock):
                parts.append(_image_part(block.image_url.url))
            else:
                parts.append({"type": "text", "text": block.text})
    for image in message.images or []:
        parts.append(_image_part(image))
    return {"role": message.role, "content": parts}


def build_openai_messages(request: ExecuteRequest) -> list[dict]:
    """
    Build the outgoing message list.

    Prompt requests become [system?, user]; request-level images become
    trailing image parts on the (last) user message.
    """
    images = request.images or []

    if request.messages is not None:
        messages = [_message_to_openai(m) for m in request.messages]
        if images:
            target = next((m for m in reversed(messages) if m["role"] == "user"), None)
            if target is None:
                target = {"role": "user", "content": ""}
                messages.append(target)
            if isinstance(target["content"], str):
                target["content"] = [{"type": "text", "text": target["content"]}]
            target["content"].extend(_image_part(image) for image in images)
        return messages

    messages = []
    if request.system_prompt:
        messages.append({"role": "system", "content": request.system_prompt})
    if images:
        content: list[dict] = [{"type": "text", "text": request.prompt}]
        content.extend(_image_part(image) for image in images)
        messages.append({"role": "user", "content": content})
    else:
        messages.append({"role": "user", "content": request.prompt})
    return messages


def _usage_from_chunk(usage: dict) -> TokenUsage:
    return TokenUsage(
        prompt_tokens=usage.get("prompt_tokens"),
        completion_tokens=usage.get("completion_tokens"),
        total_tokens=usage.get("total_tokens"),
    )


class OpenAIHandler:
    """
    OpenAI-compatible implementation of the AIHandler protocol.

    Stateless with respect to providers: base URL, key and model all come
    from the descriptor on each call.
    """

    def __init__(
        self,
        settings: ProvidersSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        log: Optional[logging.Logger] = None,
    ):
        self._log = log or logger
        self._clients = ClientFactory(settings, transport=transport, log=self._log)

    async def fetch_models(self, provider: ProviderDescriptor) -> list[str]:
        async with self._clients.create(provider.api_key) as client:
            response = await client.get(f"{provider.base_url}/models")
            await raise_for_status(response, f"Failed to fetch models from {provider.name}")
            data = response.json()
        return [m["id"] for m in data.get("data", [])]

    async def embed(self, request: EmbedRequest) -> list[list[float]]:
        provider = request.provider
        payload = {"model": provider.model or "", "input": request.resolve_input()}

        async with self._clients.create(provider.api_key) as client:
            response = await client.post(f"{provider.base_url}/embeddings", json=payload)
            await raise_for_status(response, f"Embedding failed for '{provider.model}'")
            data = response.json()

        self._log.debug("Embed response: %d vectors", len(data.get("data", [])))
        items = sorted(data.get("data", []), key=lambda item: item.get("index", 0))
        return [item["embedding"] for item in items]

    def execute(
        self,
        request: ExecuteRequest,
        report_usage: Optional[ReportUsageCallback] = None,
    ) -> ChunkHandler:
        provider = request.provider
        model = provider.model or ""
        payload: dict[str, Any] = {
            "model": model,
            "messages": build_openai_messages(request),
            "stream": True,
            # Ask for a final usage chunk; callers may override
            "stream_options": {"include_usage": True},
            **request.options,
        }
        if payload.get("tools"):
            payload["tools"] = _normalize_tools_for_openai(payload["tools"])

        async def produce(stream: ChunkStream) -> None:
            started = time.perf_counter()
            first_token_at: Optional[float] = None
            usage: Optional[dict] = None

            async with self._clients.create(provider.api_key) as client:
                async with client.stream(
                    "POST",
                    f"{provider.base_url}/chat/completions",
                    json=payload,
                ) as response:
                    await raise_for_status(response, f"Chat completion failed for '{model}'")

                    async for line in response.aiter_lines():
                        if stream.is_aborted:
                            break
                        if not line.startswith("data:"):
                            continue
                        data = line[5:].strip()
                        if data == "[DONE]":
                            break
                        try:
                            chunk = json.loads(data)
                        except json.JSONDecodeError:
                            continue

                        if chunk.get("error"):
                            error = chunk["error"]
                            message = error.get("message") if isinstance(error, dict) else str(error)
                            raise ProviderError(f"Chat completion failed for '{model}': {message}")
                        if chunk.get("usage"):
                            usage = chunk["usage"]

                        choices = chunk.get("choices") or []
                        if not choices:
                            continue
                        content = (choices[0].get("delta") or {}).get("content")
                        if content:
                            if first_token_at is None:
                                first_token_at = time.perf_counter()
                            stream.publish(content)

            if stream.is_aborted:
                return
            stream.finish()

            if usage and report_usage is not None:
                finished = time.perf_counter()
                report_usage(UsageMetrics(
                    usage=_usage_from_chunk(usage),
                    duration_ms=(finished - started) * 1000,
                    first_token_latency_ms=(
                        (first_token_at - started) * 1000 if first_token_at is not None else None
                    ),
                ))

        return ChunkStream(self._log).start(produce)

    async def aclose(self) -> None:
        return None
