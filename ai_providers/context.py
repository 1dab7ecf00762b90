"""
Adaptive context-window sizing for local inference.

Ollama defaults every request to a small context window and silently
truncates anything longer. Before each text-only request the local handler
estimates the prompt size in tokens and asks for a larger window only when
the prompt would not fit the one it used last time. Window sizes are
remembered per (server URL, model) so they never shrink within a session.
"""

import math
from dataclasses import dataclass, replace
from typing import Optional

SYMBOLS_PER_TOKEN: float = 2.5
DEFAULT_CONTEXT_LENGTH: int = 2048
EMBEDDING_CONTEXT_LENGTH: int = 2048
CONTEXT_BUFFER_MULTIPLIER: float = 1.2


@dataclass(frozen=True)
class ContextSizing:
    num_ctx: Optional[int]
    should_update: bool


@dataclass(frozen=True)
class ModelInfo:
    context_length: int  # model's hard limit, 0 = unknown
    last_context_length: int  # most recently used working window


def estimate_tokens(input_length: int) -> int:
    return math.ceil(input_length / SYMBOLS_PER_TOKEN)


def optimize_context(
    input_length: int,
    last_context_length: int,
    default_context_length: int,
    limit: Optional[int] = None,
) -> ContextSizing:
    """
    Pick num_ctx for a request of `input_length` characters.

    - Fits in the last window: keep it if it already grew past the default,
      otherwise send nothing and let the backend use its default.
    - Does not fit: grow to max(estimate, default) plus a 20% buffer, capped
      at `limit` (None or 0 means the model limit is unknown).
    """
    estimated_tokens = estimate_tokens(input_length)

    if estimated_tokens <= last_context_length:
        num_ctx = last_context_length if last_context_length > default_context_length else None
        return ContextSizing(num_ctx=num_ctx, should_update=False)

    target_length = math.ceil(max(estimated_tokens, default_context_length) * CONTEXT_BUFFER_MULTIPLIER)
    if limit:
        target_length = min(target_length, limit)
    return ContextSizing(num_ctx=target_length, should_update=target_length > last_context_length)


class ModelInfoCache:
    """
    (provider URL, model) -> ModelInfo.

    Entries are only ever replaced wholesale; duplicate concurrent lookups
    for the same model are harmless (last writer wins with equal data).
    """

    def __init__(self):
        self._entries: dict[tuple[str, str], ModelInfo] = {}

    def get(self, url: str, model: str) -> Optional[ModelInfo]:
        return self._entries.get((url, model))

    def put(self, url: str, model: str, info: ModelInfo) -> None:
        self._entries[(url, model)] = info

    def remember_context_length(self, url: str, model: str, num_ctx: int) -> None:
        """Record a grown window; models that were never cached are left alone."""
        info = self._entries.get((url, model))
        if info is not None:
            self._entries[(url, model)] = replace(info, last_context_length=num_ctx)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)
