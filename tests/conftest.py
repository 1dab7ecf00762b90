"""Shared test fixtures for ai-providers tests."""

import json
from typing import Optional

import pytest

from ai_providers.config import ProviderDescriptor, ProvidersSettings, ProviderType


# ─────────────────────────────────────────────────────────────────────
# MOCK DATA
# ─────────────────────────────────────────────────────────────────────

MOCK_OPENAI_URL = "http://192.168.1.10:1234/v1"
MOCK_OLLAMA_URL = "http://192.168.1.11:11434"

MOCK_MODEL_1 = "llama-3.2-3b-instruct"
MOCK_MODEL_2 = "qwen2.5-7b-instruct"
MOCK_OLLAMA_MODEL = "llama3.2:3b"
MOCK_EMBED_MODEL = "nomic-embed-text"

MOCK_API_KEY = "test-key-123"

MOCK_MANIFEST_RESPONSE = {
    "data": [
        {"id": MOCK_MODEL_1, "object": "model"},
        {"id": MOCK_MODEL_2, "object": "model"},
    ]
}

MOCK_TAGS_RESPONSE = {
    "models": [
        {"name": MOCK_OLLAMA_MODEL, "size": 2019393189},
        {"name": MOCK_EMBED_MODEL, "size": 274302450},
    ]
}

MOCK_SHOW_RESPONSE = {
    "modelfile": "FROM llama3.2:3b",
    "parameters": "stop \"<|eot_id|>\"",
    "template": "{{ .System }}{{ .Prompt }}",
    "details": {"family": "llama", "families": ["llama"]},
    "model_info": {
        "general.architecture": "llama",
        "llama.context_length": 8192,
    },
}

# Ollama reports durations in nanoseconds
MOCK_OLLAMA_FINAL_STATS = {
    "total_duration": 1_500_000_000,
    "load_duration": 100_000_000,
    "prompt_eval_count": 12,
    "prompt_eval_duration": 200_000_000,
    "eval_count": 40,
    "eval_duration": 1_000_000_000,
}


# ─────────────────────────────────────────────────────────────────────
# STREAM BUILDERS
# ─────────────────────────────────────────────────────────────────────

def sse_chunk(content: str) -> str:
    """One SSE frame carrying a content delta."""
    return "data: " + json.dumps({"choices": [{"delta": {"content": content}}]}) + "\n\n"


def sse_stream(*contents: str, usage: Optional[dict] = None) -> str:
    """Build an SSE chat-completions body ending in [DONE]."""
    body = "".join(sse_chunk(c) for c in contents)
    if usage is not None:
        body += "data: " + json.dumps({"choices": [], "usage": usage}) + "\n\n"
    return body + "data: [DONE]\n\n"


def ndjson_stream(*contents: str, final_stats: Optional[dict] = None) -> str:
    """Build an Ollama /api/chat NDJSON body."""
    lines = [
        json.dumps({"model": MOCK_OLLAMA_MODEL, "message": {"role": "assistant", "content": c}, "done": False})
        for c in contents
    ]
    final = {"model": MOCK_OLLAMA_MODEL, "message": {"role": "assistant", "content": ""}, "done": True}
    if final_stats is not None:
        final.update(final_stats)
    lines.append(json.dumps(final))
    return "\n".join(lines) + "\n"


# ─────────────────────────────────────────────────────────────────────
# FIXTURES - Providers
# ─────────────────────────────────────────────────────────────────────

@pytest.fixture
def openai_provider():
    return ProviderDescriptor(
        id="openai-1",
        name="Local LM Studio",
        type=ProviderType.OPENAI,
        url=MOCK_OPENAI_URL,
        model=MOCK_MODEL_1,
        api_key=MOCK_API_KEY,
    )


@pytest.fixture
def ollama_provider():
    return ProviderDescriptor(
        id="ollama-1",
        name="Ollama",
        type=ProviderType.OLLAMA,
        url=MOCK_OLLAMA_URL,
        model=MOCK_OLLAMA_MODEL,
    )


@pytest.fixture
def settings(openai_provider, ollama_provider):
    return ProvidersSettings(providers=[openai_provider, ollama_provider], timeout_seconds=5.0)


@pytest.fixture(autouse=True)
def clean_provider_env(monkeypatch):
    """Keep the developer's .env/AI_PROVIDER_* settings out of the tests."""
    import os
    for key in list(os.environ):
        if key.startswith("AI_PROVIDER"):
            monkeypatch.delenv(key, raising=False)
