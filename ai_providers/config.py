"""
Configuration constants, settings model and environment loading for ai-providers.
"""

import logging
import os
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


# ─────────────────────────────────────────────────────────────────────
# SERVICE CONSTANTS
# ─────────────────────────────────────────────────────────────────────

# Interface version exposed to consumers; compared as a plain integer.
SERVICE_VERSION: int = 3

DEFAULT_TIMEOUT_SECONDS: float = 300.0  # 5 minutes


# ─────────────────────────────────────────────────────────────────────
# PROVIDER TYPES
# ─────────────────────────────────────────────────────────────────────

class ProviderType(str, Enum):
    OPENAI = "openai"
    OLLAMA = "ollama"
    GEMINI = "gemini"
    OPENROUTER = "openrouter"
    LMSTUDIO = "lmstudio"
    GROQ = "groq"
    CUSTOM = "custom"


class AICapability(str, Enum):
    DIALOGUE = "dialogue"
    VISION = "vision"
    TOOL_USE = "tool_use"
    TEXT_TO_IMAGE = "text_to_image"
    EMBEDDING = "embedding"
    UNKNOWN = "unknown"


class ProviderFamily(str, Enum):
    """Wire-protocol family a provider type speaks."""
    HTTP_CHAT = "http-chat"
    LOCAL_INFERENCE = "local-inference"


_PROVIDER_FAMILIES: dict[ProviderType, ProviderFamily] = {
    ProviderType.OPENAI: ProviderFamily.HTTP_CHAT,
    ProviderType.OPENROUTER: ProviderFamily.HTTP_CHAT,
    ProviderType.GEMINI: ProviderFamily.HTTP_CHAT,
    ProviderType.LMSTUDIO: ProviderFamily.HTTP_CHAT,
    ProviderType.GROQ: ProviderFamily.HTTP_CHAT,
    ProviderType.CUSTOM: ProviderFamily.HTTP_CHAT,
    ProviderType.OLLAMA: ProviderFamily.LOCAL_INFERENCE,
}


def provider_family(provider_type: ProviderType) -> ProviderFamily:
    """Map a provider type to its protocol family."""
    return _PROVIDER_FAMILIES[ProviderType(provider_type)]


PROVIDER_TYPE_LABELS: dict[str, str] = {
    "openai": "OpenAI",
    "ollama": "Ollama",
    "openrouter": "OpenRouter",
    "gemini": "Google Gemini",
    "lmstudio": "LM Studio",
    "groq": "Groq",
    "custom": "Custom",
}

DEFAULT_PROVIDER_URLS: dict[str, str] = {
    "openai": "https://api.openai.com/v1",
    "ollama": "http://localhost:11434",
    "gemini": "https://generativelanguage.googleapis.com/v1beta/openai",
    "openrouter": "https://openrouter.ai/api/v1",
    "lmstudio": "http://localhost:1234/v1",
    "groq": "https://api.groq.com/openai/v1",
    "custom": "",
}


def _type_key(provider_type) -> str:
    return provider_type.value if isinstance(provider_type, ProviderType) else str(provider_type)


def provider_type_label(provider_type) -> str:
    """Human-readable label for a provider type (falls back to the raw value)."""
    key = _type_key(provider_type)
    return PROVIDER_TYPE_LABELS.get(key, key)


def default_provider_url(provider_type) -> str:
    return DEFAULT_PROVIDER_URLS.get(_type_key(provider_type), "")


def is_default_provider_url(provider_type, url: str) -> bool:
    return DEFAULT_PROVIDER_URLS.get(_type_key(provider_type)) == url


# ─────────────────────────────────────────────────────────────────────
# DATA MODELS
# ─────────────────────────────────────────────────────────────────────

class ProviderDescriptor(BaseModel):
    """A configured backend. Identity is `id`; immutable once built."""
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    type: ProviderType
    api_key: Optional[str] = None
    url: Optional[str] = None
    model: Optional[str] = None
    available_models: Optional[list[str]] = None
    user_defined_capabilities: Optional[list[AICapability]] = None

    @property
    def family(self) -> ProviderFamily:
        return provider_family(self.type)

    @property
    def base_url(self) -> str:
        """Configured URL, or the type default when none is set."""
        return (self.url or default_provider_url(self.type)).rstrip("/")


class ProvidersSettings(BaseModel):
    """Settings object read by the service (persistence lives with the host)."""
    providers: list[ProviderDescriptor] = Field(default_factory=list)
    version: int = 1
    debug_logging: bool = False
    use_native_fetch: bool = False
    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS


# ─────────────────────────────────────────────────────────────────────
# ENVIRONMENT LOADING
# ─────────────────────────────────────────────────────────────────────

def _env_flag(key: str, default: bool = False) -> bool:
    value = os.environ.get(key)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def get_timeout_seconds() -> float:
    """
    Get request timeout from environment or default.

    Set AI_PROVIDERS_TIMEOUT in .env (default: 300).
    """
    try:
        return float(os.environ.get("AI_PROVIDERS_TIMEOUT", str(DEFAULT_TIMEOUT_SECONDS)))
    except ValueError:
        return DEFAULT_TIMEOUT_SECONDS


def load_providers_from_env() -> list[ProviderDescriptor]:
    """
    Load provider descriptors from environment variables.

    Looks for AI_PROVIDER_1_TYPE, AI_PROVIDER_2_TYPE, ... and stops at the
    first missing index. Each provider may also set _URL, _MODEL, _API_KEY,
    _NAME and _ID.
    """
    providers = []
    i = 1
    while True:
        prefix = f"AI_PROVIDER_{i}_"
        provider_type = os.environ.get(prefix + "TYPE")
        if provider_type is None:
            break
        provider_type = provider_type.strip()
        if provider_type:
            providers.append(ProviderDescriptor(
                id=os.environ.get(prefix + "ID") or f"provider-{i}",
                name=os.environ.get(prefix + "NAME") or provider_type_label(provider_type),
                type=ProviderType(provider_type),
                url=os.environ.get(prefix + "URL") or None,
                model=os.environ.get(prefix + "MODEL") or None,
                api_key=os.environ.get(prefix + "API_KEY") or None,
            ))
        i += 1
    return providers


def load_settings_from_env() -> ProvidersSettings:
    """Build settings from AI_PROVIDER_* / AI_PROVIDERS_* environment variables."""
    return ProvidersSettings(
        providers=load_providers_from_env(),
        debug_logging=_env_flag("AI_PROVIDERS_DEBUG"),
        use_native_fetch=_env_flag("AI_PROVIDERS_NATIVE_FETCH"),
        timeout_seconds=get_timeout_seconds(),
    )


# ─────────────────────────────────────────────────────────────────────
# LOGGING
# ─────────────────────────────────────────────────────────────────────

def get_logger(name: str = "ai_providers", debug: bool = False) -> logging.Logger:
    """
    Return the logger handed to service components.

    Enablement is explicit: debug=True lowers the level to DEBUG, otherwise
    the logger inherits its level from the host's logging configuration.
    """
    logger = logging.getLogger(name)
    if debug:
        logger.setLevel(logging.DEBUG)
    return logger
