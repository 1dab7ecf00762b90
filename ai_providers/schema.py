"""
Request, message and metrics models shared by every handler.

These models keep the caller-facing shapes identical regardless of whether
the request ends up on an OpenAI-compatible endpoint or a local Ollama daemon.
"""

from typing import Annotated, Any, Callable, Literal, Optional, Union

from pydantic import BaseModel, Field, ValidationError, model_validator

from ai_providers.config import ProviderDescriptor
from ai_providers.errors import RequestValidationError


# ─────────────────────────────────────────────────────────────────────
# MESSAGES
# ─────────────────────────────────────────────────────────────────────

class TextBlock(BaseModel):
    type: Literal["text"] = "text"
    text: str


class ImageUrl(BaseModel):
    url: str


class ImageUrlBlock(BaseModel):
    type: Literal["image_url"] = "image_url"
    image_url: ImageUrl


ContentBlock = Annotated[Union[TextBlock, ImageUrlBlock], Field(discriminator="type")]


class ChatMessage(BaseModel):
    """A single message in a conversation.

    Content can be:
    - str: Plain text message
    - list: Content blocks (text + image_url) in OpenAI format
    """
    role: str
    content: Union[str, list[ContentBlock]]
    images: Optional[list[str]] = None

    def get_text(self) -> str:
        """Concatenated text of the message, ignoring images."""
        if isinstance(self.content, str):
            return self.content
        return "\n".join(b.text for b in self.content if isinstance(b, TextBlock))

    def has_image_block(self) -> bool:
        if isinstance(self.content, str):
            return False
        return any(isinstance(b, ImageUrlBlock) for b in self.content)


# ─────────────────────────────────────────────────────────────────────
# METRICS
# ─────────────────────────────────────────────────────────────────────

class TokenUsage(BaseModel):
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None


class UsageMetrics(BaseModel):
    """Normalized usage/performance record for one execute call."""
    usage: TokenUsage = Field(default_factory=TokenUsage)
    duration_ms: float
    first_token_latency_ms: Optional[float] = None
    prompt_eval_duration_ms: Optional[float] = None
    eval_duration_ms: Optional[float] = None
    load_duration_ms: Optional[float] = None
    tokens_per_second: Optional[float] = None
    provider_id: Optional[str] = None
    model_name: Optional[str] = None


# (metrics, error) -> None; exactly one of the two is set
PerformanceCallback = Callable[[Optional[UsageMetrics], Optional[Exception]], None]
ReportUsageCallback = Callable[[UsageMetrics], None]


# ─────────────────────────────────────────────────────────────────────
# REQUESTS
# ─────────────────────────────────────────────────────────────────────

class RequestCallbacks(BaseModel):
    on_performance_data: Optional[PerformanceCallback] = None
    on_error: Optional[Callable[[Exception], None]] = None


class ExecuteRequest(BaseModel):
    """
    Standardized chat request accepted by every handler.

    Exactly one of `prompt` (optionally with `system_prompt`) or `messages`
    must be provided.
    """
    provider: ProviderDescriptor
    prompt: Optional[str] = None
    system_prompt: Optional[str] = None
    messages: Optional[list[ChatMessage]] = None
    images: Optional[list[str]] = None
    options: dict[str, Any] = Field(default_factory=dict)
    callbacks: Optional[RequestCallbacks] = None
    on_performance_data: Optional[PerformanceCallback] = None

    @model_validator(mode="after")
    def _prompt_xor_messages(self) -> "ExecuteRequest":
        if self.prompt is None and self.messages is None:
            raise ValueError("Either prompt or messages must be provided")
        if self.prompt is not None and self.messages is not None:
            raise ValueError("prompt and messages are mutually exclusive")
        if self.messages is not None and self.system_prompt is not None:
            raise ValueError("system_prompt can only be used together with prompt")
        return self

    @property
    def performance_callback(self) -> Optional[PerformanceCallback]:
        """Top-level callback wins over callbacks.on_performance_data."""
        if self.on_performance_data is not None:
            return self.on_performance_data
        if self.callbacks is not None:
            return self.callbacks.on_performance_data
        return None


class EmbedRequest(BaseModel):
    provider: ProviderDescriptor
    input: Optional[Union[str, list[str]]] = None
    text: Optional[Union[str, list[str]]] = None  # legacy alias for input

    def resolve_input(self) -> Union[str, list[str]]:
        value = self.input if self.input is not None else self.text
        if value is None:
            raise RequestValidationError("Either input or text parameter must be provided")
        return value

    def input_length(self) -> int:
        value = self.resolve_input()
        if isinstance(value, str):
            return len(value)
        return sum(len(item) for item in value)


def coerce_request(model: type[BaseModel], request: Any):
    """Accept either a model instance or a plain mapping."""
    if isinstance(request, model):
        return request
    try:
        return model.model_validate(request)
    except ValidationError as exc:
        raise RequestValidationError(str(exc)) from exc
