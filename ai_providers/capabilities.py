"""
Capability detection - pure functions over request shapes and providers.

`detect_capabilities` looks at a single execute request; `get_model_capabilities`
answers for a configured provider, honouring the user's explicit override.
"""

from typing import Iterable, Optional

from ai_providers.config import (
    AICapability,
    ProviderDescriptor,
    ProviderFamily,
    ProviderType,
    provider_family,
)
from ai_providers.schema import (
    ChatMessage,
    ExecuteRequest,
    ImageUrl,
    ImageUrlBlock,
    TextBlock,
)

# Provider types whose backends expose an embeddings endpoint
EMBEDDING_PROVIDER_TYPES: frozenset[ProviderType] = frozenset({
    ProviderType.OPENAI,
    ProviderType.OLLAMA,
    ProviderType.LMSTUDIO,
    ProviderType.GEMINI,
})

CAPABILITY_LABELS: dict[AICapability, str] = {
    AICapability.DIALOGUE: "Dialogue",
    AICapability.VISION: "Vision",
    AICapability.TOOL_USE: "Tool use",
    AICapability.TEXT_TO_IMAGE: "Text to image",
    AICapability.EMBEDDING: "Embedding",
    AICapability.UNKNOWN: "Unknown",
}

# Everything except UNKNOWN
USER_SELECTABLE_CAPABILITIES: list[AICapability] = [
    AICapability.DIALOGUE,
    AICapability.VISION,
    AICapability.TOOL_USE,
    AICapability.TEXT_TO_IMAGE,
    AICapability.EMBEDDING,
]

# 1x1 transparent PNG used by the capability probe
_PROBE_IMAGE = (
    "data:image/png;base64,"
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)

_PROBE_TOOL = {
    "type": "function",
    "function": {
        "name": "capability_probe",
        "description": "Placeholder tool used to probe tool support",
        "parameters": {"type": "object", "properties": {}},
    },
}


def _dedupe(capabilities: Iterable[AICapability]) -> list[AICapability]:
    return list(dict.fromkeys(capabilities))


def detect_capabilities(
    request: ExecuteRequest,
    provider_type: Optional[ProviderType] = None,
) -> list[AICapability]:
    """
    Capabilities a single execute request needs.

    embedding and text_to_image are properties of backends, not of one
    request, and are never derived here.
    """
    capabilities = []

    if request.messages or (isinstance(request.prompt, str) and request.prompt):
        capabilities.append(AICapability.DIALOGUE)

    has_vision = bool(request.images)
    if not has_vision:
        for message in request.messages or []:
            if message.has_image_block():
                has_vision = True
                break
    if has_vision:
        capabilities.append(AICapability.VISION)

    effective_type = provider_type if provider_type is not None else request.provider.type
    if provider_family(effective_type) == ProviderFamily.HTTP_CHAT:
        tools = request.options.get("tools")
        if (isinstance(tools, list) and tools) or request.options.get("tool_choice") is not None:
            capabilities.append(AICapability.TOOL_USE)

    return _dedupe(capabilities)


def build_probe_request(provider: ProviderDescriptor) -> ExecuteRequest:
    """One text block, one image block and a dummy tool definition."""
    return ExecuteRequest(
        provider=provider,
        messages=[
            ChatMessage(
                role="user",
                content=[
                    TextBlock(text="capability probe"),
                    ImageUrlBlock(image_url=ImageUrl(url=_PROBE_IMAGE)),
                ],
            )
        ],
        options={"tools": [_PROBE_TOOL]},
    )


def get_model_capabilities(provider: ProviderDescriptor) -> list[AICapability]:
    """
    Effective capability set for a provider.

    A non-empty user override is returned verbatim (no merging).
    """
    if provider.user_defined_capabilities:
        return list(provider.user_defined_capabilities)

    capabilities = detect_capabilities(build_probe_request(provider), provider.type)
    if provider.type in EMBEDDING_PROVIDER_TYPES:
        capabilities.append(AICapability.EMBEDDING)
    return _dedupe(capabilities)


def capability_label(capability: AICapability) -> str:
    return CAPABILITY_LABELS[AICapability(capability)]


def capabilities_display_text(capabilities: Optional[list[AICapability]]) -> str:
    if not capabilities:
        return "Not configured"
    return ", ".join(capability_label(c) for c in capabilities)


def is_user_selectable_capability(capability: AICapability) -> bool:
    return capability in USER_SELECTABLE_CAPABILITIES
