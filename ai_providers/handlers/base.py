"""
AIHandler Protocol - defines the contract for provider backends.

This is the WHAT (interface), not the HOW (implementation).
See openai.py and ollama.py for concrete implementations.
"""

from typing import Optional, Protocol

from ai_providers.config import ProviderDescriptor
from ai_providers.schema import EmbedRequest, ExecuteRequest, ReportUsageCallback
from ai_providers.stream import ChunkHandler


class AIHandler(Protocol):
    """
    Contract for provider backends.

    Implementations must provide:
    - Model discovery (fetch_models)
    - Embeddings (embed)
    - Streaming chat (execute)

    Handlers are shared by every provider of their family, so anything
    provider-specific must arrive through the request.
    """

    async def fetch_models(self, provider: ProviderDescriptor) -> list[str]:
        """
        Return list of model IDs available on the provider.

        Returns:
            List of model identifiers (e.g., ["gpt-4o-mini", "llama3.2"])
        """
        ...

    async def embed(self, request: EmbedRequest) -> list[list[float]]:
        """
        Embed `request.input` (or legacy `request.text`) with `provider.model`.

        Returns:
            One vector per input, in input order

        Raises:
            RequestValidationError if neither input nor text is set
        """
        ...

    def execute(
        self,
        request: ExecuteRequest,
        report_usage: Optional[ReportUsageCallback] = None,
    ) -> ChunkHandler:
        """
        Start a streaming chat completion.

        Returns immediately with a ChunkHandler; production runs as a
        background task on the current event loop. Errors raised while
        streaming go to on_error, never to the caller.
        """
        ...

    async def aclose(self) -> None:
        """Release handler-held state."""
        ...
