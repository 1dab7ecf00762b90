"""
HTTP client construction and error decoding shared by the handlers.

The core only needs "something that performs an HTTP request, streams the
body and honours cancellation". That is an httpx.AsyncClient here; hosts
that route traffic through their own stack inject an httpx.AsyncBaseTransport.
"""

import logging
from typing import Optional

import httpx

from ai_providers.config import ProvidersSettings
from ai_providers.errors import ProviderError, parse_error_message

logger = logging.getLogger(__name__)


class ClientFactory:
    """
    Builds per-request httpx clients.

    use_native_fetch=True forces httpx's own network transport even when the
    host supplied one; otherwise the host transport (if any) is used.
    """

    def __init__(
        self,
        settings: ProvidersSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        log: Optional[logging.Logger] = None,
    ):
        self._settings = settings
        self._transport = transport
        self._log = log or logger

    def create(self, api_key: Optional[str] = None) -> httpx.AsyncClient:
        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        transport = None if self._settings.use_native_fetch else self._transport
        self._log.debug(
            "Creating HTTP client (native=%s, host transport=%s)",
            self._settings.use_native_fetch,
            transport is not None,
        )
        return httpx.AsyncClient(
            headers=headers,
            timeout=self._settings.timeout_seconds,
            transport=transport,
        )


async def raise_for_status(response: httpx.Response, context: str) -> None:
    """
    Raise ProviderError with the backend's message on a non-2xx response.

    Works for both buffered and streaming responses (the body is read first).
    """
    if response.status_code < 400:
        return
    body = await response.aread()
    message = parse_error_message(response.status_code, body)
    raise ProviderError(f"{context}: {message}", status_code=response.status_code)
