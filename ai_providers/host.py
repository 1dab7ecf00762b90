"""
Host collaborator contracts.

The service never renders UI or touches disk itself; the embedding
application supplies these.
"""

import logging
from typing import Awaitable, Protocol

from ai_providers.config import ProvidersSettings

logger = logging.getLogger(__name__)


class Notifier(Protocol):
    """Fire-and-forget sink for user-visible error strings."""

    def notice(self, message: str) -> None:
        ...


class Confirmation(Protocol):
    """Async yes/no prompt, used only by provider migration."""

    def show(self, message: str) -> Awaitable[bool]:
        ...


class SettingsStore(Protocol):
    async def load_settings(self) -> ProvidersSettings:
        ...

    async def save_settings(self, settings: ProvidersSettings) -> None:
        ...


class LoggingNotifier:
    """Default notifier for headless hosts: notices become warnings."""

    def __init__(self, log: logging.Logger = logger):
        self._log = log

    def notice(self, message: str) -> None:
        self._log.warning(message)
