"""
Provider-agnostic AI execution layer.

Hosts build an AIProvidersService from ProvidersSettings and call
execute / embed / fetch_models against any configured provider.
"""

from .config import SERVICE_VERSION, AICapability, ProviderDescriptor, ProvidersSettings, ProviderType
from .errors import CompatibilityError, PerformanceMetricsError, PerformanceMetricsException, ProviderError
from .schema import ChatMessage, EmbedRequest, ExecuteRequest, UsageMetrics
from .service import AIProvidersService
from .stream import ChunkHandler

__all__ = [
    "SERVICE_VERSION",
    "AICapability",
    "AIProvidersService",
    "ChatMessage",
    "ChunkHandler",
    "CompatibilityError",
    "EmbedRequest",
    "ExecuteRequest",
    "PerformanceMetricsError",
    "PerformanceMetricsException",
    "ProviderDescriptor",
    "ProviderError",
    "ProviderType",
    "ProvidersSettings",
    "UsageMetrics",
]
