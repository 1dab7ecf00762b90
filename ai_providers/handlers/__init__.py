"""
Handlers for AI provider backends.

Provider-agnostic architecture: Protocol defines WHAT, implementations define HOW.
"""

from .base import AIHandler
from .ollama import OllamaHandler
from .openai import OpenAIHandler

__all__ = ["AIHandler", "OllamaHandler", "OpenAIHandler"]
