"""
SDK for the LLM request mediator.

Provides the OpenAI provider adapter and wrappers for foreign model calls.
"""

from .adapters import with_rate_limit
from .openai_client import GuardedOpenAI, OpenAIResponsesClient

__all__ = ["GuardedOpenAI", "OpenAIResponsesClient", "with_rate_limit"]
