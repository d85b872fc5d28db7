"""Agent invocation client and supporting types."""

from .base import ChatMessage, ChatRequest, ChatResponse, Usage
from .cache import CacheManager
from .client import AgentClient

__all__ = [
    "ChatMessage",
    "ChatRequest",
    "ChatResponse",
    "Usage",
    "CacheManager",
    "AgentClient",
]
