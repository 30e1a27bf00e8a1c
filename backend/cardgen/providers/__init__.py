"""Upstream completion API client"""

from .base import ChatOptions, ChatResponse, ChatStreamChunk, GatewayConfig, Message, ResponseFormat, Usage
from .openrouter import OpenRouterClient, build_client
from .sse import ChatStream

__all__ = [
    "ChatOptions",
    "ChatResponse",
    "ChatStream",
    "ChatStreamChunk",
    "GatewayConfig",
    "Message",
    "OpenRouterClient",
    "ResponseFormat",
    "Usage",
    "build_client",
]
