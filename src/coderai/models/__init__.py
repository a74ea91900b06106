"""Convenience exports for coderai chat client implementations."""

from .catalog import ModelCatalog, ModelNotAllowed
from .gateway import GatewayClient
from .llm_client import (
    ChatClient,
    ChatClientError,
    ChatMessage,
    ChatRequest,
    ChatResponse,
    ChatResponseFormatError,
    ProviderUnavailable,
    TokenUsage,
)

__all__ = [
    "ChatClient",
    "ChatClientError",
    "ChatMessage",
    "ChatRequest",
    "ChatResponse",
    "ChatResponseFormatError",
    "GatewayClient",
    "ModelCatalog",
    "ModelNotAllowed",
    "ProviderUnavailable",
    "TokenUsage",
]
