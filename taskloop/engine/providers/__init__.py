"""Model API clients for the task orchestration engine."""
from .base import ApiChunk, ApiClient, ChunkKind
from .anthropic_provider import AnthropicProvider

__all__ = [
    "ApiChunk",
    "ApiClient",
    "ChunkKind",
    "AnthropicProvider",
]
