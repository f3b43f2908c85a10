"""Completion service clients."""

from novel_pipeline.completion.anthropic_client import AnthropicCompletionClient
from novel_pipeline.completion.base import CompletionError, CompletionService, CompletionUsage
from novel_pipeline.completion.echo import EchoCompletionClient

__all__ = [
    "AnthropicCompletionClient",
    "CompletionError",
    "CompletionService",
    "CompletionUsage",
    "EchoCompletionClient",
]
