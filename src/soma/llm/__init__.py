"""Completion backend clients."""

from .client import (
    CompletionClient,
    GroqCompletionClient,
    OllamaCompletionClient,
    create_completion_client,
)

__all__ = [
    "CompletionClient",
    "GroqCompletionClient",
    "OllamaCompletionClient",
    "create_completion_client",
]
