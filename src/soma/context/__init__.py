"""Context window assembly for completion prompts."""

from .window import (
    ContextStats,
    ContextWindow,
    ContextWindowBuilder,
    estimate_tokens,
)

__all__ = ["ContextStats", "ContextWindow", "ContextWindowBuilder", "estimate_tokens"]
