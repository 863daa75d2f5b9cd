"""Ephemeral per-session working memory."""

from .manager import SessionCacheConfig, SessionMemory, SessionMemoryCache

__all__ = ["SessionCacheConfig", "SessionMemory", "SessionMemoryCache"]
