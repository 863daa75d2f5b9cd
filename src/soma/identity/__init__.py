"""Explicit-only identity binding and resolution."""

from .intents import (
    Intent,
    IntentType,
    asks_last_screenshot,
    classify,
    is_who_query,
    match_identity_assertion,
    normalize_utterance,
)
from .resolver import IdentityResolver, Resolution

__all__ = [
    "IdentityResolver",
    "Intent",
    "IntentType",
    "Resolution",
    "asks_last_screenshot",
    "classify",
    "is_who_query",
    "match_identity_assertion",
    "normalize_utterance",
]
