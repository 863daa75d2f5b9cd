"""Long-term memory: models, SQLite store and retention."""

from .models import (
    BindingSource,
    Confidence,
    Fact,
    IdentityBinding,
    Message,
    PurgeResult,
    Role,
    Session,
    VisionObservation,
    fingerprint_image,
)
from .retention import RetentionSweeper
from .store import MemoryStore

__all__ = [
    "BindingSource",
    "Confidence",
    "Fact",
    "IdentityBinding",
    "MemoryStore",
    "Message",
    "PurgeResult",
    "RetentionSweeper",
    "Role",
    "Session",
    "VisionObservation",
    "fingerprint_image",
]
