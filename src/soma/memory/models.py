"""Data models for the memory system."""

import hashlib
from dataclasses import dataclass
from enum import Enum
from typing import Any


class Role(str, Enum):
    """Author of a logged message."""

    USER = "user"
    ASSISTANT = "assistant"


class Confidence(str, Enum):
    """How sure we are about an identity binding."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class BindingSource(str, Enum):
    """Who established an identity binding."""

    USER = "user"
    SYSTEM = "system"


USER_SUBJECT = "user"


def fingerprint_image(image: bytes) -> str:
    """Return the content hash used to key an image across turns."""
    return hashlib.sha256(image).hexdigest()


@dataclass(frozen=True)
class Message:
    """A single logged conversation message.

    Attributes:
        session_id: Conversation thread the message belongs to.
        timestamp: Milliseconds since the epoch.
        role: Who wrote the message.
        content: Message text.
        metadata: Opaque key/value mapping, None when absent.
        id: Row id, breaks ties between equal timestamps.
    """

    session_id: str
    timestamp: int
    role: Role
    content: str
    metadata: dict[str, Any] | None = None
    id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dict."""
        return {
            "id": self.id,
            "session_id": self.session_id,
            "timestamp": self.timestamp,
            "role": self.role.value,
            "content": self.content,
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class IdentityBinding:
    """Association between an image fingerprint and a named subject.

    `subject` is "user" when the person in the image is the user
    themselves, otherwise the name they gave.
    """

    fingerprint: str
    subject: str
    confidence: Confidence = Confidence.HIGH
    source: BindingSource = BindingSource.USER
    created_at: int | None = None
    last_seen_at: int | None = None
    notes: str | None = None

    @property
    def is_user(self) -> bool:
        return self.subject == USER_SUBJECT

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dict."""
        return {
            "fingerprint": self.fingerprint,
            "subject": self.subject,
            "confidence": self.confidence.value,
            "source": self.source.value,
            "created_at": self.created_at,
            "last_seen_at": self.last_seen_at,
            "notes": self.notes,
        }


@dataclass(frozen=True)
class Fact:
    """A learned fact, unique per (category, key)."""

    category: str
    key: str
    value: str
    confidence: float = 0.8
    created_at: int | None = None
    updated_at: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dict."""
        return {
            "category": self.category,
            "key": self.key,
            "value": self.value,
            "confidence": self.confidence,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class Session:
    """Durable bookkeeping for a conversation thread."""

    session_id: str
    started_at: int
    last_active_at: int
    message_count: int = 0


@dataclass(frozen=True)
class VisionObservation:
    """What the assistant last saw on screen for a session."""

    fingerprint: str
    window_title: str
    vision_summary: str
    timestamp: int


@dataclass(frozen=True)
class PurgeResult:
    """Row counts removed by a retention purge."""

    messages_deleted: int = 0
    sessions_deleted: int = 0
