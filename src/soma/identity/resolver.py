"""Identity resolution over a session's last vision observation.

A session is either without an observation or has exactly one (the
latest vision turn). From there:
- an explicit assertion ("that's me", "this is Alice") binds the observed
  fingerprint to a subject, in working memory and in the durable store;
- a "who" question looks the fingerprint up in working memory, then in
  the store, and says it does not know when neither has a binding.

Nothing is ever inferred from the image itself.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING

from ..errors import StorageError
from ..memory.models import (
    BindingSource,
    Confidence,
    IdentityBinding,
    VisionObservation,
)
from .intents import IntentType, classify

if TYPE_CHECKING:
    from ..logging import JSONLLogger
    from ..memory.store import MemoryStore
    from ..session.manager import SessionMemory

logger = logging.getLogger(__name__)

IDENTITY_FACT_CATEGORY = "identity"
IDENTITY_FACT_CONFIDENCE = 0.95

NO_OBSERVATION_REPLY = "I don't have a recent screenshot in working memory."
NO_SCREENSHOT_REPLY = "I don't have a recent screenshot in working memory for this session."
UNKNOWN_SUBJECT_REPLY = (
    "I don't know who the person is yet, and I won't guess. "
    "Tell me explicitly, for example \"that's me\" or \"this is <name>\"."
)


@dataclass(frozen=True)
class Resolution:
    """A deterministic answer produced without the completion backend."""

    intent: IntentType
    response: str
    subject: str | None = None
    resolved_from: str | None = None


def describe_subject(binding: IdentityBinding) -> str:
    return "you" if binding.is_user else binding.subject


class IdentityResolver:
    """Binds and resolves identities for the last observed image."""

    def __init__(
        self,
        store: MemoryStore | None = None,
        persist: bool = True,
        event_logger: JSONLLogger | None = None,
    ) -> None:
        """Initialize the resolver.

        Args:
            store: Durable store for bindings; None keeps everything in RAM.
            persist: When False, bindings stay in working memory only and
                the store is never consulted.
            event_logger: Optional JSONL logger for bind/resolve events.
        """
        self.store = store
        self.persist = persist and store is not None
        self.event_logger = event_logger

    def observe(self, memory: SessionMemory, observation: VisionObservation) -> None:
        """Make `observation` the session's last vision, replacing any prior one."""
        memory.observe(observation)
        if not self.persist:
            return
        try:
            self.store.touch_identity_last_seen(observation.fingerprint)
        except StorageError as e:
            logger.warning("Could not refresh last_seen for %s: %s", observation.fingerprint[:10], e)

    def handle(self, memory: SessionMemory, text: str) -> Resolution | None:
        """Answer `text` if it is a recall, assertion or "who" intent.

        Returns:
            The deterministic answer, or None when the utterance is open-ended.
        """
        window_title = memory.last_vision.window_title if memory.last_vision else ""
        intent = classify(text, window_title)
        if intent is None:
            return None

        if intent.type == IntentType.SCREENSHOT_RECALL:
            return Resolution(intent.type, self.recall(memory))

        if memory.last_vision is None:
            return Resolution(intent.type, NO_OBSERVATION_REPLY)

        if intent.type == IntentType.IDENTITY_ASSERTION:
            binding = self.bind(memory, intent.subject)
            return Resolution(intent.type, self._bind_reply(binding), subject=binding.subject)

        binding, resolved_from = self._lookup(memory, memory.last_vision.fingerprint)
        if binding is None:
            return Resolution(intent.type, UNKNOWN_SUBJECT_REPLY)
        return Resolution(
            intent.type,
            f"Based on what you told me, the person in the screenshot is {describe_subject(binding)}.",
            subject=binding.subject,
            resolved_from=resolved_from,
        )

    def recall(self, memory: SessionMemory) -> str:
        """Describe the last screenshot from working memory."""
        vision = memory.last_vision
        if vision is None:
            return NO_SCREENSHOT_REPLY
        when = datetime.fromtimestamp(vision.timestamp / 1000).strftime("%H:%M:%S")
        return (
            f"Last screenshot ({when}) - Window: {vision.window_title or 'unknown'}. "
            f"Summary: {vision.vision_summary or 'none'}"
        )

    def bind(self, memory: SessionMemory, subject: str) -> IdentityBinding:
        """Bind the last observed fingerprint to `subject`.

        The working-memory copy is always written. The durable binding and
        its identity fact are best-effort: a storage failure is logged and
        the session keeps its provisional binding.
        """
        if memory.last_vision is None:
            raise ValueError("No observation to bind")
        fingerprint = memory.last_vision.fingerprint

        binding = IdentityBinding(
            fingerprint=fingerprint,
            subject=subject,
            confidence=Confidence.HIGH,
            source=BindingSource.USER,
        )
        persisted = False
        if self.persist:
            try:
                binding = self.store.upsert_identity(
                    fingerprint, subject, Confidence.HIGH, BindingSource.USER
                )
                self.store.upsert_fact(
                    IDENTITY_FACT_CATEGORY, fingerprint, subject, IDENTITY_FACT_CONFIDENCE
                )
                persisted = True
            except StorageError as e:
                logger.warning("Identity binding kept in working memory only: %s", e)
                if self.event_logger:
                    self.event_logger.log_storage_error(
                        "upsert_identity", str(e), session_id=memory.session_id
                    )

        memory.bind(binding)
        logger.debug("imageBinding set: %s... => %s", fingerprint[:10], subject)
        if self.event_logger:
            self.event_logger.log_identity_bind(
                memory.session_id, fingerprint, subject, persisted
            )
        return binding

    def resolve(self, memory: SessionMemory) -> IdentityBinding | None:
        """Who is in the last observed image, if the user ever said so."""
        if memory.last_vision is None:
            return None
        binding, _ = self._lookup(memory, memory.last_vision.fingerprint)
        return binding

    def _lookup(
        self, memory: SessionMemory, fingerprint: str
    ) -> tuple[IdentityBinding | None, str | None]:
        """Working memory first, then the store. Failures count as unresolved."""
        binding = memory.binding_for(fingerprint)
        resolved_from = "cache" if binding is not None else None

        if binding is None and self.persist:
            try:
                binding = self.store.get_identity(fingerprint)
            except StorageError as e:
                logger.warning("Identity lookup failed, treating as unresolved: %s", e)
            if binding is not None:
                memory.bind(binding)
                resolved_from = "store"
                try:
                    self.store.touch_identity_last_seen(fingerprint)
                except StorageError as e:
                    logger.warning("Could not refresh last_seen for %s: %s", fingerprint[:10], e)

        if self.event_logger:
            self.event_logger.log_identity_resolve(memory.session_id, fingerprint, resolved_from)
        return binding, resolved_from

    def _bind_reply(self, binding: IdentityBinding) -> str:
        if binding.is_user:
            return "Got it. I'll treat that last screenshot as you."
        return f"Got it. I'll remember that the last screenshot shows {binding.subject}."
