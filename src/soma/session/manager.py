"""Per-session working memory, kept in RAM for the process lifetime."""

from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ..errors import StorageError
from ..memory.models import IdentityBinding, VisionObservation

if TYPE_CHECKING:
    from ..memory.store import MemoryStore

logger = logging.getLogger(__name__)


@dataclass
class SessionMemory:
    """Working memory for a single session.

    Only the latest vision observation is kept; earlier ones live in the
    durable message log. `image_bindings` holds provisional identity
    bindings keyed by image fingerprint.
    """

    session_id: str
    created_at: float = field(default_factory=time.time)
    last_activity: float = field(default_factory=time.time)
    last_vision: VisionObservation | None = None
    image_bindings: dict[str, IdentityBinding] = field(default_factory=dict)

    def touch(self) -> None:
        """Update last activity timestamp."""
        self.last_activity = time.time()

    def observe(self, observation: VisionObservation) -> None:
        """Replace the last vision observation."""
        self.last_vision = observation
        self.touch()

    def bind(self, binding: IdentityBinding) -> None:
        """Record a binding for its fingerprint, replacing any previous one."""
        self.image_bindings[binding.fingerprint] = binding

    def binding_for(self, fingerprint: str) -> IdentityBinding | None:
        return self.image_bindings.get(fingerprint)


@dataclass
class SessionCacheConfig:
    """Configuration for the session memory cache."""

    max_sessions: int = 256
    warm_identities: bool = True

    def __post_init__(self) -> None:
        if self.max_sessions < 1:
            raise ValueError("max_sessions must be at least 1")


class SessionMemoryCache:
    """Process-wide map from session id to working memory.

    Entries are created lazily and pre-populated once with the durable
    identity bindings from the store. The map is bounded: when full, the
    least recently used session is evicted. Only lookup-or-create is
    guarded by a lock; each session's memory is touched by its own
    requests alone.
    """

    def __init__(
        self,
        store: MemoryStore | None = None,
        config: SessionCacheConfig | None = None,
    ) -> None:
        self.store = store
        self.config = config or SessionCacheConfig()
        self._sessions: OrderedDict[str, SessionMemory] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def _warm_bindings(self) -> dict[str, IdentityBinding]:
        """Copy durable bindings from the store, best-effort."""
        if self.store is None or not self.config.warm_identities:
            return {}
        try:
            identities = self.store.get_all_identities()
        except StorageError as e:
            logger.warning("Could not warm identity bindings: %s", e)
            return {}
        return {binding.fingerprint: binding for binding in identities}

    def get(self, session_id: str) -> SessionMemory:
        """Get or create the working memory for a session."""
        with self._lock:
            memory = self._sessions.get(session_id)
            if memory is not None:
                self._sessions.move_to_end(session_id)
                return memory

        # Warm read happens outside the lock so other sessions aren't held up.
        fresh = SessionMemory(session_id=session_id, image_bindings=self._warm_bindings())

        with self._lock:
            memory = self._sessions.get(session_id)
            if memory is not None:
                self._sessions.move_to_end(session_id)
                return memory
            self._sessions[session_id] = fresh
            while len(self._sessions) > self.config.max_sessions:
                evicted, _ = self._sessions.popitem(last=False)
                logger.debug("Evicted working memory for session %s", evicted)

        logger.debug(
            "New session created: %s (%d known identities)",
            session_id,
            len(fresh.image_bindings),
        )
        return fresh

    def peek(self, session_id: str) -> SessionMemory | None:
        """Get the working memory for a session without creating or refreshing it."""
        return self._sessions.get(session_id)

    def evict(self, session_id: str) -> bool:
        """Drop a session's working memory. Returns True if it existed."""
        with self._lock:
            return self._sessions.pop(session_id, None) is not None

    def session_ids(self) -> list[str]:
        """Session ids currently cached, least recently used first."""
        with self._lock:
            return list(self._sessions.keys())
