"""Conversation service: one text or vision turn at a time.

Ties working memory, the long-term store, identity resolution and the
completion backend together. Storage is best-effort on the turn path: a
failed write is logged and the turn still succeeds. A failed or slow
completion call fails the turn with UpstreamUnavailable.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import time
from collections.abc import Awaitable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ..config import FeatureFlags, SomaConfig
from ..context import ContextStats, ContextWindow, ContextWindowBuilder
from ..errors import InvalidInput, StorageError, UpstreamUnavailable
from ..identity import IdentityResolver
from ..memory import (
    IdentityBinding,
    MemoryStore,
    Message,
    RetentionSweeper,
    Role,
    VisionObservation,
    fingerprint_image,
)
from ..session import SessionCacheConfig, SessionMemoryCache
from .prompt import SYSTEM_PROMPT, build_chat_prompt, build_vision_prompt

if TYPE_CHECKING:
    from ..llm import CompletionClient
    from ..logging import JSONLLogger

logger = logging.getLogger(__name__)

COMPLETION_INTENT = "completion"


@dataclass
class TurnResult:
    """Result of a single turn."""

    response_text: str
    session_id: str
    image_fingerprint: str | None = None
    intent: str = COMPLETION_INTENT


def new_session_id() -> str:
    """Generate an id for a caller that did not supply one."""
    return f"temp-{int(time.time() * 1000)}-{secrets.token_hex(4)}"


class ConversationService:
    """Runs text and vision turns against the memory core."""

    def __init__(
        self,
        store: MemoryStore,
        llm: CompletionClient,
        *,
        cache: SessionMemoryCache | None = None,
        resolver: IdentityResolver | None = None,
        context: ContextWindowBuilder | None = None,
        sweeper: RetentionSweeper | None = None,
        features: FeatureFlags | None = None,
        completion_timeout: float = 30.0,
        event_logger: JSONLLogger | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            store: Long-term store, already initialized.
            llm: Completion backend.
            cache: Working memory; built from the store if None.
            resolver: Identity resolver; built from the store if None.
            context: Context window builder; built from the store if None.
            sweeper: Retention sweeper started by start(), if any.
            features: Feature toggles, all enabled by default.
            completion_timeout: Seconds to wait for a completion call.
            event_logger: Optional JSONL event log.
        """
        self.store = store
        self.llm = llm
        self.features = features or FeatureFlags()
        if cache is None:
            cache = SessionMemoryCache(
                store,
                SessionCacheConfig(warm_identities=self.features.identity_persistence),
            )
        if resolver is None:
            resolver = IdentityResolver(
                store,
                persist=self.features.identity_persistence,
                event_logger=event_logger,
            )
        if context is None:
            context = ContextWindowBuilder(store, enabled=self.features.context_window)
        self.cache = cache
        self.resolver = resolver
        self.context = context
        self.sweeper = sweeper
        self.completion_timeout = completion_timeout
        self.event_logger = event_logger

    @classmethod
    def from_config(
        cls,
        config: SomaConfig,
        llm: CompletionClient | None = None,
        event_logger: JSONLLogger | None = None,
    ) -> ConversationService:
        """Build a service and its components from configuration.

        Args:
            config: Loaded configuration.
            llm: Completion backend; built from config.llm if None.
            event_logger: JSONL event log; None disables it.
        """
        from ..llm import create_completion_client

        store = MemoryStore(config.memory.db_path)
        store.init_db()

        features = config.features
        sweeper = RetentionSweeper(
            store,
            retention_days=config.memory.retention_days,
            warmup_seconds=config.memory.retention_warmup_seconds,
            interval_seconds=config.memory.retention_interval_seconds,
            event_logger=event_logger,
        )
        return cls(
            store,
            llm or create_completion_client(config.llm),
            cache=SessionMemoryCache(
                store,
                SessionCacheConfig(
                    max_sessions=config.memory.max_sessions,
                    warm_identities=features.identity_persistence,
                ),
            ),
            context=ContextWindowBuilder(
                store,
                max_messages=config.memory.max_context_messages,
                max_tokens=config.memory.max_context_tokens,
                enabled=features.context_window,
            ),
            sweeper=sweeper,
            features=features,
            completion_timeout=config.llm.timeout,
            event_logger=event_logger,
        )

    # -- lifecycle -----------------------------------------------------------

    def start(self) -> None:
        """Schedule background maintenance. Needs a running event loop."""
        if self.sweeper is not None:
            self.sweeper.start()

    async def close(self) -> None:
        """Stop background maintenance and close the store."""
        if self.sweeper is not None:
            await self.sweeper.stop()
        self.store.close()

    # -- turns ---------------------------------------------------------------

    async def submit_text_turn(self, session_id: str | None, text: str) -> TurnResult:
        """Answer a text message.

        Identity and recall intents are answered from memory without the
        completion backend. Anything else goes to the backend with recent
        history and the last screenshot summary as context.

        Raises:
            InvalidInput: If `text` is empty; nothing is recorded.
            UpstreamUnavailable: If the completion backend fails or times out.
        """
        text = (text or "").strip()
        if not text:
            raise InvalidInput("Missing text")
        session_id = session_id or new_session_id()
        start = time.time()

        memory = self.cache.get(session_id)
        memory.touch()

        resolution = self.resolver.handle(memory, text)
        if resolution is not None:
            intent = resolution.intent.value
            self._record(session_id, Role.USER, text)
            self._record(session_id, Role.ASSISTANT, resolution.response, {"intent": intent})
            self._log_turn(session_id, intent, start)
            return TurnResult(resolution.response, session_id, intent=intent)

        window = self._build_window(session_id)
        prompt = build_chat_prompt(self.context.render(window, text), memory.last_vision)

        self._record(session_id, Role.USER, text)
        try:
            reply = await self._await_completion(self.llm.complete(prompt, system=SYSTEM_PROMPT))
        except UpstreamUnavailable as e:
            logger.warning("Completion failed for session %s: %s", session_id, e)
            if self.event_logger:
                self.event_logger.log_upstream_error(session_id, str(e))
            raise

        self._record(session_id, Role.ASSISTANT, reply)
        self._log_turn(session_id, COMPLETION_INTENT, start, window)
        return TurnResult(reply, session_id)

    async def submit_vision_turn(
        self,
        session_id: str | None,
        image: bytes,
        window_title: str = "",
    ) -> TurnResult:
        """Describe a screenshot and make it the session's last observation.

        Raises:
            InvalidInput: If `image` is empty; nothing is recorded.
            UpstreamUnavailable: If the vision backend fails or times out.
        """
        if not image:
            raise InvalidInput("Missing image")
        session_id = session_id or new_session_id()
        window_title = (window_title or "").strip()
        start = time.time()

        fingerprint = fingerprint_image(image)
        try:
            summary = await self._await_completion(
                self.llm.describe_image(build_vision_prompt(window_title), image)
            )
        except UpstreamUnavailable as e:
            logger.warning("Vision call failed for session %s: %s", session_id, e)
            if self.event_logger:
                self.event_logger.log_upstream_error(session_id, str(e))
            raise

        memory = self.cache.get(session_id)
        observation = VisionObservation(
            fingerprint=fingerprint,
            window_title=window_title,
            vision_summary=summary,
            timestamp=self.store.now_ms(),
        )
        self.resolver.observe(memory, observation)

        self._record(
            session_id,
            Role.USER,
            f"[Screenshot] Window: {window_title or 'unknown'}",
            {"type": "vision", "fingerprint": fingerprint, "window_title": window_title},
        )
        self._record(
            session_id,
            Role.ASSISTANT,
            summary,
            {"type": "vision_summary", "fingerprint": fingerprint},
        )

        logger.debug("Vision turn for %s: %s...", session_id, fingerprint[:10])
        if self.event_logger:
            self.event_logger.log_vision_turn(
                session_id,
                fingerprint,
                window_title=window_title,
                duration_ms=(time.time() - start) * 1000,
            )
        return TurnResult(summary, session_id, image_fingerprint=fingerprint)

    # -- queries -------------------------------------------------------------

    def get_history(self, session_id: str, limit: int = 20) -> list[Message]:
        return self.store.history(session_id, limit)

    def get_context_stats(self, session_id: str) -> ContextStats:
        return self.context.stats(session_id)

    def get_all_identities(self) -> list[IdentityBinding]:
        return self.store.get_all_identities()

    def search_messages(
        self, query: str, limit: int = 10, case_sensitive: bool = False
    ) -> list[Message]:
        return self.store.search_messages(query, limit, case_sensitive)

    def should_prune(self, session_id: str) -> bool:
        return self.context.should_prune(session_id)

    # -- helpers -------------------------------------------------------------

    async def _await_completion(self, call: Awaitable[str]) -> str:
        try:
            return await asyncio.wait_for(call, timeout=self.completion_timeout)
        except asyncio.TimeoutError as e:
            raise UpstreamUnavailable(
                f"Completion timed out after {self.completion_timeout}s"
            ) from e

    def _build_window(self, session_id: str) -> ContextWindow:
        try:
            return self.context.build(session_id)
        except StorageError as e:
            logger.warning("History unavailable, answering without it: %s", e)
            self._log_storage_error("history", e, session_id)
            return ContextWindow()

    def _record(
        self,
        session_id: str,
        role: Role,
        content: str,
        metadata: dict[str, Any] | None = None,
    ) -> Message | None:
        """Append to the long-term log, best-effort."""
        if not self.features.long_term_logging:
            return None
        try:
            return self.store.append_message(session_id, role, content, metadata)
        except StorageError as e:
            logger.warning("Failed to log %s message: %s", role.value, e)
            self._log_storage_error("append_message", e, session_id)
            return None

    def _log_storage_error(self, operation: str, error: Exception, session_id: str) -> None:
        if self.event_logger:
            self.event_logger.log_storage_error(operation, str(error), session_id=session_id)

    def _log_turn(
        self,
        session_id: str,
        intent: str,
        start: float,
        window: ContextWindow | None = None,
    ) -> None:
        if not self.event_logger:
            return
        self.event_logger.log_turn(
            session_id,
            intent=intent,
            duration_ms=(time.time() - start) * 1000,
            history_messages=window.message_count if window else None,
            history_tokens=window.total_tokens if window else None,
        )
