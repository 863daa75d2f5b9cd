"""Context window assembly.

Builds a bounded slice of conversation history for a completion prompt
under two budgets at once: a maximum number of messages and a maximum
estimated token count.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING

from ..memory.models import Message, Role

if TYPE_CHECKING:
    from ..memory.store import MemoryStore

# Rough heuristic: one token per four bytes of UTF-8. Not a real tokenizer.
BYTES_PER_TOKEN = 4

# Fraction of the token budget at which should_prune() starts reporting True.
PRUNE_THRESHOLD = 0.8

STATS_WINDOW = 100


def estimate_tokens(text: str, bytes_per_token: int = BYTES_PER_TOKEN) -> int:
    """Estimate the token cost of a piece of text."""
    return math.ceil(len(text.encode("utf-8")) / bytes_per_token)


@dataclass
class ContextWindow:
    """History accepted into a prompt, oldest first."""

    messages: list[Message] = field(default_factory=list)
    total_tokens: int = 0

    @property
    def message_count(self) -> int:
        return len(self.messages)

    @property
    def is_empty(self) -> bool:
        return not self.messages


@dataclass
class ContextStats:
    """Summary of a session's recent history."""

    total_messages: int = 0
    user_messages: int = 0
    assistant_messages: int = 0
    estimated_tokens: int = 0
    start: int | None = None
    end: int | None = None

    def to_dict(self) -> dict:
        return {
            "total_messages": self.total_messages,
            "user_messages": self.user_messages,
            "assistant_messages": self.assistant_messages,
            "estimated_tokens": self.estimated_tokens,
            "timespan": {"start": self.start, "end": self.end},
        }


def _format_time(timestamp: int) -> str:
    return datetime.fromtimestamp(timestamp / 1000).strftime("%H:%M:%S")


class ContextWindowBuilder:
    """Assembles prompt-ready history from the long-term store."""

    def __init__(
        self,
        store: MemoryStore,
        max_messages: int = 10,
        max_tokens: int = 4000,
        bytes_per_token: int = BYTES_PER_TOKEN,
        enabled: bool = True,
    ) -> None:
        """Initialize the builder.

        Args:
            store: Source of conversation history.
            max_messages: Default message-count budget.
            max_tokens: Default token budget.
            bytes_per_token: Divisor of the token estimate.
            enabled: When False, every window is empty and prompts pass through.
        """
        if max_messages < 1 or max_tokens < 1:
            raise ValueError("context budgets must be positive")
        self.store = store
        self.max_messages = max_messages
        self.max_tokens = max_tokens
        self.bytes_per_token = bytes_per_token
        self.enabled = enabled

    def estimate(self, text: str) -> int:
        return estimate_tokens(text, self.bytes_per_token)

    def build(
        self,
        session_id: str,
        max_messages: int | None = None,
        max_tokens: int | None = None,
    ) -> ContextWindow:
        """Select the most recent history that fits both budgets.

        Messages are walked newest to oldest. The newest message is always
        accepted, even if it alone exceeds the token budget; after that a
        message is only accepted if it keeps the window within budget.
        """
        if not self.enabled:
            return ContextWindow()

        limit = max_messages or self.max_messages
        token_limit = max_tokens or self.max_tokens

        # Over-fetch so the token pass has room without a second query.
        history = self.store.history(session_id, limit * 2)

        window = ContextWindow()
        for message in reversed(history):
            cost = self.estimate(message.content)
            if window.total_tokens + cost > token_limit and window.messages:
                break

            window.messages.insert(0, message)
            window.total_tokens += cost

            if len(window.messages) >= limit or window.total_tokens >= token_limit:
                break

        return window

    def format_for_prompt(self, session_id: str, prompt: str) -> str:
        """Render the context window as a transcript followed by the new prompt.

        Returns the prompt unchanged when there is no history.
        """
        window = self.build(session_id)
        return self.render(window, prompt)

    def render(self, window: ContextWindow, prompt: str) -> str:
        """Render an already-built window in front of a prompt."""
        if window.is_empty:
            return prompt

        lines = ["", "", "[Conversation History]"]
        for message in window.messages:
            speaker = "User" if message.role == Role.USER else "You"
            lines.append(f"[{_format_time(message.timestamp)}] {speaker}: {message.content}")
        lines += ["", "[Current Message]", f"User: {prompt}", ""]
        return "\n".join(lines)

    def stats(self, session_id: str) -> ContextStats:
        """Summarize the last 100 messages of a session."""
        history = self.store.history(session_id, STATS_WINDOW)
        stats = ContextStats(total_messages=len(history))
        for message in history:
            stats.estimated_tokens += self.estimate(message.content)
            if message.role == Role.USER:
                stats.user_messages += 1
            elif message.role == Role.ASSISTANT:
                stats.assistant_messages += 1
        if history:
            stats.start = history[0].timestamp
            stats.end = history[-1].timestamp
        return stats

    def should_prune(self, session_id: str) -> bool:
        """Advisory signal: recent history exceeds 80% of the token budget."""
        return self.stats(session_id).estimated_tokens > self.max_tokens * PRUNE_THRESHOLD
