"""Shared fixtures."""

from pathlib import Path

import pytest

from soma.memory import MemoryStore

# 2026-01-15 12:00:00 UTC
BASE_TIME = 1768478400.0
DAY = 24 * 60 * 60


class FakeClock:
    """Settable clock returning seconds since the epoch."""

    def __init__(self, now: float = BASE_TIME) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeCompletionClient:
    """Completion backend that records prompts and returns canned text."""

    def __init__(self, reply: str = "Sure.", vision_reply: str = "A text editor.") -> None:
        self.reply = reply
        self.vision_reply = vision_reply
        self.prompts: list[str] = []
        self.systems: list[str | None] = []
        self.images: list[bytes] = []
        self.error: Exception | None = None

    async def complete(self, prompt: str, system: str | None = None) -> str:
        if self.error is not None:
            raise self.error
        self.prompts.append(prompt)
        self.systems.append(system)
        return self.reply

    async def describe_image(self, prompt: str, image: bytes) -> str:
        if self.error is not None:
            raise self.error
        self.prompts.append(prompt)
        self.images.append(image)
        return self.vision_reply


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(tmp_path: Path, clock: FakeClock) -> MemoryStore:
    """Create a MemoryStore with a temporary database and a fake clock."""
    store = MemoryStore(tmp_path / "test_memory.db", clock=clock)
    store.init_db()
    yield store
    store.close()


@pytest.fixture
def llm() -> FakeCompletionClient:
    return FakeCompletionClient()
