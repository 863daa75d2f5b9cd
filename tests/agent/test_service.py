"""Tests for ConversationService."""

import asyncio
import json
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from soma.agent import ConversationService, new_session_id
from soma.config import FeatureFlags, MemoryConfig, SomaConfig
from soma.context import ContextWindowBuilder
from soma.errors import InvalidInput, StorageError, UpstreamUnavailable
from soma.logging import JSONLLogger
from soma.memory import MemoryStore, Role, fingerprint_image

DAY_MS = 24 * 60 * 60 * 1000


@pytest.fixture
def service(store: MemoryStore, llm) -> ConversationService:
    return ConversationService(store, llm)


class TestTextTurn:
    """Tests for submit_text_turn."""

    @pytest.mark.asyncio
    async def test_open_ended_calls_backend(self, service, store, llm):
        result = await service.submit_text_turn("s1", "How do I rebase?")

        assert result.response_text == "Sure."
        assert result.session_id == "s1"
        assert result.intent == "completion"
        assert llm.prompts == ["How do I rebase?"]
        assert "Soma" in llm.systems[0]

    @pytest.mark.asyncio
    async def test_persists_both_messages(self, service, store):
        await service.submit_text_turn("s1", "hello")
        history = store.history("s1")
        assert [(m.role, m.content) for m in history] == [
            (Role.USER, "hello"),
            (Role.ASSISTANT, "Sure."),
        ]

    @pytest.mark.asyncio
    async def test_history_is_included_in_prompt(self, service, llm):
        await service.submit_text_turn("s1", "first question")
        await service.submit_text_turn("s1", "second question")

        prompt = llm.prompts[1]
        assert "[Conversation History]" in prompt
        assert "User: first question" in prompt
        assert "You: Sure." in prompt
        assert prompt.count("second question") == 1
        assert "[Current Message]\nUser: second question" in prompt

    @pytest.mark.asyncio
    async def test_generates_session_id(self, service):
        result = await service.submit_text_turn(None, "hello")
        assert result.session_id.startswith("temp-")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("text", ["", "   "])
    async def test_empty_text_is_rejected_without_side_effects(self, service, store, llm, text):
        with pytest.raises(InvalidInput):
            await service.submit_text_turn("s1", text)
        assert store.counts()["messages"] == 0
        assert llm.prompts == []
        assert "s1" not in service.cache

    @pytest.mark.asyncio
    async def test_upstream_failure_keeps_user_message(self, service, store, llm):
        """The user message is logged; no assistant message is."""
        llm.error = UpstreamUnavailable("backend down")

        with pytest.raises(UpstreamUnavailable):
            await service.submit_text_turn("s1", "hello")

        assert [m.role for m in store.history("s1")] == [Role.USER]

    @pytest.mark.asyncio
    async def test_slow_backend_times_out(self, store):
        class SlowClient:
            async def complete(self, prompt, system=None):
                await asyncio.sleep(5)
                return "late"

        service = ConversationService(store, SlowClient(), completion_timeout=0.05)
        with pytest.raises(UpstreamUnavailable, match="timed out"):
            await service.submit_text_turn("s1", "hello")

    @pytest.mark.asyncio
    async def test_storage_failure_does_not_fail_turn(self, llm):
        """A broken store still yields a reply."""
        store = MagicMock()
        store.append_message.side_effect = StorageError("disk full")
        store.history.side_effect = StorageError("disk full")
        store.get_all_identities.side_effect = StorageError("disk full")

        service = ConversationService(store, llm)
        result = await service.submit_text_turn("s1", "hello")

        assert result.response_text == "Sure."
        assert llm.prompts == ["hello"]

    @pytest.mark.asyncio
    async def test_long_term_logging_disabled(self, store, llm):
        service = ConversationService(
            store, llm, features=FeatureFlags(long_term_logging=False)
        )
        await service.submit_text_turn("s1", "hello")
        assert store.counts()["messages"] == 0

    @pytest.mark.asyncio
    async def test_context_window_disabled(self, store, llm):
        service = ConversationService(store, llm, features=FeatureFlags(context_window=False))
        await service.submit_text_turn("s1", "first")
        await service.submit_text_turn("s1", "second")
        assert llm.prompts[1] == "second"


class TestVisionTurn:
    """Tests for submit_vision_turn."""

    @pytest.mark.asyncio
    async def test_sets_last_vision(self, service, llm):
        result = await service.submit_vision_turn("s1", b"IMG1", "Notepad")

        assert result.image_fingerprint == fingerprint_image(b"IMG1")
        assert result.response_text == "A text editor."
        vision = service.cache.get("s1").last_vision
        assert vision.fingerprint == result.image_fingerprint
        assert vision.window_title == "Notepad"
        assert vision.vision_summary == "A text editor."
        assert llm.images == [b"IMG1"]
        assert 'Active window: "Notepad"' in llm.prompts[0]

    @pytest.mark.asyncio
    async def test_logs_observation_and_summary(self, service, store):
        result = await service.submit_vision_turn("s1", b"IMG1", "Notepad")

        observation, summary = store.history("s1")
        assert observation.role == Role.USER
        assert observation.metadata == {
            "type": "vision",
            "fingerprint": result.image_fingerprint,
            "window_title": "Notepad",
        }
        assert summary.role == Role.ASSISTANT
        assert summary.content == "A text editor."

    @pytest.mark.asyncio
    async def test_empty_image_is_rejected(self, service, store):
        with pytest.raises(InvalidInput):
            await service.submit_vision_turn("s1", b"", "Notepad")
        assert store.counts()["messages"] == 0

    @pytest.mark.asyncio
    async def test_upstream_failure_leaves_no_trace(self, service, store, llm):
        llm.error = UpstreamUnavailable("vision down")
        with pytest.raises(UpstreamUnavailable):
            await service.submit_vision_turn("s1", b"IMG1", "Notepad")
        assert store.counts()["messages"] == 0
        assert service.cache.get("s1").last_vision is None

    @pytest.mark.asyncio
    async def test_screen_context_in_next_prompt(self, service, llm):
        await service.submit_vision_turn("s1", b"IMG1", "Notepad")
        await service.submit_text_turn("s1", "what should I do next?")
        assert "[Recent screen]\nWindow: Notepad" in llm.prompts[-1]


class TestScenarios:
    """End-to-end behavior across turns and sessions."""

    @pytest.mark.asyncio
    async def test_bind_then_resolve_in_same_session(self, service, store, llm):
        """Vision, "that's me", then "who is that" answers "you"."""
        vision = await service.submit_vision_turn("s1", b"IMG1", "Notepad")
        llm.prompts.clear()

        bind = await service.submit_text_turn("s1", "that's me")
        who = await service.submit_text_turn("s1", "who is that")

        assert bind.intent == "identity_assertion"
        assert store.get_identity(vision.image_fingerprint).subject == "user"
        assert "you" in who.response_text
        assert llm.prompts == []

    @pytest.mark.asyncio
    async def test_binding_resolves_in_new_session(self, service, llm):
        """A binding made in s1 answers "who" in s2 for the same image."""
        await service.submit_vision_turn("s1", b"IMG1", "Notepad")
        await service.submit_text_turn("s1", "that's me")

        await service.submit_vision_turn("s2", b"IMG1", "Notepad")
        llm.prompts.clear()
        who = await service.submit_text_turn("s2", "who is that?")

        assert who.response_text.endswith("is you.")
        assert llm.prompts == []

    @pytest.mark.asyncio
    async def test_binding_survives_restart(self, tmp_path: Path, llm):
        """A fresh service over the same database still knows the binding."""
        db_path = tmp_path / "memory.db"
        first_store = MemoryStore(db_path)
        first_store.init_db()
        first = ConversationService(first_store, llm)
        await first.submit_vision_turn("s1", b"IMG1", "Notepad")
        await first.submit_text_turn("s1", "this is Alice")
        await first.close()

        second_store = MemoryStore(db_path)
        second_store.init_db()
        second = ConversationService(second_store, llm)
        await second.submit_vision_turn("s9", b"IMG1", "Photos")
        who = await second.submit_text_turn("s9", "who is this")
        await second.close()

        assert "Alice" in who.response_text

    @pytest.mark.asyncio
    async def test_who_without_binding_does_not_guess(self, service, llm):
        await service.submit_vision_turn("s1", b"IMG2", "Photos")
        who = await service.submit_text_turn("s1", "who is that")
        assert "won't guess" in who.response_text

    @pytest.mark.asyncio
    async def test_long_conversation_window_stays_in_budget(self, store, llm):
        """20 turns of ~50 chars under 10 messages / 100 tokens."""
        llm.reply = "Noted, here is a fifty character assistant answer."
        context = ContextWindowBuilder(store, max_messages=10, max_tokens=100)
        service = ConversationService(store, llm, context=context)

        for i in range(20):
            await service.submit_text_turn("s1", f"question {i:02d} ".ljust(50, "x"))

        window = context.build("s1")
        newest = store.history("s1", 1)[0]
        timestamps = [m.timestamp for m in window.messages]

        assert 1 <= window.message_count <= 10
        assert window.total_tokens <= 100
        assert timestamps == sorted(timestamps)
        assert window.messages[-1].id == newest.id

        last_prompt = llm.prompts[-1]
        assert "question 18" in last_prompt
        assert "question 00" not in last_prompt
        assert last_prompt.endswith(f"User: {'question 19 '.ljust(50, 'x')}\n")

    def test_retention_purge(self, service, store):
        """Only the 45-day-old message is purged and stats reflect it."""
        now = store.now_ms()
        store.append_message("s1", Role.USER, "old", timestamp=now - 45 * DAY_MS)
        store.append_message("s1", Role.USER, "recent", timestamp=now - 10 * DAY_MS)
        before = service.get_context_stats("s1").total_messages

        store.purge_older_than(now - 30 * DAY_MS)

        assert service.get_context_stats("s1").total_messages == before - 1


class TestQueries:
    @pytest.mark.asyncio
    async def test_history_and_search(self, service):
        await service.submit_text_turn("s1", "remember the deploy key")
        assert len(service.get_history("s1")) == 2
        assert [m.content for m in service.search_messages("DEPLOY")] == [
            "remember the deploy key"
        ]

    @pytest.mark.asyncio
    async def test_identities_and_prune(self, service):
        await service.submit_vision_turn("s1", b"IMG1", "Notepad")
        await service.submit_text_turn("s1", "that's me")
        assert [b.subject for b in service.get_all_identities()] == ["user"]
        assert service.should_prune("s1") is False


class TestEvents:
    @pytest.mark.asyncio
    async def test_turns_are_logged(self, store, llm, tmp_path: Path):
        event_logger = JSONLLogger(log_dir=tmp_path / "logs")
        service = ConversationService(store, llm, event_logger=event_logger)

        await service.submit_vision_turn("s1", b"IMG1", "Notepad")
        await service.submit_text_turn("s1", "hello")

        events = [json.loads(line) for line in event_logger.log_path.read_text().splitlines()]
        assert [e["event"] for e in events] == ["vision_turn", "turn"]
        assert events[1]["intent"] == "completion"
        assert events[1]["history_messages"] == 2

    @pytest.mark.asyncio
    async def test_upstream_error_is_logged(self, store, llm, tmp_path: Path):
        event_logger = JSONLLogger(log_dir=tmp_path / "logs")
        service = ConversationService(store, llm, event_logger=event_logger)
        llm.error = UpstreamUnavailable("down")

        with pytest.raises(UpstreamUnavailable):
            await service.submit_text_turn("s1", "hello")

        entry = json.loads(event_logger.log_path.read_text().splitlines()[-1])
        assert entry["event"] == "upstream_error"


class TestLifecycle:
    def test_new_session_id_format(self):
        session_id = new_session_id()
        prefix, millis, suffix = session_id.split("-")
        assert prefix == "temp"
        assert millis.isdigit()
        assert len(suffix) == 8

    @pytest.mark.asyncio
    async def test_from_config(self, tmp_path: Path, llm):
        config = SomaConfig(memory=MemoryConfig(db_path=tmp_path / "soma.db", max_sessions=3))
        service = ConversationService.from_config(config, llm=llm)
        assert service.cache.config.max_sessions == 3

        service.start()
        assert service.sweeper.running is True
        await service.close()

        assert service.sweeper.running is False
        assert (tmp_path / "soma.db").exists()
