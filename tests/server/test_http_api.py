"""Tests for the HTTP adapter."""

import base64
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from soma.agent import ConversationService
from soma.errors import InvalidInput, StorageError, UpstreamUnavailable
from soma.memory import MemoryStore, fingerprint_image
from soma.server import create_app, decode_image

IMAGE = b"\x89PNG\r\n\x1a\nscreen"
IMAGE_B64 = base64.b64encode(IMAGE).decode("ascii")


@pytest.fixture
def service(store: MemoryStore, llm) -> ConversationService:
    return ConversationService(store, llm)


@pytest.fixture
def client(service: ConversationService) -> TestClient:
    return TestClient(create_app(service))


class TestDecodeImage:
    def test_plain_base64(self):
        assert decode_image(IMAGE_B64) == IMAGE

    def test_data_url(self):
        assert decode_image(f"data:image/png;base64,{IMAGE_B64}") == IMAGE

    @pytest.mark.parametrize("payload", ["", "   ", "not base64!!"])
    def test_invalid(self, payload):
        with pytest.raises(InvalidInput):
            decode_image(payload)


class TestHealth:
    def test_health(self, client: TestClient):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"ok": True}


class TestChat:
    """Tests for POST /chat."""

    def test_chat(self, client: TestClient):
        response = client.post("/chat", json={"text": "hello", "sessionId": "s1"})
        assert response.status_code == 200
        assert response.json() == {"assistant_text": "Sure.", "session_id": "s1"}

    def test_header_wins_over_body(self, client: TestClient):
        response = client.post(
            "/chat",
            json={"text": "hello", "sessionId": "body"},
            headers={"X-Session-Id": "header"},
        )
        assert response.json()["session_id"] == "header"

    def test_query_session_id(self, client: TestClient):
        response = client.post("/chat?sessionId=query", json={"text": "hello"})
        assert response.json()["session_id"] == "query"

    def test_generated_session_id(self, client: TestClient):
        response = client.post("/chat", json={"text": "hello"})
        assert response.json()["session_id"].startswith("temp-")

    def test_missing_text_is_400(self, client: TestClient, store: MemoryStore):
        response = client.post("/chat", json={"sessionId": "s1"})
        assert response.status_code == 400
        assert "error" in response.json()
        assert store.counts()["messages"] == 0

    def test_malformed_body_is_400(self, client: TestClient):
        response = client.post("/chat", json={"text": ["not", "a", "string"]})
        assert response.status_code == 400

    def test_upstream_unavailable_is_503(self, client: TestClient, llm):
        llm.error = UpstreamUnavailable("backend down")
        response = client.post("/chat", json={"text": "hello", "sessionId": "s1"})
        assert response.status_code == 503
        assert response.json() == {"error": "backend down"}

    def test_unexpected_error_is_500(self):
        service = MagicMock()
        service.submit_text_turn.side_effect = StorageError("corrupt")
        client = TestClient(create_app(service))

        response = client.post("/chat", json={"text": "hello"})

        assert response.status_code == 500
        assert response.json() == {"error": "corrupt"}


class TestVision:
    """Tests for POST /vision."""

    def test_vision(self, client: TestClient):
        response = client.post(
            "/vision",
            json={"imageB64": IMAGE_B64, "windowTitle": "Notepad", "sessionId": "s1"},
        )
        assert response.status_code == 200
        assert response.json() == {
            "assistant_text": "A text editor.",
            "image_hash": fingerprint_image(IMAGE),
            "session_id": "s1",
        }

    def test_missing_image_is_400(self, client: TestClient):
        response = client.post("/vision", json={"sessionId": "s1"})
        assert response.status_code == 400

    def test_identity_flow(self, client: TestClient):
        """Screenshot, "that's me", then "who is that" answers "you"."""
        headers = {"X-Session-Id": "s1"}
        client.post("/vision", json={"imageB64": IMAGE_B64, "windowTitle": "Notepad"}, headers=headers)
        client.post("/chat", json={"text": "that's me"}, headers=headers)
        response = client.post("/chat", json={"text": "who is that?"}, headers=headers)

        assert response.json()["assistant_text"].endswith("is you.")


class TestQueries:
    """Tests for the read-only endpoints."""

    def test_history(self, client: TestClient):
        client.post("/chat", json={"text": "hello", "sessionId": "s1"})
        response = client.get("/history", params={"sessionId": "s1"})

        assert response.status_code == 200
        messages = response.json()["messages"]
        assert [m["role"] for m in messages] == ["user", "assistant"]
        assert messages[0]["content"] == "hello"

    def test_history_requires_session(self, client: TestClient):
        assert client.get("/history").status_code == 400

    def test_stats(self, client: TestClient):
        client.post("/chat", json={"text": "hello"}, headers={"X-Session-Id": "s1"})
        response = client.get("/stats", headers={"X-Session-Id": "s1"})

        body = response.json()
        assert body["stats"]["total_messages"] == 2
        assert body["stats"]["user_messages"] == 1
        assert body["should_prune"] is False

    def test_identities(self, client: TestClient):
        headers = {"X-Session-Id": "s1"}
        client.post("/vision", json={"imageB64": IMAGE_B64}, headers=headers)
        client.post("/chat", json={"text": "this is Alice"}, headers=headers)

        identities = client.get("/identities").json()["identities"]
        assert [i["subject"] for i in identities] == ["Alice"]
        assert identities[0]["fingerprint"] == fingerprint_image(IMAGE)

    def test_search(self, client: TestClient):
        client.post("/chat", json={"text": "the deploy key is in the vault", "sessionId": "s1"})
        response = client.get("/search", params={"q": "VAULT"})
        assert [m["content"] for m in response.json()["messages"]] == [
            "the deploy key is in the vault"
        ]

    def test_search_requires_query(self, client: TestClient):
        assert client.get("/search").status_code == 400


class TestLifespan:
    def test_starts_and_closes_service(self):
        service = MagicMock()
        service.close = AsyncMock()

        with TestClient(create_app(service)) as client:
            client.get("/health")
            service.start.assert_called_once()

        service.close.assert_awaited_once()
