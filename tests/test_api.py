"""
Tests for the REST API.
"""

from unittest.mock import patch

import pytest
from fastapi.testclient import TestClient

from dialogue_bot import api
from dialogue_bot.api import SessionRegistry
from dialogue_bot.bot import ChatBot
from dialogue_bot.feature_flags import flags
from dialogue_bot.settings import settings


@pytest.fixture
def client(monkeypatch, mock_llm):
    monkeypatch.setattr(api, "registry", SessionRegistry(llm=mock_llm))
    monkeypatch.setattr(api, "API_KEY", "")
    return TestClient(api.app)


def post(client, session_id, text, **extra):
    return client.post(f"/api/v1/sessions/{session_id}/messages", json={"text": text, **extra})


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ok"
        assert data["sessions"] == 0
        assert "customer_service" in data["personas"]
        assert "influencer_negotiation" in data["personas"]


class TestMessages:

    def test_message_creates_session(self, client):
        response = post(client, "s1", "Hello")
        assert response.status_code == 200
        data = response.json()
        assert data["session_id"] == "s1"
        assert data["intent"] == "greeting"
        assert data["confidence"] == 1.0
        assert data["source"] == "template"
        assert data["text"]
        assert len(api.registry) == 1

    def test_persona_selected_on_creation(self, client):
        response = post(client, "s2", "I have 30k followers on Instagram", persona="influencer_negotiation")
        assert response.status_code == 200
        assert response.json()["extracted"]["followers"] == 30000
        assert api.registry.get("s2").persona.name == "influencer_negotiation"

    def test_sessions_are_independent(self, client):
        post(client, "a", "Where is order #1?")
        post(client, "b", "Hello")
        assert api.registry.get("a").context.order_number == "1"
        assert api.registry.get("b").context.order_number is None

    def test_intent_hidden_by_flag(self, client):
        flags.set_override("intent_display", False)
        data = post(client, "s1", "Hello").json()
        assert "intent" not in data
        assert "confidence" not in data
        assert data["text"]

    def test_empty_text(self, client):
        response = post(client, "s1", "   ")
        assert response.status_code == 400
        assert response.json() == {"error": {"code": "EMPTY_MESSAGE", "message": "text must not be empty"}}
        assert len(api.registry) == 0

    def test_missing_text(self, client):
        response = client.post("/api/v1/sessions/s1/messages", json={})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "BAD_REQUEST"

    def test_unknown_persona(self, client):
        response = post(client, "s1", "Hello", persona="no_such_persona")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "UNKNOWN_PERSONA"

    def test_turn_in_progress(self, client):
        post(client, "s1", "Hello")
        bot = api.registry.get("s1")
        bot._turn_lock.acquire()
        try:
            response = post(client, "s1", "Hello again")
        finally:
            bot._turn_lock.release()

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "TURN_IN_PROGRESS"
        assert len(bot.history) == 1

    def test_internal_error(self, client):
        with patch.object(ChatBot, "process", side_effect=RuntimeError("boom")):
            response = post(client, "s1", "Hello")
        assert response.status_code == 500
        assert response.json() == {"error": {"code": "INTERNAL", "message": "Internal server error"}}


class TestHistoryAndReset:

    def test_history_json(self, client):
        post(client, "s1", "Hello")
        post(client, "s1", "Where is order #7?")

        response = client.get("/api/v1/sessions/s1/history")
        assert response.status_code == 200
        turns = response.json()["turns"]
        assert [t["user"] for t in turns] == ["Hello", "Where is order #7?"]
        assert turns[1]["metrics"] == {"order_number": "7"}

    def test_history_text(self, client):
        post(client, "s1", "Hello")
        response = client.get("/api/v1/sessions/s1/history", params={"format": "text"})
        assert response.status_code == 200
        assert "User: Hello" in response.json()["transcript"]

    def test_history_bad_format(self, client):
        post(client, "s1", "Hello")
        response = client.get("/api/v1/sessions/s1/history", params={"format": "xml"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "BAD_REQUEST"

    @pytest.mark.parametrize("method,path", [
        ("get", "/api/v1/sessions/missing/history"),
        ("post", "/api/v1/sessions/missing/reset"),
        ("delete", "/api/v1/sessions/missing"),
    ])
    def test_unknown_session(self, client, method, path):
        response = getattr(client, method)(path)
        assert response.status_code == 404
        assert response.json()["error"]["code"] == "SESSION_NOT_FOUND"

    def test_reset(self, client):
        post(client, "s1", "Where is order #7?")
        response = client.post("/api/v1/sessions/s1/reset")
        assert response.status_code == 200
        assert response.json() == {"session_id": "s1", "status": "reset"}

        bot = api.registry.get("s1")
        assert len(bot.history) == 0
        assert bot.context.order_number is None

    def test_reset_during_turn(self, client):
        post(client, "s1", "Where is order #7?")
        bot = api.registry.get("s1")
        bot._turn_lock.acquire()
        try:
            response = client.post("/api/v1/sessions/s1/reset")
        finally:
            bot._turn_lock.release()

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "TURN_IN_PROGRESS"
        assert len(bot.history) == 1

    def test_delete(self, client):
        post(client, "s1", "Hello")
        response = client.delete("/api/v1/sessions/s1")
        assert response.status_code == 200
        assert response.json() == {"session_id": "s1", "status": "deleted"}
        assert len(api.registry) == 0
        assert client.get("/api/v1/sessions/s1/history").status_code == 404

    def test_delete_during_turn(self, client):
        post(client, "s1", "Hello")
        bot = api.registry.get("s1")
        bot._turn_lock.acquire()
        try:
            response = client.delete("/api/v1/sessions/s1")
        finally:
            bot._turn_lock.release()

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "TURN_IN_PROGRESS"
        assert len(api.registry) == 1


class TestSessionRegistry:

    def setup_method(self):
        self.now = [1000.0]

    def make_registry(self, llm, ttl_seconds=10):
        return SessionRegistry(llm=llm, ttl_seconds=ttl_seconds, clock=lambda: self.now[0])

    def test_default_ttl_from_settings(self, mock_llm):
        registry = SessionRegistry(llm=mock_llm)
        assert registry._ttl == settings.api.session_ttl_seconds

    def test_idle_session_expires(self, mock_llm):
        registry = self.make_registry(mock_llm)
        bot = registry.get_or_create("a")

        self.now[0] += 9
        assert registry.get("a") is bot

        # Access above refreshed last_activity
        self.now[0] += 9
        assert registry.get("a") is bot

        self.now[0] += 10
        assert registry.get("a") is None
        assert len(registry) == 0

    def test_expired_session_recreated(self, mock_llm):
        registry = self.make_registry(mock_llm)
        old = registry.get_or_create("a")
        old.process("Where is order #7?")

        self.now[0] += 10
        new = registry.get_or_create("a")
        assert new is not old
        assert len(new.history) == 0

    def test_access_cleans_other_sessions(self, mock_llm):
        registry = self.make_registry(mock_llm)
        registry.get_or_create("a")
        registry.get_or_create("b")

        self.now[0] += 5
        registry.get("b")
        self.now[0] += 5
        registry.get_or_create("c")

        assert registry.get("a") is None
        assert registry.get("b") is not None
        assert len(registry) == 2

    def test_cleanup_expired_count(self, mock_llm):
        registry = self.make_registry(mock_llm)
        registry.get_or_create("a")
        registry.get_or_create("b")
        self.now[0] += 3
        registry.get_or_create("c")

        self.now[0] += 7
        assert registry.cleanup_expired() == 2
        assert len(registry) == 1
        assert registry.cleanup_expired() == 0

    def test_busy_session_not_evicted(self, mock_llm):
        registry = self.make_registry(mock_llm)
        bot = registry.get_or_create("a")
        bot._turn_lock.acquire()
        try:
            self.now[0] += 100
            assert registry.cleanup_expired() == 0
            assert len(registry) == 1
        finally:
            bot._turn_lock.release()

        assert registry.cleanup_expired() == 1
        assert len(registry) == 0

    def test_remove(self, mock_llm):
        registry = self.make_registry(mock_llm)
        registry.get_or_create("a")
        assert registry.remove("a") is True
        assert registry.remove("a") is False
        assert len(registry) == 0



class TestAuth:

    @pytest.fixture(autouse=True)
    def require_key(self, monkeypatch, client):
        monkeypatch.setattr(api, "API_KEY", "secret")

    def test_missing_token(self, client):
        response = post(client, "s1", "Hello")
        assert response.status_code == 401
        assert response.json()["error"] == {"code": "UNAUTHORIZED", "message": "Missing Bearer token"}

    def test_wrong_token(self, client):
        response = client.post(
            "/api/v1/sessions/s1/messages",
            json={"text": "Hello"},
            headers={"Authorization": "Bearer nope"},
        )
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid API key"

    def test_valid_token(self, client):
        response = client.post(
            "/api/v1/sessions/s1/messages",
            json={"text": "Hello"},
            headers={"Authorization": "Bearer secret"},
        )
        assert response.status_code == 200

    def test_health_is_open(self, client):
        assert client.get("/health").status_code == 200
