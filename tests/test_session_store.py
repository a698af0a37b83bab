"""
Tests for session store implementations.
"""
import pytest
import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import aiohttp

from chat_relay.errors import (
    InvalidSessionStateError,
    PayloadValidationError,
    SessionClosedError,
    SessionNotFoundError,
    UpstreamUnavailableError,
)
from chat_relay.models.message import Message, Sender
from chat_relay.models.schemas import Priority
from chat_relay.models.session import SessionStatus, SessionType
from chat_relay.session import (
    HttpSessionStore,
    InMemorySessionStore,
    create_session_store,
)
from chat_relay.utils.clock import utcnow


# ===========================
# In-memory store
# ===========================

class TestInMemorySessionStore:
    """Test the in-memory store semantics shared with the HTTP store."""

    async def test_get_missing_returns_none(self, store):
        assert await store.get("missing") is None

    async def test_create_and_get(self, store):
        consent = utcnow()
        created = await store.create("user-1", "S1", consent_timestamp=consent)

        fetched = await store.get("S1")
        assert created.session_id == "S1"
        assert fetched.user_id == "user-1"
        assert fetched.status == SessionStatus.OPEN
        assert fetched.session_type == SessionType.CHATBOT
        assert fetched.consent_given_at == consent
        assert fetched.messages == []

    async def test_create_is_idempotent(self, store):
        await store.create("user-1", "S1")
        await store.append_message("S1", Message(sender=Sender.USER, text="hi"))

        again = await store.create("user-2", "S1")

        assert again.user_id == "user-1"
        assert len(again.messages) == 1

    async def test_append_to_missing_session(self, store):
        with pytest.raises(SessionNotFoundError):
            await store.append_message("missing", Message(sender=Sender.USER, text="hi"))

    async def test_append_to_closed_session(self, store):
        await store.create("user-1", "S1")
        await store.close("S1", closed_by="staff-1")

        with pytest.raises(SessionClosedError):
            await store.append_message("S1", Message(sender=Sender.USER, text="hi"))

    async def test_timestamps_never_decrease(self, store):
        await store.create("user-1", "S1")
        now = utcnow()

        await store.append_message("S1", Message(sender=Sender.USER, text="first", timestamp=now))
        await store.append_message(
            "S1",
            Message(sender=Sender.BOT, text="second", timestamp=now - timedelta(seconds=5))
        )

        session = await store.get("S1")
        assert [m.text for m in session.messages] == ["first", "second"]
        assert session.messages[1].timestamp == now

    async def test_returned_sessions_are_copies(self, store):
        await store.create("user-1", "S1")

        session = await store.get("S1")
        session.messages.append(Message(sender=Sender.USER, text="sneaky"))
        session.status = SessionStatus.CLOSED

        fresh = await store.get("S1")
        assert fresh.messages == []
        assert fresh.status == SessionStatus.OPEN

    async def test_escalate_keeps_first_record(self, store):
        await store.create("user-1", "S1")

        first = await store.escalate("S1", "need a counselor", "user-1", "ESC_1")
        second = await store.escalate("S1", "again", "user-1", "ESC_2")

        assert first.status == SessionStatus.ESCALATED
        assert first.escalated_at is not None
        assert second.escalation_ticket_id == "ESC_1"
        assert second.escalation_reason == "need a counselor"

    async def test_escalate_closed_session(self, store):
        await store.create("user-1", "S1")
        await store.close("S1", closed_by="staff-1")

        with pytest.raises(SessionClosedError):
            await store.escalate("S1", "help", "user-1", "ESC_1")

    async def test_assign_requires_escalation(self, store):
        await store.create("user-1", "S1")

        with pytest.raises(InvalidSessionStateError):
            await store.assign_staff("S1", "staff-1")

    async def test_assign_switches_to_human_handover(self, store):
        await store.create("user-1", "S1")
        await store.escalate("S1", "help", "user-1", "ESC_1")

        session = await store.assign_staff("S1", "staff-1")

        assert session.assigned_staff_id == "staff-1"
        assert session.session_type == SessionType.HUMAN_HANDOVER
        assert session.status == SessionStatus.ESCALATED

    async def test_close_records_outcome_and_is_idempotent(self, store):
        await store.create("user-1", "S1")

        await store.close("S1", "staff-1", summary="Talked it through", rating=5, feedback="Helpful")
        await store.close("S1", "someone-else")

        session = await store.get("S1")
        assert session.is_closed
        assert session.ended_at is not None
        assert session.closed_by == "staff-1"
        assert session.summary == "Talked it through"
        assert session.rating == 5
        assert session.feedback == "Helpful"

    async def test_close_missing_session(self, store):
        with pytest.raises(SessionNotFoundError):
            await store.close("missing", closed_by="staff-1")

    async def test_escalation_notifications_are_recorded(self, store):
        ok = await store.create_escalation_notification(
            "S1", "user-1", "crisis", Priority.HIGH, "ESC_1"
        )

        assert ok is True
        assert store.notifications[0]["priority"] == "high"
        assert store.notifications[0]["ticket_id"] == "ESC_1"

    async def test_list_staff_sessions(self, store):
        for sid in ("S1", "S2", "S3"):
            await store.create("user-1", sid)
            await store.escalate(sid, "help", "user-1", f"ESC_{sid}")
        await store.assign_staff("S1", "staff-1")
        await store.assign_staff("S2", "staff-1")
        await store.assign_staff("S3", "staff-2")
        await store.close("S2", "staff-1")

        sessions = await store.list_staff_sessions("staff-1")

        assert [s.session_id for s in sessions] == ["S1"]

    async def test_concurrent_appends_are_all_kept(self, store):
        await store.create("user-1", "S1")

        await asyncio.gather(*[
            store.append_message("S1", Message(sender=Sender.USER, text=f"msg {i}"))
            for i in range(20)
        ])

        session = await store.get("S1")
        assert len(session.messages) == 20
        timestamps = [m.timestamp for m in session.messages]
        assert timestamps == sorted(timestamps)

    async def test_health_check(self, store):
        await store.create("user-1", "S1")
        health = await store.health_check()
        assert health == {"status": "healthy", "backend": "in_memory", "sessions": 1}


# ===========================
# Factory
# ===========================

class TestSessionStoreFactory:

    def test_in_memory(self):
        assert isinstance(create_session_store("in_memory"), InMemorySessionStore)

    def test_http(self):
        store = create_session_store("http", base_url="http://backend.test/api/", timeout=5)
        assert isinstance(store, HttpSessionStore)
        assert store.base_url == "http://backend.test/api"

    def test_http_requires_url(self):
        with pytest.raises(ValueError):
            create_session_store("http", base_url="")

    def test_unknown_type(self):
        with pytest.raises(ValueError, match="Unknown session store type"):
            create_session_store("redis")


# ===========================
# HTTP store
# ===========================

def session_document(session_id="S1", **overrides):
    document = {
        "session_id": session_id,
        "user_id": 42,
        "session_type": "chatbot",
        "status": "open",
        "created_at": "2024-05-01T10:00:00Z",
        "messages": [
            {"id": "m1", "sender": "user", "message": "hi", "timestamp": "2024-05-01T10:00:01Z"}
        ]
    }
    document.update(overrides)
    return document


class FakeResponse:
    def __init__(self, status, body=None):
        self.status = status
        self.body = body

    async def json(self, content_type=None):
        if isinstance(self.body, Exception):
            raise self.body
        return self.body


class FakeRequestContext:
    def __init__(self, response):
        self.response = response

    async def __aenter__(self):
        return self.response

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeHttpSession:
    """Stands in for aiohttp.ClientSession.request()."""

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.calls = []

    def request(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return FakeRequestContext(self.response)


@pytest.fixture
def http_store():
    return HttpSessionStore("http://backend.test/api", token="service-token", timeout=2.0)


class TestHttpSessionStore:
    """Test the backend API mapping without a network."""

    async def test_get_parses_backend_document(self, http_store):
        with patch.object(http_store, "_request", AsyncMock(return_value=session_document())):
            session = await http_store.get("S1")

        assert session.session_id == "S1"
        assert session.user_id == "42"
        assert session.messages[0].text == "hi"
        assert session.messages[0].sender == Sender.USER

    async def test_get_not_found_returns_none(self, http_store):
        with patch.object(http_store, "_request", AsyncMock(side_effect=SessionNotFoundError("nope"))):
            assert await http_store.get("S1") is None

    async def test_get_rejects_unexpected_document(self, http_store):
        with patch.object(http_store, "_request", AsyncMock(return_value={"ok": True})):
            with pytest.raises(UpstreamUnavailableError):
                await http_store.get("S1")

    async def test_create_payload(self, http_store):
        mock_request = AsyncMock(return_value=session_document())
        with patch.object(http_store, "_request", mock_request):
            await http_store.create("user-1", "S1")

        method, path = mock_request.await_args.args
        body = mock_request.await_args.kwargs["json_data"]
        assert (method, path) == ("POST", "/counseling/sessions")
        assert body["userId"] == "user-1"
        assert body["sessionId"] == "S1"
        assert body["sessionType"] == "chatbot"
        assert body["consentGivenAt"].endswith("+00:00")

    async def test_mutation_without_document_refetches(self, http_store):
        escalated = session_document(status="escalated", escalation_ticket_id="ESC_1")
        mock_request = AsyncMock(side_effect=[{"success": True}, escalated])

        with patch.object(http_store, "_request", mock_request):
            session = await http_store.escalate("S1", "help", "user-1", "ESC_1")

        assert session.status == SessionStatus.ESCALATED
        assert session.escalation_ticket_id == "ESC_1"
        assert mock_request.await_args_list[1].args == ("GET", "/counseling/sessions/S1")

    async def test_append_message_payload(self, http_store):
        mock_request = AsyncMock(return_value=None)
        message = Message(sender=Sender.BOT, text="hello", metadata={"confidence": 0.9})

        with patch.object(http_store, "_request", mock_request):
            await http_store.append_message("S1", message)

        body = mock_request.await_args.kwargs["json_data"]
        assert mock_request.await_args.args == ("POST", "/counseling/sessions/S1/messages")
        assert body["message"]["sender"] == "bot"
        assert body["message"]["message"] == "hello"
        assert body["message"]["metadata"] == {"confidence": 0.9}

    async def test_close_omits_empty_outcome_fields(self, http_store):
        mock_request = AsyncMock(return_value=None)

        with patch.object(http_store, "_request", mock_request):
            await http_store.close("S1", closed_by="staff-1")

        body = mock_request.await_args.kwargs["json_data"]
        assert body["closedBy"] == "staff-1"
        assert "rating" not in body
        assert "feedback" not in body

    async def test_list_staff_sessions_accepts_envelope(self, http_store):
        envelope = {"data": [session_document("S1"), session_document("S2"), {"junk": 1}]}
        mock_request = AsyncMock(return_value=envelope)

        with patch.object(http_store, "_request", mock_request):
            sessions = await http_store.list_staff_sessions("staff-1")

        assert [s.session_id for s in sessions] == ["S1", "S2"]
        assert mock_request.await_args.kwargs["params"] == {"staffId": "staff-1", "status": "open"}

    async def test_health_check_reports_unhealthy(self, http_store):
        error = UpstreamUnavailableError("Store unreachable")
        with patch.object(http_store, "_request", AsyncMock(side_effect=error)):
            health = await http_store.health_check()

        assert health["status"] == "unhealthy"
        assert health["backend"] == "http"

    async def test_request_requires_initialize(self, http_store):
        with pytest.raises(RuntimeError):
            await http_store._request("GET", "/health")

    async def test_request_sends_bearer_token(self, http_store):
        http_store.session = FakeHttpSession(FakeResponse(200, {"status": "ok"}))

        result = await http_store._request("GET", "/health")

        call = http_store.session.calls[0]
        assert result == {"status": "ok"}
        assert call["url"] == "http://backend.test/api/health"
        assert call["headers"]["Authorization"] == "Bearer service-token"

    async def test_no_content(self, http_store):
        http_store.session = FakeHttpSession(FakeResponse(204))
        assert await http_store._request("PUT", "/counseling/sessions/S1/close") is None

    @pytest.mark.parametrize("status,expected", [
        (404, SessionNotFoundError),
        (409, SessionClosedError),
        (422, PayloadValidationError),
        (401, UpstreamUnavailableError),
        (403, UpstreamUnavailableError),
        (500, UpstreamUnavailableError),
        (503, UpstreamUnavailableError),
    ])
    async def test_status_mapping(self, http_store, status, expected):
        http_store.session = FakeHttpSession(FakeResponse(status, {"error": "x"}))

        with pytest.raises(expected):
            await http_store._request("GET", "/counseling/sessions/S1")

    @pytest.mark.parametrize("error", [
        asyncio.TimeoutError(),
        aiohttp.ClientConnectionError("refused"),
    ])
    async def test_transport_failures_are_unavailable(self, http_store, error):
        http_store.session = FakeHttpSession(error=error)

        with pytest.raises(UpstreamUnavailableError):
            await http_store._request("GET", "/counseling/sessions/S1")

    async def test_unparseable_body_is_unavailable(self, http_store):
        http_store.session = FakeHttpSession(FakeResponse(200, ValueError("not json")))

        with pytest.raises(UpstreamUnavailableError):
            await http_store._request("GET", "/counseling/sessions/S1")
