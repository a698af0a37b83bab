"""
Pytest configuration and shared fixtures for testing.
Provides test settings, an in-memory store, a recording gateway, a stub
responder and identities for each role.
"""
import pytest
import os
import random
from typing import Any, Callable, Dict, List, Optional

# Set testing environment before importing the package
os.environ["ENVIRONMENT"] = "testing"
os.environ["DEBUG"] = "false"
os.environ["ENABLE_TELEMETRY"] = "false"
os.environ["SESSION_STORE_BACKEND"] = "in_memory"
os.environ["RESPONDER_WEBHOOK_URL"] = ""
os.environ["RATE_LIMIT_ENABLED"] = "false"
os.environ["JWT_SECRET"] = "test-secret-key"

from chat_relay.config import Settings
from chat_relay.models.schemas import Identity, ResponderReply, Role
from chat_relay.relay import ConnectionGateway, RelayEngine
from chat_relay.services.auth_service import AuthService
from chat_relay.services.responder_client import ResponderClient
from chat_relay.session import InMemorySessionStore


# ===========================
# Settings Fixtures
# ===========================

@pytest.fixture
def test_settings() -> Settings:
    """
    Create test settings instance.
    Override default settings for testing environment.
    """
    return Settings(
        environment="testing",
        debug=False,
        jwt_secret="test-secret-key",
        session_store_backend="in_memory",
        session_store_timeout=2.0,
        best_effort_attempts=1,
        responder_webhook_url=None,
        responder_timeout=2.0,
        responder_breaker_fail_max=2,
        rate_limit_enabled=False,
        enable_telemetry=False
    )


# ===========================
# Relay Fixtures
# ===========================

class FakeConnection:
    """Records outbound frames the way a WebSocket client would see them."""

    def __init__(self, connection_id: str):
        self.connection_id = connection_id
        self.frames: List[Dict[str, Any]] = []
        self.closed = False

    async def send(self, frame: Dict[str, Any]) -> None:
        if self.closed:
            raise ConnectionError("socket closed")
        self.frames.append(frame)

    @property
    def event_names(self) -> List[str]:
        return [f["event"] for f in self.frames]

    def events(self, name: str) -> List[Dict[str, Any]]:
        return [f["data"] for f in self.frames if f["event"] == name]

    def last(self, name: str) -> Optional[Dict[str, Any]]:
        matching = self.events(name)
        return matching[-1] if matching else None

    def clear(self) -> None:
        self.frames.clear()


class StubResponder:
    """Responder double with a configurable reply."""

    configured = True
    circuit_state = "closed"

    def __init__(self):
        self.reply = ResponderReply(
            reply_text="Thank you for telling me. What has been on your mind?",
            confidence=0.9,
            intent="general_support"
        )
        self.error: Optional[Exception] = None
        self.calls: List[Dict[str, Any]] = []

    async def get_reply(self, text, session_id, user_id=None, recent_history=None):
        self.calls.append({
            "text": text,
            "session_id": session_id,
            "user_id": user_id,
            "recent_history": list(recent_history or [])
        })
        if self.error is not None:
            raise self.error
        return self.reply

    async def test_connection(self) -> Dict[str, Any]:
        return {"connected": True, "status": 200}


@pytest.fixture
def store() -> InMemorySessionStore:
    return InMemorySessionStore()


@pytest.fixture
def gateway() -> ConnectionGateway:
    return ConnectionGateway()


@pytest.fixture
def responder() -> StubResponder:
    return StubResponder()


@pytest.fixture
def engine(gateway, store, responder, test_settings) -> RelayEngine:
    return RelayEngine(
        gateway=gateway,
        store=store,
        responder=responder,
        settings=test_settings
    )


@pytest.fixture
def connect(gateway) -> Callable[..., FakeConnection]:
    """
    Register a fake connection with the gateway.
    Usage: conn = connect(user_identity)
    """
    counter = {"n": 0}

    def _connect(identity: Identity, connection_id: Optional[str] = None) -> FakeConnection:
        counter["n"] += 1
        connection = FakeConnection(connection_id or f"conn-{counter['n']}")
        gateway.register(connection.connection_id, identity, connection.send)
        return connection

    return _connect


@pytest.fixture
def unconfigured_responder(test_settings) -> ResponderClient:
    """Real responder client with no webhook: every reply is a fallback."""
    return ResponderClient(test_settings, rng=random.Random(7))


# ===========================
# Identity Fixtures
# ===========================

@pytest.fixture
def user_identity() -> Identity:
    return Identity(user_id="user-1", display_name="Rina", role=Role.USER)


@pytest.fixture
def other_user_identity() -> Identity:
    return Identity(user_id="user-2", display_name="Budi", role=Role.USER)


@pytest.fixture
def staff_identity() -> Identity:
    return Identity(user_id="staff-1", display_name="Dr. Sari", role=Role.PSIKOLOG)


@pytest.fixture
def other_staff_identity() -> Identity:
    return Identity(user_id="staff-2", display_name="Andi", role=Role.STAFF)


@pytest.fixture
def admin_identity() -> Identity:
    return Identity(user_id="admin-1", display_name="Admin", role=Role.ADMIN)


@pytest.fixture
def anonymous_identity() -> Identity:
    return Identity()


@pytest.fixture
def auth_service(test_settings) -> AuthService:
    return AuthService(test_settings)


# ===========================
# Sample Data
# ===========================

@pytest.fixture
def sample_messages():
    """Sample user messages for testing."""
    return [
        "I feel anxious today",
        "I have trouble sleeping before exams",
        "My family keeps arguing and I don't know what to do",
    ]


# ===========================
# Pytest Configuration
# ===========================

def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )


def pytest_collection_modifyitems(config, items):
    """Auto-mark tests based on their location."""
    for item in items:
        # Mark integration tests
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
