"""
External AI responder client.
Forwards user text to the responder webhook and normalises whatever comes
back into a ResponderReply.

The client never raises to its caller: timeouts, transport errors, bad
status codes, malformed bodies and an open circuit all produce a supportive
fallback reply instead.
"""
import asyncio
import json
import logging
import random
import time
from datetime import timedelta
from typing import Any, Dict, Optional, Sequence

import aiohttp
from aiohttp import ClientError, ClientSession, ClientTimeout
from aiobreaker import CircuitBreaker, CircuitBreakerError
from pydantic import ValidationError

from ..config import Settings
from ..errors import UpstreamDegradedError
from ..models.message import Message
from ..models.schemas import ResponderReply
from ..utils.clock import utcnow
from ..utils.telemetry import metrics_collector, track_responder_latency

logger = logging.getLogger(__name__)

FALLBACK_REPLIES = (
    "I hear you. It takes courage to reach out, and I want you to know that your feelings are valid.",
    "Thank you for sharing with me. I'm here to support you through this.",
    "It sounds like you're going through a difficult time. You don't have to face this alone.",
    "I can sense that you're struggling right now. Would you like to talk about what's been weighing on your mind?",
    "Your wellbeing matters, and I'm glad you're taking this step to seek support.",
)

FALLBACK_CONFIDENCE = 0.6
STRING_REPLY_CONFIDENCE = 0.7
DEFAULT_CONFIDENCE = 0.8
DEFAULT_INTENT = "general_support"

# First present, non-empty field wins.
REPLY_TEXT_FIELDS = ("reply", "message", "response")


class ResponderResponseError(UpstreamDegradedError):
    """Responder answered with a body that cannot be turned into a reply."""
    code = "responder_malformed"


def _coerce_confidence(value: Any, default: float) -> float:
    if value is None or isinstance(value, bool):
        return default
    try:
        confidence = float(value)
    except (TypeError, ValueError):
        raise ResponderResponseError(f"Non-numeric confidence: {value!r}")
    if confidence != confidence:  # NaN
        raise ResponderResponseError("Confidence is NaN")
    return min(1.0, max(0.0, confidence))


def normalize_reply(data: Any) -> ResponderReply:
    """
    Normalise a responder body into a ResponderReply.

    Accepted shapes:
    - a bare string
    - an object carrying the text under ``reply``, ``message`` or ``response``
    - a one-element array wrapping either of the above

    Raises:
        ResponderResponseError: Shape not recognised or reply text empty
    """
    if isinstance(data, list):
        if len(data) != 1:
            raise ResponderResponseError(f"Expected a single reply, got {len(data)} items")
        data = data[0]

    if isinstance(data, str):
        if not data.strip():
            raise ResponderResponseError("Empty reply string")
        return ResponderReply(
            reply_text=data.strip(),
            confidence=STRING_REPLY_CONFIDENCE,
            intent=DEFAULT_INTENT
        )

    if not isinstance(data, dict):
        raise ResponderResponseError(f"Unsupported reply type: {type(data).__name__}")

    reply_text = None
    for field_name in REPLY_TEXT_FIELDS:
        value = data.get(field_name)
        if isinstance(value, str) and value.strip():
            reply_text = value.strip()
            break

    if reply_text is None:
        raise ResponderResponseError(
            f"Reply object has none of {', '.join(REPLY_TEXT_FIELDS)}"
        )

    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    metadata = dict(metadata)
    for key in ("workflowId", "processingTime"):
        if data.get(key) is not None:
            metadata[key] = data[key]

    try:
        return ResponderReply(
            reply_text=reply_text,
            confidence=_coerce_confidence(data.get("confidence"), DEFAULT_CONFIDENCE),
            intent=str(data.get("intent") or DEFAULT_INTENT),
            escalation_suggested=bool(data.get("escalationSuggested", False)),
            escalation_reason=data.get("escalationReason"),
            metadata=metadata
        )
    except ValidationError as e:
        raise ResponderResponseError(f"Invalid reply fields: {e}")


class ResponderClient:
    """
    Client for the AI responder webhook.

    Features:
    - Async HTTP client with a bounded total timeout
    - Circuit breaker so a failing webhook is skipped until it recovers
    - Boundary normalisation of heterogeneous reply shapes
    - Deterministic fallback reply set when the responder is unavailable
    """

    def __init__(
        self,
        settings: Settings,
        rng: Optional[random.Random] = None
    ):
        self.webhook_url = settings.responder_webhook_url
        self.api_key = settings.get_responder_api_key()
        self.timeout = settings.responder_timeout
        self.platform = settings.responder_platform
        self.user_agent = f"MindCareChatRelay/{settings.app_version}"

        self.rng = rng or random.Random()

        # HTTP client (initialized in async initialize())
        self.session: Optional[ClientSession] = None

        self.breaker = CircuitBreaker(
            fail_max=settings.responder_breaker_fail_max,
            timeout_duration=timedelta(seconds=settings.responder_breaker_reset_seconds),
            name="responder"
        )

    @property
    def configured(self) -> bool:
        return bool(self.webhook_url)

    async def initialize(self) -> None:
        """Create the HTTP session."""
        if not self.configured:
            logger.warning(
                "Responder webhook URL not configured. "
                "All replies will come from the fallback set."
            )

        if self.session is None:
            self.session = ClientSession(
                timeout=ClientTimeout(total=self.timeout),
                connector=aiohttp.TCPConnector(limit=50, limit_per_host=20, ttl_dns_cache=300),
                headers={
                    "User-Agent": self.user_agent,
                    "Accept": "application/json"
                }
            )

        logger.info(f"✓ Responder client initialized (endpoint: {self.webhook_url or 'none'})")

    async def cleanup(self) -> None:
        """Close the HTTP session."""
        if self.session:
            await self.session.close()
            self.session = None
        logger.info("✓ Responder client cleanup complete")

    async def get_reply(
        self,
        text: str,
        session_id: str,
        user_id: Optional[str] = None,
        recent_history: Optional[Sequence[Message]] = None
    ) -> ResponderReply:
        """
        Ask the responder for a reply to a user message.

        Args:
            text: User message text
            session_id: Session identifier
            user_id: Owning user, if known
            recent_history: Last few transcript turns for context

        Returns:
            Normalised reply; a fallback reply when the responder is unavailable
        """
        if not self.configured:
            return self.fallback_reply("not_configured")

        payload = self._build_payload(text, session_id, user_id, recent_history or [])
        start_time = time.time()

        try:
            data = await self.breaker.call_async(self._post_to_webhook, payload)
            reply = normalize_reply(data)

        except CircuitBreakerError:
            logger.warning(
                f"Responder circuit open; serving fallback for session {session_id}",
                extra={"session_id": session_id, "operation": "responder.get_reply"}
            )
            return self.fallback_reply("circuit_open")

        except asyncio.TimeoutError:
            logger.warning(
                f"Responder timed out after {self.timeout:.1f}s for session {session_id}",
                extra={"session_id": session_id, "operation": "responder.get_reply"}
            )
            return self.fallback_reply("timeout")

        except ResponderResponseError as e:
            logger.warning(
                f"Malformed responder reply for session {session_id}: {e}",
                extra={"session_id": session_id, "operation": "responder.get_reply"}
            )
            return self.fallback_reply("malformed")

        except Exception as e:
            logger.warning(
                f"Responder unavailable for session {session_id}: {e}",
                extra={
                    "session_id": session_id,
                    "operation": "responder.get_reply",
                    "error_type": type(e).__name__
                }
            )
            return self.fallback_reply("unavailable")

        finally:
            track_responder_latency(time.time() - start_time)

        logger.debug(
            f"Responder replied for session {session_id} "
            f"(confidence={reply.confidence:.2f}, intent={reply.intent})"
        )
        return reply

    def fallback_reply(self, reason: str) -> ResponderReply:
        """Pick a canned supportive reply and record the degradation."""
        metrics_collector.record_fallback(reason)

        return ResponderReply(
            reply_text=self.rng.choice(FALLBACK_REPLIES),
            confidence=FALLBACK_CONFIDENCE,
            intent="fallback_support",
            escalation_suggested=False,
            metadata={"fallback": True, "fallback_reason": reason}
        )

    async def test_connection(self) -> Dict[str, Any]:
        """Send a connection test payload to the webhook."""
        if not self.configured:
            return {"connected": False, "error": "Webhook URL not configured"}

        payload = {
            "message": "Connection test",
            "test": True,
            "timestamp": utcnow().isoformat()
        }

        start_time = time.time()
        try:
            async with self._ensure_session().post(
                self.webhook_url,
                json=payload,
                headers=self._auth_headers()
            ) as response:
                return {
                    "connected": response.status < 400,
                    "status": response.status,
                    "response_time_ms": round((time.time() - start_time) * 1000, 1)
                }
        except (ClientError, asyncio.TimeoutError) as e:
            return {"connected": False, "error": str(e) or type(e).__name__}

    @property
    def circuit_state(self) -> str:
        state = self.breaker.current_state
        return getattr(state, "name", str(state)).lower()

    # ===========================
    # Private Helper Methods
    # ===========================

    def _build_payload(
        self,
        text: str,
        session_id: str,
        user_id: Optional[str],
        recent_history: Sequence[Message]
    ) -> Dict[str, Any]:
        now = utcnow().isoformat()
        return {
            "message": text,
            "sessionId": session_id,
            "userId": user_id,
            "context": {
                "platform": self.platform,
                "type": "mental_health_support",
                "timestamp": now,
                "messageHistory": [
                    {
                        "sender": m.sender.value,
                        "text": m.text,
                        "timestamp": m.timestamp.isoformat()
                    }
                    for m in recent_history
                ]
            },
            "timestamp": now,
            "source": "mindcare-chat-relay"
        }

    def _auth_headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _ensure_session(self) -> ClientSession:
        if self.session is None:
            raise RuntimeError("Responder client not initialized. Call initialize() first.")
        return self.session

    async def _post_to_webhook(self, payload: Dict[str, Any]) -> Any:
        """POST to the webhook and return the decoded body (JSON or plain text)."""
        async with self._ensure_session().post(
            self.webhook_url,
            json=payload,
            headers=self._auth_headers()
        ) as response:
            if response.status >= 400:
                raise UpstreamDegradedError(f"Responder returned HTTP {response.status}")

            raw = await response.text()

        try:
            return json.loads(raw)
        except ValueError:
            # Plain-text replies are a supported shape.
            return raw


__all__ = [
    'FALLBACK_REPLIES',
    'FALLBACK_CONFIDENCE',
    'ResponderClient',
    'ResponderResponseError',
    'normalize_reply',
]
