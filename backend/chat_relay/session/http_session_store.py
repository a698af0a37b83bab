"""
HTTP session store.
Talks to the platform backend's counseling-session API, which owns the
durable session and transcript records.
"""
import asyncio
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

import aiohttp
from aiohttp import ClientError, ClientSession, ClientTimeout

from .session_store import SessionStore
from ..errors import (
    PayloadValidationError,
    RelayError,
    SessionClosedError,
    SessionNotFoundError,
    UpstreamUnavailableError,
)
from ..models.message import Message
from ..models.schemas import Priority
from ..models.session import Session, SessionType
from ..utils.clock import isoformat, utcnow

logger = logging.getLogger(__name__)


def _is_session_document(data: Any) -> bool:
    return isinstance(data, dict) and bool(data.get("session_id") or data.get("sessionId"))


class HttpSessionStore(SessionStore):
    """
    SessionStore backed by the backend REST API.

    Features:
    - Shared aiohttp ClientSession with connection pooling
    - Service bearer authentication
    - Bounded total timeout per request
    - HTTP status mapped onto the relay error taxonomy

    Status mapping:
    - 404 -> SessionNotFoundError (get() returns None instead)
    - 409 -> SessionClosedError
    - 422 -> PayloadValidationError
    - 401/403/5xx, transport errors, timeouts -> UpstreamUnavailableError
    """

    def __init__(
        self,
        base_url: str,
        token: Optional[str] = None,
        timeout: float = 10.0,
        user_agent: str = "MindCareChatRelay/1.0"
    ):
        if not base_url:
            raise ValueError("Session store URL not configured (set SESSION_STORE_URL)")

        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self.user_agent = user_agent

        # HTTP client (initialized in async initialize())
        self.session: Optional[ClientSession] = None

    async def initialize(self) -> None:
        """Create the HTTP session."""
        if self.session is not None:
            return

        if not self.token:
            logger.warning("Session store token not configured; requests are unauthenticated")

        self.session = ClientSession(
            timeout=ClientTimeout(total=self.timeout),
            connector=aiohttp.TCPConnector(limit=50, limit_per_host=50, ttl_dns_cache=300),
            headers={
                "User-Agent": self.user_agent,
                "Accept": "application/json"
            }
        )
        logger.info(f"✓ HttpSessionStore initialized (endpoint: {self.base_url})")

    async def cleanup(self) -> None:
        """Close the HTTP session."""
        if self.session:
            await self.session.close()
            self.session = None
        logger.info("✓ HttpSessionStore cleanup complete")

    # ===========================
    # SessionStore operations
    # ===========================

    async def get(self, session_id: str) -> Optional[Session]:
        try:
            data = await self._request("GET", f"/counseling/sessions/{session_id}")
        except SessionNotFoundError:
            logger.debug(f"Session {session_id} not found in store")
            return None

        return self._to_session(data, session_id)

    async def create(
        self,
        user_id: Optional[str],
        session_id: str,
        session_type: SessionType = SessionType.CHATBOT,
        consent_timestamp: Optional[datetime] = None
    ) -> Session:
        data = await self._request(
            "POST",
            "/counseling/sessions",
            json_data={
                "userId": user_id,
                "sessionId": session_id,
                "sessionType": session_type.value,
                "consentGivenAt": isoformat(consent_timestamp or utcnow())
            }
        )

        if _is_session_document(data):
            session = Session.from_api(data)
        else:
            session = await self._refetch(session_id)

        logger.info(f"Created session {session_id} for user {user_id or 'anonymous'}")
        return session

    async def append_message(self, session_id: str, message: Message) -> None:
        await self._request(
            "POST",
            f"/counseling/sessions/{session_id}/messages",
            json_data={"message": message.to_api()}
        )

    async def escalate(
        self,
        session_id: str,
        reason: str,
        escalated_by: Optional[str],
        ticket_id: str
    ) -> Session:
        data = await self._request(
            "PUT",
            f"/counseling/sessions/{session_id}/escalate",
            json_data={
                "reason": reason,
                "escalatedBy": escalated_by,
                "ticketId": ticket_id
            }
        )
        return await self._session_from_mutation(data, session_id)

    async def assign_staff(self, session_id: str, staff_id: str) -> Session:
        data = await self._request(
            "PUT",
            f"/counseling/sessions/{session_id}/assign",
            json_data={"staffId": staff_id}
        )
        return await self._session_from_mutation(data, session_id)

    async def close(
        self,
        session_id: str,
        closed_by: Optional[str],
        summary: Optional[str] = None,
        rating: Optional[int] = None,
        feedback: Optional[str] = None
    ) -> None:
        payload: Dict[str, Any] = {
            "closedBy": closed_by,
            "summary": summary,
            "closedAt": isoformat(utcnow())
        }
        if rating is not None:
            payload["rating"] = rating
        if feedback:
            payload["feedback"] = feedback

        await self._request(
            "PUT",
            f"/counseling/sessions/{session_id}/close",
            json_data=payload
        )

    async def create_escalation_notification(
        self,
        session_id: str,
        user_id: Optional[str],
        reason: str,
        priority: Priority,
        ticket_id: str
    ) -> bool:
        await self._request(
            "POST",
            "/escalations/notifications",
            json_data={
                "sessionId": session_id,
                "userId": user_id,
                "reason": reason,
                "priority": priority.value,
                "ticketId": ticket_id,
                "timestamp": isoformat(utcnow())
            }
        )
        return True

    async def list_staff_sessions(self, staff_id: str) -> List[Session]:
        data = await self._request(
            "GET",
            "/counseling/sessions",
            params={"staffId": staff_id, "status": "open"}
        )

        # Plain list or a paginated {"data": [...]} envelope.
        items = data.get("data", []) if isinstance(data, dict) else (data or [])
        return [Session.from_api(item) for item in items if _is_session_document(item)]

    async def health_check(self) -> Dict[str, Any]:
        try:
            await self._request("GET", "/health")
            return {"status": "healthy", "backend": "http", "url": self.base_url}
        except RelayError as e:
            return {"status": "unhealthy", "backend": "http", "error": e.message}

    # ===========================
    # Private Helper Methods
    # ===========================

    async def _session_from_mutation(self, data: Any, session_id: str) -> Session:
        if _is_session_document(data):
            return Session.from_api(data)
        return await self._refetch(session_id)

    async def _refetch(self, session_id: str) -> Session:
        session = await self.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return session

    def _to_session(self, data: Any, session_id: str) -> Session:
        if not _is_session_document(data):
            raise UpstreamUnavailableError(
                f"Store returned an unexpected document for session {session_id}"
            )
        return Session.from_api(data)

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json_data: Optional[Dict[str, Any]] = None
    ) -> Any:
        """Make an HTTP request to the store and return the decoded JSON body."""
        if self.session is None:
            raise RuntimeError("HttpSessionStore not initialized. Call initialize() first.")

        url = f"{self.base_url}{path}"

        try:
            async with self.session.request(
                method=method,
                url=url,
                params=params,
                json=json_data,
                headers=self._headers()
            ) as response:
                if response.status == 404:
                    raise SessionNotFoundError(f"Not found: {method} {path}")

                elif response.status == 409:
                    raise SessionClosedError("Session is closed")

                elif response.status == 422:
                    raise PayloadValidationError(f"Store rejected payload for {method} {path}")

                elif response.status in (401, 403):
                    raise UpstreamUnavailableError(
                        f"Store refused relay credentials ({response.status})"
                    )

                elif response.status >= 400:
                    raise UpstreamUnavailableError(f"Store error: {response.status}")

                if response.status == 204:
                    return None

                try:
                    return await response.json(content_type=None)
                except ValueError as e:
                    raise UpstreamUnavailableError(f"Failed to parse store response: {e}")

        except RelayError:
            raise

        except asyncio.TimeoutError:
            raise UpstreamUnavailableError(f"Store timed out: {method} {path}")

        except ClientError as e:
            raise UpstreamUnavailableError(f"Store unreachable: {e}")


__all__ = ['HttpSessionStore']
