"""
Session relay engine.

Routes inbound connection events to handlers, drives the session state
machine (OPEN -> ESCALATED -> CLOSED) through the session store, and fans
transcript updates out to session and staff groups via the gateway.

Each inbound event is handled in an isolated failure domain: relay errors
become an ``error`` event for the originating connection only, unexpected
exceptions are logged and reported as ``internal_error``.
"""
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple, Type
from datetime import datetime

from pydantic import BaseModel, ValidationError

from ..config import Settings, get_settings
from ..errors import (
    InvalidSessionStateError,
    PayloadValidationError,
    PermissionDeniedError,
    RateLimitedError,
    RelayError,
    SessionClosedError,
    SessionNotFoundError,
)
from ..models.message import Message, Sender
from ..models.schemas import (
    CloseSessionPayload,
    Identity,
    JoinSessionPayload,
    RequestEscalationPayload,
    ResponderReply,
    SendMessagePayload,
    StaffJoinPayload,
    TypingPayload,
)
from ..models.session import Session, SessionType
from ..services.escalation_policy import (
    EscalationDecision,
    classify_priority,
    evaluate_message,
    merge_keywords,
)
from ..services.permissions import check_permission, is_staff
from ..services.responder_client import ResponderClient
from ..session import SessionStore
from ..utils.clock import isoformat, utcnow
from ..utils.rate_limit import TokenBucketLimiter
from ..utils.resilience import best_effort, must_succeed
from ..utils.telemetry import metrics_collector, track_escalation, track_event
from .gateway import STAFF_GROUP, Connection, ConnectionGateway, session_group

logger = logging.getLogger(__name__)

Handler = Callable[[Connection, Any], Awaitable[None]]

# Cheap presence events are not charged against the rate limit.
UNMETERED_EVENTS = frozenset({"ping", "typing"})

RESPONDER_SUGGESTION_REASON = "responder suggestion"
INTERNAL_ERROR_MESSAGE = "Something went wrong. Please try again."


class RelayEngine:
    """
    Per-connection protocol state machine.

    The engine holds no session state of its own: every handler reads the
    current session from the store and writes transitions back to it.
    """

    def __init__(
        self,
        gateway: ConnectionGateway,
        store: SessionStore,
        responder: ResponderClient,
        settings: Optional[Settings] = None,
        limiter: Optional[TokenBucketLimiter] = None,
        clock: Callable[[], datetime] = utcnow
    ):
        settings = settings or get_settings()

        self.gateway = gateway
        self.store = store
        self.responder = responder
        self.limiter = limiter
        self.clock = clock

        self.store_timeout = settings.session_store_timeout
        self.best_effort_attempts = settings.best_effort_attempts
        self.history_size = settings.responder_history_size
        self.max_message_length = settings.max_message_length
        self.keywords = merge_keywords(settings.escalation_extra_keywords)

        self.handlers: Dict[str, Tuple[Optional[Type[BaseModel]], Handler]] = {
            "join_session": (JoinSessionPayload, self.handle_join_session),
            "send_message": (SendMessagePayload, self.handle_send_message),
            "request_escalation": (RequestEscalationPayload, self.handle_request_escalation),
            "staff_join_session": (StaffJoinPayload, self.handle_staff_join_session),
            "close_session": (CloseSessionPayload, self.handle_close_session),
            "typing": (TypingPayload, self.handle_typing),
            "ping": (None, self.handle_ping),
        }

    # ===========================
    # Dispatch
    # ===========================

    async def dispatch(self, connection_id: str, event: str, data: Any = None) -> None:
        """
        Handle one inbound event from a connection.

        Never raises: every failure is reported to the originating connection.
        """
        connection = self.gateway.get(connection_id)
        if connection is None:
            logger.debug(f"Ignoring {event} from unknown connection {connection_id}")
            return

        try:
            entry = self.handlers.get(event)
            if entry is None:
                raise PayloadValidationError(f"Unknown event: {event}")
            model, handler = entry

            check_permission(event, connection.identity)
            payload = self._parse(model, data)

            if (
                self.limiter is not None
                and event not in UNMETERED_EVENTS
                and not self.limiter.allow(connection.rate_limit_key)
            ):
                raise RateLimitedError("You are sending messages too quickly. Please slow down.")

            await handler(connection, payload)
            track_event(event, "ok")

        except RelayError as e:
            track_event(event, e.code)
            logger.info(
                f"{event} from {connection_id} rejected: {e.code} ({e.message})",
                extra={"connection_id": connection_id, "event": event, "error_code": e.code}
            )
            await self.gateway.send_to(connection_id, "error", e.to_event())

        except Exception as e:
            track_event(event, "internal_error")
            metrics_collector.record_error()
            logger.error(
                f"Unhandled error in {event} for connection {connection_id}: {e}",
                extra={"connection_id": connection_id, "event": event},
                exc_info=True
            )
            await self.gateway.send_to(
                connection_id,
                "error",
                {"message": INTERNAL_ERROR_MESSAGE, "code": "internal_error"}
            )

    async def handle_disconnect(self, connection_id: str) -> None:
        """Unregister a connection and tell its sessions the user left."""
        connection = self.gateway.get(connection_id)
        if connection is None:
            return

        joined_sessions = connection.sessions
        self.gateway.unregister(connection_id)

        timestamp = isoformat(self.clock())
        for session_id in joined_sessions:
            await self.gateway.broadcast(
                session_group(session_id),
                "user_disconnected",
                {
                    "sessionId": session_id,
                    "userId": connection.identity.user_id,
                    "role": connection.identity.role.value,
                    "timestamp": timestamp
                }
            )

    # ===========================
    # Event handlers
    # ===========================

    async def handle_join_session(self, connection: Connection, payload: JoinSessionPayload) -> None:
        """Fetch or create the session and subscribe the connection to it."""
        identity = connection.identity
        session_id = payload.session_id

        session = await self._call(
            "store.get", lambda: self.store.get(session_id), session_id
        )
        created = False

        if session is None:
            if not payload.consent:
                raise PayloadValidationError("Consent is required to start a new session")

            session = await self._call(
                "store.create",
                lambda: self.store.create(
                    identity.user_id, session_id, SessionType.CHATBOT, self.clock()
                ),
                session_id
            )
            created = True

        else:
            if session.is_closed:
                raise SessionClosedError("This session has been closed")
            if not self._can_access(identity, session):
                raise PermissionDeniedError("You do not have access to this session")

        if payload.user_id and payload.user_id != identity.user_id:
            logger.debug(
                f"Ignoring client-supplied userId for session {session_id}; "
                f"using token identity {identity.label}"
            )

        self.gateway.join_group(connection.connection_id, session_group(session_id))

        logger.info(
            f"{identity.label} joined session {session_id} "
            f"({'created' if created else session.status.value})"
        )

        await self.gateway.send_to(
            connection.connection_id,
            "session_joined",
            {**session.to_client(), "created": created}
        )

    async def handle_send_message(self, connection: Connection, payload: SendMessagePayload) -> None:
        """Persist and broadcast a turn, then let the responder answer chatbot sessions."""
        identity = connection.identity
        session_id = payload.session_id

        if len(payload.message) > self.max_message_length:
            raise PayloadValidationError(
                f"Message exceeds {self.max_message_length} characters"
            )

        session = await self._load_session(session_id)
        if session.is_closed:
            raise SessionClosedError("This session has been closed")
        if not connection.in_session(session_id):
            raise PermissionDeniedError("Join the session before sending messages")

        sender = Sender.STAFF if is_staff(identity) else Sender.USER
        message = Message(
            sender=sender,
            text=payload.message,
            timestamp=self.clock(),
            author_id=identity.user_id
        )

        await self._call(
            "store.append_message",
            lambda: self.store.append_message(session_id, message),
            session_id
        )
        metrics_collector.record_message(sender.value, session.session_type.value)

        await self.gateway.broadcast(
            session_group(session_id), "message_received", message.to_client(session_id)
        )

        if session.session_type == SessionType.CHATBOT and sender == Sender.USER:
            await self._respond(connection, session, message)

    async def handle_request_escalation(
        self,
        connection: Connection,
        payload: RequestEscalationPayload
    ) -> None:
        """Flip the session to ESCALATED and alert staff. Idempotent per session."""
        identity = connection.identity
        session_id = payload.session_id

        session = await self._load_session(session_id)
        if session.is_closed:
            raise SessionClosedError("This session has been closed")
        if not connection.in_session(session_id):
            raise PermissionDeniedError("Join the session before requesting a counselor")

        if session.is_escalated:
            logger.info(f"Session {session_id} already escalated; returning existing ticket")
            await self.gateway.send_to(
                connection.connection_id,
                "escalation_requested",
                {
                    "sessionId": session_id,
                    "ticketId": session.escalation_ticket_id,
                    "alreadyEscalated": True,
                    "message": "A counselor has already been requested for this session."
                }
            )
            return

        reason = payload.reason
        priority = classify_priority(reason)
        ticket_id = f"ESC_{int(self.clock().timestamp() * 1000)}_{session_id}"

        escalated = await self._call(
            "store.escalate",
            lambda: self.store.escalate(session_id, reason, identity.user_id, ticket_id),
            session_id
        )

        stored_ticket = escalated.escalation_ticket_id or ticket_id
        if stored_ticket != ticket_id:
            # Lost a race with a concurrent request; the first one alerted staff.
            await self.gateway.send_to(
                connection.connection_id,
                "escalation_requested",
                {
                    "sessionId": session_id,
                    "ticketId": stored_ticket,
                    "alreadyEscalated": True,
                    "message": "A counselor has already been requested for this session."
                }
            )
            return

        metrics_collector.record_escalation("user_request", priority.value)
        logger.info(
            f"Session {session_id} escalated by {identity.label} "
            f"(ticket={ticket_id}, priority={priority.value})",
            extra={"session_id": session_id, "ticket_id": ticket_id, "priority": priority.value}
        )

        await best_effort(
            "store.create_escalation_notification",
            lambda: self.store.create_escalation_notification(
                session_id, session.user_id, reason, priority, ticket_id
            ),
            attempts=self.best_effort_attempts,
            timeout=self.store_timeout,
            session_id=session_id
        )

        await self.gateway.send_to(
            connection.connection_id,
            "escalation_requested",
            {
                "sessionId": session_id,
                "ticketId": ticket_id,
                "priority": priority.value,
                "alreadyEscalated": False,
                "message": "Your request has been sent. A counselor will join you shortly."
            }
        )

        await self.gateway.broadcast(
            STAFF_GROUP,
            "escalation_alert",
            {
                "sessionId": session_id,
                "userId": session.user_id,
                "reason": reason,
                "priority": priority.value,
                "ticketId": ticket_id,
                "timestamp": isoformat(self.clock())
            }
        )

    async def handle_staff_join_session(self, connection: Connection, payload: StaffJoinPayload) -> None:
        """Claim (or rejoin) an escalated session as a staff member."""
        identity = connection.identity
        session_id = payload.session_id
        staff_id = identity.user_id

        session = await self._load_session(session_id)
        if session.is_closed:
            raise SessionClosedError("This session has been closed")
        if not session.is_escalated:
            raise InvalidSessionStateError("Session has not been escalated to a counselor")
        if session.assigned_staff_id and session.assigned_staff_id != staff_id:
            raise PermissionDeniedError("Session is already assigned to another counselor")

        first_claim = session.assigned_staff_id is None
        if first_claim:
            session = await self._call(
                "store.assign_staff",
                lambda: self.store.assign_staff(session_id, staff_id),
                session_id
            )

        group = session_group(session_id)
        self.gateway.join_group(connection.connection_id, group)

        logger.info(
            f"Staff {identity.label} {'claimed' if first_claim else 'rejoined'} session {session_id}"
        )

        await self.gateway.send_to(
            connection.connection_id,
            "session_joined",
            {**session.to_client(), "created": False}
        )

        staff_name = identity.display_name or "A counselor"
        if first_claim:
            notice = Message(
                sender=Sender.SYSTEM,
                text=f"{staff_name} has joined the conversation.",
                timestamp=self.clock(),
                author_id=staff_id
            )
            # Not retried: appends are not idempotent.
            await best_effort(
                "store.append_message",
                lambda: self.store.append_message(session_id, notice),
                attempts=1,
                timeout=self.store_timeout,
                session_id=session_id
            )

        await self.gateway.broadcast(
            group,
            "staff_joined",
            {
                "sessionId": session_id,
                "staffId": staff_id,
                "staffName": staff_name,
                "message": f"{staff_name} has joined the conversation.",
                "timestamp": isoformat(self.clock())
            },
            exclude={connection.connection_id}
        )

    async def handle_close_session(self, connection: Connection, payload: CloseSessionPayload) -> None:
        await self.close_session(
            connection.identity,
            payload.session_id,
            summary=payload.summary,
            rating=payload.rating,
            feedback=payload.feedback
        )

    async def handle_typing(self, connection: Connection, payload: TypingPayload) -> None:
        """Relay a typing indicator to the other members of a session."""
        session_id = payload.session_id
        if not connection.in_session(session_id):
            raise PermissionDeniedError("Join the session first")

        await self.gateway.broadcast(
            session_group(session_id),
            "user_typing",
            {
                "sessionId": session_id,
                "userId": connection.identity.user_id,
                "displayName": connection.identity.display_name,
                "isTyping": payload.is_typing
            },
            exclude={connection.connection_id}
        )

    async def handle_ping(self, connection: Connection, payload: None) -> None:
        await self.gateway.send_to(
            connection.connection_id, "pong", {"timestamp": isoformat(self.clock())}
        )

    # ===========================
    # Operations shared with the HTTP API
    # ===========================

    async def close_session(
        self,
        identity: Identity,
        session_id: str,
        summary: Optional[str] = None,
        rating: Optional[int] = None,
        feedback: Optional[str] = None
    ) -> None:
        """
        Close a session: persist the end state, broadcast the closure and
        tear down the session group.
        """
        check_permission("close_session", identity)

        session = await self._load_session(session_id)
        if session.is_closed:
            raise SessionClosedError("This session has already been closed")

        await self._call(
            "store.close",
            lambda: self.store.close(
                session_id, identity.user_id, summary=summary, rating=rating, feedback=feedback
            ),
            session_id
        )

        logger.info(f"Session {session_id} closed by {identity.label}")

        group = session_group(session_id)
        await self.gateway.broadcast(
            group,
            "session_closed",
            {
                "sessionId": session_id,
                "closedBy": identity.user_id,
                "message": "This session has been closed.",
                "timestamp": isoformat(self.clock())
            }
        )
        self.gateway.dissolve_group(group)

    async def get_history(self, identity: Identity, session_id: str) -> Session:
        """
        Session with transcript, for its owner or staff.

        Unlike joining, an ownerless session is readable by staff only.
        """
        session = await self._load_session(session_id)
        if not self._can_read_history(identity, session):
            raise PermissionDeniedError("You do not have access to this session")
        return session

    async def list_active_sessions(self, identity: Identity) -> List[Session]:
        """Open or escalated sessions assigned to a staff member."""
        check_permission("list_active_sessions", identity)
        return await self._call(
            "store.list_staff_sessions",
            lambda: self.store.list_staff_sessions(identity.user_id),
            None
        )

    def stats(self) -> Dict[str, Any]:
        return {
            **metrics_collector.get_stats(),
            "gateway": self.gateway.stats(),
            "responder": {
                "configured": self.responder.configured,
                "circuit": self.responder.circuit_state
            }
        }

    # ===========================
    # Private Helper Methods
    # ===========================

    async def _respond(self, connection: Connection, session: Session, message: Message) -> None:
        """Ask the responder, evaluate escalation, persist and broadcast the bot turn."""
        session_id = session.session_id
        group = session_group(session_id)
        sender_only = {connection.connection_id}

        await self.gateway.broadcast(
            group, "typing_start", {"sessionId": session_id, "sender": Sender.BOT.value}, exclude=sender_only
        )
        try:
            reply = await self.responder.get_reply(
                message.text,
                session_id,
                session.user_id,
                session.recent_messages(self.history_size)
            )
        finally:
            await self.gateway.broadcast(
                group, "typing_stop", {"sessionId": session_id, "sender": Sender.BOT.value}, exclude=sender_only
            )

        escalation = self._evaluate_escalation(message.text, reply)
        if escalation.suggested:
            reason, priority = escalation.reason, escalation.priority
            track_escalation("suggested", priority.value)
            logger.info(
                f"Escalation suggested for session {session_id} ({reason}, {priority.value})",
                extra={"session_id": session_id, "reason": reason, "priority": priority.value}
            )
            await self.gateway.broadcast(
                group,
                "escalation_suggested",
                {
                    "sessionId": session_id,
                    "reason": reason,
                    "priority": priority.value,
                    "timestamp": isoformat(self.clock())
                }
            )

        metadata = dict(reply.metadata)
        metadata.update({
            "confidence": reply.confidence,
            "intent": reply.intent,
            "fallback": reply.is_fallback,
            **escalation.to_metadata()
        })

        bot_message = Message(
            sender=Sender.BOT,
            text=reply.reply_text,
            timestamp=self.clock(),
            metadata=metadata
        )

        await self._call(
            "store.append_message",
            lambda: self.store.append_message(session_id, bot_message),
            session_id
        )
        metrics_collector.record_message(Sender.BOT.value, session.session_type.value)

        await self.gateway.broadcast(group, "message_received", bot_message.to_client(session_id))

    def _evaluate_escalation(
        self,
        text: str,
        reply: ResponderReply
    ) -> EscalationDecision:
        """Combine the local policy with the responder's own suggestion."""
        decision = evaluate_message(text, reply.confidence, self.keywords)
        if decision.suggested or not reply.escalation_suggested:
            return decision

        reason = reply.escalation_reason or RESPONDER_SUGGESTION_REASON
        return EscalationDecision(suggested=True, reason=reason, priority=classify_priority(reason))

    def _can_access(self, identity: Identity, session: Session) -> bool:
        if is_staff(identity):
            return True
        if session.user_id is None:
            return True
        return session.user_id == identity.user_id

    def _can_read_history(self, identity: Identity, session: Session) -> bool:
        if is_staff(identity):
            return True
        return session.user_id is not None and session.user_id == identity.user_id

    async def _load_session(self, session_id: str) -> Session:
        session = await self._call(
            "store.get", lambda: self.store.get(session_id), session_id
        )
        if session is None:
            raise SessionNotFoundError(f"Session {session_id} not found")
        return session

    async def _call(
        self,
        operation: str,
        call: Callable[[], Awaitable[Any]],
        session_id: Optional[str]
    ) -> Any:
        return await must_succeed(
            operation, call, timeout=self.store_timeout, session_id=session_id
        )

    def _parse(self, model: Optional[Type[BaseModel]], data: Any) -> Any:
        if model is None:
            return None

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise PayloadValidationError("Event payload must be an object")

        try:
            return model.model_validate(data)
        except ValidationError as e:
            errors = e.errors()
            first = errors[0] if errors else {}
            location = ".".join(str(part) for part in first.get("loc", ()))
            message = first.get("msg", "Invalid payload")
            raise PayloadValidationError(
                f"{location}: {message}" if location else message,
                details={"fields": [".".join(str(p) for p in err.get("loc", ())) for err in errors]}
            )


__all__ = ['RelayEngine', 'UNMETERED_EVENTS']
