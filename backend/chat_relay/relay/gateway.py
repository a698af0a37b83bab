"""
Connection gateway.
Maps physical connections to identities and provides the group
publish/subscribe primitives the relay engine uses.
"""
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Set
from datetime import datetime
import logging

from ..errors import PermissionDeniedError
from ..models.schemas import Identity
from ..services.permissions import is_allowed
from ..utils.clock import utcnow
from ..utils.telemetry import update_websocket_connections

logger = logging.getLogger(__name__)

# Delivers one outbound frame to a physical connection.
FrameSender = Callable[[Dict[str, Any]], Awaitable[None]]

STAFF_GROUP = "staff"
SESSION_GROUP_PREFIX = "session:"


def session_group(session_id: str) -> str:
    return f"{SESSION_GROUP_PREFIX}{session_id}"


def make_frame(event: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {"event": event, "data": data or {}}


@dataclass
class Connection:
    """Ephemeral bookkeeping for one live connection."""
    connection_id: str
    identity: Identity
    send: FrameSender
    groups: Set[str] = field(default_factory=set)
    connected_at: datetime = field(default_factory=utcnow)
    alive: bool = True

    @property
    def sessions(self) -> List[str]:
        """Session ids this connection has joined."""
        return sorted(
            g[len(SESSION_GROUP_PREFIX):] for g in self.groups
            if g.startswith(SESSION_GROUP_PREFIX)
        )

    @property
    def rate_limit_key(self) -> str:
        """Per-user for authenticated connections, per-connection for anonymous ones."""
        return self.identity.user_id or f"conn:{self.connection_id}"

    def in_session(self, session_id: str) -> bool:
        return session_group(session_id) in self.groups


class ConnectionGateway:
    """
    Manages live connections and broadcast groups.

    Group tables are only mutated synchronously (never across an await), so
    join/leave/broadcast interleavings on the event loop cannot corrupt them.
    Delivery is at-most-once: a send that fails drops the event and marks
    the connection dead. Its memberships stay until unregister.
    """

    def __init__(self):
        self.connections: Dict[str, Connection] = {}
        self.groups: Dict[str, Set[str]] = {}

    # ===========================
    # Connection registry
    # ===========================

    def register(
        self,
        connection_id: str,
        identity: Identity,
        send: FrameSender
    ) -> Connection:
        """
        Register a new connection.

        Staff-role connections are subscribed to the staff group.
        """
        connection = Connection(connection_id=connection_id, identity=identity, send=send)
        self.connections[connection_id] = connection

        if is_allowed("join_staff_group", identity.role):
            self.join_group(connection_id, STAFF_GROUP)

        update_websocket_connections(len(self.connections))
        logger.info(
            f"Connection registered: {connection_id} "
            f"(user={identity.label}, role={identity.role.value})"
        )
        return connection

    def unregister(self, connection_id: str) -> Optional[Connection]:
        """Remove a connection and all of its group memberships."""
        connection = self.connections.pop(connection_id, None)
        if connection is None:
            return None

        for group in list(connection.groups):
            self._discard_member(group, connection_id)
        connection.groups.clear()

        update_websocket_connections(len(self.connections))
        logger.info(f"Connection unregistered: {connection_id}")
        return connection

    def get(self, connection_id: str) -> Optional[Connection]:
        return self.connections.get(connection_id)

    # ===========================
    # Groups
    # ===========================

    def join_group(self, connection_id: str, group: str) -> bool:
        """
        Subscribe a connection to a group.

        Returns:
            False if the connection is unknown

        Raises:
            PermissionDeniedError: Non-staff connection joining the staff group
        """
        connection = self.connections.get(connection_id)
        if connection is None:
            return False

        if group == STAFF_GROUP and not is_allowed("join_staff_group", connection.identity.role):
            raise PermissionDeniedError("Only staff may join the staff group")

        self.groups.setdefault(group, set()).add(connection_id)
        connection.groups.add(group)
        return True

    def leave_group(self, connection_id: str, group: str) -> None:
        self._discard_member(group, connection_id)
        connection = self.connections.get(connection_id)
        if connection is not None:
            connection.groups.discard(group)

    def dissolve_group(self, group: str) -> Set[str]:
        """Remove every member from a group and return the former members."""
        members = self.groups.pop(group, set())
        for connection_id in members:
            connection = self.connections.get(connection_id)
            if connection is not None:
                connection.groups.discard(group)

        if members:
            logger.debug(f"Dissolved group {group} ({len(members)} members)")
        return members

    def members(self, group: str) -> Set[str]:
        return set(self.groups.get(group, ()))

    # ===========================
    # Delivery
    # ===========================

    async def send_to(
        self,
        connection_id: str,
        event: str,
        data: Optional[Dict[str, Any]] = None
    ) -> bool:
        """
        Deliver one event to one connection.

        Returns:
            True if delivered
        """
        connection = self.connections.get(connection_id)
        if connection is None or not connection.alive:
            return False

        try:
            await connection.send(make_frame(event, data))
            return True
        except Exception as e:
            logger.warning(f"Dropping {event} for connection {connection_id}: {e}")
            connection.alive = False
            return False

    async def broadcast(
        self,
        group: str,
        event: str,
        data: Optional[Dict[str, Any]] = None,
        exclude: Optional[Iterable[str]] = None
    ) -> int:
        """
        Deliver an event to every member of a group.

        Members are snapshotted before the first send; connections that join
        while the broadcast is in flight do not receive it.

        Returns:
            Number of connections the event was delivered to
        """
        excluded = set(exclude or ())
        recipients = [cid for cid in self.members(group) if cid not in excluded]

        delivered = 0
        for connection_id in recipients:
            if await self.send_to(connection_id, event, data):
                delivered += 1

        logger.debug(f"Broadcast {event} to {group}: {delivered}/{len(recipients)} delivered")
        return delivered

    def stats(self) -> Dict[str, Any]:
        session_groups = [g for g in self.groups if g.startswith(SESSION_GROUP_PREFIX)]
        return {
            "connections": len(self.connections),
            "staff_online": len(self.groups.get(STAFF_GROUP, ())),
            "active_session_groups": len(session_groups),
            "groups": len(self.groups)
        }

    def _discard_member(self, group: str, connection_id: str) -> None:
        members = self.groups.get(group)
        if members is None:
            return
        members.discard(connection_id)
        if not members:
            del self.groups[group]


__all__ = [
    'STAFF_GROUP',
    'Connection',
    'ConnectionGateway',
    'FrameSender',
    'make_frame',
    'session_group',
]
