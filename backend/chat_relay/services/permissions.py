"""
Declarative permission table.

Every role-gated action, socket event or HTTP route, is listed here once and
checked before its handler runs.
"""
from typing import Dict, FrozenSet

from ..errors import PermissionDeniedError
from ..models.schemas import Identity, Role

STAFF_ROLES: FrozenSet[Role] = frozenset({Role.ADMIN, Role.STAFF, Role.PSIKOLOG})
AUTHENTICATED_ROLES: FrozenSet[Role] = STAFF_ROLES | {Role.USER}
ANY_ROLE: FrozenSet[Role] = AUTHENTICATED_ROLES | {Role.ANONYMOUS}

ACTION_PERMISSIONS: Dict[str, FrozenSet[Role]] = {
    # Socket events
    "join_session": ANY_ROLE,
    "send_message": ANY_ROLE,
    "request_escalation": ANY_ROLE,
    "typing": ANY_ROLE,
    "ping": ANY_ROLE,
    "staff_join_session": STAFF_ROLES,
    "close_session": STAFF_ROLES,
    "join_staff_group": STAFF_ROLES,

    # HTTP routes
    "view_history": AUTHENTICATED_ROLES,
    "list_active_sessions": STAFF_ROLES,
    "view_stats": frozenset({Role.ADMIN}),
    "test_responder": frozenset({Role.ADMIN}),
}


def is_staff(identity: Identity) -> bool:
    return identity.role in STAFF_ROLES


def is_allowed(action: str, role: Role) -> bool:
    """Unknown actions are denied."""
    return role in ACTION_PERMISSIONS.get(action, frozenset())


def check_permission(action: str, identity: Identity) -> None:
    """
    Raise PermissionDeniedError unless the identity's role may perform the action.
    """
    if not is_allowed(action, identity.role):
        raise PermissionDeniedError(
            f"Role '{identity.role.value}' is not allowed to {action.replace('_', ' ')}",
            details={"action": action}
        )


__all__ = [
    'STAFF_ROLES',
    'AUTHENTICATED_ROLES',
    'ANY_ROLE',
    'ACTION_PERMISSIONS',
    'is_staff',
    'is_allowed',
    'check_permission',
]
