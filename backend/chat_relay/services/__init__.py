"""
Services module for the chat relay.
Provides authentication, permissions, escalation policy and the AI
responder client.
"""

from .auth_service import (
    AuthService,
    RoleChecker,
    get_auth_service,
    get_current_identity
)
from .permissions import (
    ACTION_PERMISSIONS,
    STAFF_ROLES,
    check_permission,
    is_allowed,
    is_staff
)
from .escalation_policy import (
    EscalationDecision,
    classify_priority,
    evaluate_message
)
from .responder_client import ResponderClient, normalize_reply

__all__ = [
    # Auth
    'AuthService',
    'RoleChecker',
    'get_auth_service',
    'get_current_identity',

    # Permissions
    'ACTION_PERMISSIONS',
    'STAFF_ROLES',
    'check_permission',
    'is_allowed',
    'is_staff',

    # Escalation
    'EscalationDecision',
    'classify_priority',
    'evaluate_message',

    # Responder
    'ResponderClient',
    'normalize_reply',
]
