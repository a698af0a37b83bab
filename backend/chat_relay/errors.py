"""
Relay error taxonomy.

Every error carries a stable ``code`` that is sent to the originating
connection inside an ``error`` event, so clients can branch on it without
parsing messages.
"""
from typing import Any, Dict, Optional


class RelayError(Exception):
    """Base exception for relay errors."""

    code = "relay_error"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_event(self) -> Dict[str, Any]:
        """Render as the payload of an ``error`` event."""
        payload = {"message": self.message, "code": self.code}
        if self.details:
            payload["details"] = self.details
        return payload


class AuthenticationFailedError(RelayError):
    """Bad or expired connection token."""
    code = "authentication_failed"


class PermissionDeniedError(RelayError):
    """Role-gated action attempted by an ineligible role."""
    code = "permission_denied"


class SessionNotFoundError(RelayError):
    """Operation referenced a session the store does not have."""
    code = "not_found"


class PayloadValidationError(RelayError):
    """Malformed payload, empty message, missing required field."""
    code = "validation_error"


class SessionClosedError(PayloadValidationError):
    """Operation targeted a session that is already closed."""
    code = "session_closed"


class InvalidSessionStateError(RelayError):
    """Session exists but is not in a state that allows the operation."""
    code = "invalid_state"


class RateLimitedError(RelayError):
    """Connection is sending events faster than its rate limit."""
    code = "rate_limited"


class UpstreamDegradedError(RelayError):
    """Responder unavailable. Absorbed into the fallback reply, never sent to users."""
    code = "upstream_degraded"


class UpstreamUnavailableError(RelayError):
    """Session store unreachable; transcript durability cannot be guaranteed."""
    code = "upstream_unavailable"

    def to_event(self) -> Dict[str, Any]:
        # Store internals are never shown to users.
        return {
            "message": "We could not save your message. Please try again in a moment.",
            "code": self.code,
            "retry": True,
        }


__all__ = [
    'RelayError',
    'AuthenticationFailedError',
    'PermissionDeniedError',
    'SessionNotFoundError',
    'PayloadValidationError',
    'SessionClosedError',
    'InvalidSessionStateError',
    'RateLimitedError',
    'UpstreamDegradedError',
    'UpstreamUnavailableError',
]
