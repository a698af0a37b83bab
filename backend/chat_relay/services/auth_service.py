"""
Authentication and authorization service.
"""
from typing import Any, Dict, Optional
from datetime import timedelta
from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import jwt
import logging

from ..config import Settings, get_settings
from ..errors import AuthenticationFailedError
from ..models.schemas import Identity, Role
from ..utils.clock import utcnow
from .permissions import is_allowed

logger = logging.getLogger(__name__)

# Security scheme
security = HTTPBearer(auto_error=False)

ANONYMOUS = Identity()


class AuthService:
    """Verifies connection tokens and turns their claims into an Identity."""

    def __init__(self, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.secret_key = settings.get_jwt_secret()
        self.algorithm = settings.jwt_algorithm
        self.expiration_hours = settings.jwt_expiration_hours

    def create_token(
        self,
        user_id: str,
        role: str = Role.USER.value,
        name: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> str:
        """
        Create a JWT token.

        Tokens for real users are issued by the platform backend; this is
        used for service-to-service calls and tests.

        Args:
            user_id: User identifier
            role: Role claim
            name: Display name claim
            metadata: Additional claims

        Returns:
            JWT token string
        """
        now = utcnow()
        payload = {
            "sub": str(user_id),
            "role": role,
            "exp": now + timedelta(hours=self.expiration_hours),
            "iat": now,
            "type": "access"
        }
        if name:
            payload["name"] = name

        if metadata:
            payload.update(metadata)

        token = jwt.encode(payload, self.secret_key, algorithm=self.algorithm)

        logger.debug(f"Created token for user: {user_id}")
        return token

    def verify_token(self, token: str) -> Identity:
        """
        Verify a JWT token and extract the caller's identity.

        Args:
            token: JWT token string

        Returns:
            Identity built from the sub/id, name, role and email claims

        Raises:
            AuthenticationFailedError: If the token is invalid, expired or has no subject
        """
        try:
            payload = jwt.decode(token, self.secret_key, algorithms=[self.algorithm])

        except jwt.ExpiredSignatureError:
            raise AuthenticationFailedError("Token has expired")

        except jwt.InvalidTokenError as e:
            raise AuthenticationFailedError(f"Invalid token: {str(e)}")

        user_id = payload.get("sub") or payload.get("id")
        if user_id is None or user_id == "":
            raise AuthenticationFailedError("Invalid token payload")

        return Identity(
            user_id=str(user_id),
            display_name=payload.get("name"),
            role=Role.from_claim(payload.get("role")),
            email=payload.get("email")
        )

    def authenticate(self, token: Optional[str]) -> Identity:
        """
        Resolve the identity of a connection.

        A missing token yields an anonymous identity; a token that is present
        but invalid is rejected.
        """
        if not token:
            return ANONYMOUS
        return self.verify_token(token)


_auth_service: Optional[AuthService] = None


def get_auth_service() -> AuthService:
    """Get the shared AuthService instance."""
    global _auth_service
    if _auth_service is None:
        _auth_service = AuthService()
    return _auth_service


def get_current_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security)
) -> Identity:
    """
    Require a valid bearer token for an endpoint.

    Raises:
        HTTPException: If not authenticated
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"}
        )

    try:
        return get_auth_service().verify_token(credentials.credentials)

    except AuthenticationFailedError as e:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=e.message,
            headers={"WWW-Authenticate": "Bearer"}
        )


class RoleChecker:
    """Check the caller's role against the permission table for an action."""

    def __init__(self, action: str):
        self.action = action

    def __call__(self, identity: Identity = Depends(get_current_identity)) -> Identity:
        """
        Returns:
            The caller's identity if authorized

        Raises:
            HTTPException: If not authorized
        """
        if not is_allowed(self.action, identity.role):
            logger.warning(
                f"Denied {self.action} for {identity.label} (role={identity.role.value})"
            )
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient permissions"
            )
        return identity


__all__ = [
    'ANONYMOUS',
    'AuthService',
    'get_auth_service',
    'get_current_identity',
    'RoleChecker',
    'security',
]
