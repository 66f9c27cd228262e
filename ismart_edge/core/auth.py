"""
Caller authentication for edge functions.

Callers send the platform session JWT as ``Authorization: Bearer <token>``.
User tokens carry the user id in ``sub`` and audience ``authenticated``;
service-role tokens (used by schedulers) carry ``role: service_role`` and no
subject.
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Optional

import jwt

from ismart_edge.core.errors import AuthenticationError, PermissionDeniedError
from ismart_edge.core.models import UserRole

logger = logging.getLogger(__name__)

SERVICE_ROLE = "service_role"


@dataclass(frozen=True)
class AuthUser:
    """Authenticated caller."""
    id: Optional[uuid.UUID]
    role: str = "authenticated"
    email: Optional[str] = None

    @property
    def is_service_role(self) -> bool:
        return self.role == SERVICE_ROLE


class TokenVerifier:
    """Verifies bearer tokens signed with the platform JWT secret."""

    def __init__(self, secret: str, audience: str = "authenticated", algorithms=("HS256",)):
        if not secret:
            raise ValueError("JWT secret must not be empty")
        self.secret = secret
        self.audience = audience
        self.algorithms = list(algorithms)

    def verify(self, authorization: Optional[str]) -> AuthUser:
        """
        Verify an ``Authorization`` header value.

        Args:
            authorization: Raw header value (``Bearer <token>``)

        Returns:
            AuthUser for the caller

        Raises:
            AuthenticationError: Header missing, token invalid or expired
        """
        if not authorization:
            raise AuthenticationError("Unauthorized")

        token = authorization
        if token.lower().startswith("bearer "):
            token = token[7:]
        token = token.strip()
        if not token:
            raise AuthenticationError("Unauthorized")

        try:
            # Audience checked below: service-role tokens have none
            payload = jwt.decode(
                token,
                self.secret,
                algorithms=self.algorithms,
                options={"verify_aud": False, "require": ["exp"]},
            )
        except jwt.ExpiredSignatureError:
            logger.warning("Rejected expired token")
            raise AuthenticationError("Unauthorized")
        except jwt.InvalidTokenError as e:
            logger.warning(f"Rejected invalid token: {e}")
            raise AuthenticationError("Unauthorized")

        role = payload.get("role", "authenticated")
        if role == SERVICE_ROLE:
            return AuthUser(id=None, role=SERVICE_ROLE)

        audience = payload.get("aud")
        audiences = audience if isinstance(audience, list) else [audience]
        if self.audience not in audiences:
            logger.warning(f"Rejected token with audience {audience!r}")
            raise AuthenticationError("Unauthorized")

        try:
            user_id = uuid.UUID(str(payload.get("sub")))
        except ValueError:
            raise AuthenticationError("Unauthorized")

        return AuthUser(id=user_id, role=role, email=payload.get("email"))


def has_role(user_id: Optional[uuid.UUID], role: str) -> bool:
    """Check whether a user holds an application role (e.g. 'admin')."""
    if user_id is None:
        return False
    return UserRole.select().where(
        (UserRole.user_id == user_id) & (UserRole.role == role)
    ).exists()


def require_user(user: AuthUser) -> uuid.UUID:
    """Return the caller's user id, rejecting service-role callers."""
    if user.id is None:
        raise PermissionDeniedError("This function must be called by a signed-in user")
    return user.id


def require_admin(user: AuthUser):
    """
    Allow service-role callers and users with the admin role.

    Raises:
        PermissionDeniedError: Caller is not an admin
    """
    if user.is_service_role:
        return
    if not has_role(user.id, "admin"):
        logger.warning(f"Admin access denied for user {user.id}")
        raise PermissionDeniedError("Admin access required")
