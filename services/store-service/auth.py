"""Authentication utilities."""
import secrets
from dataclasses import dataclass
from typing import Optional, Tuple
from fastapi import Depends, Header, HTTPException
import logging

from config import ADMIN_TOKENS, DEMO_ACCOUNTS, VALID_TOKENS
from errors import AuthorizationError
from monitoring import auth_failures_counter, auth_attempts_counter

logger = logging.getLogger(__name__)

ROLE_USER = "user"
ROLE_ADMIN = "admin"


@dataclass(frozen=True)
class Principal:
    """Authenticated caller."""
    id: str
    role: str = ROLE_USER

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN

    def can_access(self, owner_id: str) -> bool:
        return self.is_admin or self.id == owner_id


def verify_token(authorization: Optional[str] = Header(None)) -> str:
    """
    Verify authentication token.

    Args:
        authorization: Authorization header value

    Returns:
        Valid token

    Raises:
        HTTPException: If token is invalid or missing
    """
    auth_attempts_counter.add(1, {"type": "bearer_token"})

    if authorization is None:
        auth_failures_counter.add(1, {"reason": "missing_header"})
        logger.warning("Authentication failed: Missing authorization header")
        raise HTTPException(status_code=401, detail="Missing authorization header")

    # Extract token (Bearer <token>)
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        auth_failures_counter.add(1, {"reason": "invalid_format"})
        logger.warning("Authentication failed: Invalid authorization header format", extra={
            "auth_header": authorization[:20] + "..." if len(authorization) > 20 else authorization
        })
        raise HTTPException(status_code=401, detail="Invalid authorization header format")

    token = parts[1]
    if token not in VALID_TOKENS:
        auth_failures_counter.add(1, {"reason": "invalid_token"})
        logger.warning("Authentication failed: Invalid token", extra={
            "token_prefix": token[:8] + "..." if len(token) > 8 else token
        })
        raise HTTPException(status_code=401, detail="Invalid token")

    logger.debug("Authentication successful", extra={
        "user_id": get_user_id_from_token(token)
    })
    return token


def get_user_id_from_token(token: str) -> str:
    """
    Extract user ID from token.

    Args:
        token: Authentication token

    Returns:
        User ID
    """
    return f"user_{token[:10]}"


def principal_from_token(token: str) -> Principal:
    role = ROLE_ADMIN if token in ADMIN_TOKENS else ROLE_USER
    return Principal(id=get_user_id_from_token(token), role=role)


def authenticate(username: str, password: str) -> Optional[Tuple[str, Principal]]:
    """
    Check demo account credentials.

    Returns:
        The account's bearer token and principal, or None if the username is
        unknown or the password doesn't match
    """
    account = DEMO_ACCOUNTS.get(username)
    if account is None:
        return None
    expected_password, token, _ = account
    if not secrets.compare_digest(expected_password.encode(), password.encode()):
        return None
    return token, principal_from_token(token)


def get_principal(token: str = Depends(verify_token)) -> Principal:
    """Authenticated principal for the request."""
    return principal_from_token(token)


def get_optional_principal(authorization: Optional[str] = Header(None)) -> Optional[Principal]:
    """Principal if an Authorization header was sent, None for guests."""
    if authorization is None:
        return None
    return principal_from_token(verify_token(authorization))


def require_admin(principal: Principal = Depends(get_principal)) -> Principal:
    if not principal.is_admin:
        logger.warning("Admin endpoint denied", extra={"user_id": principal.id})
        raise AuthorizationError("Admin role required")
    return principal
