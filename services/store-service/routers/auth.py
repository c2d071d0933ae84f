"""Login endpoint for the demo accounts."""
import logging
from fastapi import APIRouter, HTTPException
from pydantic import BaseModel, Field

from auth import authenticate
from monitoring import auth_attempts_counter, auth_failures_counter

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/auth", tags=["authentication"])


class Credentials(BaseModel):
    username: str = Field(min_length=1)
    password: str


class IssuedToken(BaseModel):
    """Bearer token plus the identity it resolves to."""
    token: str
    token_type: str = "bearer"
    user_id: str
    role: str


@router.post("/login", response_model=IssuedToken)
async def login(credentials: Credentials):
    """Exchange demo account credentials (see ``config.DEMO_ACCOUNTS``) for a bearer token."""
    auth_attempts_counter.add(1, {"type": "login"})

    issued = authenticate(credentials.username, credentials.password)
    if issued is None:
        # Same answer for unknown users and wrong passwords
        auth_failures_counter.add(1, {"reason": "bad_credentials"})
        logger.warning("Login rejected", extra={"username": credentials.username})
        raise HTTPException(status_code=401, detail="Invalid username or password")

    token, principal = issued
    logger.info("Token issued", extra={"user_id": principal.id, "role": principal.role})
    return IssuedToken(token=token, user_id=principal.id, role=principal.role)
