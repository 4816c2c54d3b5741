from datetime import datetime, timedelta, timezone
import uuid

from jose import jwt, JWTError
from pydantic import BaseModel

from app.core.config import Settings


class TokenPayload(BaseModel):
    sub: str
    exp: datetime
    type: str  # "access" or "refresh"


def create_access_token(user_id: uuid.UUID, settings: Settings) -> str:
    """
    Create an access token for a guardian account.

    Guardians sign in with the upstream auth service, so nothing in the API
    issues tokens. This exists for that service's tooling and the test suite,
    which must sign with the same ``secret_key``.
    """
    expire = datetime.now(timezone.utc) + timedelta(minutes=settings.access_token_expire_minutes)
    payload = {
        "sub": str(user_id),
        "exp": expire,
        "type": "access",
    }
    return jwt.encode(payload, settings.secret_key, algorithm=settings.algorithm)


def verify_token(token: str, settings: Settings, token_type: str = "access") -> TokenPayload | None:
    """Verify a JWT token and return the payload."""
    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[settings.algorithm])
        if payload.get("type") != token_type:
            return None
        return TokenPayload(**payload)
    except JWTError:
        return None
