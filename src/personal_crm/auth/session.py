"""Signed session tokens identifying the CRM user.

Sessions are issued by the account subsystem at login and carried in an
HTTP-only cookie (`SESSION_COOKIE_NAME`). The calendar API only needs to
know who is calling, so this module verifies tokens; `create_session_token`
exists for the account subsystem and for tests.

## Token Structure

```json
{
  "sub": "user-uuid",
  "iat": 1234567890,
  "exp": 1235172690,
  "type": "session"
}
```

Tokens are HS256 JWTs signed with `SECRET_KEY`.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from jose import JWTError, jwt

from personal_crm.config import get_settings

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"
TOKEN_TYPE = "session"


@dataclass
class SessionData:
    """Verified contents of a session token."""

    user_id: uuid.UUID
    created_at: datetime
    expires_at: datetime


def create_session_token(
    user_id: uuid.UUID,
    expires_delta: timedelta | None = None,
) -> str:
    """Sign a session token for a user.

    Args:
        user_id: The user's UUID
        expires_delta: Lifetime (default SESSION_MAX_AGE_SECONDS)
    """
    settings = get_settings()

    now = datetime.now(timezone.utc)
    if expires_delta is None:
        expires_delta = timedelta(seconds=settings.session_max_age_seconds)

    payload = {
        "sub": str(user_id),
        "iat": int(now.timestamp()),
        "exp": int((now + expires_delta).timestamp()),
        "type": TOKEN_TYPE,
    }
    return jwt.encode(payload, settings.secret_key, algorithm=ALGORITHM)


def verify_session_token(token: str) -> SessionData | None:
    """Verify a session token.

    Returns:
        SessionData if the signature is valid and the token has not expired,
        otherwise None
    """
    settings = get_settings()

    try:
        payload = jwt.decode(token, settings.secret_key, algorithms=[ALGORITHM])
    except JWTError as e:
        logger.debug(f"Session token verification failed: {e}")
        return None

    if payload.get("type") != TOKEN_TYPE:
        logger.debug("Invalid token type")
        return None

    try:
        return SessionData(
            user_id=uuid.UUID(payload["sub"]),
            created_at=datetime.fromtimestamp(payload["iat"], tz=timezone.utc),
            expires_at=datetime.fromtimestamp(payload["exp"], tz=timezone.utc),
        )
    except (KeyError, TypeError, ValueError) as e:
        logger.debug(f"Invalid token payload: {e}")
        return None
