"""FastAPI dependencies resolving the calling user.

## Usage

```python
from fastapi import Depends
from personal_crm.auth import get_current_user
from personal_crm.database import User

@router.get("/status")
async def get_status(user: User = Depends(get_current_user)):
    ...
```
"""

from __future__ import annotations

import logging

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from personal_crm.auth.session import SessionData, verify_session_token
from personal_crm.config import get_settings
from personal_crm.database.connection import get_db_session
from personal_crm.database.models import User

logger = logging.getLogger(__name__)


async def get_session_data(request: Request) -> SessionData | None:
    """Verify the session cookie. None if missing or invalid."""
    token = request.cookies.get(get_settings().session_cookie_name)
    if not token:
        return None
    return verify_session_token(token)


async def get_current_user_optional(
    session: SessionData | None = Depends(get_session_data),
    db: AsyncSession = Depends(get_db_session),
) -> User | None:
    if session is None:
        return None

    result = await db.execute(
        select(User).where(User.id == session.user_id, User.is_active.is_(True))
    )
    user = result.scalar_one_or_none()

    if user is None:
        logger.warning(f"Session for non-existent/inactive user: {session.user_id}")

    return user


async def get_current_user(
    user: User | None = Depends(get_current_user_optional),
) -> User:
    """Get the current authenticated user.

    Raises 401 if not authenticated.
    """
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authenticated",
        )
    return user
