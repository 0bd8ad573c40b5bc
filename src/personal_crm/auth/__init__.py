"""Caller identification for the CRM API.

Login, password handling and session issuance belong to the account
subsystem. This package only verifies the signed session cookie and loads
the matching user.
"""

from personal_crm.auth.dependencies import (
    get_current_user,
    get_current_user_optional,
    get_session_data,
)
from personal_crm.auth.session import (
    SessionData,
    create_session_token,
    verify_session_token,
)

__all__ = [
    "create_session_token",
    "verify_session_token",
    "SessionData",
    "get_session_data",
    "get_current_user",
    "get_current_user_optional",
]
