"""Google OAuth for calendar access.

Implements the OAuth 2.0 authorization code flow used to connect a user's
Google Calendar, plus access-token refresh for unattended sync.

## Required Setup

1. Create a project in Google Cloud Console
2. Enable Google Calendar API
3. Create OAuth 2.0 credentials (Web application)
4. Add the frontend settings page as an authorized redirect URI
5. Set GOOGLE_CLIENT_ID and GOOGLE_CLIENT_SECRET environment variables

## OAuth Endpoints

- Authorization: https://accounts.google.com/o/oauth2/v2/auth
- Token: https://oauth2.googleapis.com/token
- Revoke: https://oauth2.googleapis.com/revoke

## Offline Access

The consent URL always asks for `access_type=offline` and `prompt=consent`
so Google issues a refresh token. Without one a credential cannot be synced
by the scheduler once its access token expires.
"""

from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any

import httpx
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from personal_crm.calendar.errors import (
    OAuthExchangeError,
    ProviderRequestError,
    TokenRefreshError,
)
from personal_crm.calendar.store import Credential, is_expired
from personal_crm.config import get_settings
from personal_crm.database.models import utcnow

logger = logging.getLogger(__name__)

# Google OAuth endpoints
GOOGLE_AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_REVOKE_URL = "https://oauth2.googleapis.com/revoke"

# Used when Google omits expires_in
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


@dataclass
class OAuthTokens:
    """Tokens returned by the Google token endpoint."""

    access_token: str
    refresh_token: str | None
    expires_in_seconds: int
    scope: str = ""

    def expires_at(self, now: datetime | None = None) -> datetime:
        return (now or utcnow()).replace(microsecond=0) + timedelta(
            seconds=self.expires_in_seconds
        )


def _error_message(response: httpx.Response) -> str:
    """Extract Google's error description without echoing tokens."""
    try:
        data = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(data, dict):
        return str(
            data.get("error_description") or data.get("error") or response.status_code
        )
    return f"HTTP {response.status_code}"


class GoogleOAuth:
    """Google OAuth 2.0 client for the calendar connection.

    Example:
        ```python
        oauth = GoogleOAuth()

        auth_url = oauth.authorization_url(redirect_uri)
        # Frontend sends the user to auth_url and posts back the code

        tokens = await oauth.exchange_code(code, redirect_uri)

        # Before each sync
        credential = await oauth.refresh_if_needed(credential)
        ```
    """

    def __init__(
        self,
        client_id: str | None = None,
        client_secret: str | None = None,
        scopes: list[str] | None = None,
        timeout: float | None = None,
    ):
        settings = get_settings()

        self.client_id = client_id or settings.google_client_id
        self.client_secret = client_secret or settings.google_client_secret
        self.scopes = scopes or settings.google_calendar_scopes
        self.timeout = timeout or settings.google_request_timeout_seconds

        if not self.is_configured:
            logger.warning(
                "Google OAuth not configured. Set GOOGLE_CLIENT_ID and "
                "GOOGLE_CLIENT_SECRET environment variables."
            )

    @property
    def is_configured(self) -> bool:
        """Check if Google OAuth is properly configured."""
        return bool(self.client_id and self.client_secret)

    def authorization_url(self, redirect_uri: str, state: str | None = None) -> str:
        """Build the Google consent screen URL.

        Args:
            redirect_uri: Where Google sends the user back with the code
            state: Optional opaque value echoed back by Google

        Returns:
            URL to redirect the user to
        """
        if not self.is_configured:
            raise RuntimeError("Google OAuth not configured")

        params = {
            "client_id": self.client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "access_type": "offline",
            "prompt": "consent",
            "include_granted_scopes": "true",
        }
        if state:
            params["state"] = state

        return str(httpx.URL(GOOGLE_AUTHORIZE_URL, params=params))

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.5, min=0.5, max=4),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        reraise=True,
    )
    async def _post_token(self, data: dict[str, Any]) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(
                GOOGLE_TOKEN_URL,
                data=data,
                headers={"Accept": "application/json"},
            )

    async def exchange_code(self, code: str, redirect_uri: str) -> OAuthTokens:
        """Exchange an authorization code for tokens.

        Raises:
            OAuthExchangeError: If Google reports an error or is unreachable
        """
        if not self.is_configured:
            raise RuntimeError("Google OAuth not configured")

        try:
            response = await self._post_token(
                {
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "code": code,
                    "grant_type": "authorization_code",
                    "redirect_uri": redirect_uri,
                }
            )
        except httpx.HTTPError as e:
            raise OAuthExchangeError(f"Token exchange request failed: {e}") from e

        if response.status_code != 200:
            message = _error_message(response)
            logger.error(f"Token exchange failed ({response.status_code}): {message}")
            raise OAuthExchangeError(f"Google OAuth error: {message}")

        data = response.json()
        if "error" in data or not data.get("access_token"):
            raise OAuthExchangeError(
                f"Google OAuth error: {data.get('error_description') or data.get('error') or 'no access token'}"
            )

        return OAuthTokens(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_in_seconds=int(
                data.get("expires_in", DEFAULT_TOKEN_LIFETIME_SECONDS)
            ),
            scope=data.get("scope", ""),
        )

    async def refresh_access_token(self, refresh_token: str) -> OAuthTokens:
        """Exchange a refresh token for a new access token.

        Raises:
            TokenRefreshError: If Google rejects the refresh token
            ProviderRequestError: If Google cannot be reached
        """
        if not self.is_configured:
            raise RuntimeError("Google OAuth not configured")

        try:
            response = await self._post_token(
                {
                    "client_id": self.client_id,
                    "client_secret": self.client_secret,
                    "refresh_token": refresh_token,
                    "grant_type": "refresh_token",
                }
            )
        except httpx.HTTPError as e:
            raise ProviderRequestError(f"Token refresh request failed: {e}") from e

        if response.status_code != 200:
            message = _error_message(response)
            logger.error(f"Token refresh failed ({response.status_code}): {message}")
            if response.status_code >= 500:
                raise ProviderRequestError(
                    f"Token refresh failed: {message}", status=response.status_code
                )
            raise TokenRefreshError(f"Token refresh failed: {message}")

        data = response.json()
        if not data.get("access_token"):
            raise TokenRefreshError("Token refresh response has no access token")

        return OAuthTokens(
            access_token=data["access_token"],
            # Google only sometimes rotates the refresh token
            refresh_token=data.get("refresh_token", refresh_token),
            expires_in_seconds=int(
                data.get("expires_in", DEFAULT_TOKEN_LIFETIME_SECONDS)
            ),
            scope=data.get("scope", ""),
        )

    async def refresh_if_needed(
        self,
        credential: Credential,
        now: datetime | None = None,
    ) -> Credential:
        """Return a credential whose access token is usable.

        The credential is returned unchanged when it has not expired.
        Otherwise a new value with the refreshed token and expiry is
        returned; persisting it is up to the caller.

        Raises:
            TokenRefreshError: No refresh token, or Google rejected it
            ProviderRequestError: Google could not be reached
        """
        now = now or utcnow()
        if not is_expired(credential, now):
            return credential

        if credential.refresh_token is None:
            raise TokenRefreshError(
                "Access token expired and no refresh token is stored; "
                "reconnect Google Calendar"
            )

        logger.debug(f"Refreshing access token for user {credential.user_id}")
        tokens = await self.refresh_access_token(credential.refresh_token)

        return dataclasses.replace(
            credential,
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            token_expires_at=tokens.expires_at(now),
        )

    async def revoke_token(self, token: str) -> bool:
        """Revoke an access or refresh token.

        Returns:
            True if Google confirmed the revocation
        """
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    GOOGLE_REVOKE_URL,
                    params={"token": token},
                )
        except httpx.HTTPError as e:
            logger.warning(f"Token revocation request failed: {e}")
            return False

        return response.status_code == 200


@lru_cache
def get_google_oauth() -> GoogleOAuth:
    """Get cached Google OAuth client instance."""
    return GoogleOAuth()
