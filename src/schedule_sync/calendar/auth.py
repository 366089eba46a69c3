"""OAuth 2.0 helpers for Google Calendar access.

Two flows are supported:

- **Sync runs** turn a stored long-lived refresh token into a short-lived
  access token (:func:`exchange_refresh_token`).
- **Account linking** builds the web-server consent URL and exchanges the
  authorization code returned to the redirect URI for a refresh token
  (:func:`build_flow`, :func:`authorization_url`,
  :func:`exchange_authorization_code`).

Usage::

    from schedule_sync.calendar.auth import exchange_refresh_token

    token = await exchange_refresh_token(refresh_token, client_id, client_secret)
"""

from __future__ import annotations

import asyncio
import logging

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow

from schedule_sync.calendar.exceptions import CalendarAuthError

logger = logging.getLogger(__name__)

SCOPES: list[str] = ["https://www.googleapis.com/auth/calendar.app.created"]
"""OAuth 2.0 scope limited to calendars created by this application."""

AUTH_URI = "https://accounts.google.com/o/oauth2/auth"
TOKEN_URI = "https://oauth2.googleapis.com/token"


def build_user_credentials(
    refresh_token: str,
    client_id: str,
    client_secret: str,
) -> Credentials:
    """Build refreshable credentials for a user from a stored refresh token."""
    return Credentials(
        token=None,
        refresh_token=refresh_token,
        token_uri=TOKEN_URI,
        client_id=client_id,
        client_secret=client_secret,
        scopes=SCOPES,
    )


async def exchange_refresh_token(
    refresh_token: str,
    client_id: str,
    client_secret: str,
) -> str:
    """Exchange a refresh token for a short-lived access token.

    The blocking token request runs in a worker thread.

    Args:
        refresh_token: The user's stored long-lived credential.
        client_id: OAuth client ID.
        client_secret: OAuth client secret.

    Returns:
        The access token string.

    Raises:
        CalendarAuthError: If the token endpoint rejects the refresh token
            (revoked, expired consent) or cannot be reached, or returns no
            token.
    """
    creds = build_user_credentials(refresh_token, client_id, client_secret)
    try:
        await asyncio.to_thread(creds.refresh, Request())
    except (RefreshError, TransportError) as exc:
        raise CalendarAuthError(f"Token exchange failed: {exc}") from exc

    if not creds.token:
        raise CalendarAuthError("No access token received from the token endpoint")
    return creds.token


# ---------------------------------------------------------------------------
# Account linking
# ---------------------------------------------------------------------------


def build_flow(
    client_id: str,
    client_secret: str,
    redirect_uri: str,
) -> Flow:
    """Build the web-server OAuth flow for account linking.

    PKCE is disabled: the consent URL and the code exchange happen in
    different processes, so no verifier could be carried between them.
    """
    client_config = {
        "web": {
            "client_id": client_id,
            "client_secret": client_secret,
            "auth_uri": AUTH_URI,
            "token_uri": TOKEN_URI,
            "redirect_uris": [redirect_uri],
        }
    }
    return Flow.from_client_config(
        client_config,
        scopes=SCOPES,
        redirect_uri=redirect_uri,
        autogenerate_code_verifier=False,
    )


def authorization_url(flow: Flow, state: str) -> str:
    """Return the consent URL for *flow* carrying *state*.

    ``prompt=consent`` forces Google to issue a refresh token even when the
    user linked the account before.
    """
    url, _ = flow.authorization_url(
        access_type="offline",
        prompt="consent",
        state=state,
    )
    return url


async def exchange_authorization_code(flow: Flow, code: str) -> str:
    """Exchange an authorization code for a refresh token.

    Args:
        flow: A flow built by :func:`build_flow`.
        code: The code Google passed to the redirect URI.

    Returns:
        The refresh token.

    Raises:
        CalendarAuthError: If Google returned no refresh token.
        Exception: Errors of the token request itself (``oauthlib`` and
            ``requests`` exceptions) propagate unchanged.
    """
    await asyncio.to_thread(flow.fetch_token, code=code)
    refresh_token = flow.credentials.refresh_token
    if not refresh_token:
        raise CalendarAuthError("Google returned no refresh token")
    logger.info("Authorization code exchanged for a refresh token")
    return refresh_token
