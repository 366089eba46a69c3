"""Google account linking.

A user links a calendar account in two steps:

1. The bot sends the consent URL from :meth:`AccountLinker.authorization_url`.
   Its ``state`` parameter is signed with the internal token so the redirect
   handler can tell which user it belongs to.
2. The redirect handler stores the returned code as a login attempt.  The
   sync service later calls :meth:`AccountLinker.process_login_attempts`,
   which exchanges each code for a refresh token, saves it and tells the
   user how it went.
"""

from __future__ import annotations

import asyncio
import hashlib
import hmac
import logging
import time
from collections.abc import Callable

from google_auth_oauthlib.flow import Flow

from schedule_sync.calendar.auth import authorization_url, build_flow, exchange_authorization_code
from schedule_sync.calendar.exceptions import CalendarAuthError
from schedule_sync.config import Settings
from schedule_sync.exceptions import LinkError, StoreError
from schedule_sync.notify import LoggingNotifier, Notifier
from schedule_sync.store.base import LoginAttempt
from schedule_sync.store.sqlite import SQLiteStateStore

logger = logging.getLogger(__name__)

LINK_SUCCESS_MESSAGE = (
    "Google Calendar linked. Your schedule will appear within the next sync run."
)
LINK_FAILED_MESSAGE = "Could not link Google Calendar: {reason}. Please request a new link and try again."
CODE_REUSED_REASON = "the authorization code was already used or is invalid"


class AccountLinker:
    """Builds consent URLs and completes pending account links.

    Args:
        store: Store holding accounts and login attempts.
        client_id: OAuth client ID.
        client_secret: OAuth client secret.
        redirect_uri: Redirect URI registered for the consent flow.
        internal_token: Secret used to sign ``state`` values.
        notifier: Delivers link outcomes to users.
        flow_factory: Builds a fresh OAuth flow; defaults to
            :func:`~schedule_sync.calendar.auth.build_flow`.
        clock: Returns the current Unix time.
    """

    def __init__(
        self,
        store: SQLiteStateStore,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        internal_token: str,
        notifier: Notifier | None = None,
        flow_factory: Callable[[], Flow] | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self._internal_token = internal_token
        self._notifier = notifier or LoggingNotifier()
        self._flow_factory = flow_factory or (
            lambda: build_flow(client_id, client_secret, redirect_uri)
        )
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        store: SQLiteStateStore,
        settings: Settings,
        notifier: Notifier | None = None,
    ) -> AccountLinker:
        return cls(
            store,
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            redirect_uri=settings.google_redirect_uri,
            internal_token=settings.internal_token,
            notifier=notifier,
        )

    # ------------------------------------------------------------------
    # Consent URL
    # ------------------------------------------------------------------

    def sign_state(self, user_id: str, issued_at: int | None = None) -> str:
        """Return ``"<user_id>-<issued_at>-<sha256 hex>"`` for *user_id*."""
        if issued_at is None:
            issued_at = int(self._clock())
        return f"{user_id}-{issued_at}-{self._digest(user_id, issued_at)}"

    def verify_state(self, state: str, max_age: float | None = None) -> str:
        """Check a ``state`` value and return the user it was issued to.

        Args:
            state: Value received on the redirect URI.
            max_age: Maximum age in seconds, or ``None`` for no limit.

        Raises:
            LinkError: If the state is malformed, forged or expired.
        """
        parts = state.rsplit("-", 2)
        if len(parts) != 3 or not parts[1].isdigit():
            raise LinkError(f"Malformed state {state!r}")

        user_id, issued_raw, digest = parts
        issued_at = int(issued_raw)
        if not hmac.compare_digest(digest, self._digest(user_id, issued_at)):
            raise LinkError("State signature mismatch", user_id=user_id)
        if max_age is not None and self._clock() - issued_at > max_age:
            raise LinkError("State expired", user_id=user_id)
        return user_id

    def authorization_url(self, user_id: str) -> str:
        """Consent URL for *user_id* with a freshly signed state."""
        return authorization_url(self._flow_factory(), self.sign_state(user_id))

    def _digest(self, user_id: str, issued_at: int) -> str:
        payload = f"{user_id}-{issued_at}-{self._internal_token}"
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()

    # ------------------------------------------------------------------
    # Pending attempts
    # ------------------------------------------------------------------

    async def process_login_attempts(self) -> int:
        """Exchange every pending authorization code.

        Returns:
            The number of accounts linked.
        """
        attempts = self._store.pending_login_attempts()
        if not attempts:
            return 0

        logger.info("Processing %d login attempt(s)", len(attempts))
        outcomes = await asyncio.gather(
            *(self._process(attempt) for attempt in attempts),
            return_exceptions=True,
        )

        linked = 0
        for attempt, outcome in zip(attempts, outcomes):
            if isinstance(outcome, BaseException):
                logger.error("User %s: login attempt failed", attempt.user_id, exc_info=outcome)
            elif outcome:
                linked += 1
        return linked

    async def _process(self, attempt: LoginAttempt) -> bool:
        user_id = attempt.user_id
        flow = self._flow_factory()

        try:
            refresh_token = await exchange_authorization_code(flow, attempt.code)
        except CalendarAuthError as exc:
            logger.error("User %s: %s", user_id, exc)
            reason = "Google returned no refresh token"
        except Exception as exc:
            logger.error("User %s: authorization code exchange failed: %s", user_id, exc)
            message = str(exc)
            if "invalid_grant" in message or "already been used" in message:
                reason = CODE_REUSED_REASON
            else:
                reason = message or type(exc).__name__
        else:
            self._store.delete_login_attempts(user_id)
            self._store.save_account(user_id, credential_token=refresh_token)
            logger.info("User %s: Google account linked", user_id)
            await self._notify(user_id, LINK_SUCCESS_MESSAGE)
            return True

        self._store.delete_login_attempts(user_id)
        await self._notify(user_id, LINK_FAILED_MESSAGE.format(reason=reason))
        return False

    async def _notify(self, user_id: str, text: str) -> None:
        try:
            account = self._store.find_account(user_id)
        except StoreError as exc:
            logger.warning("User %s: could not look up chat address: %s", user_id, exc)
            account = None
        chat_id = account.chat_id if account and account.chat_id else user_id
        await self._notifier.send(chat_id, text)
