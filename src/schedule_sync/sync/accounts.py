"""Account resolution: stored credential to a ready-to-use calendar client.

:class:`AccountResolver` turns a user's stored refresh token into an access
token and makes sure the dedicated calendar exists, creating it on first use
or when the stored one has disappeared.  Every failure here skips the user
for the current run; the next scheduled run tries again.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import partial

from schedule_sync.calendar.auth import exchange_refresh_token
from schedule_sync.calendar.client import RemoteCalendarClient
from schedule_sync.calendar.exceptions import CalendarAPIError, CalendarAuthError, RetryPolicy
from schedule_sync.config import Settings
from schedule_sync.models.sync import UserAccount
from schedule_sync.store.base import StateStore
from schedule_sync.sync.context import SyncRunContext

logger = logging.getLogger(__name__)

TokenExchanger = Callable[[str], Awaitable[str]]
ClientFactory = Callable[[str], RemoteCalendarClient]


@dataclass(frozen=True)
class ResolvedAccount:
    """A user ready to be synced.

    Attributes:
        user_id: The user.
        access_token: Short-lived access token.
        calendar_id: Verified (or freshly created) dedicated calendar.
        client: Calendar client authorised with *access_token*.
    """

    user_id: str
    access_token: str
    calendar_id: str
    client: RemoteCalendarClient


class AccountResolver:
    """Resolves users into :class:`ResolvedAccount` instances.

    Args:
        store: State store holding the accounts.
        token_exchanger: Coroutine turning a refresh token into an access
            token; raises :class:`CalendarAuthError` on failure.
        client_factory: Builds a calendar client from an access token.
        calendar_name: Summary of calendars created for users.
        timezone: IANA timezone of calendars created for users.
    """

    def __init__(
        self,
        store: StateStore,
        *,
        token_exchanger: TokenExchanger,
        client_factory: ClientFactory,
        calendar_name: str,
        timezone: str,
    ) -> None:
        self._store = store
        self._token_exchanger = token_exchanger
        self._client_factory = client_factory
        self._calendar_name = calendar_name
        self._timezone = timezone

    @classmethod
    def from_settings(cls, store: StateStore, settings: Settings) -> AccountResolver:
        """Build a resolver that talks to Google with the configured client."""
        policy = RetryPolicy(
            max_attempts=settings.max_attempts,
            base_delay=settings.retry_base_delay,
            max_delay=settings.retry_max_delay,
        )
        return cls(
            store,
            token_exchanger=partial(
                _exchange,
                client_id=settings.google_client_id,
                client_secret=settings.google_client_secret,
            ),
            client_factory=partial(RemoteCalendarClient, retry_policy=policy),
            calendar_name=settings.calendar_name,
            timezone=settings.timezone,
        )

    async def open_client(self, account: UserAccount) -> tuple[str, RemoteCalendarClient]:
        """Exchange the account credential and build a client.

        Returns:
            The access token and a client authorised with it.

        Raises:
            CalendarAuthError: If the account has no credential or the
                exchange fails.
        """
        if not account.has_valid_credential or account.credential_token is None:
            raise CalendarAuthError(f"User {account.user_id} has no credential")
        access_token = await self._token_exchanger(account.credential_token)
        if not access_token:
            raise CalendarAuthError(f"No access token for user {account.user_id}")
        return access_token, self._client_factory(access_token)

    async def resolve(self, user_id: str, context: SyncRunContext) -> ResolvedAccount | None:
        """Resolve *user_id* for the current run.

        A newly created calendar ID is queued on ``context.writes``.

        Returns:
            The resolved account, or ``None`` when the user must be skipped
            (no account, no credential, token exchange failure, calendar
            creation failure).
        """
        account = await asyncio.to_thread(self._store.find_account, user_id)
        if account is None:
            logger.error("User %s: account details not found", user_id)
            return None
        if not account.has_valid_credential:
            logger.info("User %s has no calendar credential, skipping", user_id)
            return None

        try:
            access_token, client = await self.open_client(account)
        except CalendarAuthError as exc:
            logger.error("User %s: could not obtain an access token: %s", user_id, exc)
            return None

        calendar_id = await self.ensure_calendar(client, account, context)
        if calendar_id is None:
            return None

        return ResolvedAccount(
            user_id=user_id,
            access_token=access_token,
            calendar_id=calendar_id,
            client=client,
        )

    async def ensure_calendar(
        self,
        client: RemoteCalendarClient,
        account: UserAccount,
        context: SyncRunContext,
    ) -> str | None:
        """Verify the stored calendar, or create a replacement.

        Returns:
            The usable calendar ID, or ``None`` if creation failed.
        """
        user_id = account.user_id

        if account.calendar_id:
            try:
                found = await client.get_calendar(account.calendar_id)
            except CalendarAPIError as exc:
                logger.info(
                    "User %s: calendar %s not usable (%s), creating a new one",
                    user_id,
                    account.calendar_id,
                    exc,
                )
            else:
                if found.get("id") and not found.get("deleted"):
                    logger.debug("User %s: calendar %s found", user_id, account.calendar_id)
                    return account.calendar_id
                logger.info("User %s: calendar %s is gone, creating a new one", user_id, account.calendar_id)
        else:
            logger.info("User %s has no calendar yet, creating one", user_id)

        try:
            calendar_id = await client.create_calendar(self._calendar_name, self._timezone)
        except CalendarAPIError as exc:
            logger.error("User %s: failed to create a calendar, skipping: %s", user_id, exc)
            return None

        context.writes.save_calendar_id(user_id, calendar_id)
        logger.info("User %s: created calendar %s", user_id, calendar_id)
        return calendar_id


async def _exchange(refresh_token: str, *, client_id: str, client_secret: str) -> str:
    return await exchange_refresh_token(refresh_token, client_id, client_secret)
