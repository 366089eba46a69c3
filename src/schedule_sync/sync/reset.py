"""Administrative calendar reset.

Deletes every linked user's dedicated calendar (and with it every managed
event), then forgets the calendar ID and the user's mappings, so the next
sync run starts from an empty calendar.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from schedule_sync.calendar.exceptions import CalendarAPIError, CalendarNotFoundError
from schedule_sync.store.sqlite import SQLiteStateStore
from schedule_sync.sync.accounts import AccountResolver

logger = logging.getLogger(__name__)


@dataclass
class ResetSummary:
    """Outcome of a reset.

    Attributes:
        reset: Users whose calendar was removed (or already gone).
        failed: Users whose calendar could not be removed; their calendar
            ID and mappings are kept.
    """

    reset: int = 0
    failed: int = 0


async def reset_calendars(store: SQLiteStateStore, resolver: AccountResolver) -> ResetSummary:
    """Delete the dedicated calendar of every linked user.

    Args:
        store: State store holding accounts and mappings.
        resolver: Used to open an authorised client per user.

    Returns:
        Counts of reset and failed users.
    """
    summary = ResetSummary()

    for user_id in store.list_linked_users():
        account = store.find_account(user_id)
        if account is None:
            continue

        if account.calendar_id:
            try:
                _, client = await resolver.open_client(account)
                await client.delete_calendar(account.calendar_id)
            except CalendarNotFoundError:
                logger.info("User %s: calendar %s already gone", user_id, account.calendar_id)
            except CalendarAPIError as exc:
                summary.failed += 1
                logger.error("User %s: could not delete calendar %s: %s", user_id, account.calendar_id, exc)
                continue

        store.save_calendar_id(user_id, None)
        store.delete_mappings_for_user(user_id)
        summary.reset += 1
        logger.info("User %s: calendar reset", user_id)

    logger.info("Calendar reset finished: %d reset, %d failed", summary.reset, summary.failed)
    return summary
