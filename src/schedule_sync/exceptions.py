"""Package-level exceptions for schedule-sync.

Calendar API errors live in :mod:`schedule_sync.calendar.exceptions`; the
exceptions here cover the store, account linking, and run setup.
"""

from __future__ import annotations


class SyncSetupError(Exception):
    """Raised when a sync run cannot start at all.

    The only such case is failing to enumerate the users to sync.  Every
    other failure is scoped to a single user and never aborts the run.
    """


class StoreError(Exception):
    """Raised when the state store cannot complete an operation.

    Attributes:
        operation: Name of the store operation that failed.
    """

    def __init__(self, message: str, operation: str = "") -> None:
        super().__init__(message)
        self.operation = operation


class LinkError(Exception):
    """Raised when an OAuth account-link attempt cannot be completed.

    Attributes:
        user_id: The user whose link attempt failed.
    """

    def __init__(self, message: str, user_id: str = "") -> None:
        super().__init__(message)
        self.user_id = user_id
