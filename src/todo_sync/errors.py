from __future__ import annotations

from typing import Optional


class TodoSyncError(Exception):
    """Base class for failures reported by the backend services."""

    kind = "TodoSyncError"

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status

    def __str__(self) -> str:
        return self.message


# PUBLIC_INTERFACE
class AuthError(TodoSyncError):
    """Invalid credentials, or an expired/unreachable session."""

    kind = "AuthError"


# PUBLIC_INTERFACE
class FetchError(TodoSyncError):
    """Network or permission failure on a data operation."""

    kind = "FetchError"


# PUBLIC_INTERFACE
class SubscriptionError(TodoSyncError):
    """A change-feed channel failed to reach the subscribed state."""

    kind = "SubscriptionError"

    def __init__(self, message: str, *, channel_status: str = "CHANNEL_ERROR") -> None:
        super().__init__(message)
        self.channel_status = channel_status
