from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional

from .logging import get_logger
from .models import Session
from .settings import Settings, get_settings

logger = get_logger(__name__)

Row = Dict[str, Any]


class AuthEvent(str, Enum):
    INITIAL_SESSION = "INITIAL_SESSION"
    SIGNED_IN = "SIGNED_IN"
    SIGNED_OUT = "SIGNED_OUT"
    TOKEN_REFRESHED = "TOKEN_REFRESHED"
    USER_UPDATED = "USER_UPDATED"


class ChannelStatus(str, Enum):
    SUBSCRIBED = "SUBSCRIBED"
    CHANNEL_ERROR = "CHANNEL_ERROR"
    TIMED_OUT = "TIMED_OUT"
    CLOSED = "CLOSED"


class ChangeType(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


@dataclass(frozen=True)
class ChangeEvent:
    """
    A row-level change pushed by the change feed.
    For DELETE, `record` is None and `old_record` carries at least the id.
    """

    type: ChangeType
    table: str
    record: Optional[Row] = None
    old_record: Optional[Row] = None


@dataclass(frozen=True)
class Order:
    column: str
    descending: bool = False


AuthStateCallback = Callable[[AuthEvent, Optional[Session]], None]
ChangeCallback = Callable[[ChangeEvent], None]
StatusCallback = Callable[[ChannelStatus], None]


# PUBLIC_INTERFACE
class IdentityService(ABC):
    """
    Identity contract for one client instance. The implementation keeps the
    persisted token of that client, like a browser's local storage would.
    """

    @abstractmethod
    async def sign_up(self, email: str, password: str) -> None:
        """Register a new account. Raises AuthError."""

    @abstractmethod
    async def sign_in(self, email: str, password: str) -> Session:
        """Exchange credentials for a session. Raises AuthError."""

    @abstractmethod
    async def sign_out(self) -> None:
        """Invalidate the persisted session. Raises AuthError."""

    @abstractmethod
    async def get_session(self) -> Optional[Session]:
        """Restore/validate the persisted session. Raises AuthError if the service is unreachable."""

    @abstractmethod
    def on_auth_state_change(self, callback: AuthStateCallback) -> Callable[[], None]:
        """Register for auth-state notifications; returns an unsubscribe callable."""


# PUBLIC_INTERFACE
class DataService(ABC):
    """Table access on behalf of the signed-in user. All failures raise FetchError."""

    @abstractmethod
    async def select(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        order: Optional[Order] = None,
    ) -> List[Row]:
        """Return rows matching equality filters, optionally ordered."""

    @abstractmethod
    async def insert(self, table: str, row: Mapping[str, Any]) -> Row:
        """Insert a row and return it as stored (with server-assigned id/created_at)."""

    @abstractmethod
    async def update(self, table: str, row_id: str, patch: Mapping[str, Any]) -> None:
        """Apply a partial update to the row with the given id."""

    @abstractmethod
    async def delete(self, table: str, row_id: str) -> None:
        """Delete the row with the given id."""


# PUBLIC_INTERFACE
class ChannelHandle(ABC):
    """An established change-feed channel."""

    @property
    @abstractmethod
    def status(self) -> ChannelStatus:
        """Current channel status."""

    @abstractmethod
    async def cancel(self) -> None:
        """Tear the channel down. Safe to call on an already closed channel."""


# PUBLIC_INTERFACE
class ChangeFeedService(ABC):
    """Push channels delivering row changes."""

    @abstractmethod
    async def open_channel(
        self,
        table: str,
        filters: Mapping[str, Any],
        on_event: ChangeCallback,
        on_status: StatusCallback,
    ) -> ChannelHandle:
        """
        Establish a channel scoped to equality filters on `table`.

        Raises SubscriptionError when the channel reports any status other than
        SUBSCRIBED. Later status changes of an established channel (e.g. CLOSED
        after a dropped connection) are reported through `on_status`.
        """


@dataclass
class BackendClient:
    """The three service facades bound to one client instance."""

    identity: IdentityService
    data: DataService
    feed: ChangeFeedService


# PUBLIC_INTERFACE
class Backend(ABC):
    """A managed backend able to hand out per-client service facades."""

    name: str = "backend"

    @abstractmethod
    def create_client(self) -> BackendClient:
        """Return fresh identity/data/feed facades sharing one persisted session."""

    async def aclose(self) -> None:
        """Release shared resources (connection pools)."""
        return None


# PUBLIC_INTERFACE
def get_backend(settings: Optional[Settings] = None) -> Backend:
    """
    Factory to return the configured backend based on settings.
    - memory: InMemoryBackend
    - supabase: SupabaseBackend (requires SUPABASE_URL and SUPABASE_ANON_KEY)
    """
    settings = settings or get_settings()
    if settings.backend == "supabase":
        if not settings.supabase_url or not settings.supabase_anon_key:
            logger.warning("supabase_not_configured", fallback="memory")
        else:
            from .supabase_backend import SupabaseBackend

            return SupabaseBackend(
                settings.supabase_url,
                settings.supabase_anon_key,
                timeout=settings.request_timeout_seconds,
            )

    from .memory_backend import InMemoryBackend

    return InMemoryBackend()
