from __future__ import annotations

import asyncio
import hashlib
import secrets
import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from threading import RLock
from typing import Any, Callable, Dict, List, Mapping, Optional

from .errors import AuthError, FetchError, SubscriptionError
from .logging import get_logger
from .models import Session, utcnow
from .services import (
    AuthEvent,
    AuthStateCallback,
    Backend,
    BackendClient,
    ChangeCallback,
    ChangeEvent,
    ChangeFeedService,
    ChangeType,
    ChannelHandle,
    ChannelStatus,
    DataService,
    IdentityService,
    Order,
    Row,
    StatusCallback,
)

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 6
OWNER_COLUMN = "user_id"


@dataclass(frozen=True)
class _Account:
    user_id: str
    email: str
    salt: bytes
    password_hash: bytes
    created_at: datetime
    last_sign_in_at: Optional[datetime] = None


@dataclass(frozen=True)
class _Grant:
    account_key: str
    access_token: str
    issued_at: datetime


def _hash_password(password: str, salt: bytes) -> bytes:
    return hashlib.pbkdf2_hmac("sha256", password.encode("utf-8"), salt, 100_000)


class InMemoryBackend(Backend):
    """
    Thread-safe in-process stand-in for the managed backend, suitable for tests
    and the default runtime.

    It keeps accounts, bearer and refresh tokens, tables and open channels.
    Expired tokens are swept whenever new ones are issued. Every data call
    is checked against the owner access policy: a caller only sees and touches
    rows whose `user_id` is its own.
    """

    name = "memory"

    def __init__(
        self,
        *,
        session_ttl: timedelta = timedelta(hours=1),
        refresh_ttl: timedelta = timedelta(days=1),
    ) -> None:
        self._lock = RLock()
        self._session_ttl = session_ttl
        self._refresh_ttl = refresh_ttl
        self._accounts: Dict[str, _Account] = {}
        self._tokens: Dict[str, Session] = {}
        self._grants: Dict[str, _Grant] = {}
        self._tables: Dict[str, Dict[str, Row]] = {}
        self._channels: List["_MemoryChannel"] = []

    def create_client(self) -> BackendClient:
        identity = InMemoryIdentity(self)
        return BackendClient(
            identity=identity,
            data=InMemoryData(self, identity),
            feed=InMemoryChangeFeed(self, identity),
        )

    # -- accounts -------------------------------------------------------

    def _register(self, email: str, password: str) -> _Account:
        key = email.strip().lower()
        if "@" not in key:
            raise AuthError("Invalid email address", status=400)
        if len(password) < MIN_PASSWORD_LENGTH:
            raise AuthError(
                f"Password should be at least {MIN_PASSWORD_LENGTH} characters", status=400
            )
        with self._lock:
            if key in self._accounts:
                raise AuthError("User already registered", status=400)
            salt = secrets.token_bytes(16)
            account = _Account(
                user_id=str(uuid.uuid4()),
                email=key,
                salt=salt,
                password_hash=_hash_password(password, salt),
                created_at=utcnow(),
            )
            self._accounts[key] = account
            return account

    def _authenticate(self, email: str, password: str) -> Session:
        key = email.strip().lower()
        with self._lock:
            self._sweep_expired()
            account = self._accounts.get(key)
            if account is None or not secrets.compare_digest(
                account.password_hash, _hash_password(password, account.salt)
            ):
                raise AuthError("Invalid login credentials", status=400)
            account = replace(account, last_sign_in_at=utcnow())
            self._accounts[key] = account
            return self._issue(account)

    def _issue(self, account: _Account) -> Session:
        now = utcnow()
        session = Session(
            user_id=account.user_id,
            email=account.email,
            access_token=secrets.token_urlsafe(32),
            last_sign_in_at=account.last_sign_in_at,
            refresh_token=secrets.token_urlsafe(24),
            expires_at=now + self._session_ttl,
        )
        with self._lock:
            self._tokens[session.access_token] = session
            self._grants[session.refresh_token] = _Grant(account.email, session.access_token, now)
        return session

    def _refresh(self, refresh_token: str) -> Optional[Session]:
        """Trade a refresh token for a new session. Each refresh token works once."""
        with self._lock:
            self._sweep_expired()
            grant = self._grants.pop(refresh_token, None)
            if grant is None:
                return None
            self._tokens.pop(grant.access_token, None)
            account = self._accounts.get(grant.account_key)
            if account is None:
                return None
            return self._issue(account)

    def _sweep_expired(self) -> None:
        now = utcnow()
        for token in [t for t, s in self._tokens.items() if s.is_expired(now)]:
            del self._tokens[token]
        for refresh_token in [r for r, g in self._grants.items() if now - g.issued_at >= self._refresh_ttl]:
            del self._grants[refresh_token]

    def _resolve(self, access_token: Optional[str]) -> Optional[Session]:
        if not access_token:
            return None
        with self._lock:
            session = self._tokens.get(access_token)
            if session is None:
                return None
            if session.is_expired():
                self._tokens.pop(access_token, None)
                return None
            return session

    def _revoke(self, session: Session) -> None:
        with self._lock:
            self._tokens.pop(session.access_token, None)
            if session.refresh_token:
                self._grants.pop(session.refresh_token, None)

    def expire_session(self, access_token: str, *, refreshable: bool = True) -> None:
        """Force a token to expire (used to exercise expiry handling)."""
        with self._lock:
            session = self._tokens.get(access_token)
            if session is None:
                return
            self._tokens[access_token] = replace(session, expires_at=utcnow())
            if not refreshable and session.refresh_token:
                self._grants.pop(session.refresh_token, None)

    # -- tables ---------------------------------------------------------

    def _table(self, table: str) -> Dict[str, Row]:
        return self._tables.setdefault(table, {})

    def _select(self, user_id: str, table: str, filters: Mapping[str, Any], order: Optional[Order]) -> List[Row]:
        with self._lock:
            rows = [r for r in self._table(table).values() if r.get(OWNER_COLUMN) == user_id]
            for column, value in filters.items():
                rows = [r for r in rows if r.get(column) == value]
            if order is not None:
                rows = sorted(rows, key=lambda r: r.get(order.column), reverse=order.descending)
            # Return copies to avoid external mutation
            return [dict(r) for r in rows]

    def _insert(self, user_id: str, table: str, row: Mapping[str, Any]) -> Row:
        owner = row.get(OWNER_COLUMN, user_id)
        if owner != user_id:
            raise FetchError("new row violates row-level security policy", status=403)
        stored: Row = dict(row)
        stored["id"] = str(uuid.uuid4())
        stored[OWNER_COLUMN] = user_id
        stored.setdefault("created_at", utcnow().isoformat())
        with self._lock:
            self._table(table)[stored["id"]] = stored
        self._publish(ChangeEvent(type=ChangeType.INSERT, table=table, record=dict(stored)))
        return dict(stored)

    def _update(self, user_id: str, table: str, row_id: str, patch: Mapping[str, Any]) -> None:
        with self._lock:
            existing = self._table(table).get(row_id)
            if existing is None or existing.get(OWNER_COLUMN) != user_id:
                # Matches zero rows under the access policy; not an error.
                return
            updated = {**existing, **{k: v for k, v in patch.items() if k not in {"id", OWNER_COLUMN}}}
            self._table(table)[row_id] = updated
        self._publish(
            ChangeEvent(type=ChangeType.UPDATE, table=table, record=dict(updated), old_record=dict(existing))
        )

    def _delete(self, user_id: str, table: str, row_id: str) -> None:
        with self._lock:
            existing = self._table(table).get(row_id)
            if existing is None or existing.get(OWNER_COLUMN) != user_id:
                return
            del self._table(table)[row_id]
        self._publish(ChangeEvent(type=ChangeType.DELETE, table=table, old_record=dict(existing)))

    # -- change feed ----------------------------------------------------

    def _attach(self, channel: "_MemoryChannel") -> None:
        with self._lock:
            self._channels.append(channel)

    def _detach(self, channel: "_MemoryChannel") -> None:
        with self._lock:
            if channel in self._channels:
                self._channels.remove(channel)

    def _publish(self, event: ChangeEvent) -> None:
        with self._lock:
            channels = list(self._channels)
        for channel in channels:
            channel.offer(event)

    def open_channels(self) -> List["_MemoryChannel"]:
        with self._lock:
            return list(self._channels)


class InMemoryIdentity(IdentityService):
    """Identity facade holding one client's persisted session."""

    def __init__(self, backend: InMemoryBackend) -> None:
        self._backend = backend
        self._persisted: Optional[Session] = None
        self._listeners: List[AuthStateCallback] = []

    @property
    def access_token(self) -> Optional[str]:
        return self._persisted.access_token if self._persisted else None

    def _emit(self, event: AuthEvent, session: Optional[Session]) -> None:
        for callback in list(self._listeners):
            callback(event, session)

    async def sign_up(self, email: str, password: str) -> None:
        account = self._backend._register(email, password)
        logger.info("account_registered", user_id=account.user_id)

    async def sign_in(self, email: str, password: str) -> Session:
        session = self._backend._authenticate(email, password)
        self._persisted = session
        self._emit(AuthEvent.SIGNED_IN, session)
        return session

    async def sign_out(self) -> None:
        if self._persisted is not None:
            self._backend._revoke(self._persisted)
        self._persisted = None
        self._emit(AuthEvent.SIGNED_OUT, None)

    async def get_session(self) -> Optional[Session]:
        """
        The persisted session, refreshed first when it is expired or about to
        expire. A session that can be neither resolved nor refreshed is dropped.
        """
        persisted = self._persisted
        if persisted is None:
            return None
        session = self._backend._resolve(persisted.access_token)
        if session is not None and not session.expires_soon():
            return session
        refreshed = self._backend._refresh(persisted.refresh_token) if persisted.refresh_token else None
        if refreshed is not None:
            self._persisted = refreshed
            self._emit(AuthEvent.TOKEN_REFRESHED, refreshed)
            return refreshed
        if session is not None:
            return session
        self._persisted = None
        self._emit(AuthEvent.SIGNED_OUT, None)
        return None

    def on_auth_state_change(self, callback: AuthStateCallback) -> Callable[[], None]:
        self._listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _unsubscribe


class InMemoryData(DataService):
    def __init__(self, backend: InMemoryBackend, identity: InMemoryIdentity) -> None:
        self._backend = backend
        self._identity = identity

    async def _caller(self) -> str:
        session = await self._identity.get_session()
        if session is None:
            raise FetchError("JWT expired or missing", status=401)
        return session.user_id

    async def select(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        order: Optional[Order] = None,
    ) -> List[Row]:
        return self._backend._select(await self._caller(), table, filters or {}, order)

    async def insert(self, table: str, row: Mapping[str, Any]) -> Row:
        return self._backend._insert(await self._caller(), table, row)

    async def update(self, table: str, row_id: str, patch: Mapping[str, Any]) -> None:
        self._backend._update(await self._caller(), table, row_id, patch)

    async def delete(self, table: str, row_id: str) -> None:
        self._backend._delete(await self._caller(), table, row_id)


class _MemoryChannel(ChannelHandle):
    """
    In-process channel. Events are delivered on the next loop iteration so they
    never run inside the mutating call.
    """

    def __init__(
        self,
        backend: InMemoryBackend,
        user_id: str,
        table: str,
        filters: Mapping[str, Any],
        on_event: ChangeCallback,
        on_status: StatusCallback,
        loop: asyncio.AbstractEventLoop,
    ) -> None:
        self._backend = backend
        self.user_id = user_id
        self.table = table
        self.filters = dict(filters)
        self._on_event = on_event
        self._on_status = on_status
        self._loop = loop
        self._status = ChannelStatus.SUBSCRIBED

    @property
    def status(self) -> ChannelStatus:
        return self._status

    def _matches(self, event: ChangeEvent) -> bool:
        if event.table != self.table:
            return False
        row = event.record if event.record is not None else event.old_record
        if row is None or row.get(OWNER_COLUMN) != self.user_id:
            return False
        return all(row.get(k) == v for k, v in self.filters.items())

    def offer(self, event: ChangeEvent) -> None:
        if self._status is ChannelStatus.SUBSCRIBED and self._matches(event):
            self._loop.call_soon_threadsafe(self._deliver, event)

    def _deliver(self, event: ChangeEvent) -> None:
        if self._status is ChannelStatus.SUBSCRIBED:
            self._on_event(event)

    def drop(self, status: ChannelStatus = ChannelStatus.CHANNEL_ERROR) -> None:
        """Simulate the transport losing the channel."""
        self._status = status
        self._backend._detach(self)
        self._on_status(status)

    async def cancel(self) -> None:
        self._status = ChannelStatus.CLOSED
        self._backend._detach(self)


class InMemoryChangeFeed(ChangeFeedService):
    def __init__(self, backend: InMemoryBackend, identity: InMemoryIdentity) -> None:
        self._backend = backend
        self._identity = identity

    async def open_channel(
        self,
        table: str,
        filters: Mapping[str, Any],
        on_event: ChangeCallback,
        on_status: StatusCallback,
    ) -> ChannelHandle:
        session = await self._identity.get_session()
        if session is None:
            raise SubscriptionError("channel join rejected: not authenticated")
        channel = _MemoryChannel(
            self._backend,
            session.user_id,
            table,
            filters,
            on_event,
            on_status,
            asyncio.get_running_loop(),
        )
        self._backend._attach(channel)
        return channel
