from __future__ import annotations

import asyncio
from typing import Callable, List, Optional

from .errors import AuthError
from .logging import get_logger
from .models import Session, utcnow
from .services import AuthEvent, IdentityService

logger = get_logger(__name__)

SessionListener = Callable[[Optional[Session]], None]

# Seconds before expiry at which the store refreshes the session on its own.
AUTO_REFRESH_LEAD = 15.0


def session_changed(current: Optional[Session], new: Optional[Session]) -> bool:
    """A change is a presence flip or a different access token."""
    if current is None or new is None:
        return (current is None) != (new is None)
    return current.access_token != new.access_token


# PUBLIC_INTERFACE
class SessionStore:
    """
    Owner of the current session for one client context.

    The store is the single writer of the cached session. Listeners are called
    synchronously and only when the session actually changes, so downstream
    views are not rebuilt for redundant auth notifications.

    A session with an expiry is refreshed shortly before it runs out. Every
    write bumps a generation counter; a refresh that was overtaken by a newer
    write (sign-out, sign-in, an auth notification) does not apply its result.
    """

    def __init__(self, identity: IdentityService, *, refresh_lead: float = AUTO_REFRESH_LEAD) -> None:
        self._identity = identity
        self._refresh_lead = refresh_lead
        self._session: Optional[Session] = None
        self._generation = 0
        self._refresh: Optional["asyncio.Task[Optional[Session]]"] = None
        self._auto_refresh: Optional["asyncio.Task[None]"] = None
        self._listeners: List[SessionListener] = []
        self._unsubscribe: Optional[Callable[[], None]] = None

    def start(self) -> None:
        """Begin following the identity service's auth-state notifications."""
        if self._unsubscribe is None:
            self._unsubscribe = self._identity.on_auth_state_change(self._on_auth_state_change)

    def close(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._cancel_auto_refresh()
        self._listeners.clear()

    def add_listener(self, listener: SessionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    # PUBLIC_INTERFACE
    def get_current_session(self) -> Optional[Session]:
        """Return the cached session without touching the network."""
        return self._session

    # PUBLIC_INTERFACE
    async def refresh_session(self) -> Optional[Session]:
        """
        Re-validate the persisted session with the identity service.

        Concurrent callers share one in-flight refresh. If the service is
        unreachable AuthError is raised and the cached session is left as is.
        """
        if self._refresh is None:
            self._refresh = asyncio.ensure_future(self._do_refresh())
            self._refresh.add_done_callback(self._refresh_done)
        return await asyncio.shield(self._refresh)

    def _refresh_done(self, task: "asyncio.Task[Optional[Session]]") -> None:
        if self._refresh is task:
            self._refresh = None
        # Nobody may be awaiting a refresh started by the timer.
        if not task.cancelled():
            task.exception()

    async def _do_refresh(self) -> Optional[Session]:
        generation = self._generation
        try:
            session = await self._identity.get_session()
        except AuthError as exc:
            logger.warning("session_refresh_failed", error=str(exc))
            raise
        if generation != self._generation:
            logger.debug("session_refresh_superseded")
            return self._session
        self._set_session(session)
        return session

    async def sign_in(self, email: str, password: str) -> Session:
        self._generation += 1
        session = await self._identity.sign_in(email, password)
        self._set_session(session)
        logger.info("signed_in", user_id=session.user_id)
        return session

    async def sign_up(self, email: str, password: str) -> None:
        await self._identity.sign_up(email, password)

    async def sign_out(self) -> None:
        """
        Clear the session locally first so authenticated views disappear at
        once, then revoke it remotely. A remote failure still raises AuthError.
        """
        previous = self._session
        self._set_session(None)
        await self._identity.sign_out()
        if previous is not None:
            logger.info("signed_out", user_id=previous.user_id)

    def _on_auth_state_change(self, event: AuthEvent, session: Optional[Session]) -> None:
        logger.debug("auth_state_changed", auth_event=event.value)
        self._set_session(session)

    def _set_session(self, session: Optional[Session]) -> None:
        self._generation += 1
        if not session_changed(self._session, session):
            # Same token: keep the newer object without notifying.
            if session is not None:
                self._session = session
            return
        self._session = session
        self._schedule_auto_refresh(session)
        for listener in list(self._listeners):
            listener(session)

    def _cancel_auto_refresh(self) -> None:
        task, self._auto_refresh = self._auto_refresh, None
        if task is not None and not task.done():
            task.cancel()

    def _schedule_auto_refresh(self, session: Optional[Session]) -> None:
        self._cancel_auto_refresh()
        if session is None or session.expires_at is None:
            return
        delay = max(0.0, (session.expires_at - utcnow()).total_seconds() - self._refresh_lead)
        self._auto_refresh = asyncio.ensure_future(self._refresh_later(delay))

    async def _refresh_later(self, delay: float) -> None:
        await asyncio.sleep(delay)
        # A refreshed token reschedules; this task must not cancel itself.
        self._auto_refresh = None
        try:
            await self.refresh_session()
        except AuthError:
            # Data calls refresh on demand once the service is reachable again.
            return
