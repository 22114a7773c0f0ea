from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx

from .errors import AuthError, FetchError
from .logging import get_logger
from .models import Session, parse_timestamp, utcnow
from .realtime import Connect, SupabaseChangeFeed
from .services import (
    AuthEvent,
    AuthStateCallback,
    Backend,
    BackendClient,
    DataService,
    IdentityService,
    Order,
    Row,
)

logger = get_logger(__name__)


def _error_message(response: httpx.Response) -> str:
    """Pull the human-readable message out of a GoTrue/PostgREST error body."""
    try:
        body = response.json()
    except ValueError:
        body = None
    if isinstance(body, dict):
        for key in ("msg", "error_description", "message", "error"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return response.text or response.reason_phrase or f"HTTP {response.status_code}"


def _json_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError as exc:
        raise FetchError(f"Malformed response from the data service: {exc}", status=response.status_code) from exc


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def session_from_payload(payload: Mapping[str, Any], *, now: Optional[datetime] = None) -> Session:
    """Build a Session from a GoTrue token response."""
    user = payload.get("user") or {}
    metadata = user.get("user_metadata") or {}
    expires_at: Optional[datetime] = None
    if payload.get("expires_at") is not None:
        expires_at = datetime.fromtimestamp(int(payload["expires_at"]), tz=timezone.utc)
    elif payload.get("expires_in") is not None:
        expires_at = (now or utcnow()) + timedelta(seconds=int(payload["expires_in"]))
    return Session(
        user_id=str(user["id"]),
        email=str(user.get("email") or ""),
        access_token=str(payload["access_token"]),
        last_sign_in_at=parse_timestamp(user.get("last_sign_in_at")),
        display_name=metadata.get("display_name") or metadata.get("full_name"),
        refresh_token=payload.get("refresh_token"),
        expires_at=expires_at,
    )


class SupabaseIdentity(IdentityService):
    """
    GoTrue client for one browser. The session returned by sign-in is kept
    here the way supabase-js keeps it in local storage.
    """

    def __init__(self, http: httpx.AsyncClient, anon_key: str) -> None:
        self._http = http
        self._anon_key = anon_key
        self._persisted: Optional[Session] = None
        self._listeners: List[AuthStateCallback] = []
        self._refresh_lock = asyncio.Lock()

    @property
    def access_token(self) -> Optional[str]:
        return self._persisted.access_token if self._persisted else None

    def _emit(self, event: AuthEvent, session: Optional[Session]) -> None:
        for callback in list(self._listeners):
            callback(event, session)

    async def _post(self, path: str, *, json: Optional[Dict[str, Any]] = None, params=None, token=None) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token or self._anon_key}"}
        try:
            return await self._http.post(path, json=json, params=params, headers=headers)
        except httpx.HTTPError as exc:
            raise AuthError(f"Identity service unreachable: {exc}") from exc

    async def sign_up(self, email: str, password: str) -> None:
        response = await self._post("/auth/v1/signup", json={"email": email, "password": password})
        if response.status_code >= 400:
            raise AuthError(_error_message(response), status=response.status_code)

    async def sign_in(self, email: str, password: str) -> Session:
        response = await self._post(
            "/auth/v1/token",
            params={"grant_type": "password"},
            json={"email": email, "password": password},
        )
        if response.status_code >= 400:
            raise AuthError(_error_message(response), status=response.status_code)
        session = session_from_payload(response.json())
        self._persisted = session
        self._emit(AuthEvent.SIGNED_IN, session)
        return session

    async def sign_out(self) -> None:
        session, self._persisted = self._persisted, None
        self._emit(AuthEvent.SIGNED_OUT, None)
        if session is None:
            return
        response = await self._post("/auth/v1/logout", token=session.access_token)
        # 401/404: the token is already gone server side.
        if response.status_code >= 400 and response.status_code not in {401, 404}:
            raise AuthError(_error_message(response), status=response.status_code)

    async def _refresh(self, session: Session) -> Optional[Session]:
        if not session.refresh_token:
            return None
        response = await self._post(
            "/auth/v1/token",
            params={"grant_type": "refresh_token"},
            json={"refresh_token": session.refresh_token},
        )
        if response.status_code >= 500:
            raise AuthError(_error_message(response), status=response.status_code)
        if response.status_code >= 400:
            return None
        return session_from_payload(response.json())

    def _forget(self) -> None:
        self._persisted = None
        self._emit(AuthEvent.SIGNED_OUT, None)

    def needs_refresh(self) -> bool:
        return self._persisted is not None and self._persisted.expires_soon()

    async def _refresh_persisted(self, session: Session) -> Optional[Session]:
        # Refresh tokens are single use: concurrent callers share the first refresh.
        async with self._refresh_lock:
            if self._persisted is not session:
                return self._persisted
            refreshed = await self._refresh(session)
            if self._persisted is not session:
                # Signed out (or in again) while the grant was in flight.
                return self._persisted
            if refreshed is None:
                self._forget()
                return None
            self._persisted = refreshed
            self._emit(AuthEvent.TOKEN_REFRESHED, refreshed)
            logger.debug("token_refreshed", user_id=refreshed.user_id)
            return refreshed

    async def get_session(self) -> Optional[Session]:
        session = self._persisted
        if session is None:
            return None
        if session.expires_soon():
            return await self._refresh_persisted(session)
        try:
            response = await self._http.get(
                "/auth/v1/user", headers={"Authorization": f"Bearer {session.access_token}"}
            )
        except httpx.HTTPError as exc:
            raise AuthError(f"Identity service unreachable: {exc}") from exc
        if self._persisted is not session:
            return self._persisted
        if response.status_code in {401, 403}:
            self._forget()
            return None
        if response.status_code >= 400:
            raise AuthError(_error_message(response), status=response.status_code)
        return session

    def on_auth_state_change(self, callback: AuthStateCallback) -> Callable[[], None]:
        self._listeners.append(callback)

        def _unsubscribe() -> None:
            if callback in self._listeners:
                self._listeners.remove(callback)

        return _unsubscribe


class SupabaseData(DataService):
    """PostgREST client; requests carry the signed-in user's token so row policies apply."""

    def __init__(self, http: httpx.AsyncClient, identity: SupabaseIdentity, anon_key: str) -> None:
        self._http = http
        self._identity = identity
        self._anon_key = anon_key

    async def _request(
        self,
        method: str,
        table: str,
        *,
        params: Optional[Dict[str, str]] = None,
        json: Any = None,
        prefer: Optional[str] = None,
    ) -> httpx.Response:
        if self._identity.needs_refresh():
            try:
                await self._identity.get_session()
            except AuthError as exc:
                raise FetchError(exc.message, status=exc.status) from exc
        headers = {"Authorization": f"Bearer {self._identity.access_token or self._anon_key}"}
        if prefer:
            headers["Prefer"] = prefer
        try:
            response = await self._http.request(
                method, f"/rest/v1/{table}", params=params, json=json, headers=headers
            )
        except httpx.HTTPError as exc:
            raise FetchError(f"Data service unreachable: {exc}") from exc
        if response.status_code >= 400:
            raise FetchError(_error_message(response), status=response.status_code)
        return response

    async def select(
        self,
        table: str,
        filters: Optional[Mapping[str, Any]] = None,
        order: Optional[Order] = None,
    ) -> List[Row]:
        params = {"select": "*"}
        for column, value in (filters or {}).items():
            params[column] = f"eq.{_format_value(value)}"
        if order is not None:
            params["order"] = f"{order.column}.{'desc' if order.descending else 'asc'}"
        response = await self._request("GET", table, params=params)
        body = _json_body(response)
        if not isinstance(body, list):
            raise FetchError("Malformed response from the data service: expected a list of rows")
        return body

    async def insert(self, table: str, row: Mapping[str, Any]) -> Row:
        response = await self._request("POST", table, json=dict(row), prefer="return=representation")
        body = _json_body(response)
        if isinstance(body, list):
            body = body[0] if body else None
        if not isinstance(body, dict):
            raise FetchError("Insert returned no row")
        return body

    async def update(self, table: str, row_id: str, patch: Mapping[str, Any]) -> None:
        await self._request(
            "PATCH", table, params={"id": f"eq.{row_id}"}, json=dict(patch), prefer="return=minimal"
        )

    async def delete(self, table: str, row_id: str) -> None:
        await self._request("DELETE", table, params={"id": f"eq.{row_id}"}, prefer="return=minimal")


class SupabaseBackend(Backend):
    """Supabase project: GoTrue for identity, PostgREST for data, realtime for changes."""

    name = "supabase"

    def __init__(
        self,
        url: str,
        anon_key: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        connect: Optional[Connect] = None,
    ) -> None:
        self._url = url.rstrip("/")
        self._anon_key = anon_key
        self._http = httpx.AsyncClient(
            base_url=self._url,
            timeout=timeout,
            transport=transport,
            headers={"apikey": anon_key},
        )
        self._connect = connect

    def create_client(self) -> BackendClient:
        identity = SupabaseIdentity(self._http, self._anon_key)
        feed_kwargs = {"connect": self._connect} if self._connect is not None else {}
        return BackendClient(
            identity=identity,
            data=SupabaseData(self._http, identity, self._anon_key),
            feed=SupabaseChangeFeed(
                self._url,
                self._anon_key,
                lambda: identity.access_token,
                **feed_kwargs,
            ),
        )

    async def aclose(self) -> None:
        await self._http.aclose()
