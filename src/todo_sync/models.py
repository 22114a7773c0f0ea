from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional, TypedDict, Union

TASKS_TABLE = "todos"
TEMP_ID_PREFIX = "temp-"
# Tokens this close to expiry are refreshed before use.
EXPIRY_MARGIN_SECONDS = 30.0


# PUBLIC_INTERFACE
class TaskRow(TypedDict):
    """
    A row of the `todos` table as exchanged with the data service.

    Fields:
    - id: Server-assigned identifier (uuid string or integer rendered as string)
    - user_id: Owner of the row; the service only exposes rows owned by the caller
    - task: Task text
    - is_complete: Completion flag
    - created_at: ISO8601 timestamp string or datetime
    """

    id: str
    user_id: str
    task: str
    is_complete: bool
    created_at: Union[str, datetime]


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def parse_timestamp(value: Union[str, datetime, None]) -> Optional[datetime]:
    """
    Normalize a service timestamp into an aware datetime.
    Naive values are assumed to be UTC; a trailing 'Z' is accepted.
    """
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        s = str(value).strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        parsed = datetime.fromisoformat(s)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def new_temp_id() -> str:
    """Identifier for a local-only entry that has not been confirmed by the server."""
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"


def is_temp_id(task_id: str) -> bool:
    return task_id.startswith(TEMP_ID_PREFIX)


# PUBLIC_INTERFACE
@dataclass(frozen=True)
class Session:
    """Authenticated identity and token bound to one client context."""

    user_id: str
    email: str
    access_token: str
    last_sign_in_at: Optional[datetime] = None
    display_name: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return (now or utcnow()) >= self.expires_at

    def expires_soon(self, margin: float = EXPIRY_MARGIN_SECONDS) -> bool:
        return self.is_expired(utcnow() + timedelta(seconds=margin))


# PUBLIC_INTERFACE
@dataclass(frozen=True)
class Task:
    """
    Immutable task entry held in the local view.

    `pending` marks a temporary entry created by an optimistic add; it carries a
    temporary id until the insert settles.
    """

    id: str
    owner_user_id: str
    text: str
    is_complete: bool
    created_at: datetime
    pending: bool = False

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "Task":
        created = parse_timestamp(row.get("created_at")) or utcnow()
        return cls(
            id=str(row["id"]),
            owner_user_id=str(row.get("user_id") or ""),
            text=str(row.get("task") or ""),
            is_complete=bool(row.get("is_complete", False)),
            created_at=created,
        )

    def to_row(self) -> TaskRow:
        return {
            "id": self.id,
            "user_id": self.owner_user_id,
            "task": self.text,
            "is_complete": self.is_complete,
            "created_at": self.created_at.isoformat(),
        }

    def with_complete(self, value: bool) -> "Task":
        return replace(self, is_complete=value)
