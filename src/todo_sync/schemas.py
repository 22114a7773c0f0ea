from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .coordinator import MutationOutcome
from .models import Session, Task
from .notifications import Notification, NotificationLevel
from .view_state import TaskListView

MIN_PASSWORD_LENGTH = 6


# PUBLIC_INTERFACE
class Credentials(BaseModel):
    """
    Email/password pair submitted by the authentication form.
    """

    model_config = ConfigDict(
        json_schema_extra={"example": {"email": "user@example.com", "password": "secret123"}}
    )

    email: str = Field(..., description="Account email address", max_length=320)
    password: str = Field(..., description="Account password (at least 6 characters)")

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: str) -> str:
        """
        Trim and require a plausible address: one '@' with a dotted domain.
        """
        s = v.strip()
        local, sep, domain = s.partition("@")
        if not sep or not local or "." not in domain or domain.startswith(".") or domain.endswith("."):
            raise ValueError("Enter a valid email address")
        return s

    @field_validator("password")
    @classmethod
    def validate_password(cls, v: str) -> str:
        if len(v) < MIN_PASSWORD_LENGTH:
            raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters")
        return v


# PUBLIC_INTERFACE
class TaskCreate(BaseModel):
    """
    Schema for adding a task. Blank text is accepted here and ignored by the
    coordinator, so a stray submit of an empty field is a no-op.
    """

    model_config = ConfigDict(json_schema_extra={"example": {"text": "Buy milk"}})

    text: str = Field(..., description="Task text", max_length=500)


class InputUpdate(BaseModel):
    text: str = Field(..., description="Draft text of the new-task field", max_length=500)


# PUBLIC_INTERFACE
class SessionOut(BaseModel):
    """Public view of a session; tokens are never exposed."""

    user_id: str
    email: str
    display_name: Optional[str] = None
    last_sign_in_at: Optional[datetime] = None

    @classmethod
    def from_session(cls, session: Session) -> "SessionOut":
        return cls(
            user_id=session.user_id,
            email=session.email,
            display_name=session.display_name,
            last_sign_in_at=session.last_sign_in_at,
        )


class SessionState(BaseModel):
    authenticated: bool = Field(..., description="Whether this client has an active session")
    session: Optional[SessionOut] = None

    @classmethod
    def from_session(cls, session: Optional[Session]) -> "SessionState":
        if session is None:
            return cls(authenticated=False)
        return cls(authenticated=True, session=SessionOut.from_session(session))


# PUBLIC_INTERFACE
class TaskOut(BaseModel):
    """
    Schema returned by the API for a task in the local view.
    """

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "id": "9f1c0b7e-4a8e-4c55-9b1e-0d6f1f3f8a21",
                "text": "Buy milk",
                "is_complete": False,
                "created_at": "2025-01-25T10:15:30.123456+00:00",
                "pending": False,
            }
        }
    )

    id: str = Field(..., description="Task id; temporary ids start with 'temp-'")
    text: str = Field(..., description="Task text")
    is_complete: bool = Field(..., description="Completion status flag")
    created_at: datetime = Field(..., description="Creation timestamp")
    pending: bool = Field(default=False, description="True while an optimistic add awaits the server")

    @classmethod
    def from_task(cls, task: Task) -> "TaskOut":
        return cls(
            id=task.id,
            text=task.text,
            is_complete=task.is_complete,
            created_at=task.created_at,
            pending=task.pending,
        )


# PUBLIC_INTERFACE
class ViewOut(BaseModel):
    """Snapshot of the local view state."""

    tasks: List[TaskOut] = Field(..., description="Tasks, newest first")
    input: str = Field(..., description="Current draft of the new-task field")
    loading: bool = Field(..., description="True while the initial load is running")
    version: int = Field(..., description="Increases on every change of the view")

    @classmethod
    def from_view(cls, view: TaskListView) -> "ViewOut":
        return cls(
            tasks=[TaskOut.from_task(t) for t in view.tasks],
            input=view.input_text,
            loading=view.loading,
            version=view.version,
        )


class MutationOut(BaseModel):
    outcome: Optional[MutationOutcome] = Field(
        default=None, description="confirmed, rolled_back or rejected; null while still pending"
    )
    view: ViewOut


class NotificationOut(BaseModel):
    id: int
    level: NotificationLevel
    message: str
    created_at: datetime

    @classmethod
    def from_notification(cls, item: Notification) -> "NotificationOut":
        return cls(id=item.id, level=item.level, message=item.message, created_at=item.created_at)
