from __future__ import annotations

import itertools
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Deque, List

from .logging import get_logger
from .models import utcnow

logger = get_logger(__name__)


class NotificationLevel(str, Enum):
    SUCCESS = "success"
    ERROR = "error"
    INFO = "info"


@dataclass(frozen=True)
class Notification:
    id: int
    level: NotificationLevel
    message: str
    created_at: datetime = field(default_factory=utcnow)


class Notifier:
    """
    Transient, user-visible notifications (toasts) for one client context.
    Old entries fall off once `max_items` is reached.
    """

    def __init__(self, max_items: int = 50) -> None:
        self._items: Deque[Notification] = deque(maxlen=max_items)
        self._ids = itertools.count(1)

    def notify(self, level: NotificationLevel, message: str) -> Notification:
        item = Notification(id=next(self._ids), level=level, message=message)
        self._items.append(item)
        logger.debug("notification", level=level.value, message=message)
        return item

    def success(self, message: str) -> Notification:
        return self.notify(NotificationLevel.SUCCESS, message)

    def error(self, message: str) -> Notification:
        return self.notify(NotificationLevel.ERROR, message)

    def info(self, message: str) -> Notification:
        return self.notify(NotificationLevel.INFO, message)

    def recent(self) -> List[Notification]:
        return list(self._items)

    def drain(self) -> List[Notification]:
        items = list(self._items)
        self._items.clear()
        return items
