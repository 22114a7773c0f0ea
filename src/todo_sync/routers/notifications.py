from __future__ import annotations

from typing import List

from fastapi import APIRouter, Depends

from ..client import ClientContext
from ..dependencies import get_client
from ..schemas import NotificationOut

router = APIRouter(
    prefix="/api/v1/notifications",
    tags=["notifications"],
)


# PUBLIC_INTERFACE
@router.get(
    "/",
    response_model=List[NotificationOut],
    summary="Drain Notifications",
    description="Return pending transient notifications (oldest first) and clear them.",
)
async def drain_notifications(client: ClientContext = Depends(get_client)) -> List[NotificationOut]:
    return [NotificationOut.from_notification(n) for n in client.notifier.drain()]
