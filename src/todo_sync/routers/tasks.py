from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from ..client import ClientContext
from ..coordinator import MutationOutcome, OptimisticMutationCoordinator, outcome_of
from ..dependencies import get_client, require_coordinator, require_view
from ..logging import get_logger
from ..schemas import InputUpdate, MutationOut, TaskCreate, ViewOut
from ..view_state import TaskListView

logger = get_logger(__name__)

# Close code sent on the live socket when no one is (or no longer) signed in.
WS_NOT_AUTHENTICATED = 4401

router = APIRouter(
    prefix="/api/v1/tasks",
    tags=["tasks"],
)

_WAIT = Query(False, description="Wait for the remote call to settle before responding")


async def _mutation_result(
    pending: "asyncio.Future[MutationOutcome]", view: TaskListView, wait: bool
) -> MutationOut:
    if wait:
        # Shielded so an aborted request does not cancel the remote call.
        await asyncio.shield(pending)
    return MutationOut(outcome=outcome_of(pending), view=ViewOut.from_view(view))


# PUBLIC_INTERFACE
@router.get(
    "/",
    response_model=ViewOut,
    summary="Task View",
    description="Current local view: tasks newest first, the draft input, and the loading flag.",
    responses={401: {"description": "Not authenticated"}},
)
async def get_view(view: TaskListView = Depends(require_view)) -> ViewOut:
    return ViewOut.from_view(view)


# PUBLIC_INTERFACE
@router.post(
    "/",
    response_model=MutationOut,
    summary="Add Task",
    description=(
        "Add a task optimistically. The temporary entry is in the returned view at once; "
        "with wait=true the response carries the final outcome. Blank text is ignored."
    ),
    responses={401: {"description": "Not authenticated"}},
)
async def add_task(
    payload: TaskCreate,
    wait: bool = _WAIT,
    view: TaskListView = Depends(require_view),
    coordinator: OptimisticMutationCoordinator = Depends(require_coordinator),
) -> MutationOut:
    pending = coordinator.add(payload.text)
    return await _mutation_result(pending, view, wait)


# PUBLIC_INTERFACE
@router.post(
    "/{task_id}/toggle",
    response_model=MutationOut,
    summary="Toggle Task",
    description="Flip the completion flag optimistically; it flips back if the update fails.",
    responses={401: {"description": "Not authenticated"}},
)
async def toggle_task(
    task_id: str,
    wait: bool = _WAIT,
    view: TaskListView = Depends(require_view),
    coordinator: OptimisticMutationCoordinator = Depends(require_coordinator),
) -> MutationOut:
    pending = coordinator.toggle(task_id)
    return await _mutation_result(pending, view, wait)


# PUBLIC_INTERFACE
@router.delete(
    "/{task_id}",
    response_model=MutationOut,
    summary="Delete Task",
    description="Delete a task. The entry leaves the view once the service confirms.",
    responses={401: {"description": "Not authenticated"}},
)
async def delete_task(
    task_id: str,
    wait: bool = _WAIT,
    view: TaskListView = Depends(require_view),
    coordinator: OptimisticMutationCoordinator = Depends(require_coordinator),
) -> MutationOut:
    pending = coordinator.delete(task_id)
    return await _mutation_result(pending, view, wait)


# PUBLIC_INTERFACE
@router.post(
    "/reload",
    response_model=ViewOut,
    summary="Reload Tasks",
    description="Fetch the task collection again and merge it into the view.",
    responses={401: {"description": "Not authenticated"}},
)
async def reload_tasks(
    view: TaskListView = Depends(require_view),
    client: ClientContext = Depends(get_client),
) -> ViewOut:
    await client.reload()
    return ViewOut.from_view(view)


# PUBLIC_INTERFACE
@router.put(
    "/input",
    response_model=ViewOut,
    summary="Update Draft",
    description="Store the draft text of the new-task field.",
    responses={401: {"description": "Not authenticated"}},
)
async def update_input(payload: InputUpdate, view: TaskListView = Depends(require_view)) -> ViewOut:
    view.set_input(payload.text)
    return ViewOut.from_view(view)


async def _wait_for_disconnect(websocket: WebSocket) -> None:
    while True:
        message = await websocket.receive()
        if message["type"] == "websocket.disconnect":
            return


# PUBLIC_INTERFACE
@router.websocket("/live")
async def live_view(websocket: WebSocket) -> None:
    """
    Push the view on connect and after every change. The socket is closed with
    code 4401 when the client is not signed in, or as soon as it signs out.
    """
    settings = websocket.app.state.settings
    client: Optional[ClientContext] = websocket.app.state.registry.get(
        websocket.cookies.get(settings.client_cookie_name)
    )
    view = client.view if client is not None else None
    if view is None:
        await websocket.close(code=WS_NOT_AUTHENTICATED)
        return

    await websocket.accept()
    client.live_connections += 1
    changes: "asyncio.Queue[Optional[int]]" = asyncio.Queue()
    remove_listener = view.add_listener(changes.put_nowait)
    disconnect = asyncio.ensure_future(_wait_for_disconnect(websocket))
    try:
        await websocket.send_json(ViewOut.from_view(view).model_dump(mode="json"))
        while True:
            getter = asyncio.ensure_future(changes.get())
            done, _ = await asyncio.wait({getter, disconnect}, return_when=asyncio.FIRST_COMPLETED)
            if getter not in done:
                getter.cancel()
                return
            version = getter.result()
            while version is not None and not changes.empty():
                version = changes.get_nowait()
            if version is None:
                await websocket.close(code=WS_NOT_AUTHENTICATED)
                return
            await websocket.send_json(ViewOut.from_view(view).model_dump(mode="json"))
    except WebSocketDisconnect:
        logger.debug("live_view_disconnected", client_id=client.client_id)
    finally:
        remove_listener()
        disconnect.cancel()
        client.live_connections -= 1
        websocket.app.state.registry.touch(client)
