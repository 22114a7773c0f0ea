from __future__ import annotations

from fastapi import Depends, HTTPException, Request, Response, status

from .client import ClientContext, ClientRegistry
from .coordinator import OptimisticMutationCoordinator
from .logging import bind_context
from .view_state import TaskListView


def get_registry(request: Request) -> ClientRegistry:
    return request.app.state.registry


# PUBLIC_INTERFACE
async def get_client(
    request: Request,
    response: Response,
    registry: ClientRegistry = Depends(get_registry),
) -> ClientContext:
    """
    Resolve the client context from its cookie, creating one (and setting the
    cookie) on the first request of a browser.
    """
    cookie_name = request.app.state.settings.client_cookie_name
    context, created = await registry.get_or_create(request.cookies.get(cookie_name))
    if created:
        response.set_cookie(cookie_name, context.client_id, httponly=True, samesite="lax")
    bind_context(client_id=context.client_id)
    return context


# PUBLIC_INTERFACE
def require_view(client: ClientContext = Depends(get_client)) -> TaskListView:
    """The signed-in user's task view; 401 when no one is signed in."""
    if client.view is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return client.view


def require_coordinator(
    client: ClientContext = Depends(get_client),
    view: TaskListView = Depends(require_view),
) -> OptimisticMutationCoordinator:
    if client.coordinator is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authenticated")
    return client.coordinator
