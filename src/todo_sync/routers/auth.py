from __future__ import annotations

from fastapi import APIRouter, Depends, status

from ..client import ClientContext
from ..dependencies import get_client
from ..schemas import Credentials, SessionOut, SessionState

router = APIRouter(
    prefix="/api/v1/auth",
    tags=["auth"],
)


# PUBLIC_INTERFACE
@router.post(
    "/sign-up",
    status_code=status.HTTP_201_CREATED,
    summary="Sign Up",
    description="Register a new account. The user signs in separately afterwards.",
    responses={
        201: {"description": "Account created"},
        401: {"description": "Registration rejected by the identity service"},
    },
)
async def sign_up(payload: Credentials, client: ClientContext = Depends(get_client)) -> dict:
    """
    Create an account with email and password.
    """
    with client.reporting():
        await client.session_store.sign_up(payload.email, payload.password)
    client.notifier.success("Registration successful. Check your inbox to confirm your email.")
    return {"message": "Registered"}


# PUBLIC_INTERFACE
@router.post(
    "/sign-in",
    response_model=SessionOut,
    summary="Sign In",
    description="Sign in with email and password; mounts the task view for this client.",
    responses={
        200: {"description": "Signed in"},
        401: {"description": "Invalid credentials"},
    },
)
async def sign_in(payload: Credentials, client: ClientContext = Depends(get_client)) -> SessionOut:
    """
    Sign in and wait for the initial task load so the first list request is complete.
    """
    with client.reporting():
        session = await client.session_store.sign_in(payload.email, payload.password)
    client.notifier.success("Signed in.")
    await client.settle()
    return SessionOut.from_session(session)


# PUBLIC_INTERFACE
@router.post(
    "/sign-out",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Sign Out",
    description="Clear the session. Task routes answer 401 from this point on.",
)
async def sign_out(client: ClientContext = Depends(get_client)) -> None:
    """
    Sign out of the current session.
    """
    with client.reporting():
        await client.session_store.sign_out()
    client.notifier.success("Signed out.")
    return None


# PUBLIC_INTERFACE
@router.get(
    "/session",
    response_model=SessionState,
    summary="Current Session",
    description="Return the cached session of this client without contacting the identity service.",
)
async def get_session(client: ClientContext = Depends(get_client)) -> SessionState:
    return SessionState.from_session(client.session_store.get_current_session())


# PUBLIC_INTERFACE
@router.post(
    "/session/refresh",
    response_model=SessionState,
    summary="Refresh Session",
    description="Re-validate the persisted session with the identity service.",
    responses={401: {"description": "Identity service unreachable"}},
)
async def refresh_session(client: ClientContext = Depends(get_client)) -> SessionState:
    with client.reporting():
        session = await client.session_store.refresh_session()
    await client.settle()
    return SessionState.from_session(session)
