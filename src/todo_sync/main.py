from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .client import ClientRegistry
from .errors import AuthError, FetchError, TodoSyncError
from .logging import configure_logging, get_logger
from .routers import auth as auth_router
from .routers import notifications as notifications_router
from .routers import tasks as tasks_router
from .services import Backend, get_backend
from .settings import Settings, get_settings

logger = get_logger(__name__)

openapi_tags = [
    {"name": "health", "description": "Service health and status endpoints."},
    {"name": "auth", "description": "Sign-up, sign-in, sign-out and session state of this client."},
    {
        "name": "tasks",
        "description": "The signed-in user's task list with optimistic add/toggle/delete and a live view.",
    },
    {"name": "notifications", "description": "Transient user-visible notifications."},
]


def _error_response(status_code: int, exc: TodoSyncError) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": exc.kind, "message": exc.message, "detail": exc.status},
    )


# PUBLIC_INTERFACE
def create_app(settings: Optional[Settings] = None, backend: Optional[Backend] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        settings: Settings to use; read from the environment when omitted.
        backend: Managed backend to use; built from settings when omitted.
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings)
        active_backend = backend or get_backend(settings)
        app.state.backend = active_backend
        app.state.registry = ClientRegistry(
            active_backend,
            retry_delay=settings.subscription_retry_seconds,
            idle_timeout=settings.client_idle_seconds,
        )
        logger.info("app_starting", backend=active_backend.name)
        try:
            yield
        finally:
            await app.state.registry.close_all()
            await active_backend.aclose()
            logger.info("app_stopped")

    app = FastAPI(
        title="Todo Sync",
        description="Personal task list with optimistic updates synced through a managed backend.",
        version="0.1.0",
        openapi_tags=openapi_tags,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Configure CORS based on settings (.env -> CORS_ALLOW_ORIGINS), with '*' fallback
    allow_all = (settings.cors_allow_origins == ["*"]) or (len(settings.cors_allow_origins) == 0)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if allow_all else settings.cors_allow_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        """
        Return a consistent JSON structure for request validation errors.

        Response format:
            {
                "error": "ValidationError",
                "detail": [... pydantic/fastapi error details ...],
                "message": "Request validation failed"
            }
        """
        return JSONResponse(
            status_code=422,
            content={
                "error": "ValidationError",
                "message": "Request validation failed",
                "detail": jsonable_encoder(exc.errors()),
            },
        )

    @app.exception_handler(AuthError)
    async def auth_exception_handler(request: Request, exc: AuthError) -> JSONResponse:
        return _error_response(401, exc)

    @app.exception_handler(FetchError)
    async def fetch_exception_handler(request: Request, exc: FetchError) -> JSONResponse:
        return _error_response(502, exc)

    # PUBLIC_INTERFACE
    @app.get("/", summary="Health Check", tags=["health"])
    def health_check():
        """
        Health check endpoint.

        Returns:
            A JSON object indicating service health and the active backend.
        """
        active = getattr(app.state, "backend", None)
        return {"message": "Healthy", "backend": active.name if active is not None else settings.backend}

    app.include_router(auth_router.router)
    app.include_router(tasks_router.router)
    app.include_router(notifications_router.router)
    return app


app = create_app()
