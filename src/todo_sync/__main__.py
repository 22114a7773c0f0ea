"""
Run the service with uvicorn.

Usage:
    python -m todo_sync
"""

import uvicorn

from .logging import configure_logging, get_logger
from .main import create_app
from .settings import get_settings

logger = get_logger(__name__)


# PUBLIC_INTERFACE
def main() -> None:
    """Serve the app on HOST:PORT from the environment."""
    settings = get_settings()
    configure_logging(settings)
    logger.info("server_starting", host=settings.host, port=settings.port, backend=settings.backend)
    config = uvicorn.Config(
        create_app(settings),
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
        log_config=None,  # keep the structlog configuration
    )
    uvicorn.Server(config).run()


if __name__ == "__main__":
    main()
