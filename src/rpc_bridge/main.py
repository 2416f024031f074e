"""Main entry point for the stdio JSON-RPC bridge."""

import sys

import uvicorn
from structlog import get_logger

from .config import get_settings
from .logging_config import setup_logging
from .server import create_bridge_app

logger = get_logger(__name__)


def main():
    """Main entry point."""
    settings = get_settings()
    setup_logging(level=settings.log_level, log_file=settings.log_file)

    try:
        config = settings.to_bridge_config()

        logger.info("Starting RPC bridge", **settings.get_runtime_info())

        app = create_bridge_app(config, settings=settings)

        uvicorn_config = uvicorn.Config(
            app,
            host=settings.host,
            port=settings.port,
            log_level=settings.log_level.lower(),
            access_log=settings.log_requests,
            log_config=None,
        )

        # uvicorn handles SIGINT/SIGTERM and runs the lifespan shutdown,
        # which stops every child process
        server = uvicorn.Server(uvicorn_config)
        server.run()

    except KeyboardInterrupt:
        logger.info("Bridge server interrupted by user")
    except Exception as e:
        logger.error("Bridge server failed to start", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
