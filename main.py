#!/usr/bin/env python3
"""Unified entry point for the Reminder Notification Service.

Runs the FastAPI app with uvicorn. The reminder engine and both scheduler
loops live inside the API process (see api_server.lifespan), so the call
status webhook, the WebSocket push channel and the loops share one engine.
uvicorn handles SIGINT/SIGTERM and runs the lifespan shutdown.
"""

import sys

import uvicorn

from config import settings
from logger_config import setup_logger

logger = setup_logger(__name__, 'service.log')


def main():
    """Main entry point - start the API with the reminder engine attached."""
    logger.info("=" * 60)
    logger.info("Reminder Notification Service - Unified Startup")
    logger.info("=" * 60)
    logger.info(f"  - API Server: http://{settings.API_HOST}:{settings.API_PORT}")
    logger.info(f"  - API Docs: {settings.BASE_URL.rstrip('/')}/docs")
    logger.info(f"  - Call status webhook: {settings.BASE_URL.rstrip('/')}/api/webhooks/twilio/call-status")
    logger.info(f"  - Reminder loops: {'enabled' if settings.WORKER_ENABLED else 'disabled'}")
    logger.info("=" * 60)

    try:
        uvicorn.run(
            "api_server:app",
            host=settings.API_HOST,
            port=settings.API_PORT,
            log_level="info"
        )
    except KeyboardInterrupt:
        logger.info("Received keyboard interrupt")
    except Exception as e:
        logger.error(f"Error starting service: {e}", exc_info=True)
        sys.exit(1)

    logger.info("Service stopped")


if __name__ == "__main__":
    main()
