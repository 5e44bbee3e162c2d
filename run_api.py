"""
Script to run the Feedback Hub API server.

This script starts the FastAPI application using uvicorn.
"""

import logging

import uvicorn

from feedback_hub.config import get_settings, print_config_summary
from feedback_hub.logging_config import configure_structured_logging

logger = logging.getLogger(__name__)

if __name__ == "__main__":
    settings = get_settings()
    configure_structured_logging(level=settings.LOG_LEVEL, enable_json=settings.LOG_JSON_FORMAT)
    print_config_summary(settings)

    logger.info(f"Starting Feedback Hub API on {settings.HOST}:{settings.PORT}")
    if settings.ENABLE_DOCS:
        logger.info("API Documentation available at /docs")

    # One process: connection bindings for notifications live in memory
    uvicorn.run(
        "feedback_hub.api.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
        workers=1,
        log_level=settings.LOG_LEVEL.lower(),
    )
