"""
Script to run a standalone worker process.

Workers share the Redis job store with the API process; notifications for
students reach the API's WebSocket connections through the Redis relay.

Usage:
    JOB_STORE_BACKEND=redis NOTIFICATION_BACKEND=redis python run_worker.py
"""

import asyncio
import logging
import signal
from typing import List

from feedback_hub.api.dependencies import build_services
from feedback_hub.config import get_settings, print_config_summary
from feedback_hub.logging_config import configure_structured_logging

logger = logging.getLogger(__name__)


def standalone_warnings(settings) -> List[str]:
    """Backends that cannot reach the API process from a separate worker."""
    warnings = []
    if settings.JOB_STORE_BACKEND.lower() != "redis":
        warnings.append("Standalone worker with a non-redis store sees no jobs from the API process")
    if settings.NOTIFICATION_BACKEND.lower() != "redis":
        warnings.append(
            "Standalone worker with local notifications drops every notify-student "
            "message (no WebSocket connections live in this process)"
        )
    return warnings


async def main() -> None:
    settings = get_settings()
    configure_structured_logging(level=settings.LOG_LEVEL, enable_json=settings.LOG_JSON_FORMAT)
    print_config_summary(settings)

    for warning in standalone_warnings(settings):
        logger.warning(f"⚠️  {warning}")

    services = build_services(settings)
    # The relay forwards to local WebSocket connections; a worker has none.
    services.relay = None

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)

    await services.start(run_workers=True)
    logger.info(f"Worker {services.worker_pool.worker_id} running; press Ctrl+C to stop")

    await stop_event.wait()

    logger.info("Shutdown signal received, finishing in-flight jobs...")
    await services.stop()
    logger.info("Worker stopped")


if __name__ == "__main__":
    asyncio.run(main())
