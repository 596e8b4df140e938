#!/usr/bin/env python3
"""
Process Entry Point

Usage:
    GENGUARD_GENERATOR=mypackage.images:generate python -m genguard worker
    GENGUARD_GENERATOR=mypackage.images:generate python -m genguard api

``worker`` runs the poll loop until SIGINT/SIGTERM, then drains in-flight jobs.
``api`` serves the status/operator API with uvicorn.
"""

import argparse
import asyncio
import signal
import sys

from genguard.bootstrap import create_services, load_generator
from genguard.core.config.settings import get_settings
from genguard.core.exceptions.base import GenGuardError
from genguard.core.logging.logger import get_logger, setup_logging

logger = get_logger(__name__)


async def run_worker() -> None:
    settings = get_settings()
    generate = load_generator(settings.app.GENGUARD_GENERATOR or "")
    services = await create_services(generate, settings)

    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_requested.set)

    await services.start()
    logger.info("Worker process running", worker_id=services.worker.config.worker_id)
    try:
        await stop_requested.wait()
        logger.info("Shutdown signal received")
    finally:
        await services.stop()


def run_api() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "genguard.application.app:create_app",
        factory=True,
        host=settings.app.API_HOST,
        port=settings.app.API_PORT,
        log_level=settings.logging.LOG_LEVEL.lower(),
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="genguard", description="Generation queue service")
    parser.add_argument("command", choices=["worker", "api"])
    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(log_level=settings.logging.LOG_LEVEL, log_format=settings.logging.LOG_FORMAT)

    try:
        if args.command == "worker":
            asyncio.run(run_worker())
        else:
            run_api()
    except GenGuardError as e:
        logger.error("Startup failed", error=e.message, error_type=type(e).__name__, **e.details)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
