#!/usr/bin/env python3
"""
Queue worker for the notification engine.

Drains the priority queues and delivers each job through its channel.

Usage:
    python -m notification.worker
    python -m notification.worker --burst
    python -m notification.worker --queues high normal --verbose
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from core.app_context import AppContext
from core.config_loader import load_config
from notification.exceptions import InfrastructureError, NotificationException
from notification.models import NotificationPriority
from notification.service import NotificationService

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

ANALYTICS_CLEANUP_INTERVAL_SECONDS = 24 * 3600


async def cleanup_analytics(service: NotificationService) -> None:
    try:
        await service.cleanup_analytics()
    except (NotificationException, SQLAlchemyError) as e:
        logger.error(f"Analytics cleanup failed: {e}")


async def _cleanup_periodically(service: NotificationService, interval: float) -> None:
    while True:
        await cleanup_analytics(service)
        await asyncio.sleep(interval)


async def run_worker(config_path: str, queues: Optional[List[str]] = None, burst: bool = False) -> None:
    """Build the application context and run a dispatcher until stopped."""
    config = load_config(config_path)
    priorities = [NotificationPriority(name) for name in queues] if queues else None

    context = await AppContext.create(config)
    service = context.notification_service
    dispatcher = service.create_dispatcher(priorities)

    logger.info("Starting notification worker")
    logger.info(f"Queues: {', '.join(p.value for p in dispatcher.priorities)}")
    logger.info(f"Channels: {', '.join(service.channels) or 'none'}")
    logger.info(f"Burst mode: {burst}")
    if config.notifications.sandbox:
        logger.info("Sandbox mode: no provider will be contacted")

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, lambda: asyncio.ensure_future(dispatcher.stop()))
        except NotImplementedError:
            pass  # Windows

    cleanup_task = None
    try:
        if burst:
            logger.info("Running in burst mode...")
            await cleanup_analytics(service)
        else:
            logger.info("Worker started. Press Ctrl+C to stop.")
            cleanup_task = asyncio.create_task(
                _cleanup_periodically(service, ANALYTICS_CLEANUP_INTERVAL_SECONDS)
            )
        await dispatcher.run(burst=burst)
    finally:
        if cleanup_task is not None:
            cleanup_task.cancel()
        await context.close()
        logger.info("Worker stopped")


def main():
    parser = argparse.ArgumentParser(description='Notification Worker')
    parser.add_argument('--config', default='config.yaml', help='Path to config.yaml')
    parser.add_argument('--burst', action='store_true', help='Process all and exit')
    parser.add_argument(
        '--queues', nargs='+',
        choices=[p.value for p in NotificationPriority],
        help='Priorities to serve (default: all)'
    )
    parser.add_argument('--verbose', action='store_true')

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    try:
        asyncio.run(run_worker(args.config, queues=args.queues, burst=args.burst))
    except KeyboardInterrupt:
        logger.info("\nWorker stopped")
    except InfrastructureError as e:
        logger.error(f"Error: {e}")
        sys.exit(1)


if __name__ == '__main__':
    main()
