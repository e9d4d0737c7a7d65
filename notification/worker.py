#!/usr/bin/env python3
"""
RQ Worker for the notification delivery pools.

Each channel has its own queue ("notifications:<channel>"); a channel's
pool size is the number of worker processes started for its queue.

Usage:
    python -m notification.worker                      # all channels
    python -m notification.worker --channel email      # one channel pool
    python -m notification.worker --burst
    python -m notification.worker --verbose
"""

import sys
import argparse
import logging
from typing import List, Optional

from redis import Redis
from rq import Worker

from notification.models import Channel
from notification.pools import rq_queue_name
from notification.service import get_worker_engine

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

DEFAULT_REDIS_URL = "redis://localhost:6379/0"


def start_worker(burst: bool = False, channels: Optional[List[Channel]] = None):
    """Start the RQ worker for the given channel queues."""
    # Build the engine (store, sinks, templates) before taking jobs
    engine = get_worker_engine()
    redis_url = engine.settings.redis_url or DEFAULT_REDIS_URL

    if not channels:
        channels = list(Channel)
    queues = [rq_queue_name(c) for c in channels]

    logger.info("Starting RQ Worker")
    logger.info(f"Redis URL: {redis_url}")
    logger.info(f"Queues: {', '.join(queues)}")
    logger.info(f"Burst mode: {burst}")

    try:
        redis_conn = Redis.from_url(redis_url)
        redis_conn.ping()
        logger.info("Connected to Redis")

        worker = Worker(queues, connection=redis_conn)

        if burst:
            logger.info("Running in burst mode...")
            worker.work(burst=True)
        else:
            logger.info("Worker started. Press Ctrl+C to stop.")
            worker.work()

    except KeyboardInterrupt:
        logger.info("Worker stopped")
    except Exception as e:
        logger.error(f"Error: {e}")
        sys.exit(1)


def main():
    parser = argparse.ArgumentParser(description='Notification Delivery Worker')
    parser.add_argument('--burst', action='store_true', help='Process all and exit')
    parser.add_argument('--channel', action='append', choices=[c.value for c in Channel],
                        help='Channel queue to consume (repeatable, default: all)')
    parser.add_argument('--verbose', action='store_true')

    args = parser.parse_args()

    if args.verbose:
        logging.getLogger().setLevel(logging.DEBUG)

    channels = [Channel(c) for c in args.channel] if args.channel else None
    start_worker(burst=args.burst, channels=channels)


if __name__ == '__main__':
    main()
