import time
import logging
import signal
import argparse

from tenacity import retry, stop_after_attempt, wait_fixed
from core.config_loader import load_config, AppConfig
from database.database import init_database
from database.preferences import SqlPreferenceSource
from database.store import SqlAlchemyNotificationStore
from notification.service import NotificationEngine

logger = logging.getLogger(__name__)

# Global flag for graceful shutdown
running = True

def signal_handler(sig, frame):
    global running
    logger.info("Shutdown signal received")
    running = False


@retry(stop=stop_after_attempt(5), wait=wait_fixed(3), reraise=True)
def connect_database(config: AppConfig) -> None:
    """Wait for the database to come up (containers start in any order)."""
    init_database(config.database.url, echo=config.database.echo)


def build_engine(config: AppConfig) -> NotificationEngine:
    if not config.database.url:
        logger.warning("No database configured. Notifications are kept in memory and lost on exit.")
        return NotificationEngine.from_config(config)

    connect_database(config)
    return NotificationEngine.from_config(
        config,
        store=SqlAlchemyNotificationStore(),
        preference_source=SqlPreferenceSource(),
    )


def main():
    parser = argparse.ArgumentParser(description="Notification Engine")
    parser.add_argument('--config', type=str, default='config.yaml', help='Path to config.yaml')
    parser.add_argument('--verbose', action='store_true')
    args = parser.parse_args()

    config = load_config(args.config)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else getattr(logging, config.logging.level),
        format=config.logging.format
    )

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    engine = build_engine(config)
    engine.start()
    engine.recover()

    interval = config.engine.reconcile_interval_seconds
    logger.info(f"Notification engine running ({engine.mode}). Reconciling every {interval:.0f}s")

    last_reconcile = time.time()
    while running:
        # Sleep in short chunks to allow responsive shutdown
        time.sleep(1)
        if time.time() - last_reconcile < interval:
            continue
        last_reconcile = time.time()
        try:
            engine.reconcile()
        except Exception as e:
            logger.error(f"Error in reconcile sweep: {e}", exc_info=True)

    engine.stop()
    logger.info("Notification engine exited")


if __name__ == "__main__":
    main()
