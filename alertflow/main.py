"""
Service entry point.
"""

import logging
import signal
import threading

from dotenv import load_dotenv

load_dotenv()

from alertflow.app import AlertPipeline
from alertflow.config import ConfigValidationError, load_config
from alertflow.database.connection import Database

logger = logging.getLogger(__name__)


def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="Alert evaluation and notification service")
    parser.add_argument(
        "--config", default="config.yaml", help="Path to config file"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Check all rules, process due notifications and exit",
    )
    parser.add_argument("--workers", type=int, help="Number of queue worker threads")

    args = parser.parse_args()

    # Load config
    try:
        config = load_config(args.config)
    except (ConfigValidationError, FileNotFoundError) as e:
        logging.basicConfig(level=logging.ERROR)
        logger.error(f"Invalid configuration: {e}")
        raise SystemExit(1)

    # Setup logging
    log_level = logging.DEBUG if args.debug else getattr(
        logging, config.advanced.log_level.upper(), logging.INFO
    )
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Initialize database
    db = Database(config.database.path)
    db.initialize()

    pipeline = AlertPipeline(config=config, db=db)

    if args.once:
        results = pipeline.run_once()
        triggered = sum(1 for r in results if r.triggered)
        logger.info(f"Checked {len(results)} rules, {triggered} triggered")
        db.close()
        return

    stop_event = threading.Event()

    def _shutdown(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stop_event.set()

    signal.signal(signal.SIGINT, _shutdown)
    signal.signal(signal.SIGTERM, _shutdown)

    pipeline.start(workers=args.workers)
    logger.info("Alert service running")
    try:
        while not stop_event.wait(1.0):
            pass
    finally:
        pipeline.stop()
        db.close()


if __name__ == "__main__":
    main()
