import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import argparse

import structlog

from channel_core.db.engine import engine
from channel_core.logging_config import setup_logging
from channel_core.runtime import CoreRuntime

setup_logging()
logger = structlog.get_logger(__name__)


def main() -> None:
    """
    Push every room type of one hotel to all of its connected channels, once.

    Usage:
        python scripts/sync_one_hotel.py HOTEL_ID
    """
    parser = argparse.ArgumentParser(description="Run one full outbound sync for a hotel")
    parser.add_argument("hotel_id")
    args = parser.parse_args()

    runtime = CoreRuntime(engine)
    logger.info("hotel_sync_started", hotel_id=args.hotel_id)

    try:
        queued = runtime.coordinator.enqueue_hotel(args.hotel_id)
        if queued == 0:
            logger.warning("hotel_has_no_room_types", hotel_id=args.hotel_id)
            return
        report = runtime.coordinator.tick()
        logger.info(
            "hotel_sync_completed",
            hotel_id=args.hotel_id,
            pushes_ok=report.pushes_ok,
            pushes_failed=report.pushes_failed,
            dead_lettered=report.dead_lettered,
        )
    except Exception:
        logger.exception("hotel_sync_failed", hotel_id=args.hotel_id)
        raise


if __name__ == "__main__":
    main()
