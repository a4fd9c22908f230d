import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import structlog

from channel_core.db.engine import engine
from channel_core.logging_config import setup_logging
from channel_core.runtime import CoreRuntime

setup_logging()
logger = structlog.get_logger(__name__)


def main() -> None:
    """Cancel pending bookings whose hold has expired and release their rooms (cron entry point)."""
    runtime = CoreRuntime(engine)
    cancelled = runtime.bookings.expire_holds()
    logger.info("expire_holds_completed", cancelled=cancelled)


if __name__ == "__main__":
    main()
