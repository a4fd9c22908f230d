import signal
from types import FrameType
from typing import Optional

import structlog

from channel_core.config import DRY_RUN
from channel_core.db.engine import engine
from channel_core.logging_config import setup_logging
from channel_core.runtime import CoreRuntime

# Setup logging
setup_logging()
logger = structlog.get_logger(__name__)


def main() -> None:
    """Run the sync, pricing and inbound loops in the foreground until SIGINT/SIGTERM."""
    runtime = CoreRuntime(engine)

    if DRY_RUN:
        # One pass of each loop, nothing left running
        runtime.coordinator.rebuild()
        report = runtime.coordinator.tick()
        logger.info("dry_run_completed", groups=report.groups, pushes_ok=report.pushes_ok)
        return

    def _handle_signal(signum: int, frame: Optional[FrameType]) -> None:
        logger.info("shutdown_signal_received", signal=signum)
        runtime.stop(timeout=60)

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    runtime.start()
    runtime.wait()


if __name__ == "__main__":
    main()
