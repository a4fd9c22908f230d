"""
Process-wide runtime: builds every component, wires the dirty and rule-change
callbacks between them and runs the background loops.

Loops (one thread each):
    sync: the outbound sync coordinator
    pricing: ledger archival, hold expiry and a dynamic pricing run per hotel
    inbound: hold expiry and reservation polling of every connected channel
"""

from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, Optional

import structlog
from sqlalchemy.engine import Engine

from channel_core.adaptors.registry import AdaptorRegistry
from channel_core.config import Settings
from channel_core.credentials import CredentialCipher
from channel_core.db.readers.hotels import list_active_hotel_ids
from channel_core.pollers.reservations import poll_all_channels
from channel_core.schemas.pricing import PricingMode
from channel_core.services.audit import AuditTrail
from channel_core.services.bookings import BookingService
from channel_core.services.channels import ChannelRegistry
from channel_core.services.inbound import InboundReservationHandler
from channel_core.services.ledger import PRIORITY_NORMAL, AvailabilityLedger
from channel_core.services.pricing import DynamicPricingController
from channel_core.services.rules import RuleEngine
from channel_core.services.sync_engine import SyncCoordinator
from channel_core.utils.datetime import utc_now

logger = structlog.get_logger(__name__)


class CoreRuntime:
    """
    Owns the component graph of one process.

    Args:
        engine: SQLAlchemy engine shared by every component
        settings: Runtime tunables
        adaptors: Adaptor registry; the default Booking.com and Expedia set when None
        cipher: Credential cipher; built from CREDENTIALS_KEY on first use when None
    """

    def __init__(
        self,
        engine: Engine,
        settings: Settings = Settings(),
        adaptors: Optional[AdaptorRegistry] = None,
        cipher: Optional[CredentialCipher] = None,
    ):
        self.engine = engine
        self.settings = settings

        self.audit = AuditTrail(engine)
        self.rules = RuleEngine(engine, self.audit)
        self.ledger = AvailabilityLedger(engine, self.rules, self.audit, settings)
        self.bookings = BookingService(engine, self.ledger, self.audit, settings)
        self.channels = ChannelRegistry(engine, adaptors=adaptors, cipher=cipher, audit_trail=self.audit)
        self.coordinator = SyncCoordinator(
            engine, self.ledger, self.channels, self.bookings, self.audit, settings
        )
        self.inbound = InboundReservationHandler(engine, self.ledger, self.bookings, self.audit)
        self.pricing = DynamicPricingController(engine, self.ledger, settings=settings)

        # Rule changes flag rows dirty; dirty rows and booking effects queue pushes
        self.rules.on_change = self.ledger.mark_dirty_range
        self.ledger.on_dirty = self.coordinator.enqueue
        self.bookings.on_sync = self.coordinator.enqueue
        self.channels.on_mappings_changed = self._on_mappings_changed

        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []
        self._lock = threading.Lock()

    def _on_mappings_changed(self, hotel_id: str) -> None:
        self.coordinator.enqueue_hotel(hotel_id, PRIORITY_NORMAL)
        self.coordinator.trigger()

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def start(self) -> None:
        """Start the background loops. Calling it on a running runtime is a no-op."""
        with self._lock:
            if self.running:
                return
            self._stop.clear()
            loops: list[tuple[str, Callable[[], None]]] = [
                ("sync", lambda: self.coordinator.run_forever(self._stop)),
                ("pricing", self._pricing_loop),
                ("inbound", self._inbound_loop),
            ]
            self._threads = [
                threading.Thread(target=target, name=f"channel-core-{name}", daemon=True)
                for name, target in loops
            ]
            for thread in self._threads:
                thread.start()
        logger.info("runtime_started", loops=[t.name for t in self._threads])

    def stop(self, timeout: Optional[float] = None) -> None:
        """
        Signal every loop to stop and wait for them. A sync tick in progress
        finishes its groups before the coordinator exits.
        """
        with self._lock:
            self._stop.set()
            self.coordinator.shutdown()
            for thread in self._threads:
                thread.join(timeout=timeout)
            stuck = [t.name for t in self._threads if t.is_alive()]
            self._threads = []
        if stuck:
            logger.warning("runtime_stop_timed_out", loops=stuck)
        logger.info("runtime_stopped")

    def wait(self) -> None:
        """Block until ``stop`` is called from another thread or a signal handler."""
        self._stop.wait()

    # -------------------------------------------------------------------------
    # Passes (also callable directly from scripts and tests)
    # -------------------------------------------------------------------------

    def run_pricing_pass(self, now: Optional[datetime] = None, mode: PricingMode = PricingMode.AUTO) -> int:
        """
        Archive past ledger rows, expire holds and price every active hotel.

        Returns:
            int: Rates applied across all hotels
        """
        now = now or utc_now()
        self.bookings.expire_holds(now)
        applied = 0
        for hotel_id in self._hotel_ids():
            try:
                self.ledger.archive_before(hotel_id, now.date())
                applied += self.pricing.run(hotel_id, mode, now).applied
            except Exception as e:
                logger.exception("pricing_pass_failed", hotel_id=hotel_id, error=str(e))
        return applied

    def run_inbound_pass(self, now: Optional[datetime] = None) -> int:
        """
        Expire holds and poll every connected channel that is due.

        Returns:
            int: Reservation messages handled
        """
        now = now or utc_now()
        self.bookings.expire_holds(now)
        return poll_all_channels(self.engine, self.channels, self.inbound, now)

    def request_hotel_sync(self, hotel_id: str) -> int:
        """Queue every room type of a hotel at high priority and wake the coordinator."""
        queued = self.coordinator.enqueue_hotel(hotel_id)
        self.coordinator.trigger()
        return queued

    # -------------------------------------------------------------------------
    # Loops
    # -------------------------------------------------------------------------

    def _pricing_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_pricing_pass()
            except Exception as e:
                logger.exception("pricing_loop_failed", error=str(e))
            self._stop.wait(timeout=self.settings.pricing_tick_seconds)

    def _inbound_loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_inbound_pass()
            except Exception as e:
                logger.exception("inbound_loop_failed", error=str(e))
            self._stop.wait(timeout=self.settings.inbound_poll_seconds)

    def _hotel_ids(self) -> list[str]:
        with self.engine.connect() as conn:
            return list_active_hotel_ids(conn)
