"""
Outbound sync: pushes dirty ledger ranges to every connected channel.

One coordinator per process. Ledger and booking writes enqueue
(hotel, room type) ranges; each tick snapshots the ready entries, renders
canonical records in the coordinator thread and fans the pushes out to a
bounded worker pool. Store access stays in the coordinator thread.
"""

from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Any, Optional

import structlog
from sqlalchemy.engine import Engine

from channel_core import metrics
from channel_core.adaptors.base import ChannelAdaptor, PushRecord, PushResult
from channel_core.config import SYNC_MAX_WORKERS, Settings
from channel_core.db.readers.availability import get_rows, list_dirty_groups
from channel_core.db.readers.channels import list_retrying_syncs
from channel_core.db.readers.hotels import list_room_types
from channel_core.db.writers.audit import insert_parity_log
from channel_core.db.writers.channels import record_push_attempts
from channel_core.errors import AdaptorError, ChannelCoreError, MappingMissing
from channel_core.schemas.availability import LedgerRow
from channel_core.schemas.channels import ChannelConfig, RoomMapping
from channel_core.services import audit
from channel_core.services.audit import AuditTrail
from channel_core.services.bookings import BookingService
from channel_core.services.channels import ChannelRegistry
from channel_core.services.ledger import PRIORITY_HIGH, PRIORITY_NORMAL, AvailabilityLedger
from channel_core.utils.datetime import ensure_utc, utc_now

logger = structlog.get_logger(__name__)

GroupKey = tuple[str, str]


@dataclass
class QueueEntry:
    """
    Pending sync work for one (hotel, room type).

    ``channels`` narrows a retry to the channels that failed; None means every
    connected channel. ``not_before`` holds the entry back during backoff.
    """

    hotel_id: str
    room_type_id: str
    earliest: date
    latest: date
    enqueued_at: datetime
    priority: str = PRIORITY_NORMAL
    not_before: Optional[datetime] = None
    channels: Optional[set[str]] = None

    @property
    def key(self) -> GroupKey:
        return (self.hotel_id, self.room_type_id)

    def merge(self, other: "QueueEntry") -> None:
        self.earliest = min(self.earliest, other.earliest)
        self.latest = max(self.latest, other.latest)
        self.enqueued_at = min(self.enqueued_at, other.enqueued_at)
        if other.priority == PRIORITY_HIGH:
            self.priority = PRIORITY_HIGH
            self.not_before = None
        elif self.not_before is None or other.not_before is None:
            self.not_before = self.not_before or other.not_before
        else:
            self.not_before = max(self.not_before, other.not_before)
        if self.channels is None or other.channels is None:
            self.channels = None
        else:
            self.channels = self.channels | other.channels


class SyncQueue:
    """
    Coalescing queue keyed by (hotel, room type).

    Repeated enqueues widen the date range of the pending entry. While a group
    is in flight, new work for it is parked and only re-enters the queue when
    the group completes, so pushes for one room type never overlap.
    """

    def __init__(self) -> None:
        self._entries: dict[GroupKey, QueueEntry] = {}
        self._deferred: dict[GroupKey, QueueEntry] = {}
        self._in_flight: set[GroupKey] = set()
        self._lock = threading.Lock()

    def enqueue(self, entry: QueueEntry) -> None:
        with self._lock:
            target = self._deferred if entry.key in self._in_flight else self._entries
            if entry.key in target:
                target[entry.key].merge(entry)
            else:
                target[entry.key] = entry
            metrics.sync_queue_depth.set(len(self._entries))

    def take_ready(self, now: datetime) -> list[QueueEntry]:
        """
        Remove and return entries that are due, high priority first, then by
        enqueue time. Returned groups are marked in flight.
        """
        with self._lock:
            ready = [
                entry
                for entry in self._entries.values()
                if entry.not_before is None or entry.not_before <= now
            ]
            for entry in ready:
                del self._entries[entry.key]
                self._in_flight.add(entry.key)
            metrics.sync_queue_depth.set(len(self._entries))
        ready.sort(key=lambda e: (e.priority != PRIORITY_HIGH, e.enqueued_at))
        return ready

    def complete(self, key: GroupKey) -> None:
        """Release a group; work parked while it was in flight is re-queued."""
        with self._lock:
            self._in_flight.discard(key)
            parked = self._deferred.pop(key, None)
            if parked is not None:
                if key in self._entries:
                    self._entries[key].merge(parked)
                else:
                    self._entries[key] = parked
            metrics.sync_queue_depth.set(len(self._entries))

    def next_due(self) -> Optional[datetime]:
        """Earliest ``not_before`` among waiting entries; None if any is due now or the queue is empty."""
        with self._lock:
            pending = [e.not_before for e in self._entries.values()]
        if not pending or any(nb is None for nb in pending):
            return None
        return min(nb for nb in pending if nb is not None)

    def snapshot(self) -> list[QueueEntry]:
        with self._lock:
            return list(self._entries.values())

    def is_in_flight(self, key: GroupKey) -> bool:
        with self._lock:
            return key in self._in_flight

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


@dataclass
class _PushJob:
    entry: QueueEntry
    channel: ChannelConfig
    adaptor: ChannelAdaptor
    credentials: dict[str, Any]
    records: list[PushRecord]
    rendered: dict[date, int]
    rows: list[LedgerRow]
    result: Optional[PushResult] = None


@dataclass
class SyncReport:
    """Counts of one coordinator tick."""

    groups: int = 0
    pushes_ok: int = 0
    pushes_failed: int = 0
    skipped: int = 0
    dead_lettered: int = 0
    rows_cleared: int = 0
    parity_violations: int = 0
    errors: list[str] = field(default_factory=list)


def backoff_delay(attempts: int, base_seconds: int, cap_seconds: int) -> int:
    """
    Seconds to wait before the next attempt after ``attempts`` consecutive failures.

    Example:
        >>> [backoff_delay(n, 30, 3600) for n in range(1, 7)]
        [30, 60, 120, 240, 480, 960]
    """
    return min(cap_seconds, base_seconds * 2 ** (attempts - 1))


def parity_violations(
    base_rate: float, channel_rates: dict[str, float], variance_pct: dict[str, float]
) -> list[dict[str, Any]]:
    """
    Channels whose published rate is outside their allowed variance.

    Args:
        base_rate: Reference rate (the ledger selling rate)
        channel_rates: Rate each channel reports, by channel id
        variance_pct: Allowed absolute variance in percent, by channel id

    Returns:
        list[dict]: One entry per non-compliant channel with its variance
    """
    if base_rate <= 0:
        return []
    violations = []
    for channel_id, rate in sorted(channel_rates.items()):
        variance = round((rate - base_rate) / base_rate * 100, 2)
        if abs(variance) > variance_pct.get(channel_id, 0.0):
            violations.append(
                {"channel_id": channel_id, "rate": rate, "variance_pct": variance}
            )
    return violations


class SyncCoordinator:
    """
    Process-wide outbound sync coordinator.

    Args:
        engine: SQLAlchemy engine
        ledger: Availability ledger (rows to push, post-push bookkeeping)
        channels: Channel registry (connected channels, credentials, markers)
        bookings: Booking service whose sync flags are cleared after pushes
        audit_trail: Audit writer
        settings: Tick cadence, retry policy and worker caps
    """

    def __init__(
        self,
        engine: Engine,
        ledger: AvailabilityLedger,
        channels: ChannelRegistry,
        bookings: Optional[BookingService] = None,
        audit_trail: Optional[AuditTrail] = None,
        settings: Settings = Settings(),
        queue: Optional[SyncQueue] = None,
    ):
        self.engine = engine
        self.ledger = ledger
        self.channels = channels
        self.bookings = bookings
        self.audit = audit_trail or ledger.audit
        self.settings = settings
        self.queue = queue or SyncQueue()
        self._attempts: dict[tuple[str, str, str], int] = {}
        self._semaphores: dict[str, threading.BoundedSemaphore] = {}
        self._semaphores_lock = threading.Lock()
        self._wake = threading.Event()
        self._tick_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Enqueueing
    # -------------------------------------------------------------------------

    def enqueue(
        self,
        hotel_id: str,
        room_type_id: str,
        start: date,
        end: date,
        priority: str = PRIORITY_NORMAL,
    ) -> None:
        """Queue the inclusive range [start, end] of a room type for push."""
        self.queue.enqueue(
            QueueEntry(
                hotel_id=hotel_id,
                room_type_id=room_type_id,
                earliest=min(start, end),
                latest=max(start, end),
                enqueued_at=utc_now(),
                priority=priority,
            )
        )

    def enqueue_hotel(self, hotel_id: str, priority: str = PRIORITY_HIGH) -> int:
        """
        Queue every room type of a hotel over the active horizon.

        Returns:
            int: Room types queued
        """
        today = utc_now().date()
        horizon = today + timedelta(days=self.settings.ledger_horizon_days)
        with self.engine.connect() as conn:
            room_types = list_room_types(conn, hotel_id)
        for room_type in room_types:
            self.enqueue(hotel_id, room_type.id, today, horizon, priority)
        logger.info("sync_hotel_enqueued", hotel_id=hotel_id, room_types=len(room_types), priority=priority)
        return len(room_types)

    def trigger(self) -> None:
        """Wake the loop for an immediate tick."""
        self._wake.set()

    def rebuild(self) -> int:
        """
        Restore queue state after a restart from dirty ledger rows, bookings
        flagged for sync and push bookkeeping rows waiting for a retry.

        Returns:
            int: Entries enqueued
        """
        now = utc_now()
        with self.engine.connect() as conn:
            groups = list_dirty_groups(conn)
            retrying = list_retrying_syncs(conn)

        count = 0
        for hotel_id, room_type_id, earliest, latest in groups:
            self.enqueue(hotel_id, room_type_id, earliest, latest)
            count += 1

        if self.bookings is not None:
            for booking in self.bookings.list_needing_sync():
                self.enqueue(
                    booking.hotel_id,
                    booking.room_type_id,
                    booking.check_in,
                    booking.check_out - timedelta(days=1),
                )
                count += 1

        for row in retrying:
            key = (row["hotel_id"], row["room_type_id"], row["channel_id"])
            self._attempts[key] = max(self._attempts.get(key, 0), int(row["attempts"] or 0))
            self.queue.enqueue(
                QueueEntry(
                    hotel_id=row["hotel_id"],
                    room_type_id=row["room_type_id"],
                    earliest=row["date"],
                    latest=row["date"],
                    enqueued_at=now,
                    not_before=ensure_utc(row["next_attempt_at"]),
                    channels={row["channel_id"]},
                )
            )
            count += 1

        logger.info(
            "sync_queue_rebuilt",
            dirty_groups=len(groups),
            retrying=len(retrying),
            queued=len(self.queue),
        )
        return count

    # -------------------------------------------------------------------------
    # Ticks
    # -------------------------------------------------------------------------

    def tick(self, now: Optional[datetime] = None) -> SyncReport:
        """
        Drain every due queue entry once.

        Args:
            now: Clock used for readiness, backoff and timestamps

        Returns:
            SyncReport: What happened during the tick
        """
        with self._tick_lock:
            now = now or utc_now()
            report = SyncReport()
            entries = self.queue.take_ready(now)
            if not entries:
                return report
            report.groups = len(entries)
            try:
                jobs, unsettled = self._plan(entries, now, report)
                self._run(jobs)
                for entry in entries:
                    group_jobs = [job for job in jobs if job.entry is entry]
                    self._finish_group(entry, group_jobs, entry.key not in unsettled, now, report)
            finally:
                for entry in entries:
                    self.queue.complete(entry.key)
            logger.info(
                "sync_tick_completed",
                groups=report.groups,
                pushes_ok=report.pushes_ok,
                pushes_failed=report.pushes_failed,
                skipped=report.skipped,
                dead_lettered=report.dead_lettered,
            )
            return report

    def run_forever(self, stop_event: threading.Event) -> None:
        """Loop until ``stop_event`` is set, ticking on cadence, due retries or trigger."""
        self.rebuild()
        while not stop_event.is_set():
            try:
                self.tick()
            except Exception as e:
                logger.exception("sync_tick_failed", error=str(e))
            timeout = float(self.settings.sync_tick_seconds)
            due = self.queue.next_due()
            if due is not None:
                timeout = max(1.0, min(timeout, (due - utc_now()).total_seconds()))
            self._wake.wait(timeout=timeout)
            self._wake.clear()

    def shutdown(self) -> None:
        """Wake the loop so it observes its stop event; in-flight groups finish first."""
        self._wake.set()
        with self._tick_lock:
            logger.info("sync_coordinator_stopped", queued=len(self.queue))

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _plan(
        self, entries: list[QueueEntry], now: datetime, report: SyncReport
    ) -> tuple[list[_PushJob], set[GroupKey]]:
        """
        Render push jobs for every due entry and connected, mapped channel.

        Returns:
            tuple: The jobs, and the groups with a channel that was due but
                could not be pushed to (their rows must stay dirty)
        """
        jobs: list[_PushJob] = []
        unsettled: set[GroupKey] = set()
        channels_by_hotel: dict[str, list[ChannelConfig]] = {}
        for entry in entries:
            if entry.hotel_id not in channels_by_hotel:
                channels_by_hotel[entry.hotel_id] = self.channels.list_connected(entry.hotel_id)
            with self.engine.connect() as conn:
                rows = get_rows(
                    conn,
                    entry.hotel_id,
                    entry.room_type_id,
                    entry.earliest,
                    entry.latest + timedelta(days=1),
                    include_archived=False,
                )
            for channel in channels_by_hotel[entry.hotel_id]:
                if entry.channels is not None and channel.channel_id not in entry.channels:
                    continue
                if not channel.settings.auto_sync and entry.priority != PRIORITY_HIGH:
                    unsettled.add(entry.key)
                    continue
                mapping = channel.mapping_for(entry.room_type_id)
                if mapping is None:
                    error = MappingMissing(channel.channel_id, entry.room_type_id)
                    logger.warning(
                        "sync_mapping_missing",
                        hotel_id=entry.hotel_id,
                        channel_id=channel.channel_id,
                        room_type_id=entry.room_type_id,
                        error=error.message,
                    )
                    report.skipped += 1
                    continue
                try:
                    adaptor = self.channels.adaptors.get(channel.category)
                    credentials = self.channels.credentials_for(channel)
                except ChannelCoreError as e:
                    logger.error(
                        "sync_channel_unavailable",
                        hotel_id=entry.hotel_id,
                        channel_id=channel.channel_id,
                        error=e.message,
                    )
                    report.skipped += 1
                    report.errors.append(e.message)
                    unsettled.add(entry.key)
                    continue
                records = self._render(entry, channel, mapping, rows, now.date())
                jobs.append(
                    _PushJob(
                        entry=entry,
                        channel=channel,
                        adaptor=adaptor,
                        credentials=credentials,
                        records=records,
                        rendered={row.date: row.revision for row in rows},
                        rows=rows,
                    )
                )
            if not rows:
                logger.info("sync_group_empty", hotel_id=entry.hotel_id, room_type_id=entry.room_type_id)
        return jobs, unsettled

    def _render(
        self,
        entry: QueueEntry,
        channel: ChannelConfig,
        mapping: RoomMapping,
        rows: list[LedgerRow],
        today: date,
    ) -> list[PushRecord]:
        """Canonical records for one channel, with channel-scoped rules applied."""
        selling = [row for row in rows if row.date >= today]
        if not selling:
            return []
        effective = self.ledger.rules.restrictions_for(
            entry.hotel_id,
            entry.room_type_id,
            {row.date: row.restrictions for row in selling},
            (channel.channel_id, channel.category),
        )
        records = []
        for row in selling:
            restrictions = effective[row.date]
            rate = row.selling_rate
            if restrictions.rate_adjustment_pct is not None:
                rate = round(rate * (1 + restrictions.rate_adjustment_pct / 100), 2)
            records.append(
                PushRecord(
                    date=row.date,
                    channel_room_type_id=mapping.channel_room_type_id,
                    rate_plan_id=mapping.default_rate_plan,
                    availability=row.available,
                    rate=rate,
                    currency=row.currency,
                    restrictions=(
                        restrictions.to_channel_payload()
                        if channel.settings.enable_restriction_sync
                        else {}
                    ),
                )
            )
        return records

    def _run(self, jobs: list[_PushJob]) -> None:
        """Push every job on the worker pool, bounded by the adaptor deadline."""
        pending = [job for job in jobs if job.records]
        for job in jobs:
            if not job.records:
                job.result = PushResult.ok(0)
        if not pending:
            return

        distinct_channels = {job.channel.id for job in pending}
        workers = min(SYNC_MAX_WORKERS, self.settings.sync_worker_cap * len(distinct_channels))
        deadline = self.settings.adaptor_timeout_seconds
        pool = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="channel-sync")
        try:
            futures: dict[Future[PushResult], _PushJob] = {
                pool.submit(self._push, job, deadline): job for job in pending
            }
            done, not_done = wait(futures, timeout=deadline + 1)
            for future in done:
                job = futures[future]
                try:
                    job.result = future.result()
                except Exception as e:
                    logger.exception("sync_push_crashed", channel_id=job.channel.channel_id, error=str(e))
                    job.result = PushResult.failed(len(job.records), AdaptorError.TRANSPORT, str(e))
            for future in not_done:
                job = futures[future]
                job.result = PushResult.failed(
                    len(job.records),
                    AdaptorError.TIMEOUT,
                    f"Push to {job.channel.channel_id} exceeded {deadline:.0f}s",
                )
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

    def _push(self, job: _PushJob, deadline: float) -> PushResult:
        """Worker body: one adaptor call under the channel's in-flight cap."""
        semaphore = self._semaphore(job.channel.id)
        if not semaphore.acquire(timeout=deadline):
            return PushResult.failed(
                len(job.records),
                AdaptorError.TIMEOUT,
                f"In-flight cap reached for {job.channel.channel_id}",
            )
        try:
            with metrics.sync_push_duration.labels(channel=job.channel.category).time():
                result = job.adaptor.push_updates(job.channel, job.credentials, job.records)
        except AdaptorError as e:
            result = PushResult.failed(len(job.records), e.failure_kind, e.message, e.retryable)
        finally:
            semaphore.release()
        metrics.sync_pushes.labels(channel=job.channel.category, status=result.status.value).inc()
        return result

    def _semaphore(self, channel_pk: str) -> threading.BoundedSemaphore:
        with self._semaphores_lock:
            if channel_pk not in self._semaphores:
                self._semaphores[channel_pk] = threading.BoundedSemaphore(
                    self.settings.sync_max_in_flight_per_channel
                )
            return self._semaphores[channel_pk]

    def _finish_group(
        self,
        entry: QueueEntry,
        jobs: list[_PushJob],
        settled: bool,
        now: datetime,
        report: SyncReport,
    ) -> None:
        """Store the outcome of one group's pushes."""
        succeeded = [job for job in jobs if job.result is not None and job.result.is_ok]
        failed = [job for job in jobs if job.result is None or not job.result.is_ok]
        rendered: dict[date, int] = {}
        for job in jobs:
            rendered.update(job.rendered)
        if not jobs:
            # Nothing to push to; rows are settled as they are
            with self.engine.connect() as conn:
                rows = get_rows(
                    conn,
                    entry.hotel_id,
                    entry.room_type_id,
                    entry.earliest,
                    entry.latest + timedelta(days=1),
                    include_archived=False,
                )
            rendered = {row.date: row.revision for row in rows}

        try:
            report.rows_cleared += self.ledger.confirm_synced(
                entry.hotel_id,
                entry.room_type_id,
                rendered,
                [job.channel.channel_id for job in succeeded],
                clear_dirty=settled and not failed,
                at=now,
            )
        except ChannelCoreError as e:
            logger.warning("sync_confirm_deferred", room_type_id=entry.room_type_id, error=e.message)
            self.queue.enqueue(
                QueueEntry(entry.hotel_id, entry.room_type_id, entry.earliest, entry.latest, now)
            )

        for job in succeeded:
            self._on_success(entry, job, now)
            report.pushes_ok += 1
        for job in failed:
            if self._on_failure(entry, job, now):
                report.dead_lettered += 1
            report.pushes_failed += 1

        if succeeded:
            self.audit.record(
                table_name="availability",
                change_type=audit.SYNC_SUCCESS,
                source="system",
                hotel_id=entry.hotel_id,
                record_id=entry.room_type_id,
                new_values={
                    "channels": [job.channel.channel_id for job in succeeded],
                    "start": entry.earliest.isoformat(),
                    "end": entry.latest.isoformat(),
                    "records": sum(len(job.records) for job in succeeded),
                },
                tags=["sync", "success"],
                now=now,
            )
            report.parity_violations += self._check_parity(entry, succeeded, now)

        if self.bookings is not None and jobs:
            results = {
                job.channel.channel_id: (
                    None if job.result is not None and job.result.is_ok else _error_of(job.result)
                )
                for job in jobs
            }
            self.bookings.mark_synced(
                entry.hotel_id, entry.room_type_id, entry.earliest, entry.latest, results, at=now
            )

        logger.info(
            "sync_group_pushed",
            hotel_id=entry.hotel_id,
            room_type_id=entry.room_type_id,
            start=entry.earliest.isoformat(),
            end=entry.latest.isoformat(),
            succeeded=[job.channel.channel_id for job in succeeded],
            failed=[job.channel.channel_id for job in failed],
        )

    def _on_success(self, entry: QueueEntry, job: _PushJob, now: datetime) -> None:
        key = (entry.hotel_id, entry.room_type_id, job.channel.channel_id)
        self._attempts.pop(key, None)
        settings = job.channel.settings
        categories = [
            category
            for category, enabled in (
                ("rates", settings.enable_rate_sync),
                ("inventory", settings.enable_inventory_sync),
                ("restrictions", settings.enable_restriction_sync),
            )
            if enabled
        ]
        with self.engine.begin() as conn:
            if job.records:
                record_push_attempts(
                    conn,
                    entry.hotel_id,
                    job.channel.channel_id,
                    entry.room_type_id,
                    {record.date: record.to_dict() for record in job.records},
                    status="success",
                    attempts=0,
                    at=now,
                )
            self.channels.mark_last_sync(job.channel, categories, now, conn=conn)

    def _on_failure(self, entry: QueueEntry, job: _PushJob, now: datetime) -> bool:
        """
        Count a failed push and schedule its retry.

        Returns:
            bool: True if the group was dead-lettered for this channel
        """
        result = job.result
        error = _error_of(result)
        key = (entry.hotel_id, entry.room_type_id, job.channel.channel_id)
        attempts = self._attempts.get(key, 0) + 1
        payloads = {record.date: record.to_dict() for record in job.records}
        dead = attempts >= self.settings.sync_max_retries or (result is not None and not result.retryable)

        with self.engine.begin() as conn:
            if dead:
                record_push_attempts(
                    conn,
                    entry.hotel_id,
                    job.channel.channel_id,
                    entry.room_type_id,
                    payloads,
                    status="failed",
                    attempts=attempts,
                    at=now,
                    error_message=error[:1000],
                )
            else:
                next_attempt = now + timedelta(
                    seconds=backoff_delay(
                        attempts,
                        self.settings.sync_backoff_base_seconds,
                        self.settings.sync_backoff_cap_seconds,
                    )
                )
                record_push_attempts(
                    conn,
                    entry.hotel_id,
                    job.channel.channel_id,
                    entry.room_type_id,
                    payloads,
                    status="retry",
                    attempts=attempts,
                    at=now,
                    error_message=error[:1000],
                    next_attempt_at=next_attempt,
                )
            self.channels.mark_error(job.channel, error, conn=conn)

        if dead:
            self._attempts.pop(key, None)
            metrics.sync_dead_letters.labels(channel=job.channel.category).inc()
            self.audit.record(
                table_name="inventory_syncs",
                change_type=audit.SYNC_DEAD_LETTER,
                source="system",
                hotel_id=entry.hotel_id,
                record_id=entry.room_type_id,
                new_values={
                    "channel_id": job.channel.channel_id,
                    "attempts": attempts,
                    "start": entry.earliest.isoformat(),
                    "end": entry.latest.isoformat(),
                    "error": error,
                    "failure_kind": result.failure_kind if result else None,
                },
                tags=["sync", "dead_letter", job.channel.category],
                now=now,
            )
            logger.error(
                "sync_dead_letter",
                hotel_id=entry.hotel_id,
                room_type_id=entry.room_type_id,
                channel_id=job.channel.channel_id,
                attempts=attempts,
                error=error,
            )
            return True

        self._attempts[key] = attempts
        self.audit.record(
            table_name="inventory_syncs",
            change_type=audit.SYNC_FAILED,
            source="system",
            hotel_id=entry.hotel_id,
            record_id=entry.room_type_id,
            new_values={
                "channel_id": job.channel.channel_id,
                "attempts": attempts,
                "next_attempt_at": next_attempt.isoformat(),
                "error": error,
            },
            tags=["sync", "retry", job.channel.category],
            now=now,
        )
        logger.warning(
            "sync_push_failed",
            hotel_id=entry.hotel_id,
            room_type_id=entry.room_type_id,
            channel_id=job.channel.channel_id,
            attempts=attempts,
            next_attempt_at=next_attempt.isoformat(),
            error=error,
        )
        self.queue.enqueue(
            QueueEntry(
                hotel_id=entry.hotel_id,
                room_type_id=entry.room_type_id,
                earliest=entry.earliest,
                latest=entry.latest,
                enqueued_at=now,
                not_before=next_attempt,
                channels={job.channel.channel_id},
            )
        )
        return False

    def _check_parity(self, entry: QueueEntry, jobs: list[_PushJob], now: datetime) -> int:
        """
        Compare ledger selling rates with the rates each parity-enabled
        channel publishes and log the non-compliant dates.

        Returns:
            int: Dates logged as non-compliant
        """
        checked = [job for job in jobs if job.channel.rate_parity.enabled and job.records]
        if not checked:
            return 0
        rows = {row.date: row for row in checked[0].rows if row.date >= now.date()}
        if not rows:
            return 0
        dates = sorted(rows)

        reported: dict[str, dict[date, float]] = {}
        for job in checked:
            mapping = job.channel.mapping_for(entry.room_type_id)
            if mapping is None:
                continue
            try:
                reported[job.channel.channel_id] = job.adaptor.fetch_rates(
                    job.channel, job.credentials, mapping.channel_room_type_id, dates
                )
            except AdaptorError as e:
                logger.warning("rate_parity_fetch_failed", channel_id=job.channel.channel_id, error=e.message)

        variance = {job.channel.channel_id: job.channel.rate_parity.variance_pct for job in checked}
        base_channels = {job.channel.channel_id: job.channel.rate_parity.base_channel for job in checked}
        logged = 0
        with self.engine.begin() as conn:
            for day in dates:
                channel_rates = {
                    channel_id: rates[day] for channel_id, rates in reported.items() if day in rates
                }
                if not channel_rates:
                    continue
                base_rate = rows[day].selling_rate
                reference = next((b for b in base_channels.values() if b), None)
                if reference is not None and reference in channel_rates:
                    base_rate = channel_rates[reference]
                violations = parity_violations(base_rate, channel_rates, variance)
                if not violations:
                    continue
                insert_parity_log(
                    conn,
                    entry.hotel_id,
                    entry.room_type_id,
                    day,
                    base_rate,
                    channel_rates,
                    violations,
                    now,
                )
                for violation in violations:
                    metrics.rate_parity_violations.labels(channel=violation["channel_id"]).inc()
                logged += 1
        if logged:
            logger.warning(
                "rate_parity_violation",
                hotel_id=entry.hotel_id,
                room_type_id=entry.room_type_id,
                dates=logged,
            )
        return logged


def _error_of(result: Optional[PushResult]) -> str:
    return (result.error_message if result is not None else None) or "push failed"
