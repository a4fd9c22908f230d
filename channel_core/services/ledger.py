"""
Availability ledger: the single source of truth for sellable inventory and
selling rates per (hotel, room type, date).

All writes go through a compare-and-set on the row ``version`` and run in one
transaction per operation; a multi-date operation either lands on every date
or on none. Rows are created lazily from the room type definition.
"""

from __future__ import annotations

import random
import time
from datetime import date, datetime, timedelta
from typing import Any, Callable, Optional

import structlog
from sqlalchemy.engine import Connection, Engine

from channel_core import metrics
from channel_core.config import Settings
from channel_core.db.readers.availability import get_rows
from channel_core.db.readers.hotels import get_room_type, list_room_types
from channel_core.db.writers.availability import (
    archive_rows_before,
    cas_update_row,
    insert_missing_rows,
)
from channel_core.errors import (
    ChannelCoreError,
    ConflictError,
    IntegrityViolation,
    NotFound,
    OversoldError,
    ValidationError,
)
from channel_core.schemas.availability import LedgerRow, Restrictions, RoomTypeInfo
from channel_core.services import audit
from channel_core.services.audit import AuditTrail
from channel_core.services.booking_state import StayChange
from channel_core.services.rules import ANY_CHANNEL, DIRECT_CHANNEL, ChannelKeys, RuleEngine
from channel_core.utils.datetime import stay_dates, utc_now

logger = structlog.get_logger(__name__)

CAS_ATTEMPTS = 3
CAS_JITTER_SECONDS = (0.01, 0.05)

PRIORITY_NORMAL = "normal"
PRIORITY_HIGH = "high"

# Global selling-rate bounds relative to the room type base price
MIN_RATE_FACTOR = 0.7
MAX_RATE_FACTOR = 3.0

# (hotel_id, room_type_id, earliest date, latest date, priority)
DirtyCallback = Callable[[str, str, date, date, str], None]


def constrain_rate(
    rate: float,
    base_price: float,
    room_min: Optional[float] = None,
    room_max: Optional[float] = None,
    strategy_min: Optional[float] = None,
    strategy_max: Optional[float] = None,
) -> float:
    """
    Clamp a selling rate: room type bounds, then strategy bounds, then the
    global [0.7, 3.0] x base price band. The global band always wins.
    """
    if room_min is not None:
        rate = max(rate, room_min)
    if room_max is not None:
        rate = min(rate, room_max)
    if strategy_min is not None:
        rate = max(rate, strategy_min)
    if strategy_max is not None:
        rate = min(rate, strategy_max)
    rate = max(rate, base_price * MIN_RATE_FACTOR)
    rate = min(rate, base_price * MAX_RATE_FACTOR)
    return round(rate, 2)


class _Retry(Exception):
    """Internal signal: a CAS write lost the race; rerun the whole operation."""


class AvailabilityLedger:
    """
    Inventory and rate ledger.

    Args:
        engine: SQLAlchemy engine
        rules: Overbooking and stop-sell rule evaluation
        audit_trail: Audit writer shared with the other components
        settings: Runtime tunables (horizon)
        on_dirty: Called after commit with the dirty date range of a write
    """

    def __init__(
        self,
        engine: Engine,
        rules: Optional[RuleEngine] = None,
        audit_trail: Optional[AuditTrail] = None,
        settings: Settings = Settings(),
        on_dirty: Optional[DirtyCallback] = None,
    ):
        self.engine = engine
        self.audit = audit_trail or AuditTrail(engine)
        self.rules = rules or RuleEngine(engine, self.audit)
        self.settings = settings
        self.on_dirty = on_dirty

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def query(
        self,
        hotel_id: str,
        room_type_id: str,
        start: date,
        end: date,
        conn: Optional[Connection] = None,
    ) -> list[LedgerRow]:
        """
        Rows for the half-open range [start, end). Dates without a row are
        absent; reads never create rows.
        """
        if conn is not None:
            return get_rows(conn, hotel_id, room_type_id, start, end)
        with self.engine.connect() as own_conn:
            return get_rows(own_conn, hotel_id, room_type_id, start, end)

    # -------------------------------------------------------------------------
    # Inventory
    # -------------------------------------------------------------------------

    def reserve(
        self,
        hotel_id: str,
        room_type_id: str,
        check_in: date,
        check_out: date,
        rooms: int,
        booking_id: str,
        source: str = DIRECT_CHANNEL,
        allow_overbooking: bool = True,
        now: Optional[datetime] = None,
    ) -> list[LedgerRow]:
        """
        Sell ``rooms`` on every night of [check_in, check_out).

        Terminal errors are recorded in the audit trail before being raised.

        Args:
            source: Sales channel; ``direct`` or a channel id / category
            allow_overbooking: Whether the overbooking allowance may be used

        Returns:
            list[LedgerRow]: The rows after the write

        Raises:
            OversoldError: Capacity exceeded or a restriction blocks the stay
            ValidationError: Bad range, room count or date beyond the horizon
            NotFound: Unknown room type
            ConflictError: CAS retries exhausted
            IntegrityViolation: Existing rows already breach the invariant
        """
        try:
            return self.try_reserve(
                hotel_id,
                room_type_id,
                check_in,
                check_out,
                rooms,
                booking_id,
                source=source,
                allow_overbooking=allow_overbooking,
                now=now,
            )
        except ChannelCoreError as e:
            self._record_failure(e, "reserve", hotel_id, room_type_id, booking_id, source)
            raise

    def try_reserve(
        self,
        hotel_id: str,
        room_type_id: str,
        check_in: date,
        check_out: date,
        rooms: int,
        booking_id: str,
        source: str = DIRECT_CHANNEL,
        allow_overbooking: bool = True,
        now: Optional[datetime] = None,
        channel: ChannelKeys = None,
    ) -> list[LedgerRow]:
        """
        Same as ``reserve`` but leaves error auditing to the caller.

        Args:
            channel: Keys rules are matched against; defaults to ``source``
        """
        self._check_stay(check_in, check_out, rooms)
        deltas = {day: rooms for day in stay_dates(check_in, check_out)}
        return self._apply(
            operation="reserve",
            change_type=audit.INVENTORY_RESERVED,
            hotel_id=hotel_id,
            room_type_id=room_type_id,
            deltas=deltas,
            stay=(check_in, check_out),
            channel=channel or source,
            allow_overbooking=allow_overbooking,
            enforce_restrictions=True,
            booking_id=booking_id,
            source=source,
            now=now,
        )

    def release(
        self,
        hotel_id: str,
        room_type_id: str,
        check_in: date,
        check_out: date,
        rooms: int,
        booking_id: str,
        source: str = DIRECT_CHANNEL,
        now: Optional[datetime] = None,
    ) -> list[LedgerRow]:
        """
        Return ``rooms`` to inventory on every night of [check_in, check_out).

        Sold rooms never go below zero.
        """
        try:
            self._check_stay(check_in, check_out, rooms)
            deltas = {day: -rooms for day in stay_dates(check_in, check_out)}
            return self._apply(
                operation="release",
                change_type=audit.INVENTORY_RELEASED,
                hotel_id=hotel_id,
                room_type_id=room_type_id,
                deltas=deltas,
                stay=None,
                channel=source,
                allow_overbooking=True,
                enforce_restrictions=False,
                booking_id=booking_id,
                source=source,
                now=now,
            )
        except ChannelCoreError as e:
            self._record_failure(e, "release", hotel_id, room_type_id, booking_id, source)
            raise

    def apply_stay_change(
        self,
        hotel_id: str,
        change: StayChange,
        booking_id: str,
        source: str,
        allow_overbooking: bool = False,
        enforce_restrictions: bool = True,
        now: Optional[datetime] = None,
    ) -> list[LedgerRow]:
        """
        Move a booking's footprint from its old stay to its new one atomically.

        Only the net difference per date is written. Raises ``OversoldError``
        if the new footprint does not fit; nothing is written in that case.

        Args:
            allow_overbooking: Whether added nights may use the overbooking
                allowance; amendments only get it when approved with a bypass
            enforce_restrictions: False when undoing a change already applied
        """
        self._check_stay(change.new_check_in, change.new_check_out, change.new_rooms)
        deltas: dict[date, int] = {}
        for day in stay_dates(change.old_check_in, change.old_check_out):
            deltas[day] = deltas.get(day, 0) - change.old_rooms
        for day in stay_dates(change.new_check_in, change.new_check_out):
            deltas[day] = deltas.get(day, 0) + change.new_rooms
        deltas = {day: delta for day, delta in deltas.items() if delta != 0}
        if not deltas:
            return []
        return self._apply(
            operation="amend",
            change_type=audit.INVENTORY_RESERVED,
            hotel_id=hotel_id,
            room_type_id=change.room_type_id,
            deltas=deltas,
            stay=(change.new_check_in, change.new_check_out),
            channel=source,
            allow_overbooking=allow_overbooking,
            enforce_restrictions=enforce_restrictions,
            booking_id=booking_id,
            source=source,
            now=now,
        )

    def adjust_inventory(
        self,
        hotel_id: str,
        room_type_id: str,
        start: date,
        end: date,
        total_rooms: Optional[int] = None,
        blocked_rooms: Optional[int] = None,
        source: str = "admin",
        now: Optional[datetime] = None,
    ) -> list[LedgerRow]:
        """
        Change total and/or blocked rooms on [start, end).

        Raises:
            IntegrityViolation: The new counts would leave sold rooms above
                total rooms plus the overbooking allowance
        """
        if total_rooms is None and blocked_rooms is None:
            raise ValidationError("Nothing to adjust")
        if (total_rooms is not None and total_rooms < 0) or (
            blocked_rooms is not None and blocked_rooms < 0
        ):
            raise ValidationError("Room counts must not be negative")
        if end <= start:
            raise ValidationError("end must be after start")

        def compute(conn: Connection, room_type: RoomTypeInfo, rows: dict[date, LedgerRow], today: date):
            totals = {
                day: total_rooms if total_rooms is not None else row.total_rooms
                for day, row in rows.items()
            }
            allowances = self.rules.allowances_for(
                conn, hotel_id, room_type_id, totals, ANY_CHANNEL, today
            )
            writes: dict[date, dict[str, Any]] = {}
            for day, row in rows.items():
                new_total = totals[day]
                new_blocked = blocked_rooms if blocked_rooms is not None else row.blocked_rooms
                if row.sold_rooms + new_blocked > new_total + allowances[day].rooms:
                    raise IntegrityViolation(
                        f"Adjustment leaves {row.sold_rooms} sold and {new_blocked} blocked "
                        f"rooms over {new_total} total on {day.isoformat()}",
                        details={"date": day.isoformat(), "room_type_id": room_type_id},
                    )
                if (new_total, new_blocked) == (row.total_rooms, row.blocked_rooms):
                    continue
                writes[day] = {"total_rooms": new_total, "blocked_rooms": new_blocked}
            return writes

        try:
            return self._write(
                operation="adjust_inventory",
                change_type=audit.INVENTORY_ADJUSTED,
                hotel_id=hotel_id,
                room_type_id=room_type_id,
                days=list(stay_dates(start, end)),
                compute=compute,
                source=source,
                record_id=None,
                now=now,
            )
        except ChannelCoreError as e:
            self._record_failure(e, "adjust_inventory", hotel_id, room_type_id, None, source)
            raise

    def set_restrictions(
        self,
        hotel_id: str,
        room_type_id: str,
        start: date,
        end: date,
        stop_sell: Optional[bool] = None,
        closed_to_arrival: Optional[bool] = None,
        closed_to_departure: Optional[bool] = None,
        min_los: Optional[int] = None,
        max_los: Optional[int] = None,
        source: str = "admin",
        now: Optional[datetime] = None,
    ) -> list[LedgerRow]:
        """Set row-level restrictions on [start, end); ``None`` leaves a field as is."""
        if end <= start:
            raise ValidationError("end must be after start")
        if min_los is not None and min_los < 1:
            raise ValidationError("min_los must be at least 1")

        requested = {
            "stop_sell": stop_sell,
            "closed_to_arrival": closed_to_arrival,
            "closed_to_departure": closed_to_departure,
            "min_los": min_los,
        }
        requested = {k: v for k, v in requested.items() if v is not None}

        def compute(conn: Connection, room_type: RoomTypeInfo, rows: dict[date, LedgerRow], today: date):
            writes: dict[date, dict[str, Any]] = {}
            for day, row in rows.items():
                current = row.restrictions
                values = dict(requested)
                if max_los is not None:
                    values["max_los"] = max_los
                new_min = values.get("min_los", current.min_los)
                new_max = values.get("max_los", current.max_los)
                if new_max is not None and new_min > new_max:
                    raise ValidationError(
                        f"min_los {new_min} exceeds max_los {new_max} on {day.isoformat()}"
                    )
                if all(getattr(current, k) == v for k, v in values.items()):
                    continue
                writes[day] = values
            return writes

        return self._write(
            operation="set_restrictions",
            change_type=audit.INVENTORY_ADJUSTED,
            hotel_id=hotel_id,
            room_type_id=room_type_id,
            days=list(stay_dates(start, end)),
            compute=compute,
            source=source,
            record_id=None,
            now=now,
        )

    # -------------------------------------------------------------------------
    # Rates
    # -------------------------------------------------------------------------

    def set_rate(
        self,
        hotel_id: str,
        room_type_id: str,
        day: date,
        selling_rate: float,
        source: str = "admin",
        strategy_min: Optional[float] = None,
        strategy_max: Optional[float] = None,
        context: Optional[dict[str, Any]] = None,
        now: Optional[datetime] = None,
    ) -> LedgerRow:
        """
        Write a selling rate for one date after applying the price constraints.

        Args:
            strategy_min: Lower bound of the pricing strategy, if any
            strategy_max: Upper bound of the pricing strategy, if any
            context: Extra fields stored on the audit entry (e.g. pricing factors)

        Returns:
            LedgerRow: The row after the write (unchanged if the rate was equal)
        """
        if selling_rate <= 0:
            raise ValidationError("selling_rate must be positive")

        def compute(conn: Connection, room_type: RoomTypeInfo, rows: dict[date, LedgerRow], today: date):
            row = rows[day]
            rate = constrain_rate(
                selling_rate,
                room_type.base_price,
                room_type.min_price,
                room_type.max_price,
                strategy_min,
                strategy_max,
            )
            if rate == row.selling_rate:
                return {}
            return {day: {"selling_rate": rate, "last_price_update": now_value}}

        now_value = now or utc_now()
        result = self._write(
            operation="set_rate",
            change_type=audit.RATE_UPDATED,
            hotel_id=hotel_id,
            room_type_id=room_type_id,
            days=[day],
            compute=compute,
            source=source,
            record_id=None,
            now=now_value,
            extra_audit=context,
        )
        return result[0]

    # -------------------------------------------------------------------------
    # Sync support
    # -------------------------------------------------------------------------

    def mark_dirty_range(
        self,
        hotel_id: str,
        room_type_id: Optional[str],
        start: date,
        end: date,
        priority: str = PRIORITY_NORMAL,
    ) -> int:
        """
        Flag existing rows on the inclusive range [start, end] for resync,
        e.g. after a rule change. ``room_type_id=None`` covers every room type.

        Returns:
            int: Rows flagged
        """
        with self.engine.connect() as conn:
            if room_type_id is None:
                room_type_ids = [rt.id for rt in list_room_types(conn, hotel_id)]
            else:
                room_type_ids = [room_type_id]

        flagged = 0
        for rt_id in room_type_ids:
            for attempt in range(1, CAS_ATTEMPTS + 1):
                try:
                    with self.engine.begin() as conn:
                        count = 0
                        now = utc_now()
                        for row in get_rows(conn, hotel_id, rt_id, start, end + timedelta(days=1), include_archived=False):
                            if not cas_update_row(conn, row.id, row.version, {"dirty": True, "updated_at": now}):
                                raise _Retry()
                            count += 1
                    flagged += count
                    if count and self.on_dirty is not None:
                        self.on_dirty(hotel_id, rt_id, start, end, priority)
                    break
                except _Retry:
                    metrics.ledger_conflicts.inc()
                    if attempt == CAS_ATTEMPTS:
                        raise ConflictError(f"Could not flag rows of {rt_id} for resync")
                    self._backoff()
        return flagged

    def confirm_synced(
        self,
        hotel_id: str,
        room_type_id: str,
        rendered: dict[date, int],
        channel_ids: list[str],
        clear_dirty: bool,
        at: Optional[datetime] = None,
    ) -> int:
        """
        Record a successful push of rendered rows.

        Each channel's snapshot advances on every rendered row. ``dirty`` is
        cleared only when ``clear_dirty`` is set and the row's revision still
        equals the revision that was rendered; rows changed mid-flight stay
        dirty for the next tick.

        Args:
            rendered: Revision per date as read when the records were built
            channel_ids: Channels that accepted the push
            clear_dirty: Whether every channel due for these rows succeeded

        Returns:
            int: Rows whose dirty flag was cleared
        """
        if not rendered:
            return 0
        at = at or utc_now()
        start, end = min(rendered), max(rendered)
        cleared = 0
        for attempt in range(1, CAS_ATTEMPTS + 1):
            try:
                with self.engine.begin() as conn:
                    cleared = 0
                    for row in get_rows(conn, hotel_id, room_type_id, start, end + timedelta(days=1)):
                        if row.date not in rendered:
                            continue
                        snapshot = dict(row.channel_sync)
                        for channel_id in channel_ids:
                            snapshot[channel_id] = {
                                "synced_at": at.isoformat(),
                                "record_count": len(rendered),
                                "revision": rendered[row.date],
                            }
                        values: dict[str, Any] = {"channel_sync": snapshot, "last_synced_at": at}
                        if clear_dirty and row.dirty and row.revision == rendered[row.date]:
                            values["dirty"] = False
                            cleared += 1
                        if not cas_update_row(conn, row.id, row.version, values, content_change=False):
                            raise _Retry()
                return cleared
            except _Retry:
                metrics.ledger_conflicts.inc()
                if attempt == CAS_ATTEMPTS:
                    raise ConflictError(f"Could not record sync of {room_type_id}")
                self._backoff()
        return cleared  # pragma: no cover

    def archive_before(self, hotel_id: str, cutoff: date) -> int:
        """Archive rows dated before ``cutoff``. Rows are never deleted."""
        with self.engine.begin() as conn:
            count = archive_rows_before(conn, hotel_id, cutoff, utc_now())
        logger.info("ledger_archived", hotel_id=hotel_id, cutoff=cutoff.isoformat(), rows=count)
        return count

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _check_stay(self, check_in: date, check_out: date, rooms: int) -> None:
        if check_out <= check_in:
            raise ValidationError("check_out must be after check_in")
        if rooms <= 0:
            raise ValidationError("rooms must be positive")

    def _apply(
        self,
        operation: str,
        change_type: str,
        hotel_id: str,
        room_type_id: str,
        deltas: dict[date, int],
        stay: Optional[tuple[date, date]],
        channel: ChannelKeys,
        allow_overbooking: bool,
        enforce_restrictions: bool,
        booking_id: Optional[str],
        source: str,
        now: Optional[datetime],
    ) -> list[LedgerRow]:
        """Apply signed sold-room deltas after restriction and capacity checks."""

        def compute(conn: Connection, room_type: RoomTypeInfo, rows: dict[date, LedgerRow], today: date):
            selling = {day: rows[day] for day, delta in sorted(deltas.items()) if delta > 0}
            if enforce_restrictions and selling:
                self._check_restrictions(conn, hotel_id, room_type_id, rows, selling, stay, channel)

            totals = {day: row.total_rooms for day, row in rows.items()}
            allowances = self.rules.allowances_for(conn, hotel_id, room_type_id, totals, channel, today)
            ceilings = self.rules.allowances_for(conn, hotel_id, room_type_id, totals, ANY_CHANNEL, today)
            # Only dates being sold onto must already sit within the ceiling; releases always apply
            for day, row in selling.items():
                if row.sold_rooms + row.blocked_rooms > row.total_rooms + ceilings[day].rooms:
                    raise IntegrityViolation(
                        f"Row {day.isoformat()} of {room_type_id} has {row.sold_rooms} sold and "
                        f"{row.blocked_rooms} blocked over {row.total_rooms} total",
                        details={
                            "date": day.isoformat(),
                            "room_type_id": room_type_id,
                            "sold_rooms": row.sold_rooms,
                            "total_rooms": row.total_rooms,
                        },
                    )

            writes: dict[date, dict[str, Any]] = {}
            for day in sorted(deltas):
                row = rows[day]
                delta = deltas[day]
                new_sold = row.sold_rooms + delta
                if delta > 0:
                    allowance = allowances[day].rooms if allow_overbooking else 0
                    if new_sold + row.blocked_rooms > row.total_rooms + allowance:
                        raise OversoldError(
                            day,
                            OversoldError.CAPACITY,
                            f"Only {max(0, row.total_rooms + allowance - row.sold_rooms - row.blocked_rooms)} "
                            f"rooms left on {day.isoformat()}, {delta} requested",
                        )
                elif new_sold < 0:
                    logger.warning(
                        "release_below_zero",
                        hotel_id=hotel_id,
                        room_type_id=room_type_id,
                        date=day.isoformat(),
                        sold_rooms=row.sold_rooms,
                        delta=delta,
                    )
                    new_sold = 0
                if new_sold != row.sold_rooms:
                    writes[day] = {"sold_rooms": new_sold}
            return writes

        return self._write(
            operation=operation,
            change_type=change_type,
            hotel_id=hotel_id,
            room_type_id=room_type_id,
            days=sorted(deltas),
            compute=compute,
            source=source,
            record_id=booking_id,
            now=now,
            extra_audit={"deltas": {d.isoformat(): v for d, v in sorted(deltas.items())}},
        )

    def _check_restrictions(
        self,
        conn: Connection,
        hotel_id: str,
        room_type_id: str,
        rows: dict[date, LedgerRow],
        selling: dict[date, LedgerRow],
        stay: Optional[tuple[date, date]],
        channel: ChannelKeys,
    ) -> None:
        bases = {day: row.restrictions for day, row in selling.items()}
        if stay is not None:
            arrival, departure = stay
            for day in (arrival, departure):
                if day in rows:
                    bases.setdefault(day, rows[day].restrictions)
                    continue
                existing = get_rows(conn, hotel_id, room_type_id, day, day + timedelta(days=1))
                bases[day] = existing[0].restrictions if existing else Restrictions()

        effective = self.rules.restrictions_for(hotel_id, room_type_id, bases, channel, conn=conn)
        for day in sorted(selling):
            if effective[day].stop_sell:
                raise OversoldError(day, OversoldError.STOP_SELL)

        if stay is None:
            return
        arrival, departure = stay
        nights = (departure - arrival).days
        on_arrival = effective[arrival]
        if on_arrival.closed_to_arrival:
            raise OversoldError(arrival, OversoldError.CLOSED_TO_ARRIVAL)
        if nights < on_arrival.min_los:
            raise OversoldError(
                arrival,
                OversoldError.MIN_LOS,
                f"Stay of {nights} nights is below the minimum of {on_arrival.min_los}",
            )
        if on_arrival.max_los is not None and nights > on_arrival.max_los:
            raise OversoldError(
                arrival,
                OversoldError.MAX_LOS,
                f"Stay of {nights} nights is above the maximum of {on_arrival.max_los}",
            )
        if effective[departure].closed_to_departure:
            raise OversoldError(departure, OversoldError.CLOSED_TO_DEPARTURE)

    def _write(
        self,
        operation: str,
        change_type: str,
        hotel_id: str,
        room_type_id: str,
        days: list[date],
        compute: Callable[[Connection, RoomTypeInfo, dict[date, LedgerRow], date], dict[date, dict[str, Any]]],
        source: str,
        record_id: Optional[str],
        now: Optional[datetime],
        extra_audit: Optional[dict[str, Any]] = None,
    ) -> list[LedgerRow]:
        """
        Run one ledger write with CAS retries.

        ``compute`` receives the current rows for ``days`` and returns the
        column values to write per date; it raises to refuse the operation.
        Rows are updated in date order inside a single transaction. A version
        mismatch on any row rolls everything back and the operation is rerun
        after a short jittered pause.
        """
        if not days:
            raise ValidationError("Empty date range")
        now = now or utc_now()
        today = now.date()
        horizon = today + timedelta(days=self.settings.ledger_horizon_days)
        if max(days) > horizon:
            raise ValidationError(
                f"{max(days).isoformat()} is beyond the {self.settings.ledger_horizon_days}-day horizon"
            )

        for attempt in range(1, CAS_ATTEMPTS + 1):
            try:
                with self.engine.begin() as conn:
                    room_type = get_room_type(conn, hotel_id, room_type_id)
                    if room_type is None:
                        raise NotFound(f"Room type {room_type_id} not found for hotel {hotel_id}")
                    insert_missing_rows(conn, room_type, days, now)
                    wanted = set(days)
                    rows = {
                        row.date: row
                        for row in get_rows(conn, hotel_id, room_type_id, min(days), max(days) + timedelta(days=1))
                        if row.date in wanted
                    }
                    writes = compute(conn, room_type, rows, today)

                    for day in sorted(writes):
                        row = rows[day]
                        values = {**writes[day], "dirty": True, "updated_at": now}
                        if not cas_update_row(conn, row.id, row.version, values):
                            raise _Retry()

                    if writes:
                        self.audit.record(
                            table_name="availability",
                            change_type=change_type,
                            source=source,
                            hotel_id=hotel_id,
                            record_id=record_id,
                            old_values={
                                day.isoformat(): {k: _audit_value(getattr(rows[day], k, None)) for k in writes[day]}
                                for day in sorted(writes)
                            },
                            new_values={
                                "room_type_id": room_type_id,
                                "operation": operation,
                                "changes": {
                                    day.isoformat(): {k: _audit_value(v) for k, v in writes[day].items()}
                                    for day in sorted(writes)
                                },
                                **(extra_audit or {}),
                            },
                            tags=["ledger", operation],
                            conn=conn,
                            now=now,
                        )
                    result = [
                        row
                        for row in get_rows(conn, hotel_id, room_type_id, min(days), max(days) + timedelta(days=1))
                        if row.date in wanted
                    ]
            except _Retry:
                metrics.ledger_conflicts.inc()
                logger.info(
                    "ledger_cas_retry",
                    operation=operation,
                    hotel_id=hotel_id,
                    room_type_id=room_type_id,
                    attempt=attempt,
                )
                if attempt == CAS_ATTEMPTS:
                    metrics.ledger_operations.labels(operation=operation, outcome="conflict").inc()
                    raise ConflictError(
                        f"{operation} on {room_type_id} lost {CAS_ATTEMPTS} version races"
                    )
                self._backoff()
                continue
            except IntegrityViolation as e:
                metrics.ledger_operations.labels(operation=operation, outcome=e.kind).inc()
                self._reconcile(e, hotel_id, room_type_id, min(days), max(days))
                raise
            except ChannelCoreError as e:
                metrics.ledger_operations.labels(operation=operation, outcome=e.kind).inc()
                raise

            metrics.ledger_operations.labels(operation=operation, outcome="ok").inc()
            if writes:
                logger.info(
                    "ledger_write",
                    operation=operation,
                    hotel_id=hotel_id,
                    room_type_id=room_type_id,
                    dates=len(writes),
                    record_id=record_id,
                )
                if self.on_dirty is not None:
                    self.on_dirty(hotel_id, room_type_id, min(writes), max(writes), PRIORITY_NORMAL)
            return result

        raise ConflictError(f"{operation} on {room_type_id} did not complete")  # pragma: no cover

    def _reconcile(
        self, error: IntegrityViolation, hotel_id: str, room_type_id: str, start: date, end: date
    ) -> None:
        """Record an invariant breach and push the affected range at high priority."""
        if error.details.get("sold_rooms") is None:
            # Refused adjustment; nothing on disk is in breach
            return
        logger.error(
            "ledger_integrity_violation",
            hotel_id=hotel_id,
            room_type_id=room_type_id,
            error=error.message,
        )
        self.audit.record(
            table_name="availability",
            change_type=audit.RECONCILIATION_REQUIRED,
            source="system",
            hotel_id=hotel_id,
            record_id=room_type_id,
            new_values=error.to_dict(),
            tags=["ledger", "reconciliation"],
        )
        if self.on_dirty is not None:
            self.on_dirty(hotel_id, room_type_id, start, end, PRIORITY_HIGH)

    def _record_failure(
        self,
        error: ChannelCoreError,
        operation: str,
        hotel_id: str,
        room_type_id: str,
        booking_id: Optional[str],
        source: str,
    ) -> None:
        self.audit.record_error(
            error,
            table_name="availability",
            source=source,
            hotel_id=hotel_id,
            record_id=booking_id,
            context={"operation": operation, "room_type_id": room_type_id},
        )

    @staticmethod
    def _backoff() -> None:
        time.sleep(random.uniform(*CAS_JITTER_SECONDS))


def _audit_value(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return value
