from datetime import datetime, timedelta
from typing import Optional

import structlog
from sqlalchemy.engine import Engine

from channel_core.db.readers.hotels import list_active_hotel_ids
from channel_core.errors import AdaptorError
from channel_core.metrics import poll_duration
from channel_core.schemas.channels import ChannelConfig
from channel_core.schemas.reservations import InboundOutcome
from channel_core.services.channels import ChannelRegistry
from channel_core.services.inbound import InboundReservationHandler
from channel_core.utils.datetime import utc_now

logger = structlog.get_logger(__name__)


def is_poll_due(channel: ChannelConfig, now: datetime) -> bool:
    """Whether the channel's reservation poll interval has elapsed."""
    last = channel.last_sync.get("reservations")
    if last is None:
        return True
    return now - last >= timedelta(seconds=channel.settings.sync_frequency_seconds)


def poll_reservations(
    registry: ChannelRegistry,
    handler: InboundReservationHandler,
    channel: ChannelConfig,
    now: Optional[datetime] = None,
) -> list[InboundOutcome]:
    """
    Pull reservation messages received by a channel since its last poll and
    apply them.

    The ``reservations`` marker advances to the poll start time only after
    every message was handled, so a crash mid-batch replays the batch; replays
    are absorbed by the (source, channel booking id) idempotency.

    Args:
        registry (ChannelRegistry): Supplies the adaptor and credentials
        handler (InboundReservationHandler): Applies each message
        channel (ChannelConfig): Connected channel to poll

    Returns:
        list[InboundOutcome]: One outcome per pulled message
    """
    started_at = now or utc_now()
    with poll_duration.labels(channel=channel.category).time():
        adaptor = registry.adaptors.get(channel.category)
        try:
            reservations = adaptor.pull_reservations(
                channel,
                registry.credentials_for(channel),
                channel.last_sync.get("reservations"),
            )
        except AdaptorError as e:
            registry.mark_error(channel, e.message)
            logger.warning(
                "reservation_poll_failed",
                hotel_id=channel.hotel_id,
                channel_id=channel.channel_id,
                failure_kind=e.failure_kind,
                error=e.message,
            )
            raise

        outcomes = handler.handle_batch(channel, reservations)
        registry.mark_last_sync(channel, ["reservations"], started_at)

    logger.info(
        "reservations_polled",
        hotel_id=channel.hotel_id,
        channel_id=channel.channel_id,
        received=len(reservations),
        created=sum(1 for o in outcomes if o.status.value == "created"),
        nacked=sum(1 for o in outcomes if not o.ack),
    )
    return outcomes


def poll_all_channels(
    engine: Engine,
    registry: ChannelRegistry,
    handler: InboundReservationHandler,
    now: Optional[datetime] = None,
) -> int:
    """
    Poll every connected channel of every active hotel whose interval elapsed.

    Returns:
        int: Messages handled
    """
    now = now or utc_now()
    with engine.connect() as conn:
        hotel_ids = list_active_hotel_ids(conn)

    handled = 0
    for hotel_id in hotel_ids:
        for channel in registry.list_connected(hotel_id):
            if not is_poll_due(channel, now):
                continue
            try:
                handled += len(poll_reservations(registry, handler, channel, now))
            except AdaptorError:
                continue
            except Exception as e:
                logger.exception(
                    "reservation_poll_crashed",
                    hotel_id=hotel_id,
                    channel_id=channel.channel_id,
                    error=str(e),
                )
    return handled
