"""
Channel registry: channel definitions, encrypted credentials, room mappings,
connection tests and per-category sync markers.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Optional

import structlog
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import IntegrityError

from channel_core.adaptors.base import ConnectionCheck, EndpointCheck
from channel_core.adaptors.registry import AdaptorRegistry
from channel_core.cache import CredentialCache
from channel_core.credentials import CredentialCipher
from channel_core.db.readers.channels import get_channel, get_encrypted_credentials, list_channels
from channel_core.db.readers.hotels import list_room_types
from channel_core.db.writers.channels import (
    insert_channel,
    mark_last_sync,
    replace_credentials,
    update_channel,
)
from channel_core.errors import NotFound, ValidationError
from channel_core.schemas.channels import (
    ChannelConfig,
    ChannelRegistration,
    ChannelSettings,
    ConnectionStatus,
    RateParitySettings,
    RoomMapping,
)
from channel_core.services import audit
from channel_core.services.audit import AuditTrail
from channel_core.utils.datetime import utc_now

logger = structlog.get_logger(__name__)

SYNC_CATEGORIES = ("rates", "inventory", "restrictions", "reservations")


class ChannelRegistry:
    """
    CRUD and credential access for a hotel's channels.

    Args:
        engine: SQLAlchemy engine
        adaptors: Adaptors by category
        cipher: Credential cipher; built from CREDENTIALS_KEY on first use when None
        cache: Decrypted credential cache
        audit_trail: Audit writer
        on_mappings_changed: Called with the hotel id after room mappings or
            connection status change, so the hotel can be resynced
    """

    def __init__(
        self,
        engine: Engine,
        adaptors: Optional[AdaptorRegistry] = None,
        cipher: Optional[CredentialCipher] = None,
        cache: Optional[CredentialCache] = None,
        audit_trail: Optional[AuditTrail] = None,
        on_mappings_changed: Optional[Callable[[str], None]] = None,
    ):
        self.engine = engine
        self.adaptors = adaptors or AdaptorRegistry.default()
        self._cipher = cipher
        self.cache = cache or CredentialCache()
        self.audit = audit_trail or AuditTrail(engine)
        self.on_mappings_changed = on_mappings_changed

    @property
    def cipher(self) -> CredentialCipher:
        if self._cipher is None:
            self._cipher = CredentialCipher()
        return self._cipher

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get(self, hotel_id: str, channel_id: str) -> ChannelConfig:
        with self.engine.connect() as conn:
            channel = get_channel(conn, hotel_id, channel_id)
        if channel is None or not channel.is_active:
            raise NotFound(f"Channel {channel_id} not registered for hotel {hotel_id}")
        return channel

    def list_connected(self, hotel_id: str, conn: Optional[Connection] = None) -> list[ChannelConfig]:
        """Active channels of a hotel whose connection status is ``connected``."""
        if conn is not None:
            return list_channels(conn, hotel_id, connected_only=True)
        with self.engine.connect() as own_conn:
            return list_channels(own_conn, hotel_id, connected_only=True)

    def list_all(self, hotel_id: str) -> list[ChannelConfig]:
        with self.engine.connect() as conn:
            return list_channels(conn, hotel_id)

    def credentials_for(self, channel: ChannelConfig) -> dict[str, Any]:
        """
        Decrypted credentials of a channel, served from the cache when the
        cached copy matches the stored credentials version.
        """
        cached = self.cache.get(channel.id, channel.credentials_version)
        if cached is not None:
            return cached

        with self.engine.connect() as conn:
            stored = get_encrypted_credentials(conn, channel.id)
        if stored is None:
            raise ValidationError(f"Channel {channel.channel_id} has no credentials")
        token, version = stored
        credentials = self.cipher.decrypt(token)
        self.cache.set(channel.id, version, credentials)
        return credentials

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def register(self, registration: ChannelRegistration, test: bool = True) -> ChannelConfig:
        """
        Register a channel for a hotel.

        Args:
            registration: Channel definition including plaintext credentials
            test: Run a connection test and set the connection status from it

        Raises:
            ValidationError: Unknown category, bad mappings or duplicate channel id
        """
        self.adaptors.get(registration.category)
        now = utc_now()
        with self.engine.begin() as conn:
            self._check_mappings(conn, registration.hotel_id, registration.room_mappings)
            try:
                channel_pk = insert_channel(
                    conn,
                    {
                        "hotel_id": registration.hotel_id,
                        "channel_id": registration.channel_id,
                        "name": registration.name,
                        "category": registration.category,
                        "credentials_encrypted": self.cipher.encrypt(registration.credentials),
                        "credentials_version": 1,
                        "settings": registration.settings.model_dump(mode="json"),
                        "room_mappings": [m.model_dump(mode="json") for m in registration.room_mappings],
                        "rate_parity": registration.rate_parity.model_dump(mode="json"),
                        "restrictions": {},
                        "last_sync": {},
                        "connection_status": ConnectionStatus.PENDING.value,
                        "is_active": True,
                        "created_at": now,
                        "updated_at": now,
                    },
                )
            except IntegrityError as e:
                raise ValidationError(
                    f"Channel {registration.channel_id} already registered for hotel {registration.hotel_id}"
                ) from e
            self.audit.record(
                table_name="channels",
                change_type=audit.CHANNEL_CHANGED,
                source="channel_setup",
                hotel_id=registration.hotel_id,
                record_id=channel_pk,
                new_values={
                    "channel_id": registration.channel_id,
                    "category": registration.category,
                    "operation": "register",
                },
                tags=["channel", registration.category, "setup"],
                conn=conn,
                now=now,
            )
        logger.info(
            "channel_registered",
            hotel_id=registration.hotel_id,
            channel_id=registration.channel_id,
            category=registration.category,
        )
        if test:
            self.test_connection(registration.hotel_id, registration.channel_id)
        return self.get(registration.hotel_id, registration.channel_id)

    def update_settings(
        self, hotel_id: str, channel_id: str, settings: ChannelSettings | dict[str, Any]
    ) -> ChannelConfig:
        """Replace or patch the channel's settings block."""
        channel = self.get(hotel_id, channel_id)
        if isinstance(settings, dict):
            merged = {**channel.settings.model_dump(), **settings}
            try:
                settings = ChannelSettings.model_validate(merged)
            except ValueError as e:
                raise ValidationError(f"Invalid channel settings: {e}") from e
        if settings.min_los > settings.max_los:
            raise ValidationError("min_los must not exceed max_los")
        self._update(channel, {"settings": settings.model_dump(mode="json")}, "update_settings")
        return self.get(hotel_id, channel_id)

    def set_room_mappings(
        self, hotel_id: str, channel_id: str, mappings: list[RoomMapping]
    ) -> ChannelConfig:
        """
        Replace the room mappings of a channel.

        Raises:
            ValidationError: Unknown hotel room types or a channel room type
                mapped twice
        """
        channel = self.get(hotel_id, channel_id)
        with self.engine.connect() as conn:
            self._check_mappings(conn, hotel_id, mappings)
        self._update(
            channel,
            {"room_mappings": [m.model_dump(mode="json") for m in mappings]},
            "set_room_mappings",
        )
        if self.on_mappings_changed is not None:
            self.on_mappings_changed(hotel_id)
        return self.get(hotel_id, channel_id)

    def set_rate_parity(
        self, hotel_id: str, channel_id: str, rate_parity: RateParitySettings
    ) -> ChannelConfig:
        channel = self.get(hotel_id, channel_id)
        self._update(channel, {"rate_parity": rate_parity.model_dump(mode="json")}, "set_rate_parity")
        return self.get(hotel_id, channel_id)

    def replace_credentials(
        self, hotel_id: str, channel_id: str, credentials: dict[str, Any], test: bool = True
    ) -> ChannelConfig:
        """Store new credentials; cached plaintext of the old version is dropped."""
        channel = self.get(hotel_id, channel_id)
        with self.engine.begin() as conn:
            replace_credentials(conn, channel.id, self.cipher.encrypt(credentials), utc_now())
            self.audit.record(
                table_name="channels",
                change_type=audit.CHANNEL_CHANGED,
                source="admin",
                hotel_id=hotel_id,
                record_id=channel.id,
                new_values={"operation": "replace_credentials"},
                tags=["channel", channel.category, "credentials"],
                conn=conn,
            )
        self.cache.invalidate(channel.id)
        if test:
            self.test_connection(hotel_id, channel_id)
        return self.get(hotel_id, channel_id)

    def test_connection(self, hotel_id: str, channel_id: str) -> ConnectionCheck:
        """Run the adaptor's connection test and record the resulting status."""
        channel = self.get(hotel_id, channel_id)
        adaptor = self.adaptors.get(channel.category)
        check = adaptor.test_connection(self.credentials_for(channel))
        status = ConnectionStatus.CONNECTED if check.ok else ConnectionStatus.ERROR
        values: dict[str, Any] = {
            "connection_status": status.value,
            "last_error": None if check.ok else str(check.details.get("error", "connection failed")),
        }
        self._update(channel, values, "test_connection", tags=[status.value])
        logger.info(
            "channel_connection_tested",
            hotel_id=hotel_id,
            channel_id=channel_id,
            connection_status=status.value,
        )
        if check.ok and channel.connection_status != ConnectionStatus.CONNECTED:
            if self.on_mappings_changed is not None:
                self.on_mappings_changed(hotel_id)
        return check

    def test_endpoint(self, hotel_id: str, channel_id: str) -> EndpointCheck:
        channel = self.get(hotel_id, channel_id)
        adaptor = self.adaptors.get(channel.category)
        return adaptor.test_endpoint(channel, self.credentials_for(channel))

    def deactivate(self, hotel_id: str, channel_id: str) -> None:
        channel = self.get(hotel_id, channel_id)
        self._update(
            channel,
            {"is_active": False, "connection_status": ConnectionStatus.DISCONNECTED.value},
            "deactivate",
        )
        self.cache.invalidate(channel.id)
        logger.info("channel_deactivated", hotel_id=hotel_id, channel_id=channel_id)

    def mark_error(self, channel: ChannelConfig, error: str, conn: Optional[Connection] = None) -> None:
        """Record the last adaptor error without changing the connection status."""
        if conn is not None:
            update_channel(conn, channel.id, {"last_error": error[:1000]}, utc_now())
            return
        with self.engine.begin() as own_conn:
            update_channel(own_conn, channel.id, {"last_error": error[:1000]}, utc_now())

    def mark_last_sync(
        self,
        channel: ChannelConfig,
        categories: list[str],
        at: Optional[datetime] = None,
        conn: Optional[Connection] = None,
    ) -> None:
        """Advance ``last_sync`` markers (rates, inventory, restrictions, reservations)."""
        unknown = set(categories) - set(SYNC_CATEGORIES)
        if unknown:
            raise ValidationError(f"Unknown sync categories: {', '.join(sorted(unknown))}")
        at = at or utc_now()
        if conn is not None:
            mark_last_sync(conn, channel.id, categories, at)
            return
        with self.engine.begin() as own_conn:
            mark_last_sync(own_conn, channel.id, categories, at)

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _check_mappings(self, conn: Connection, hotel_id: str, mappings: list[RoomMapping]) -> None:
        known = {rt.id for rt in list_room_types(conn, hotel_id)}
        unknown = sorted({m.hotel_room_type_id for m in mappings} - known)
        if unknown:
            raise ValidationError(f"Unknown room types in mappings: {', '.join(unknown)}")
        channel_ids = [m.channel_room_type_id for m in mappings]
        if len(channel_ids) != len(set(channel_ids)):
            raise ValidationError("A channel room type is mapped more than once")
        hotel_ids = [m.hotel_room_type_id for m in mappings]
        if len(hotel_ids) != len(set(hotel_ids)):
            raise ValidationError("A hotel room type is mapped more than once")

    def _update(
        self,
        channel: ChannelConfig,
        values: dict[str, Any],
        operation: str,
        tags: Optional[list[str]] = None,
    ) -> None:
        now = utc_now()
        with self.engine.begin() as conn:
            update_channel(conn, channel.id, values, now)
            self.audit.record(
                table_name="channels",
                change_type=audit.CHANNEL_CHANGED,
                source="admin",
                hotel_id=channel.hotel_id,
                record_id=channel.id,
                new_values={"operation": operation, **{k: v for k, v in values.items()}},
                tags=["channel", channel.category, *(tags or [])],
                conn=conn,
                now=now,
            )
