"""Initial channel core schema

Revision ID: 3f2a9c1d7b04
Revises:
Create Date: 2026-10-19 09:12:31.402117

"""

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from alembic import op  # type: ignore[attr-defined]
from channel_core.config import SCHEMA

# revision identifiers, used by Alembic.
revision = "3f2a9c1d7b04"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def _json(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, postgresql.JSONB(astext_type=sa.Text()), nullable=nullable)


def upgrade() -> None:
    """Upgrade schema."""
    schema = SCHEMA

    op.create_table(
        "hotels",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default=sa.text("'INR'")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("TRUE")),
        _ts("created_at"),
        schema=schema,
    )

    op.create_table(
        "room_types",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("hotel_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("base_price", sa.Float(), nullable=False),
        sa.Column("min_price", sa.Float(), nullable=True),
        sa.Column("max_price", sa.Float(), nullable=True),
        sa.Column("total_rooms", sa.Integer(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False, server_default=sa.text("'INR'")),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("TRUE")),
        _ts("created_at"),
        schema=schema,
    )
    op.create_index("ix_room_types_hotel_id", "room_types", ["hotel_id"], schema=schema)

    op.create_table(
        "availability",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("hotel_id", sa.String(64), nullable=False),
        sa.Column("room_type_id", sa.String(64), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("total_rooms", sa.Integer(), nullable=False),
        sa.Column("sold_rooms", sa.Integer(), nullable=False),
        sa.Column("blocked_rooms", sa.Integer(), nullable=False),
        sa.Column("base_rate", sa.Float(), nullable=False),
        sa.Column("selling_rate", sa.Float(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("stop_sell", sa.Boolean(), nullable=False),
        sa.Column("closed_to_arrival", sa.Boolean(), nullable=False),
        sa.Column("closed_to_departure", sa.Boolean(), nullable=False),
        sa.Column("min_los", sa.Integer(), nullable=False),
        sa.Column("max_los", sa.Integer(), nullable=True),
        sa.Column("dirty", sa.Boolean(), nullable=False, server_default=sa.text("FALSE")),
        sa.Column("archived", sa.Boolean(), nullable=False, server_default=sa.text("FALSE")),
        _ts("last_synced_at", nullable=True),
        _ts("last_price_update", nullable=True),
        _json("channel_sync"),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("revision", sa.Integer(), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("hotel_id", "room_type_id", "date", name="uq_availability_hotel_room_date"),
        sa.CheckConstraint("sold_rooms >= 0", name="ck_availability_sold_non_negative"),
        sa.CheckConstraint("blocked_rooms >= 0", name="ck_availability_blocked_non_negative"),
        schema=schema,
    )
    op.create_index("ix_availability_dirty", "availability", ["dirty"], schema=schema)
    op.create_index("ix_availability_hotel_date", "availability", ["hotel_id", "date"], schema=schema)

    op.create_table(
        "bookings",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("hotel_id", sa.String(64), nullable=False),
        sa.Column("user_id", sa.String(64), nullable=True),
        sa.Column("room_type_id", sa.String(64), nullable=False),
        _json("rooms"),
        _json("guest"),
        sa.Column("check_in", sa.Date(), nullable=False),
        sa.Column("check_out", sa.Date(), nullable=False),
        sa.Column("nights", sa.Integer(), nullable=False),
        sa.Column("total_amount", sa.Float(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("payment_status", sa.String(16), nullable=False),
        sa.Column("source", sa.String(32), nullable=False),
        sa.Column("channel_booking_id", sa.String(128), nullable=True),
        _json("status_history"),
        _json("modifications"),
        _json("ota_amendments"),
        _json("amendment_flags"),
        _json("sync_status"),
        _json("pending_actions"),
        _json("raw_booking_payload", nullable=True),
        sa.Column("needs_sync", sa.Boolean(), nullable=False, server_default=sa.text("FALSE")),
        sa.Column(
            "has_active_pending_amendments", sa.Boolean(), nullable=False, server_default=sa.text("FALSE")
        ),
        _ts("reserved_until", nullable=True),
        _ts("actual_check_in", nullable=True),
        _ts("actual_check_out", nullable=True),
        _ts("no_show_recorded", nullable=True),
        _ts("last_status_change", nullable=True),
        sa.Column("version", sa.Integer(), nullable=False),
        _ts("created_at"),
        _ts("updated_at"),
        schema=schema,
    )
    op.create_index("ix_bookings_hotel_id", "bookings", ["hotel_id"], schema=schema)
    op.create_index(
        "uq_bookings_source_channel_booking_id",
        "bookings",
        ["source", "channel_booking_id"],
        unique=True,
        schema=schema,
        postgresql_where=sa.text("channel_booking_id IS NOT NULL"),
    )
    op.create_index(
        "ix_bookings_status_reserved_until", "bookings", ["status", "reserved_until"], schema=schema
    )
    op.create_index(
        "ix_bookings_pending_amendments_status",
        "bookings",
        ["has_active_pending_amendments", "status"],
        schema=schema,
    )
    op.create_index("ix_bookings_needs_sync", "bookings", ["needs_sync"], schema=schema)

    op.create_table(
        "channels",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("hotel_id", sa.String(64), nullable=False),
        sa.Column("channel_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("category", sa.String(32), nullable=False),
        sa.Column("credentials_encrypted", sa.Text(), nullable=True),
        sa.Column("credentials_version", sa.Integer(), nullable=False),
        _json("settings"),
        _json("room_mappings"),
        _json("rate_parity"),
        _json("restrictions"),
        _json("last_sync"),
        sa.Column("connection_status", sa.String(16), nullable=False),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("TRUE")),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("hotel_id", "channel_id", name="uq_channels_hotel_channel"),
        schema=schema,
    )
    op.create_index("ix_channels_hotel_id", "channels", ["hotel_id"], schema=schema)

    op.create_table(
        "reservation_mappings",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("hotel_id", sa.String(64), nullable=False),
        sa.Column("channel_id", sa.String(64), nullable=False),
        sa.Column("channel_reservation_id", sa.String(128), nullable=False),
        sa.Column("booking_id", sa.String(36), nullable=False),
        sa.Column("status", sa.String(32), nullable=False),
        _json("modifications"),
        _json("raw_payload", nullable=True),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint(
            "channel_id", "channel_reservation_id", name="uq_reservation_mappings_channel_res"
        ),
        schema=schema,
    )
    op.create_index(
        "ix_reservation_mappings_booking_id", "reservation_mappings", ["booking_id"], schema=schema
    )

    op.create_table(
        "inventory_syncs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("hotel_id", sa.String(64), nullable=False),
        sa.Column("channel_id", sa.String(64), nullable=False),
        sa.Column("room_type_id", sa.String(64), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        _json("payload", nullable=True),
        sa.Column("sync_status", sa.String(16), nullable=False),
        sa.Column("attempts", sa.Integer(), nullable=False),
        _ts("last_attempt_at", nullable=True),
        _ts("next_attempt_at", nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.UniqueConstraint("channel_id", "room_type_id", "date", name="uq_inventory_syncs_key"),
        schema=schema,
    )
    op.create_index("ix_inventory_syncs_status", "inventory_syncs", ["sync_status"], schema=schema)

    op.create_table(
        "overbooking_rules",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("hotel_id", sa.String(64), nullable=False),
        sa.Column("room_type_id", sa.String(64), nullable=False),
        sa.Column("max_overbooking_percent", sa.Float(), nullable=False),
        _json("seasonal_adjustments"),
        _json("day_of_week_factors"),
        _json("lead_time_adjustments"),
        _json("channel_overrides"),
        _json("fallback_actions"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("TRUE")),
        _ts("created_at"),
        _ts("updated_at"),
        sa.UniqueConstraint("hotel_id", "room_type_id", name="uq_overbooking_rules_hotel_room"),
        schema=schema,
    )

    op.create_table(
        "stop_sell_rules",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("hotel_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("rule_type", sa.String(32), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=False),
        _json("weekdays"),
        sa.Column("all_room_types", sa.Boolean(), nullable=False),
        _json("room_type_ids"),
        sa.Column("all_channels", sa.Boolean(), nullable=False),
        _json("channels"),
        _json("actions"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("TRUE")),
        _ts("created_at"),
        schema=schema,
    )
    op.create_index(
        "ix_stop_sell_rules_hotel_active", "stop_sell_rules", ["hotel_id", "is_active"], schema=schema
    )

    op.create_table(
        "pricing_strategies",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("hotel_id", sa.String(64), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("strategy_type", sa.String(32), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False),
        _json("room_type_ids"),
        _json("parameters"),
        sa.Column("min_rate", sa.Float(), nullable=True),
        sa.Column("max_rate", sa.Float(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.text("TRUE")),
        _ts("created_at"),
        schema=schema,
    )
    op.create_index(
        "ix_pricing_strategies_hotel_active",
        "pricing_strategies",
        ["hotel_id", "is_active"],
        schema=schema,
    )

    op.create_table(
        "demand_forecasts",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("hotel_id", sa.String(64), nullable=False),
        sa.Column("room_type_id", sa.String(64), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("predicted_occupancy", sa.Float(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False),
        _ts("updated_at"),
        sa.UniqueConstraint("hotel_id", "room_type_id", "date", name="uq_demand_forecasts_key"),
        schema=schema,
    )

    op.create_table(
        "competitor_rates",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("hotel_id", sa.String(64), nullable=False),
        sa.Column("competitor_id", sa.String(64), nullable=False),
        sa.Column("room_type_id", sa.String(64), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("rate", sa.Float(), nullable=False),
        sa.Column("currency", sa.String(3), nullable=False),
        sa.Column("confidence", sa.Integer(), nullable=False),
        _ts("collected_at"),
        schema=schema,
    )
    op.create_index(
        "ix_competitor_rates_lookup",
        "competitor_rates",
        ["hotel_id", "room_type_id", "date"],
        schema=schema,
    )

    op.create_table(
        "audit_log",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("hotel_id", sa.String(64), nullable=True),
        sa.Column("table_name", sa.String(64), nullable=False),
        sa.Column("record_id", sa.String(128), nullable=True),
        sa.Column("change_type", sa.String(64), nullable=False),
        sa.Column("source", sa.String(32), nullable=False),
        _json("old_values", nullable=True),
        _json("new_values", nullable=True),
        _json("tags"),
        _ts("timestamp"),
        schema=schema,
    )
    op.create_index("ix_audit_log_hotel_timestamp", "audit_log", ["hotel_id", "timestamp"], schema=schema)
    op.create_index("ix_audit_log_record", "audit_log", ["table_name", "record_id"], schema=schema)

    op.create_table(
        "rate_parity_logs",
        sa.Column("id", sa.String(36), primary_key=True),
        sa.Column("hotel_id", sa.String(64), nullable=False),
        sa.Column("room_type_id", sa.String(64), nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("base_rate", sa.Float(), nullable=False),
        _json("channel_rates"),
        _json("violations"),
        sa.Column("overall_compliance", sa.Boolean(), nullable=False),
        _ts("checked_at"),
        schema=schema,
    )
    op.create_index(
        "ix_rate_parity_logs_room_date", "rate_parity_logs", ["room_type_id", "date"], schema=schema
    )


def downgrade() -> None:
    """Downgrade schema."""
    schema = SCHEMA
    for table in (
        "rate_parity_logs",
        "audit_log",
        "competitor_rates",
        "demand_forecasts",
        "pricing_strategies",
        "stop_sell_rules",
        "overbooking_rules",
        "inventory_syncs",
        "reservation_mappings",
        "channels",
        "bookings",
        "availability",
        "room_types",
        "hotels",
    ):
        op.drop_table(table, schema=schema)
