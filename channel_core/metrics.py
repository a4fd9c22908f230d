"""
Prometheus metrics for the ledger, booking lifecycle, channel sync and pricing.

Metrics are exposed via the /metrics endpoint for scraping by Prometheus.

Metric Types:
    - Counter: Cumulative metrics that only increase (e.g., pushes sent)
    - Histogram: Observations bucketed by value (e.g., push latency)
    - Gauge: Point-in-time value that can go up or down (e.g., queue depth)

Example:
    >>> from channel_core.metrics import sync_push_duration, sync_pushes
    >>> with sync_push_duration.labels(channel="booking.com").time():
    ...     result = adaptor.push_updates(channel, records)
    >>> sync_pushes.labels(channel="booking.com", status=result.status).inc()
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# =============================================================================
# Ledger Metrics
# =============================================================================

ledger_operations = Counter(
    "channel_core_ledger_operations_total",
    "Total availability ledger operations",
    ["operation", "outcome"],
)
"""
Counter for ledger operations.

Labels:
    operation: reserve, release, adjust_inventory, set_rate
    outcome: ok, oversold, conflict, integrity_violation, validation_error
"""

ledger_conflicts = Counter(
    "channel_core_ledger_conflicts_total",
    "Compare-and-set version mismatches on availability rows",
)
"""Counter for CAS retries on ledger rows (each retried attempt counts once)."""

# =============================================================================
# Booking Metrics
# =============================================================================

booking_transitions = Counter(
    "channel_core_booking_transitions_total",
    "Booking status transitions applied",
    ["from_status", "to_status"],
)
"""
Counter for booking status transitions.

Labels:
    from_status: Status before the transition
    to_status: Status after the transition
"""

# =============================================================================
# Outbound Sync Metrics
# =============================================================================

sync_pushes = Counter(
    "channel_core_sync_pushes_total",
    "Availability/rate pushes sent to channels",
    ["channel", "status"],
)
"""
Counter for channel pushes.

Labels:
    channel: Channel category (booking.com, expedia, ...)
    status: ok, partial, failed
"""

sync_push_duration = Histogram(
    "channel_core_sync_push_duration_seconds",
    "Duration of a single channel push in seconds",
    ["channel"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, float("inf")),
)
"""
Histogram for push duration.

Labels:
    channel: Channel category

Buckets: 0.1s, 0.25s, 0.5s, 1s, 2.5s, 5s, 10s, 30s, +Inf
"""

sync_dead_letters = Counter(
    "channel_core_sync_dead_letters_total",
    "Sync groups abandoned after exhausting retries",
    ["channel"],
)
"""
Counter for dead-lettered sync groups.

Labels:
    channel: Channel category
"""

sync_queue_depth = Gauge(
    "channel_core_sync_queue_depth",
    "Number of (hotel, room type) groups waiting for the next sync tick",
)
"""Gauge for the outbound queue size, sampled after every enqueue and tick."""

rate_parity_violations = Counter(
    "channel_core_rate_parity_violations_total",
    "Rate parity violations detected after sync",
    ["channel"],
)
"""
Counter for rate parity violations.

Labels:
    channel: Channel id reporting a rate outside the variance window
"""

# =============================================================================
# Inbound Metrics
# =============================================================================

inbound_reservations = Counter(
    "channel_core_inbound_reservations_total",
    "Inbound OTA reservation messages processed",
    ["channel", "outcome"],
)
"""
Counter for inbound reservation messages.

Labels:
    channel: Channel category the message came from
    outcome: created, duplicate, amendment_pending, cancelled,
             rejected_by_inventory, mapping_missing, invalid
"""

poll_duration = Histogram(
    "channel_core_poll_duration_seconds",
    "Duration of reservation polling per channel",
    ["channel"],
    buckets=(0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, float("inf")),
)
"""
Histogram for reservation polling duration.

Labels:
    channel: Channel category
"""

# =============================================================================
# Pricing Metrics
# =============================================================================

pricing_changes = Counter(
    "channel_core_pricing_changes_total",
    "Dynamic pricing evaluations by outcome",
    ["outcome"],
)
"""
Counter for pricing evaluations.

Labels:
    outcome: applied, below_threshold, recommended, skipped
"""

# =============================================================================
# API Metrics
# =============================================================================

api_requests = Counter(
    "channel_core_api_requests_total",
    "Total channel API requests made",
    ["endpoint", "status_code"],
)
"""
Counter for outbound HTTP requests to channel APIs.

Labels:
    endpoint: Logical endpoint name (e.g., "availability", "reservations")
    status_code: HTTP status code, or "error" for transport failures
"""

api_latency = Histogram(
    "channel_core_api_latency_seconds",
    "Channel API request latency in seconds",
    ["endpoint"],
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, float("inf")),
)
"""
Histogram for channel API request latency.

Labels:
    endpoint: Logical endpoint name

Buckets: 0.1s, 0.25s, 0.5s, 1s, 2.5s, 5s, 10s, +Inf
"""

# =============================================================================
# Credential Cache Metrics
# =============================================================================

credential_cache_hits = Counter(
    "channel_core_credential_cache_hits_total",
    "Total number of decrypted-credential cache hits",
)
"""Counter for credential cache hits (cached plaintext still matches the stored version)."""

credential_cache_misses = Counter(
    "channel_core_credential_cache_misses_total",
    "Total number of decrypted-credential cache misses",
)
"""Counter for credential cache misses (absent, expired, or stale version)."""
