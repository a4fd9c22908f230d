"""
Dynamic pricing controller.

For every ledger row in the pricing horizon, a recommended selling rate is
built from the highest-priority matching strategy, a demand adjustment from the
forecast and a competitor adjustment, then constrained and scored. In auto mode
changes that are large enough and score high enough are written through the
ledger, which flags the rows dirty for outbound sync.
"""

from __future__ import annotations

import threading
from datetime import date, datetime, timedelta
from typing import Any, Optional

import structlog
from sqlalchemy.engine import Engine

from channel_core import metrics
from channel_core.config import Settings
from channel_core.db.readers.hotels import list_room_types
from channel_core.db.readers.pricing import list_active_strategies, list_competitor_samples
from channel_core.errors import ChannelCoreError
from channel_core.schemas.availability import LedgerRow, RoomTypeInfo
from channel_core.schemas.pricing import (
    CompetitorSample,
    Forecast,
    PricingDecision,
    PricingMode,
    PricingRunReport,
    Strategy,
    StrategyType,
)
from channel_core.services.forecasting import DemandForecaster
from channel_core.services.ledger import AvailabilityLedger, constrain_rate
from channel_core.utils.datetime import utc_now

logger = structlog.get_logger(__name__)

PRICE_ELASTICITY = -0.8
MIN_COMPETITOR_CONFIDENCE = 70

PRICING_SOURCE = "dynamic_pricing"


# =============================================================================
# Strategies
# =============================================================================


def _occupancy_rate(strategy: Strategy, base_price: float, day: date, today: date, occupancy: float):
    matched = None
    for threshold in strategy.parameters.get("thresholds", []):
        if occupancy >= float(threshold["min_occupancy"]):
            if matched is None or float(threshold["min_occupancy"]) > float(matched["min_occupancy"]):
                matched = threshold
    if matched is None:
        return None
    return base_price * (1 + float(matched["adjustment_pct"]) / 100)


def _day_of_week_rate(strategy: Strategy, base_price: float, day: date, today: date, occupancy: float):
    multiplier = strategy.parameters.get("multipliers", {}).get(str(day.weekday()))
    if multiplier is None:
        return None
    return base_price * float(multiplier)


def _lead_time_rate(strategy: Strategy, base_price: float, day: date, today: date, occupancy: float):
    days_ahead = (day - today).days
    bands = sorted(strategy.parameters.get("bands", []), key=lambda b: int(b["max_days_ahead"]))
    for band in bands:
        if days_ahead <= int(band["max_days_ahead"]):
            return base_price * (1 + float(band["adjustment_pct"]) / 100)
    return None


def _fixed_rate(strategy: Strategy, base_price: float, day: date, today: date, occupancy: float):
    multiplier = strategy.parameters.get("multiplier")
    if multiplier is None:
        return None
    return base_price * float(multiplier)


STRATEGY_HANDLERS = {
    StrategyType.OCCUPANCY_BASED: _occupancy_rate,
    StrategyType.DAY_OF_WEEK: _day_of_week_rate,
    StrategyType.LEAD_TIME: _lead_time_rate,
    StrategyType.FIXED_MULTIPLIER: _fixed_rate,
}


def strategic_rate(
    strategies: list[Strategy],
    room_type_id: str,
    base_price: float,
    day: date,
    today: date,
    occupancy: float,
) -> tuple[float, Optional[Strategy]]:
    """
    Rate of the highest-priority strategy that yields one.

    Args:
        strategies (list[Strategy]): Active strategies, highest priority first

    Returns:
        tuple[float, Strategy | None]: The rate and the strategy that produced
            it; the base price and None when no strategy applies
    """
    for strategy in strategies:
        if not strategy.applies_to(room_type_id):
            continue
        rate = STRATEGY_HANDLERS[strategy.strategy_type](strategy, base_price, day, today, occupancy)
        if rate is not None:
            return rate, strategy
    return base_price, None


# =============================================================================
# Adjustments and scoring
# =============================================================================


def demand_adjustment(predicted_occupancy: float, current_occupancy: float, rate: float) -> float:
    """
    Price delta from the gap between predicted and current occupancy.

    Example:
        >>> demand_adjustment(80, 60, 1000)
        150.0
        >>> demand_adjustment(50, 58, 1000)
        -60.0
    """
    gap = predicted_occupancy - current_occupancy
    if gap > 10:
        return rate * 0.15
    if gap > 5:
        return rate * 0.08
    if gap < -10:
        return rate * -0.12
    if gap < -5:
        return rate * -0.06
    return 0.0


def competitor_adjustment(base_price: float, samples: list[CompetitorSample]) -> tuple[float, Optional[str]]:
    """
    Price delta that moves the base price towards the competitor average.

    Returns:
        tuple[float, str | None]: The delta and the position (underpriced,
            overpriced or competitive); (0, None) without samples
    """
    if not samples:
        return 0.0, None
    average = sum(s.rate for s in samples) / len(samples)
    if base_price < average * 0.9:
        return float(round(average * 0.95 - base_price)), "underpriced"
    if base_price > average * 1.15:
        return float(round(average * 1.10 - base_price)), "overpriced"
    return 0.0, "competitive"


def revenue_impact(
    current_rate: float, new_rate: float, total_rooms: int, current_occupancy: float
) -> dict[str, float]:
    """
    Project occupancy and revenue after a rate change with a fixed elasticity.

    Returns:
        dict: change_pct, projected_occupancy, revenue_delta and score (0-100)
    """
    change_pct = (new_rate - current_rate) / current_rate * 100
    projected = max(0.0, min(100.0, current_occupancy + PRICE_ELASTICITY * change_pct))

    current_revenue = current_occupancy / 100 * total_rooms * current_rate
    projected_revenue = projected / 100 * total_rooms * new_rate
    revenue_delta = projected_revenue - current_revenue

    return {
        "change_pct": round(change_pct, 2),
        "projected_occupancy": round(projected, 2),
        "revenue_delta": round(revenue_delta, 2),
        "score": recommendation_score(revenue_delta, change_pct),
    }


def recommendation_score(revenue_delta: float, change_pct: float) -> int:
    """
    Confidence in a rate change, 0-100.

    Example:
        >>> recommendation_score(0, 0)
        60
        >>> recommendation_score(5000, 25)
        65
    """
    score = 50.0
    if revenue_delta > 0:
        score += min(30.0, revenue_delta / 100)
    else:
        score -= min(30.0, abs(revenue_delta) / 100)

    if abs(change_pct) < 5:
        score += 10
    elif abs(change_pct) > 20:
        score -= 15
    return int(max(0, min(100, round(score))))


# =============================================================================
# Controller
# =============================================================================


class DynamicPricingController:
    """
    Recomputes selling rates for one hotel at a time.

    Args:
        engine: SQLAlchemy engine
        ledger: Ledger the applied rates are written through
        forecaster: Demand forecast source; built from the engine when None
        settings: Horizon, minimum change and auto-apply threshold
    """

    def __init__(
        self,
        engine: Engine,
        ledger: AvailabilityLedger,
        forecaster: Optional[DemandForecaster] = None,
        settings: Settings = Settings(),
    ):
        self.engine = engine
        self.ledger = ledger
        self.settings = settings
        self.forecaster = forecaster or DemandForecaster(engine, settings)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def _lock_for(self, hotel_id: str) -> threading.Lock:
        with self._locks_guard:
            if hotel_id not in self._locks:
                self._locks[hotel_id] = threading.Lock()
            return self._locks[hotel_id]

    def run(
        self,
        hotel_id: str,
        mode: PricingMode = PricingMode.AUTO,
        now: Optional[datetime] = None,
    ) -> PricingRunReport:
        """
        Evaluate every room type of a hotel over the pricing horizon.

        A run for a hotel that already has one in progress returns at once
        with ``skipped_reason="already_running"``.

        Args:
            hotel_id (str): Hotel ID
            mode (PricingMode): auto applies qualifying changes; recommend
                only reports them

        Returns:
            PricingRunReport: Every decision made in this run
        """
        report = PricingRunReport(hotel_id=hotel_id, mode=mode)
        lock = self._lock_for(hotel_id)
        if not lock.acquire(blocking=False):
            report.skipped_reason = "already_running"
            logger.info("pricing_run_skipped", hotel_id=hotel_id, reason=report.skipped_reason)
            return report

        try:
            now = now or utc_now()
            today = now.date()
            end = today + timedelta(days=self.settings.pricing_horizon_days)

            with self.engine.connect() as conn:
                room_types = list_room_types(conn, hotel_id)
                strategies = list_active_strategies(conn, hotel_id)

            for room_type in room_types:
                rows = [r for r in self.ledger.query(hotel_id, room_type.id, today, end) if not r.archived]
                if not rows:
                    continue
                forecasts = self.forecaster.forecasts_for(hotel_id, room_type.id, [r.date for r in rows], now)
                for row in rows:
                    decision = self._evaluate(room_type, row, strategies, forecasts.get(row.date), today)
                    self._settle(hotel_id, decision, strategies, mode, now)
                    report.decisions.append(decision)
                    report.evaluated += 1
                    if decision.applied:
                        report.applied += 1
        finally:
            lock.release()

        logger.info(
            "pricing_run_completed",
            hotel_id=hotel_id,
            mode=mode.value,
            evaluated=report.evaluated,
            applied=report.applied,
        )
        return report

    def _evaluate(
        self,
        room_type: RoomTypeInfo,
        row: LedgerRow,
        strategies: list[Strategy],
        forecast: Optional[Forecast],
        today: date,
    ) -> PricingDecision:
        occupancy = row.occupancy_pct
        base_price = room_type.base_price

        rate, strategy = strategic_rate(strategies, room_type.id, base_price, row.date, today, occupancy)

        demand = 0.0
        if forecast is not None:
            demand = demand_adjustment(forecast.predicted_occupancy, occupancy, rate)

        with self.engine.connect() as conn:
            samples = list_competitor_samples(
                conn, room_type.hotel_id, room_type.id, row.date, min_confidence=MIN_COMPETITOR_CONFIDENCE
            )
        competitor, position = competitor_adjustment(base_price, samples)

        recommended = constrain_rate(
            rate + demand + competitor,
            base_price,
            room_type.min_price,
            room_type.max_price,
            strategy.min_rate if strategy else None,
            strategy.max_rate if strategy else None,
        )
        impact = revenue_impact(row.selling_rate, recommended, row.total_rooms, occupancy)

        return PricingDecision(
            room_type_id=room_type.id,
            stay_date=row.date,
            current_rate=row.selling_rate,
            base_price=base_price,
            strategic_rate=round(rate, 2),
            strategy_id=strategy.id if strategy else None,
            demand_adjustment=round(demand, 2),
            competitor_adjustment=competitor,
            competitor_position=position,
            recommended_rate=recommended,
            change_pct=impact["change_pct"],
            current_occupancy=round(occupancy, 2),
            projected_occupancy=impact["projected_occupancy"],
            revenue_delta=impact["revenue_delta"],
            score=impact["score"],
        )

    def _settle(
        self,
        hotel_id: str,
        decision: PricingDecision,
        strategies: list[Strategy],
        mode: PricingMode,
        now: datetime,
    ) -> None:
        """Apply the decision when it qualifies and record why it was or was not."""
        if abs(decision.change_pct) < self.settings.pricing_min_change_pct:
            decision.reason = "below_min_change"
            metrics.pricing_changes.labels(outcome="skipped").inc()
            return
        if decision.score < self.settings.pricing_min_auto_apply_score:
            decision.reason = "below_threshold"
            metrics.pricing_changes.labels(outcome="below_threshold").inc()
            return
        if mode != PricingMode.AUTO:
            decision.reason = "recommend_mode"
            metrics.pricing_changes.labels(outcome="recommended").inc()
            return

        strategy = next((s for s in strategies if s.id == decision.strategy_id), None)
        try:
            self.ledger.set_rate(
                hotel_id,
                decision.room_type_id,
                decision.stay_date,
                decision.recommended_rate,
                source=PRICING_SOURCE,
                strategy_min=strategy.min_rate if strategy else None,
                strategy_max=strategy.max_rate if strategy else None,
                context=_audit_context(decision),
                now=now,
            )
        except ChannelCoreError as e:
            decision.reason = f"write_failed: {e.kind}"
            metrics.pricing_changes.labels(outcome="skipped").inc()
            logger.warning(
                "pricing_write_failed",
                hotel_id=hotel_id,
                room_type_id=decision.room_type_id,
                date=decision.stay_date.isoformat(),
                kind=e.kind,
                error=e.message,
            )
            return

        decision.applied = True
        decision.reason = "applied"
        metrics.pricing_changes.labels(outcome="applied").inc()
        logger.info(
            "pricing_rate_applied",
            hotel_id=hotel_id,
            room_type_id=decision.room_type_id,
            date=decision.stay_date.isoformat(),
            old_rate=decision.current_rate,
            new_rate=decision.recommended_rate,
            score=decision.score,
        )


def _audit_context(decision: PricingDecision) -> dict[str, Any]:
    return {
        "pricing": {
            "strategy_id": decision.strategy_id,
            "strategic_rate": decision.strategic_rate,
            "demand_adjustment": decision.demand_adjustment,
            "competitor_adjustment": decision.competitor_adjustment,
            "competitor_position": decision.competitor_position,
            "score": decision.score,
            "change_pct": decision.change_pct,
        }
    }
