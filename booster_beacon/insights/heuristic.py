"""Deterministic product insight heuristic.

Score formulas:
    trend        = (recent_avg - previous_avg) / previous_avg
    next_week    = baseline * (1 + trend * 0.5)
    next_month   = baseline * (1 + trend * 2)
    sellout      = pop_scaled * 0.6 + alert_velocity * 3   (+10 for fast buyers)
    roi_short    = trend * 100 + discount * 50
    roi_long     = trend * 200 + discount * 80
    hype         = pop_scaled * 0.7 + min(100, alert_velocity * 5) * 0.3

``compute_insight`` only reads its inputs, so identical inputs always give
identical scores. ``HeuristicInsightRunner`` loads those inputs.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone

import numpy as np
from sqlalchemy.ext.asyncio import AsyncSession

from booster_beacon.analytics.alert_stats import round_half_up
from booster_beacon.config import settings
from booster_beacon.db.repositories.alert_repository import AlertRepository
from booster_beacon.db.repositories.product_repository import ProductRepository

logger = logging.getLogger(__name__)

WINDOW_DAYS = 7
ALERT_VELOCITY_DAYS = 7

PRICE_CONFIDENCE_MIN = 0.4
PRICE_CONFIDENCE_MAX = 0.9
PRICE_CONFIDENCE_POINTS = 20

SELLOUT_CONFIDENCE_MIN = 0.5
SELLOUT_CONFIDENCE_MAX = 0.9

ROI_CONFIDENCE_MIN = 0.45
ROI_CONFIDENCE_MAX = 0.85

FAST_PURCHASE_HOURS = 24
FAST_PURCHASE_BOOST = 10

SELLOUT_HIGH = 70
SELLOUT_MEDIUM = 40


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _mean(values: list[float]) -> float:
    return float(np.mean(values)) if values else 0.0


@dataclass
class InsightInputs:
    """Everything the heuristic needs about one product."""

    product_id: str
    product_name: str | None
    msrp: float | None
    popularity_score: float
    prices: list[float] = field(default_factory=list)  # newest first
    alert_velocity: int = 0  # alerts in the last 7 days
    purchases: list[dict] = field(default_factory=list)  # price_paid, msrp, lead_time_ms


def _purchase_signals(inputs: InsightInputs) -> dict | None:
    paid = [p["price_paid"] for p in inputs.purchases if p.get("price_paid") is not None]
    if not paid:
        return None

    avg_paid = _mean(paid)

    msrp = inputs.msrp or 0
    if msrp <= 0:
        msrp = _mean([p["msrp"] for p in inputs.purchases if p.get("msrp")])
    delta_pct = (msrp - avg_paid) / msrp * 100 if msrp > 0 else 0.0

    lead_times = [p["lead_time_ms"] for p in inputs.purchases if p.get("lead_time_ms") is not None]
    avg_lead_hours = _mean(lead_times) / 3_600_000 if lead_times else None

    return {
        "averagePaidPrice": round_half_up(avg_paid, 2),
        "avgDeltaToMsrpPct": round_half_up(delta_pct, 2),
        "averageLeadTimeHours": (
            round_half_up(avg_lead_hours, 2) if avg_lead_hours is not None else None
        ),
        "sampleSize": len(paid),
    }


def compute_insight(inputs: InsightInputs, now: datetime | None = None) -> dict:
    """Build the insight document for one product."""
    prices = inputs.prices[: settings.price_history_lookback]
    recent = prices[:WINDOW_DAYS]
    previous = prices[WINDOW_DAYS : WINDOW_DAYS * 2]

    recent_avg = _mean(recent)
    prev_avg = _mean(previous)
    trend = (recent_avg - prev_avg) / prev_avg if prev_avg > 0 else 0.0

    signals = _purchase_signals(inputs)
    msrp = float(inputs.msrp or 0)

    if recent_avg > 0:
        baseline = recent_avg
    elif msrp > 0:
        baseline = msrp
    elif signals:
        baseline = signals["averagePaidPrice"]
    else:
        baseline = 0.0

    next_week = baseline * (1 + trend * 0.5)
    next_month = baseline * (1 + trend * 2)
    price_confidence = _clamp(
        len(prices) / PRICE_CONFIDENCE_POINTS, PRICE_CONFIDENCE_MIN, PRICE_CONFIDENCE_MAX
    )

    velocity = inputs.alert_velocity
    pop_scaled = min(100.0, float(inputs.popularity_score or 0) / 10)
    sellout = _clamp(pop_scaled * 0.6 + velocity * 3, 0, 100)
    if signals and signals["averageLeadTimeHours"] is not None:
        if signals["averageLeadTimeHours"] < FAST_PURCHASE_HOURS:
            sellout = _clamp(sellout + FAST_PURCHASE_BOOST, 0, 100)

    if sellout > SELLOUT_HIGH:
        timeframe = "1-2 weeks"
    elif sellout > SELLOUT_MEDIUM:
        timeframe = "2-4 weeks"
    else:
        timeframe = "4+ weeks"
    sellout_confidence = _clamp(
        velocity / 20 + pop_scaled / 200, SELLOUT_CONFIDENCE_MIN, SELLOUT_CONFIDENCE_MAX
    )

    discount = (msrp - baseline) / msrp if msrp > 0 and baseline > 0 else 0.0
    roi_short = trend * 100 + discount * 50
    roi_long = trend * 200 + discount * 80
    roi_confidence = _clamp(
        (price_confidence + sellout_confidence) / 2, ROI_CONFIDENCE_MIN, ROI_CONFIDENCE_MAX
    )

    hype = min(100, int(round_half_up(pop_scaled * 0.7 + min(100, velocity * 5) * 0.3, 0)))

    insight = {
        "productId": inputs.product_id,
        "productName": inputs.product_name or "Unknown Product",
        "priceForecast": {
            "nextWeek": round_half_up(next_week, 2),
            "nextMonth": round_half_up(next_month, 2),
            "confidence": round_half_up(price_confidence, 2),
        },
        "selloutRisk": {
            "score": int(round_half_up(sellout, 0)),
            "timeframe": timeframe,
            "confidence": round_half_up(sellout_confidence, 2),
        },
        "roiEstimate": {
            "shortTerm": round_half_up(roi_short, 2),
            "longTerm": round_half_up(roi_long, 2),
            "confidence": round_half_up(roi_confidence, 2),
        },
        "hypeScore": hype,
        "updatedAt": (now or datetime.now(timezone.utc)).isoformat(),
    }
    if signals:
        insight["purchaseSignals"] = signals
    return insight


class HeuristicInsightRunner:
    """Loads a product's inputs and runs the heuristic.

    Each ``predict`` call opens its own session so predictions can run
    concurrently.
    """

    def __init__(self, session_factory: Callable[[], AsyncSession]):
        self.session_factory = session_factory

    async def load_inputs(self, session: AsyncSession, product_id: str) -> InsightInputs | None:
        products = ProductRepository(session)
        product = await products.get_by_id(product_id)
        if product is None:
            return None

        prices = await products.get_recent_prices(product_id, limit=settings.price_history_lookback)
        purchases = await products.get_purchase_rows(product_id)
        since = datetime.now(timezone.utc) - timedelta(days=ALERT_VELOCITY_DAYS)
        velocity = await AlertRepository(session).count_product_alerts_since(product_id, since)

        return InsightInputs(
            product_id=str(product.id),
            product_name=product.name,
            msrp=float(product.msrp) if product.msrp is not None else None,
            popularity_score=float(product.popularity_score or 0),
            prices=prices,
            alert_velocity=min(int(velocity), 100),
            purchases=purchases,
        )

    async def predict(self, product_id: str) -> dict | None:
        """Insight for one product, or None if it is missing or loading fails."""
        try:
            async with self.session_factory() as session:
                inputs = await self.load_inputs(session, product_id)
            if inputs is None:
                return None
            return compute_insight(inputs)
        except Exception as e:
            logger.error(f"Heuristic insight failed for product {product_id}: {e}")
            return None
