"""Tests for the heuristic product insight model."""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from booster_beacon.insights.heuristic import (
    HeuristicInsightRunner,
    InsightInputs,
    compute_insight,
)

NOW = datetime(2026, 10, 1, 12, 0, tzinfo=timezone.utc)


class FakeSessionFactory:
    """Callable returning an async context manager around one mock session."""

    def __init__(self):
        self.session = MagicMock()

    def __call__(self):
        return self

    async def __aenter__(self):
        return self.session

    async def __aexit__(self, *exc):
        return False


def rising_inputs(**overrides) -> InsightInputs:
    data = dict(
        product_id="11111111-1111-4111-8111-111111111111",
        product_name="Scarlet & Violet Booster Box",
        msrp=100.0,
        popularity_score=500,
        prices=[110.0] * 7 + [100.0] * 7,
        alert_velocity=5,
    )
    data.update(overrides)
    return InsightInputs(**data)


class TestComputeInsight:
    def test_rising_trend(self):
        insight = compute_insight(rising_inputs(), now=NOW)

        assert insight["priceForecast"] == {"nextWeek": 115.5, "nextMonth": 132.0, "confidence": 0.7}
        assert insight["selloutRisk"] == {"score": 45, "timeframe": "2-4 weeks", "confidence": 0.5}
        assert insight["roiEstimate"] == {"shortTerm": 5.0, "longTerm": 12.0, "confidence": 0.6}
        assert insight["hypeScore"] == 43
        assert insight["updatedAt"] == NOW.isoformat()
        assert "purchaseSignals" not in insight

    def test_deterministic_for_same_inputs(self):
        inputs = rising_inputs()

        assert compute_insight(inputs, now=NOW) == compute_insight(inputs, now=NOW)

    def test_no_history_uses_msrp_baseline(self):
        insight = compute_insight(rising_inputs(prices=[], alert_velocity=0, popularity_score=0), now=NOW)

        assert insight["priceForecast"]["nextWeek"] == 100.0
        assert insight["priceForecast"]["nextMonth"] == 100.0
        assert insight["priceForecast"]["confidence"] == 0.4
        assert insight["selloutRisk"]["timeframe"] == "4+ weeks"
        assert insight["hypeScore"] == 0

    def test_scores_are_clamped(self):
        insight = compute_insight(
            rising_inputs(popularity_score=5000, alert_velocity=100, prices=[50.0] * 40),
            now=NOW,
        )

        assert insight["selloutRisk"]["score"] == 100
        assert insight["selloutRisk"]["timeframe"] == "1-2 weeks"
        assert insight["selloutRisk"]["confidence"] == 0.9
        assert insight["priceForecast"]["confidence"] == 0.9
        assert insight["hypeScore"] == 100

    def test_missing_name_defaults(self):
        insight = compute_insight(rising_inputs(product_name=None), now=NOW)

        assert insight["productName"] == "Unknown Product"

    def test_purchase_signals_and_fast_buyer_boost(self):
        hour_ms = 3_600_000
        inputs = rising_inputs(
            purchases=[
                {"price_paid": 90.0, "msrp": 100.0, "lead_time_ms": 12 * hour_ms},
                {"price_paid": 110.0, "msrp": 100.0, "lead_time_ms": 4 * hour_ms},
            ]
        )

        insight = compute_insight(inputs, now=NOW)

        assert insight["purchaseSignals"] == {
            "averagePaidPrice": 100.0,
            "avgDeltaToMsrpPct": 0.0,
            "averageLeadTimeHours": 8.0,
            "sampleSize": 2,
        }
        assert insight["selloutRisk"]["score"] == 55

    def test_purchase_signals_below_msrp(self):
        inputs = rising_inputs(purchases=[{"price_paid": 80.0, "msrp": 100.0, "lead_time_ms": None}])

        signals = compute_insight(inputs, now=NOW)["purchaseSignals"]

        assert signals["avgDeltaToMsrpPct"] == 20.0
        assert signals["averageLeadTimeHours"] is None


class TestHeuristicInsightRunner:
    @pytest.mark.asyncio
    async def test_predict_missing_product_returns_none(self):
        runner = HeuristicInsightRunner(FakeSessionFactory())
        runner.load_inputs = AsyncMock(return_value=None)

        assert await runner.predict("missing") is None

    @pytest.mark.asyncio
    async def test_predict_swallows_loader_errors(self):
        runner = HeuristicInsightRunner(FakeSessionFactory())
        runner.load_inputs = AsyncMock(side_effect=RuntimeError("db down"))

        assert await runner.predict("p1") is None

    @pytest.mark.asyncio
    async def test_predict_returns_insight(self):
        factory = FakeSessionFactory()
        runner = HeuristicInsightRunner(factory)
        runner.load_inputs = AsyncMock(return_value=rising_inputs())

        insight = await runner.predict("p1")

        assert insight["productId"] == "11111111-1111-4111-8111-111111111111"
        runner.load_inputs.assert_awaited_once_with(factory.session, "p1")
