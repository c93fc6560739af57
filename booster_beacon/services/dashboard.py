"""Dashboard aggregation service.

Each read-model is assembled from independent sub-fetches run with
``asyncio.gather``. Every sub-fetch opens its own session because an
``AsyncSession`` must not be shared between concurrent tasks. The core
groups are fail-fast: one failing sub-fetch fails the whole call.
"""

import asyncio
import logging
import re
from collections import Counter
from collections.abc import Awaitable, Callable
from datetime import datetime, timedelta, timezone
from typing import Any, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from booster_beacon.analytics.alert_stats import AlertStatsQuery
from booster_beacon.db.database import async_session_maker
from booster_beacon.db.repositories.alert_repository import AlertRepository
from booster_beacon.db.repositories.product_repository import ProductRepository
from booster_beacon.db.repositories.user_repository import UserRepository
from booster_beacon.db.repositories.watch_repository import WatchRepository
from booster_beacon.errors import DatabaseError, NotFoundError, ValidationError
from booster_beacon.insights.heuristic import HeuristicInsightRunner

logger = logging.getLogger(__name__)

T = TypeVar("T")

RECENT_ALERTS_LIMIT = 10
WATCHED_PRODUCTS_LIMIT = 20
TOP_PRODUCTS_LIMIT = 5
PREDICTIVE_INSIGHTS_LIMIT = 50
UPDATES_ALERT_LIMIT = 5
UPDATES_DEFAULT_MINUTES = 5
PORTFOLIO_PERIOD_DAYS = 30
RECOMMENDATIONS_LIMIT = 5
MAX_PRODUCT_CONCURRENCY = 8

PRODUCT_ID_PATTERN = re.compile(r"^[a-zA-Z0-9\-_]+$")


def _now() -> datetime:
    return datetime.now(timezone.utc)


class DashboardService:
    """Builds dashboard, portfolio and insight read-models for a user."""

    def __init__(
        self,
        session_factory: Callable[[], AsyncSession] = async_session_maker,
        insight_runner: HeuristicInsightRunner | None = None,
        max_product_concurrency: int = MAX_PRODUCT_CONCURRENCY,
    ):
        self.session_factory = session_factory
        self.insight_runner = insight_runner or HeuristicInsightRunner(session_factory)
        self._product_slots = asyncio.Semaphore(max_product_concurrency)

    async def _run(self, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        try:
            async with self.session_factory() as session:
                return await fn(session)
        except SQLAlchemyError as e:
            logger.error(f"Dashboard query failed: {e}", exc_info=True)
            raise DatabaseError(cause=e) from e

    # Sub-fetches

    async def _user_stats(self, user_id: str) -> dict:
        stats = await self._run(lambda s: UserRepository(s).get_user_stats(user_id))
        if stats is None:
            raise NotFoundError("User", user_id)
        return stats

    async def _watch_stats(self, user_id: str) -> dict:
        return await self._run(lambda s: WatchRepository(s).get_user_watch_stats(user_id))

    async def _alert_stats(self, user_id: str) -> tuple[dict, int]:
        return await self._run(
            lambda s: AlertStatsQuery(s).get_user_alert_stats_with_clicks(user_id)
        )

    async def _recent_alerts(self, user_id: str) -> list[dict]:
        alerts = await self._run(
            lambda s: AlertRepository(s).get_recent_for_user(user_id, limit=RECENT_ALERTS_LIMIT)
        )
        return [a.to_dict() for a in alerts]

    async def _product(self, product_id: str) -> dict | None:
        product = await self._run(lambda s: ProductRepository(s).get_by_id(product_id))
        return product.to_dict() if product else None

    async def _product_with_insight(self, product_id: str) -> tuple[dict | None, dict | None]:
        async with self._product_slots:
            product, insight = await asyncio.gather(
                self._product(product_id),
                self.insight_runner.predict(product_id),
            )
        return product, insight

    async def _watched_products_with_insights(self, user_id: str) -> list[dict]:
        watches = await self._run(
            lambda s: WatchRepository(s).find_by_user_id(user_id, limit=WATCHED_PRODUCTS_LIMIT)
        )
        pairs = await asyncio.gather(
            *(self._product_with_insight(str(w.product_id)) for w in watches)
        )
        return [
            {"watch": watch.to_dict(), "product": product, "insights": insight}
            for watch, (product, insight) in zip(watches, pairs)
            if product is not None
        ]

    async def _top_holdings(self, top_products: list[dict]) -> list[dict]:
        items = top_products[:TOP_PRODUCTS_LIMIT]
        pairs = await asyncio.gather(
            *(self._product_with_insight(item["product_id"]) for item in items)
        )
        return [
            {"product": product, "alertCount": item["alert_count"], "insights": insight}
            for item, (product, insight) in zip(items, pairs)
            if product is not None
        ]

    # Read-models

    async def get_dashboard_data(self, user_id: str) -> dict:
        """Stats, recent alerts, watched products and insights in one batch."""
        try:
            (
                user_stats, watch_stats, (alert_stats, clicked), recent_alerts, watched
            ) = await asyncio.gather(
                self._user_stats(user_id),
                self._watch_stats(user_id),
                self._alert_stats(user_id),
                self._recent_alerts(user_id),
                self._watched_products_with_insights(user_id),
            )
        except Exception as e:
            logger.error(f"Error getting dashboard data for user {user_id}: {e}")
            raise

        return {
            "stats": {
                "totalWatches": watch_stats["active"],
                "unreadAlerts": alert_stats["unread"],
                "totalAlerts": alert_stats["total"],
                "successfulPurchases": user_stats.get("successfulPurchases", 0),
                "clickThroughRate": alert_stats["clickThroughRate"],
                "recentAlerts": alert_stats["recentAlerts"],
            },
            "recentAlerts": recent_alerts,
            "watchedProducts": watched,
            "insights": {
                "topPerformingProducts": watch_stats["topProducts"],
                "alertTrends": alert_stats["byType"],
                "engagementMetrics": {
                    "clickThroughRate": alert_stats["clickThroughRate"],
                    "totalClicks": clicked,
                    "averageResponseTime": _average_response_time(alert_stats),
                },
            },
        }

    async def get_predictive_insights(
        self,
        user_id: str,
        product_ids: list[str] | None = None,
    ) -> list[dict]:
        """Heuristic insights for the given products or the user's watch list.

        Raises:
            ValidationError: any explicit product id has an invalid shape.
        """
        if product_ids:
            invalid = [pid for pid in product_ids if not PRODUCT_ID_PATTERN.match(pid)]
            if invalid:
                raise ValidationError(
                    f"Invalid product ID format: {', '.join(invalid)}",
                    code="INVALID_PRODUCT_IDS",
                    details={"invalidIds": invalid},
                )
            targets = list(product_ids)
        else:
            targets = await self._run(
                lambda s: WatchRepository(s).get_watched_product_ids(
                    user_id, limit=PREDICTIVE_INSIGHTS_LIMIT
                )
            )

        async def _predict(product_id: str) -> dict | None:
            async with self._product_slots:
                return await self.insight_runner.predict(product_id)

        insights = await asyncio.gather(*(_predict(pid) for pid in targets))
        return [i for i in insights if i is not None]

    async def get_portfolio_data(self, user_id: str) -> dict:
        """Holdings, collection gaps and performance derived from watches and alerts."""
        since = _now() - timedelta(days=PORTFOLIO_PERIOD_DAYS)
        try:
            watch_stats, (alert_stats, clicked), purchases, gap_analysis = await asyncio.gather(
                self._watch_stats(user_id),
                self._alert_stats(user_id),
                self._run(
                    lambda s: ProductRepository(s).get_user_purchase_summary(user_id, since)
                ),
                self._collection_gaps(user_id),
            )
            top_holdings = await self._top_holdings(watch_stats["topProducts"])
        except Exception as e:
            logger.error(f"Error getting portfolio data for user {user_id}: {e}")
            raise

        total_value = purchases["totalValue"]
        change = purchases["recentValue"]
        base = total_value - change
        sent = alert_stats["byStatus"].get("sent", 0)

        return {
            "totalValue": round(total_value, 2),
            "totalItems": watch_stats["active"],
            "valueChange": {
                "amount": round(change, 2),
                "percentage": round(change / base * 100, 2) if base > 0 else 0,
                "period": f"{PORTFOLIO_PERIOD_DAYS}d",
            },
            "topHoldings": top_holdings,
            "gapAnalysis": gap_analysis,
            "performance": {
                "alertsGenerated": alert_stats["total"],
                "successfulPurchases": purchases["purchases"],
                "missedOpportunities": max(0, sent - clicked),
                "averageResponseTime": _average_response_time(alert_stats),
            },
        }

    async def _collection_gaps(self, user_id: str) -> dict:
        """Set completion for the user's watched products plus purchase picks."""

        async def _load(session: AsyncSession) -> tuple[list, dict, list]:
            product_ids = await WatchRepository(session).get_watched_product_ids(
                user_id, limit=PREDICTIVE_INSIGHTS_LIMIT
            )
            products = ProductRepository(session)
            watched = await products.get_by_ids(product_ids)
            set_names = sorted({p.set_name for p in watched if p.set_name})
            set_sizes = await products.count_products_by_set(set_names)
            candidates = await products.get_unwatched_in_sets(
                set_names, product_ids, limit=RECOMMENDATIONS_LIMIT
            )
            return watched, set_sizes, candidates

        watched, set_sizes, candidates = await self._run(_load)

        owned = Counter(p.set_name for p in watched if p.set_name)
        missing_sets = []
        for set_name, size in set_sizes.items():
            have = min(owned.get(set_name, 0), size)
            if size <= 0 or have >= size:
                continue
            missing_sets.append({
                "setName": set_name,
                "completionPercentage": round(have / size * 100, 2),
                "missingItems": size - have,
            })
        missing_sets.sort(key=lambda s: s["completionPercentage"], reverse=True)

        insights = await asyncio.gather(
            *(self.insight_runner.predict(str(p.id)) for p in candidates)
        )
        recommended = [
            _recommendation(str(product.id), product.set_name, insight)
            for product, insight in zip(candidates, insights)
        ]
        return {"missingSets": missing_sets, "recommendedPurchases": recommended}

    async def get_consolidated_dashboard_data(
        self,
        user_id: str,
        product_ids: list[str] | None = None,
    ) -> dict:
        """Dashboard, portfolio and insights from one parallel batch."""
        dashboard, portfolio, insights = await asyncio.gather(
            self.get_dashboard_data(user_id),
            self.get_portfolio_data(user_id),
            self.get_predictive_insights(user_id, product_ids),
        )
        return {
            "dashboard": dashboard,
            "portfolio": portfolio,
            "insights": insights,
            "timestamp": _now().isoformat(),
        }

    async def get_dashboard_updates(self, user_id: str, since: datetime | None = None) -> dict:
        """Alerts and watch changes strictly newer than ``since``."""
        since = since or _now() - timedelta(minutes=UPDATES_DEFAULT_MINUTES)
        alerts, watches = await asyncio.gather(
            self._run(
                lambda s: AlertRepository(s).get_created_since(
                    user_id, since, limit=UPDATES_ALERT_LIMIT
                )
            ),
            self._run(lambda s: WatchRepository(s).get_updated_since(user_id, since)),
        )
        return {
            "newAlerts": [a.to_dict() for a in alerts],
            "watchUpdates": [w.to_dict() for w in watches],
            "timestamp": _now().isoformat(),
        }


def _average_response_time(alert_stats: dict) -> str:
    return "< 2 minutes" if alert_stats["clickThroughRate"] > 50 else "< 5 minutes"


def _recommendation(product_id: str, set_name: str | None, insight: dict | None) -> dict[str, Any]:
    if insight is None:
        return {"productId": product_id, "priority": "low", "reason": f"Completes {set_name}"}

    sellout = insight["selloutRisk"]["score"]
    roi = insight["roiEstimate"]["shortTerm"]
    if sellout > 70:
        priority, reason = "high", "High sellout risk"
    elif roi > 10:
        priority, reason = "high", "High ROI potential"
    elif sellout > 40:
        priority, reason = "medium", f"Completes {set_name}"
    else:
        priority, reason = "low", f"Completes {set_name}"
    return {"productId": product_id, "priority": priority, "reason": reason}
