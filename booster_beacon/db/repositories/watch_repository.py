"""Watch repository for user product subscriptions."""

from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from booster_beacon.config import settings
from booster_beacon.db.models import Watch


class WatchRepository:
    """Repository for watches."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def find_by_user_id(
        self,
        user_id: str,
        limit: int = 20,
        active_only: bool = True,
    ) -> list[Watch]:
        """Get a user's watches, newest first."""
        query = select(Watch).where(Watch.user_id == user_id)
        if active_only:
            query = query.where(Watch.is_active == True)  # noqa: E712
        query = query.order_by(Watch.created_at.desc()).limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def get_watched_product_ids(self, user_id: str, limit: int = 50) -> list[str]:
        watches = await self.find_by_user_id(user_id, limit=limit)
        return [str(w.product_id) for w in watches]

    async def get_updated_since(self, user_id: str, since: datetime, limit: int = 20) -> list[Watch]:
        """Watches modified strictly after ``since``."""
        result = await self.session.execute(
            select(Watch)
            .where(and_(Watch.user_id == user_id, Watch.updated_at > since))
            .order_by(Watch.updated_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_user_watch_stats(self, user_id: str, top_limit: int = 5) -> dict:
        """Totals, alert counts and the most-alerted products for a user."""
        since = datetime.now(timezone.utc) - timedelta(days=settings.recent_alerts_days)

        result = await self.session.execute(
            select(
                func.count(Watch.id).label("total"),
                func.count(Watch.id).filter(Watch.is_active == True).label("active"),  # noqa: E712
                func.coalesce(func.sum(Watch.alert_count), 0).label("total_alerts"),
                func.count(Watch.id).filter(Watch.last_alerted >= since).label("recent_alerts"),
            ).where(Watch.user_id == user_id)
        )
        row = result.one()

        top_result = await self.session.execute(
            select(Watch.product_id, Watch.alert_count)
            .where(and_(Watch.user_id == user_id, Watch.alert_count > 0))
            .order_by(Watch.alert_count.desc())
            .limit(top_limit)
        )

        return {
            "total": int(row.total or 0),
            "active": int(row.active or 0),
            "totalAlerts": int(row.total_alerts or 0),
            "recentAlerts": int(row.recent_alerts or 0),
            "topProducts": [
                {"product_id": str(r.product_id), "alert_count": int(r.alert_count)}
                for r in top_result.all()
            ],
        }
