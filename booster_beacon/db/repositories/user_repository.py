"""User repository: account stats and push subscription storage."""

from datetime import datetime, timezone

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.dialects.postgresql import insert
from sqlalchemy.ext.asyncio import AsyncSession

from booster_beacon.db.models import Alert, PushSubscription, Transaction, User, Watch
from booster_beacon.db.repositories.product_repository import hash_user_id


class UserRepository:
    """Repository for users and their push subscriptions."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, user_id: str) -> User | None:
        result = await self.session.execute(select(User).where(User.id == user_id))
        return result.scalar_one_or_none()

    async def get_user_stats(self, user_id: str) -> dict | None:
        """Account-level counters; None when the user does not exist."""
        user = await self.get_by_id(user_id)
        if user is None:
            return None

        result = await self.session.execute(
            select(
                select(func.count(Watch.id))
                .where(Watch.user_id == user_id)
                .scalar_subquery()
                .label("watch_count"),
                select(func.count(Alert.id))
                .where(Alert.user_id == user_id)
                .scalar_subquery()
                .label("alert_count"),
                select(func.count(Transaction.id))
                .where(
                    and_(
                        Transaction.user_id_hash == hash_user_id(user_id),
                        Transaction.status == "purchased",
                    )
                )
                .scalar_subquery()
                .label("purchase_count"),
            )
        )
        row = result.one()

        created_at = user.created_at or datetime.now(timezone.utc)
        stats = {
            "watchCount": int(row.watch_count or 0),
            "alertCount": int(row.alert_count or 0),
            "successfulPurchases": int(row.purchase_count or 0),
            "accountAge": (datetime.now(timezone.utc) - created_at).days,
        }
        if user.last_login:
            stats["lastLogin"] = user.last_login.isoformat()
        return stats

    # Push subscriptions

    async def get_push_subscriptions(self, user_id: str) -> list[PushSubscription]:
        result = await self.session.execute(
            select(PushSubscription)
            .where(PushSubscription.user_id == user_id)
            .order_by(PushSubscription.created_at.asc())
        )
        return list(result.scalars().all())

    async def upsert_push_subscription(
        self,
        user_id: str,
        endpoint: str,
        p256dh: str,
        auth: str,
    ) -> None:
        """Insert a subscription, or refresh keys when the endpoint is known."""
        now = datetime.now(timezone.utc)
        stmt = insert(PushSubscription).values(
            user_id=user_id,
            endpoint=endpoint,
            p256dh=p256dh,
            auth=auth,
            last_used=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[PushSubscription.user_id, PushSubscription.endpoint],
            set_={"p256dh": p256dh, "auth": auth, "last_used": now},
        )
        await self.session.execute(stmt)

    async def delete_push_subscription(self, user_id: str, endpoint: str) -> bool:
        """Remove exactly one subscription by endpoint."""
        result = await self.session.execute(
            delete(PushSubscription).where(
                and_(
                    PushSubscription.user_id == user_id,
                    PushSubscription.endpoint == endpoint,
                )
            )
        )
        return result.rowcount > 0

    async def touch_push_subscriptions(self, user_id: str, endpoints: list[str]) -> None:
        if not endpoints:
            return
        await self.session.execute(
            update(PushSubscription)
            .where(
                and_(
                    PushSubscription.user_id == user_id,
                    PushSubscription.endpoint.in_(endpoints),
                )
            )
            .values(last_used=datetime.now(timezone.utc))
        )
