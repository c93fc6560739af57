"""Product repository: catalog lookups, price history and purchase signals."""

import hashlib
from datetime import datetime
from decimal import Decimal

from sqlalchemy import and_, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from booster_beacon.db.models import PriceHistory, Product, Transaction


def hash_user_id(user_id: str) -> str:
    """Anonymized user key stored on purchase transactions."""
    return hashlib.sha256(user_id.encode("utf-8")).hexdigest()


class ProductRepository:
    """Repository for Product lookups and product-level signals."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get_by_id(self, product_id: str) -> Product | None:
        """Get product by ID."""
        result = await self.session.execute(select(Product).where(Product.id == product_id))
        return result.scalar_one_or_none()

    async def get_by_ids(self, product_ids: list[str]) -> list[Product]:
        if not product_ids:
            return []
        result = await self.session.execute(select(Product).where(Product.id.in_(product_ids)))
        return list(result.scalars().all())

    async def get_recent_prices(self, product_id: str, limit: int = 28) -> list[float]:
        """Recorded prices, newest first."""
        result = await self.session.execute(
            select(PriceHistory.price)
            .where(and_(PriceHistory.product_id == product_id, PriceHistory.price.is_not(None)))
            .order_by(PriceHistory.recorded_at.desc())
            .limit(limit)
        )
        return [float(p) for p in result.scalars().all()]

    async def get_purchase_rows(self, product_id: str, limit: int = 500) -> list[dict]:
        """Completed purchases for a product (price paid, msrp, lead time)."""
        result = await self.session.execute(
            select(Transaction.price_paid, Transaction.msrp, Transaction.lead_time_ms)
            .where(
                and_(
                    Transaction.product_id == product_id,
                    Transaction.status == "purchased",
                    Transaction.price_paid.is_not(None),
                )
            )
            .order_by(Transaction.created_at.desc())
            .limit(limit)
        )
        return [
            {
                "price_paid": float(r.price_paid),
                "msrp": float(r.msrp) if r.msrp is not None else None,
                "lead_time_ms": r.lead_time_ms,
            }
            for r in result.all()
        ]

    async def count_products_by_set(self, set_names: list[str]) -> dict[str, int]:
        """Number of active catalog products in each named set."""
        if not set_names:
            return {}
        result = await self.session.execute(
            select(Product.set_name, func.count(Product.id))
            .where(and_(Product.set_name.in_(set_names), Product.is_active == True))  # noqa: E712
            .group_by(Product.set_name)
        )
        return {name: int(count) for name, count in result.all()}

    async def get_unwatched_in_sets(
        self,
        set_names: list[str],
        exclude_ids: list[str],
        limit: int = 10,
    ) -> list[Product]:
        """Most popular products in the given sets the user is not watching."""
        if not set_names:
            return []
        query = select(Product).where(
            and_(Product.set_name.in_(set_names), Product.is_active == True)  # noqa: E712
        )
        if exclude_ids:
            query = query.where(Product.id.not_in(exclude_ids))
        query = query.order_by(Product.popularity_score.desc()).limit(limit)
        result = await self.session.execute(query)
        return list(result.scalars().all())

    async def get_user_purchase_summary(self, user_id: str, since: datetime) -> dict:
        """Purchase count and spend for a user, overall and since a cutoff."""
        spend = Transaction.price_paid * Transaction.qty
        result = await self.session.execute(
            select(
                func.count(Transaction.id).label("purchases"),
                func.coalesce(func.sum(spend), 0).label("total_value"),
                func.coalesce(
                    func.sum(spend).filter(Transaction.purchased_at >= since), 0
                ).label("recent_value"),
            ).where(
                and_(
                    Transaction.user_id_hash == hash_user_id(user_id),
                    Transaction.status == "purchased",
                )
            )
        )
        row = result.one()

        def _num(value) -> float:
            if isinstance(value, Decimal):
                return float(value)
            return float(value or 0)

        return {
            "purchases": int(row.purchases or 0),
            "totalValue": _num(row.total_value),
            "recentValue": _num(row.recent_value),
        }
