"""Alert repository: creation, status transitions and user/product queries."""

import logging
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy import and_, case, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from booster_beacon.config import settings
from booster_beacon.db.models import Alert, AlertPriority, AlertStatus, AlertType
from booster_beacon.errors import ValidationError

logger = logging.getLogger(__name__)

MIN_RETRY_COUNT = 0
MAX_RETRY_COUNT = 10

REQUIRED_FIELDS = ("user_id", "product_id", "retailer_id", "type", "data")

# Higher rank is delivered first.
PRIORITY_RANK = case(
    (Alert.priority == AlertPriority.URGENT.value, 4),
    (Alert.priority == AlertPriority.HIGH.value, 3),
    (Alert.priority == AlertPriority.MEDIUM.value, 2),
    else_=1,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def sanitize_alert(data: dict[str, Any]) -> dict[str, Any]:
    """Fill defaults and normalize free-text fields on an alert payload."""
    sanitized = dict(data)

    if not isinstance(sanitized.get("delivery_channels"), list):
        sanitized["delivery_channels"] = []

    if not sanitized.get("data"):
        sanitized["data"] = {
            "product_name": "",
            "retailer_name": "",
            "availability_status": "",
            "product_url": "",
        }

    sanitized.setdefault("status", AlertStatus.PENDING.value)
    sanitized.setdefault("retry_count", 0)
    sanitized.setdefault("priority", AlertPriority.MEDIUM.value)

    if sanitized.get("failure_reason"):
        sanitized["failure_reason"] = sanitized["failure_reason"].strip()

    return sanitized


def validate_alert(data: dict[str, Any]) -> list[str]:
    """Return a list of validation messages; empty when the payload is valid."""
    errors = []

    for field in REQUIRED_FIELDS:
        value = data.get(field)
        if value is None or (isinstance(value, str) and not value.strip()):
            errors.append(f"{field} is required")

    enums = (
        ("type", AlertType),
        ("priority", AlertPriority),
        ("status", AlertStatus),
    )
    for field, enum_cls in enums:
        value = data.get(field)
        if value is not None and value not in {e.value for e in enum_cls}:
            allowed = ", ".join(e.value for e in enum_cls)
            errors.append(f"{field} must be one of: {allowed}")

    retry_count = data.get("retry_count")
    if retry_count is not None:
        if not isinstance(retry_count, int) or isinstance(retry_count, bool):
            errors.append("retry_count must be a number")
        elif not MIN_RETRY_COUNT <= retry_count <= MAX_RETRY_COUNT:
            errors.append(
                f"retry_count must be between {MIN_RETRY_COUNT} and {MAX_RETRY_COUNT}"
            )

    return errors


class AlertRepository:
    """Repository for alerts and their delivery lifecycle."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def create_alert(self, alert_data: dict[str, Any]) -> Alert:
        """Sanitize, validate and insert an alert."""
        sanitized = sanitize_alert(alert_data)
        errors = validate_alert(sanitized)
        if errors:
            raise ValidationError(
                f"Validation failed: {', '.join(errors)}",
                details={"errors": errors},
            )

        alert = Alert(**sanitized)
        self.session.add(alert)
        await self.session.flush()
        return alert

    async def schedule_alert(self, alert_data: dict[str, Any], scheduled_for: datetime) -> Alert:
        """Create a pending alert that only becomes due at ``scheduled_for``."""
        return await self.create_alert(
            {**alert_data, "scheduled_for": scheduled_for, "status": AlertStatus.PENDING.value}
        )

    async def get_by_id(self, alert_id: str) -> Alert | None:
        result = await self.session.execute(select(Alert).where(Alert.id == alert_id))
        return result.scalar_one_or_none()

    async def find_by_user_id(
        self,
        user_id: str,
        status: str | None = None,
        alert_type: str | None = None,
        unread_only: bool = False,
        search: str | None = None,
        start_date: datetime | None = None,
        end_date: datetime | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> dict[str, Any]:
        """Paginated alerts for a user, newest first."""
        conditions = [Alert.user_id == user_id]
        if status:
            conditions.append(Alert.status == status)
        if alert_type:
            conditions.append(Alert.type == alert_type)
        if unread_only:
            conditions.append(Alert.read_at.is_(None))
        if search:
            pattern = f"%{search}%"
            conditions.append(
                or_(
                    Alert.data["product_name"].astext.ilike(pattern),
                    Alert.data["retailer_name"].astext.ilike(pattern),
                )
            )
        if start_date:
            conditions.append(Alert.created_at >= start_date)
        if end_date:
            conditions.append(Alert.created_at <= end_date)

        page = max(1, page)
        limit = max(1, min(limit, 100))

        total = await self.session.scalar(
            select(func.count(Alert.id)).where(and_(*conditions))
        )
        result = await self.session.execute(
            select(Alert)
            .where(and_(*conditions))
            .order_by(Alert.created_at.desc())
            .offset((page - 1) * limit)
            .limit(limit)
        )
        total = total or 0
        return {
            "data": list(result.scalars().all()),
            "total": total,
            "page": page,
            "limit": limit,
            "totalPages": (total + limit - 1) // limit,
        }

    async def get_recent_for_user(self, user_id: str, limit: int = 10) -> list[Alert]:
        result = await self.session.execute(
            select(Alert)
            .where(Alert.user_id == user_id)
            .order_by(Alert.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_created_since(self, user_id: str, since: datetime, limit: int = 5) -> list[Alert]:
        """Alerts strictly newer than ``since``."""
        result = await self.session.execute(
            select(Alert)
            .where(and_(Alert.user_id == user_id, Alert.created_at > since))
            .order_by(Alert.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def find_by_product_id(
        self,
        product_id: str,
        days: int = 30,
        limit: int = 10,
        user_id: str | None = None,
    ) -> list[Alert]:
        """Recent alert history for a product, limited to one user when given."""
        cutoff = _utcnow() - timedelta(days=days)
        conditions = [Alert.product_id == product_id, Alert.created_at >= cutoff]
        if user_id is not None:
            conditions.append(Alert.user_id == user_id)
        result = await self.session.execute(
            select(Alert)
            .where(and_(*conditions))
            .order_by(Alert.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def count_product_alerts_since(self, product_id: str, since: datetime) -> int:
        result = await self.session.execute(
            select(func.count(Alert.id)).where(
                and_(Alert.product_id == product_id, Alert.created_at >= since)
            )
        )
        return result.scalar() or 0

    async def get_pending_alerts(self, limit: int | None = None) -> list[Alert]:
        """Due pending alerts, highest priority first, then oldest first."""
        limit = limit or settings.pending_batch_size
        result = await self.session.execute(
            select(Alert)
            .where(
                and_(
                    Alert.status == AlertStatus.PENDING.value,
                    or_(Alert.scheduled_for.is_(None), Alert.scheduled_for <= _utcnow()),
                )
            )
            .order_by(PRIORITY_RANK.desc(), Alert.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_failed_alerts_for_retry(
        self,
        max_retries: int | None = None,
        limit: int | None = None,
    ) -> list[Alert]:
        """Failed alerts still under the retry ceiling, oldest first."""
        max_retries = settings.alert_max_retries if max_retries is None else max_retries
        limit = limit or settings.alert_retry_batch_size
        result = await self.session.execute(
            select(Alert)
            .where(
                and_(
                    Alert.status == AlertStatus.FAILED.value,
                    Alert.retry_count < max_retries,
                )
            )
            .order_by(Alert.created_at.asc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def requeue_for_retry(self, alert_ids: list[str], max_retries: int | None = None) -> int:
        """Move failed alerts back to pending.

        The status guard keeps the update idempotent when two sweeps overlap.
        """
        if not alert_ids:
            return 0
        max_retries = settings.alert_max_retries if max_retries is None else max_retries
        result = await self.session.execute(
            update(Alert)
            .where(
                and_(
                    Alert.id.in_(alert_ids),
                    Alert.status == AlertStatus.FAILED.value,
                    Alert.retry_count < max_retries,
                )
            )
            .values(status=AlertStatus.PENDING.value, updated_at=_utcnow())
        )
        return result.rowcount

    async def mark_as_sent(self, alert_id: str, delivery_channels: list[str]) -> bool:
        result = await self.session.execute(
            update(Alert)
            .where(Alert.id == alert_id)
            .values(
                status=AlertStatus.SENT.value,
                sent_at=_utcnow(),
                delivery_channels=list(delivery_channels),
                updated_at=_utcnow(),
            )
        )
        return result.rowcount > 0

    async def mark_as_failed(
        self,
        alert_id: str,
        failure_reason: str,
        increment_retry: bool = True,
    ) -> bool:
        """Mark an alert failed, bumping its retry count unless told not to."""
        values: dict[str, Any] = {
            "status": AlertStatus.FAILED.value,
            "failure_reason": (failure_reason or "").strip(),
            "updated_at": _utcnow(),
        }
        if increment_retry:
            values["retry_count"] = func.least(Alert.retry_count + 1, MAX_RETRY_COUNT)

        result = await self.session.execute(
            update(Alert).where(Alert.id == alert_id).values(**values)
        )
        return result.rowcount > 0

    async def mark_as_read(self, alert_id: str) -> bool:
        result = await self.session.execute(
            update(Alert)
            .where(Alert.id == alert_id)
            .values(read_at=_utcnow(), updated_at=_utcnow())
        )
        return result.rowcount > 0

    async def mark_as_clicked(self, alert_id: str) -> bool:
        result = await self.session.execute(
            update(Alert)
            .where(Alert.id == alert_id)
            .values(clicked_at=_utcnow(), updated_at=_utcnow())
        )
        return result.rowcount > 0

    async def bulk_mark_as_read(self, alert_ids: list[str], user_id: str | None = None) -> int:
        """Mark unread alerts as read; returns how many changed."""
        if not alert_ids:
            return 0
        conditions = [Alert.id.in_(alert_ids), Alert.read_at.is_(None)]
        if user_id is not None:
            conditions.append(Alert.user_id == user_id)
        result = await self.session.execute(
            update(Alert)
            .where(and_(*conditions))
            .values(read_at=_utcnow(), updated_at=_utcnow())
        )
        return result.rowcount

    async def cleanup_old_alerts(self, days_old: int | None = None) -> int:
        """Delete sent alerts created before the retention window."""
        days_old = settings.alert_cleanup_days if days_old is None else days_old
        cutoff = _utcnow() - timedelta(days=days_old)
        result = await self.session.execute(
            delete(Alert).where(
                and_(Alert.status == AlertStatus.SENT.value, Alert.created_at < cutoff)
            )
        )
        logger.info(f"Cleaned up {result.rowcount} sent alerts older than {days_old} days")
        return result.rowcount
