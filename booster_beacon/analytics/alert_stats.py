"""Alert statistics computed in a single database round trip.

The per-user query folds five counters and two grouped breakdowns into one
row using three CTEs. Drivers disagree on how aggregates come back
(``int``, ``Decimal``, ``str``; JSON as text or as a decoded object), so every
value is parsed leniently before it reaches callers.
"""

import json
import logging
import time
from datetime import datetime, timedelta, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from booster_beacon.cache import MemoryCache, with_cache
from booster_beacon.config import settings
from booster_beacon.errors import DatabaseError, ValidationError

logger = logging.getLogger(__name__)

SYSTEM_STATS_CACHE_KEY = "system_alert_stats"

USER_ALERT_STATS_SQL = text(
    """
    WITH base_stats AS (
        SELECT
            COUNT(*) AS total_count,
            COUNT(*) FILTER (WHERE read_at IS NULL) AS unread_count,
            COUNT(*) FILTER (WHERE created_at >= :since) AS recent_count,
            COUNT(*) FILTER (WHERE status = 'sent') AS sent_count,
            COUNT(*) FILTER (WHERE clicked_at IS NOT NULL) AS clicked_count
        FROM alerts
        WHERE user_id = :user_id
    ),
    type_stats AS (
        SELECT COALESCE(json_object_agg(type, cnt), '{}'::json) AS type_counts
        FROM (
            SELECT type, COUNT(*) AS cnt
            FROM alerts
            WHERE user_id = :user_id
            GROUP BY type
        ) t
    ),
    status_stats AS (
        SELECT COALESCE(json_object_agg(status, cnt), '{}'::json) AS status_counts
        FROM (
            SELECT status, COUNT(*) AS cnt
            FROM alerts
            WHERE user_id = :user_id
            GROUP BY status
        ) s
    )
    SELECT
        bs.total_count,
        bs.unread_count,
        bs.recent_count,
        bs.sent_count,
        bs.clicked_count,
        ts.type_counts,
        ss.status_counts
    FROM base_stats bs
    LEFT JOIN type_stats ts ON true
    LEFT JOIN status_stats ss ON true
    """
)

SYSTEM_ALERT_STATS_SQL = text(
    """
    WITH base_stats AS (
        SELECT
            COUNT(*) AS total_count,
            COUNT(*) FILTER (WHERE status = 'pending') AS pending_count,
            COUNT(*) FILTER (WHERE status = 'failed') AS failed_count,
            AVG(EXTRACT(EPOCH FROM (sent_at - created_at)))
                FILTER (WHERE status = 'sent' AND sent_at IS NOT NULL) AS avg_delivery_seconds
        FROM alerts
    ),
    type_stats AS (
        SELECT COALESCE(json_object_agg(type, cnt), '{}'::json) AS type_counts
        FROM (SELECT type, COUNT(*) AS cnt FROM alerts GROUP BY type) t
    ),
    priority_stats AS (
        SELECT COALESCE(json_object_agg(priority, cnt), '{}'::json) AS priority_counts
        FROM (SELECT priority, COUNT(*) AS cnt FROM alerts GROUP BY priority) p
    )
    SELECT bs.*, ts.type_counts, ps.priority_counts
    FROM base_stats bs
    LEFT JOIN type_stats ts ON true
    LEFT JOIN priority_stats ps ON true
    """
)

# Shared by every AlertStatsQuery unless one is injected.
system_stats_cache = MemoryCache(default_ttl=settings.system_stats_cache_ttl)


def round_half_up(value: float, places: int = 2) -> float:
    """Round away from zero on ties, the way figures are shown to users."""
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(value)).quantize(quantum, rounding=ROUND_HALF_UP))


def parse_count(value: Any) -> int | None:
    """Coerce a driver-returned aggregate to ``int``; None if it cannot be read."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    try:
        return int(Decimal(str(value).strip()))
    except (InvalidOperation, ValueError):
        return None


def parse_count_map(raw: Any, label: str, user_id: str | None = None) -> dict[str, int]:
    """Parse a grouped-count JSON object, dropping entries that are not numbers."""
    if raw is None:
        return {}

    data = raw
    if isinstance(raw, (str, bytes)):
        try:
            data = json.loads(raw)
        except ValueError as e:
            logger.warning(f"Unparseable {label} aggregation for user {user_id}: {e}")
            return {}

    if not isinstance(data, dict):
        logger.warning(f"Unexpected {label} aggregation type for user {user_id}: {type(data).__name__}")
        return {}

    result = {}
    for key, value in data.items():
        count = parse_count(value)
        if count is None:
            logger.warning(f"Dropping unparseable {label} entry {key!r}={value!r} for user {user_id}")
            continue
        result[str(key)] = count
    return result


def empty_user_stats() -> dict:
    return {
        "total": 0,
        "unread": 0,
        "byType": {},
        "byStatus": {},
        "clickThroughRate": 0,
        "recentAlerts": 0,
    }


def _row_to_dict(row: Any) -> dict | None:
    if row is None:
        return None
    if isinstance(row, dict):
        return row
    mapping = getattr(row, "_mapping", None)
    if mapping is not None:
        return dict(mapping)
    return dict(row)


class AlertStatsQuery:
    """Per-user and system-wide alert statistics."""

    def __init__(
        self,
        session: AsyncSession,
        cache: MemoryCache | None = None,
        recent_days: int | None = None,
        slow_query_ms: int | None = None,
    ):
        self.session = session
        self.cache = cache if cache is not None else system_stats_cache
        self.recent_days = recent_days if recent_days is not None else settings.recent_alerts_days
        self.slow_query_ms = slow_query_ms if slow_query_ms is not None else settings.slow_query_ms

    async def get_user_alert_stats(self, user_id: str) -> dict:
        """Aggregated alert stats for one user. Never cached."""
        stats, _ = await self.get_user_alert_stats_with_clicks(user_id)
        return stats

    async def get_user_alert_stats_with_clicks(self, user_id: str) -> tuple[dict, int]:
        """User alert stats plus the exact clicked count behind the CTR.

        Raises:
            ValidationError: ``user_id`` is missing or blank.
            DatabaseError: the query failed.
        """
        if not isinstance(user_id, str) or not user_id.strip():
            raise ValidationError("Valid userId is required", code="INVALID_ARGUMENT")
        user_id = user_id.strip()

        since = datetime.now(timezone.utc) - timedelta(days=self.recent_days)
        started = time.perf_counter()
        try:
            result = await self.session.execute(
                USER_ALERT_STATS_SQL, {"user_id": user_id, "since": since}
            )
            row = _row_to_dict(result.mappings().first())
        except SQLAlchemyError as e:
            logger.error(f"Error getting user alert stats for user {user_id}: {e}", exc_info=True)
            raise DatabaseError(cause=e) from e

        elapsed_ms = (time.perf_counter() - started) * 1000
        if elapsed_ms > self.slow_query_ms:
            logger.warning(f"Slow user alert stats query for user {user_id}: {elapsed_ms:.0f}ms")

        if not row or not parse_count(row.get("total_count")):
            logger.debug(f"No alert stats found for user {user_id}")
            return empty_user_stats(), 0

        return self._build_user_stats(row, user_id), parse_count(row.get("clicked_count")) or 0

    def _build_user_stats(self, row: dict, user_id: str) -> dict:
        sent = parse_count(row.get("sent_count")) or 0
        clicked = parse_count(row.get("clicked_count")) or 0
        ctr = round_half_up(100 * clicked / sent, 2) if sent > 0 else 0

        return {
            "total": parse_count(row.get("total_count")) or 0,
            "unread": parse_count(row.get("unread_count")) or 0,
            "byType": parse_count_map(row.get("type_counts"), "type", user_id),
            "byStatus": parse_count_map(row.get("status_counts"), "status", user_id),
            "clickThroughRate": ctr,
            "recentAlerts": parse_count(row.get("recent_count")) or 0,
        }

    async def get_system_alert_stats(self) -> dict:
        """System-wide alert stats, served from the TTL cache when fresh."""
        return await with_cache(self.cache, SYSTEM_STATS_CACHE_KEY, self._load_system_stats)

    async def _load_system_stats(self) -> dict:
        try:
            result = await self.session.execute(SYSTEM_ALERT_STATS_SQL)
            row = _row_to_dict(result.mappings().first()) or {}
        except SQLAlchemyError as e:
            logger.error(f"Error getting system alert stats: {e}", exc_info=True)
            raise DatabaseError(cause=e) from e

        avg = row.get("avg_delivery_seconds")
        try:
            avg_seconds = float(avg) if avg is not None else 0.0
        except (TypeError, ValueError):
            avg_seconds = 0.0

        return {
            "totalAlerts": parse_count(row.get("total_count")) or 0,
            "pendingAlerts": parse_count(row.get("pending_count")) or 0,
            "failedAlerts": parse_count(row.get("failed_count")) or 0,
            "avgDeliveryTime": round_half_up(avg_seconds, 2),
            "alertsByType": parse_count_map(row.get("type_counts"), "type"),
            "alertsByPriority": parse_count_map(row.get("priority_counts"), "priority"),
        }
