"""Alert statistics aggregation."""

from .alert_stats import AlertStatsQuery, round_half_up, system_stats_cache

__all__ = ["AlertStatsQuery", "round_half_up", "system_stats_cache"]
