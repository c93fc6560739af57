"""BoosterBeacon alert statistics, dashboard aggregation and delivery core."""

__version__ = "0.1.0"
