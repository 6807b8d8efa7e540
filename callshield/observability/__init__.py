"""Read-only cache and rate limit reporting."""

from callshield.observability.stats import CacheReport, LimiterReport, StatsCollector

__all__ = ["CacheReport", "LimiterReport", "StatsCollector"]
