"""Caches for statistics, icons and short-lived API results."""

from .icons import IconCache
from .statistics import StatisticsCache, StatisticsService
from .ttl import TTLCache

__all__ = ["IconCache", "StatisticsCache", "StatisticsService", "TTLCache"]
