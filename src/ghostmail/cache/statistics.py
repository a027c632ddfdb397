"""File-backed statistics cache and the service that fills it."""

from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections.abc import Callable, Iterable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from ..core.config import CacheSettings
from ..core.datetime_utils import parse_datetime, serialize_datetime, utcnow
from ..core.errors import GhostmailError
from ..core.events import ChangeNotifier
from ..core.interfaces import RoutingGateway
from ..core.logging import mask_id
from ..core.models import (
    CachedStatistics,
    EmailDetail,
    EmailStatistic,
    RoutingAction,
    Zone,
)
from ..core.validation import base_address
from ..zones.registry import ZoneRegistry

LOGGER = logging.getLogger(__name__)


class StatisticsCache:
    """Persist the latest statistics snapshot as a JSON envelope.

    The envelope carries its own ``saved_at`` timestamp; a snapshot older
    than ``max_age`` is still returned but flagged stale.
    """

    def __init__(
        self,
        path: Path | str,
        *,
        max_age: timedelta = timedelta(hours=24),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._path = Path(path)
        self._max_age = max_age
        self._clock = clock
        self._lock = threading.Lock()
        self._updates: ChangeNotifier[CachedStatistics] = ChangeNotifier(
            "statistics"
        )

    @classmethod
    def from_settings(cls, settings: CacheSettings) -> StatisticsCache:
        return cls(
            settings.statistics_path,
            max_age=timedelta(hours=settings.statistics_max_age_hours),
        )

    def subscribe(
        self, callback: Callable[[CachedStatistics], None]
    ) -> Callable[[], None]:
        """Observe saves; the callback receives the new snapshot."""
        return self._updates.subscribe(callback)

    def save(self, statistics: Iterable[EmailStatistic]) -> CachedStatistics:
        snapshot = CachedStatistics(
            statistics=tuple(statistics),
            saved_at=self._clock(),
            max_age=self._max_age,
        )
        envelope = {
            "saved_at": serialize_datetime(snapshot.saved_at),
            "statistics": [_statistic_to_dict(item) for item in snapshot.statistics],
        }
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            fd, temp_name = tempfile.mkstemp(
                dir=self._path.parent, prefix=f".{self._path.name}."
            )
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as handle:
                    json.dump(envelope, handle)
                os.replace(temp_name, self._path)
            except OSError:
                Path(temp_name).unlink(missing_ok=True)
                raise
        LOGGER.debug("Cached statistics for %d addresses", len(snapshot.statistics))
        self._updates.publish(snapshot)
        return snapshot

    def load(self) -> CachedStatistics | None:
        """Return the cached snapshot, or ``None`` if absent or unreadable."""
        with self._lock:
            if not self._path.is_file():
                return None
            try:
                envelope = json.loads(self._path.read_text(encoding="utf-8"))
                saved_at = parse_datetime(envelope["saved_at"])
                statistics = tuple(
                    _statistic_from_dict(item) for item in envelope["statistics"]
                )
            except (OSError, ValueError, KeyError, TypeError) as exc:
                LOGGER.warning("Ignoring unreadable statistics cache: %s", exc)
                return None
        if saved_at is None:
            return None
        return CachedStatistics(
            statistics=statistics, saved_at=saved_at, max_age=self._max_age
        )

    def load_for_email(
        self, email_address: str, *, include_plus_tags: bool = False
    ) -> tuple[EmailStatistic | None, bool] | None:
        """Return ``(statistic, is_stale)`` for one address.

        With ``include_plus_tags`` the entries of ``user+tag@domain`` are
        folded into ``user@domain``.
        """
        cached = self.load()
        if cached is None:
            return None
        if not include_plus_tags:
            match = next(
                (s for s in cached.statistics if s.email_address == email_address),
                None,
            )
            return match, cached.is_stale
        wanted = base_address(email_address)
        details: list[EmailDetail] = []
        for statistic in cached.statistics:
            if base_address(statistic.email_address) == wanted:
                details.extend(statistic.email_details)
        if not details:
            return None, cached.is_stale
        return EmailStatistic.from_details(email_address, details), cached.is_stale

    def clear(self) -> None:
        with self._lock:
            self._path.unlink(missing_ok=True)


class StatisticsService:
    """Fetch statistics for all authenticated zones into the cache."""

    def __init__(
        self,
        registry: ZoneRegistry,
        gateway: RoutingGateway,
        cache: StatisticsCache,
    ) -> None:
        self._registry = registry
        self._gateway = gateway
        self._cache = cache

    def refresh(self, *, force: bool = False) -> list[EmailStatistic]:
        """Return fresh statistics, fetching when the cache is stale or forced."""
        cached = self._cache.load()
        if cached is not None and not force and not cached.is_stale:
            return list(cached.statistics)

        zones = self._registry.authenticated_zones()
        if not zones:
            return list(cached.statistics) if cached else []

        details: dict[str, list[EmailDetail]] = {}
        fetched_any = False
        for zone in zones:
            previous = _statistics_for_zone(cached, zone)
            try:
                results = self._gateway.fetch_statistics(
                    zone,
                    cached=previous or None,
                    cached_at=cached.saved_at if cached else None,
                )
            except GhostmailError as exc:
                LOGGER.warning(
                    "Statistics refresh failed for zone %s: %s",
                    mask_id(zone.zone_id),
                    exc,
                )
                results = previous
            else:
                fetched_any = True
            for statistic in results:
                details.setdefault(statistic.email_address, []).extend(
                    statistic.email_details
                )

        if not fetched_any:
            LOGGER.warning("No zone returned statistics; keeping the cached snapshot")
            return list(cached.statistics) if cached else []

        statistics = [
            EmailStatistic.from_details(address, entries)
            for address, entries in details.items()
        ]
        statistics.sort(key=lambda statistic: statistic.count, reverse=True)
        if not statistics and cached is not None:
            LOGGER.info("Statistics refresh returned nothing; keeping the cached snapshot")
            return list(cached.statistics)
        self._cache.save(statistics)
        return statistics


def _statistics_for_zone(
    cached: CachedStatistics | None, zone: Zone
) -> list[EmailStatistic]:
    if cached is None or not zone.domain_name:
        return []
    domain = zone.domain_name.lower()
    selected = []
    for statistic in cached.statistics:
        host = statistic.email_address.rpartition("@")[2].lower()
        if host == domain or host.endswith("." + domain):
            selected.append(statistic)
    return selected


def _statistic_to_dict(statistic: EmailStatistic) -> dict[str, Any]:
    return {
        "email_address": statistic.email_address,
        "count": statistic.count,
        "received_dates": [serialize_datetime(date) for date in statistic.received_dates],
        "email_details": [
            {
                "from": detail.from_address,
                "date": serialize_datetime(detail.date),
                "action": detail.action.value,
            }
            for detail in statistic.email_details
        ],
    }


def _statistic_from_dict(data: dict[str, Any]) -> EmailStatistic:
    details = []
    for item in data.get("email_details", []):
        date = parse_datetime(item["date"])
        if date is None:
            continue
        details.append(
            EmailDetail(
                from_address=item.get("from", ""),
                date=date,
                action=RoutingAction.from_api(item.get("action")),
            )
        )
    received = tuple(
        date
        for date in (parse_datetime(value) for value in data.get("received_dates", []))
        if date is not None
    )
    return EmailStatistic(
        email_address=data["email_address"],
        count=int(data.get("count", len(details))),
        received_dates=received,
        email_details=tuple(details),
    )


__all__ = ["StatisticsCache", "StatisticsService"]
