"""Service container and application wiring."""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import timedelta
from typing import Any, TypeVar

from .config import AppSettings
from .errors import RetryConfig

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


class ServiceContainer:
    """Minimal dependency container with lazy singleton semantics."""

    def __init__(self) -> None:
        """Initialise container storage."""
        self._factories: dict[str, Callable[[ServiceContainer], Any]] = {}
        self._instances: dict[str, Any] = {}

    def register(self, key: str, factory: Callable[[ServiceContainer], T]) -> None:
        """Register a factory under a given key."""
        self._factories[key] = factory

    def register_instance(self, key: str, instance: Any) -> None:
        """Register an already constructed service, replacing any factory."""
        self._factories[key] = lambda _container: instance
        self._instances[key] = instance

    def resolve(self, key: str) -> Any:
        """Resolve a dependency by key, invoking its factory once."""
        if key in self._instances:
            return self._instances[key]
        if key not in self._factories:
            msg = f"Service '{key}' is not registered"
            raise KeyError(msg)
        instance = self._factories[key](self)
        self._instances[key] = instance
        return instance

    def close(self) -> None:
        """Stop and close resolved services, newest first, then forget them."""
        for key, instance in reversed(list(self._instances.items())):
            for method in ("stop", "close"):
                closer = getattr(instance, method, None)
                if callable(closer):
                    try:
                        closer()
                    except Exception:  # pylint: disable=broad-except
                        LOGGER.exception("Failed to %s service %s", method, key)
                    break
        self.clear()

    def clear(self) -> None:
        """Clear cached singleton instances."""
        self._instances.clear()


def build_container(settings: AppSettings) -> ServiceContainer:
    """Register the application's services for ``settings``."""
    # pylint: disable=import-outside-toplevel
    from ..cache.icons import IconCache
    from ..cache.statistics import StatisticsCache, StatisticsService
    from ..cache.ttl import TTLCache
    from ..storage.secrets import FernetSecretStore
    from ..storage.sqlite import SqliteAliasRepository
    from ..sync.aliases import AliasService
    from ..sync.coordinator import SyncCoordinator
    from ..sync.engine import ReconciliationEngine
    from ..transport.cloudflare import CloudflareClient
    from ..zones.registry import ZoneOnboarding, ZoneRegistry

    container = ServiceContainer()
    container.register_instance("settings", settings)
    container.register(
        "repository", lambda _c: SqliteAliasRepository(settings.storage)
    )
    container.register(
        "secrets", lambda _c: FernetSecretStore.from_settings(settings.secrets)
    )
    container.register(
        "gateway",
        lambda _c: CloudflareClient(
            settings.cloudflare,
            retry_config=RetryConfig(
                max_attempts=settings.sync.max_attempts,
                base_delay=settings.sync.base_delay_seconds,
                max_delay=settings.sync.max_delay_seconds,
            ),
            address_cache=TTLCache(settings.cache.forwarding_addresses_ttl_seconds),
        ),
    )
    container.register(
        "registry",
        lambda c: ZoneRegistry(c.resolve("repository"), c.resolve("secrets")),
    )
    container.register(
        "onboarding",
        lambda c: ZoneOnboarding(c.resolve("registry"), c.resolve("gateway")),
    )
    container.register(
        "engine",
        lambda c: ReconciliationEngine(
            c.resolve("registry"),
            c.resolve("gateway"),
            c.resolve("repository"),
            user_identifier=settings.device.user_identifier,
            max_workers=settings.cloudflare.max_parallel_zones,
        ),
    )
    container.register(
        "aliases",
        lambda c: AliasService(
            c.resolve("registry"),
            c.resolve("gateway"),
            c.resolve("repository"),
            user_identifier=settings.device.user_identifier,
        ),
    )
    container.register(
        "coordinator",
        lambda c: SyncCoordinator(c.resolve("engine"), settings.sync),
    )
    container.register(
        "statistics_cache",
        lambda _c: StatisticsCache(
            settings.cache.statistics_path,
            max_age=timedelta(hours=settings.cache.statistics_max_age_hours),
        ),
    )
    container.register(
        "statistics",
        lambda c: StatisticsService(
            c.resolve("registry"), c.resolve("gateway"), c.resolve("statistics_cache")
        ),
    )
    container.register("icons", lambda _c: IconCache.from_settings(settings.cache))
    return container


__all__ = ["ServiceContainer", "build_container"]
