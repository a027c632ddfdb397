"""FastAPI JSON surface over the alias sync services."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from fastapi import FastAPI, Request, status as http_status
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from ..cache.statistics import StatisticsCache, StatisticsService
from ..core import AppSettings, ServiceContainer, build_container, load_app_settings
from ..core.datetime_utils import serialize_datetime
from ..core.errors import (
    AliasNotFound,
    AuthError,
    DuplicateZone,
    GhostmailError,
    NetworkError,
    RateLimited,
    SyncError,
    ValidationError,
    ZoneNotFound,
)
from ..core.interfaces import AliasRepository
from ..core.models import EmailAlias, EmailStatistic, SyncReport, Zone
from ..sync.coordinator import SyncCoordinator
from ..zones.registry import ZoneOnboarding, ZoneRegistry

LOGGER = logging.getLogger(__name__)

_ERROR_STATUS: tuple[tuple[type[GhostmailError], int], ...] = (
    (AuthError, http_status.HTTP_401_UNAUTHORIZED),
    (ZoneNotFound, http_status.HTTP_404_NOT_FOUND),
    (AliasNotFound, http_status.HTTP_404_NOT_FOUND),
    (DuplicateZone, http_status.HTTP_409_CONFLICT),
    (ValidationError, http_status.HTTP_400_BAD_REQUEST),
    (RateLimited, http_status.HTTP_429_TOO_MANY_REQUESTS),
    (NetworkError, http_status.HTTP_503_SERVICE_UNAVAILABLE),
    (SyncError, http_status.HTTP_502_BAD_GATEWAY),
)


def create_app(
    settings: AppSettings | None = None,
    *,
    container: ServiceContainer | None = None,
    background_sync: bool = False,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    app_settings = settings or load_app_settings()
    services = container or build_container(app_settings)
    app = FastAPI(title="Ghostmail Sync")
    app.state.container = services

    # Compress large alias and statistics listings
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    def repository() -> AliasRepository:
        return services.resolve("repository")

    def registry() -> ZoneRegistry:
        return services.resolve("registry")

    def coordinator() -> SyncCoordinator:
        return services.resolve("coordinator")

    @app.on_event("startup")
    async def startup_event() -> None:
        if background_sync:
            coordinator().start()

    @app.on_event("shutdown")
    async def shutdown_event() -> None:
        """Stop background sync and release connections."""
        services.close()
        LOGGER.info("Services closed")

    @app.exception_handler(GhostmailError)
    async def ghostmail_error_handler(
        _request: Request, exc: GhostmailError
    ) -> JSONResponse:
        status_code = http_status.HTTP_502_BAD_GATEWAY
        for error_type, code in _ERROR_STATUS:
            if isinstance(exc, error_type):
                status_code = code
                break
        LOGGER.warning("Request failed: %s", exc)
        payload = {"error": type(exc).__name__, "message": exc.message}
        if isinstance(exc, SyncError):
            payload["failures"] = {
                zone_id: str(error) for zone_id, error in exc.failures.items()
            }
        return JSONResponse(status_code=status_code, content=payload)

    @app.get("/aliases")
    async def list_aliases(include_logged_out: bool = False) -> list[dict[str, Any]]:
        aliases = repository().list_aliases(include_logged_out=include_logged_out)
        return [serialize_alias(alias) for alias in aliases]

    @app.get("/zones")
    async def list_zones() -> list[dict[str, Any]]:
        return [serialize_zone(zone) for zone in registry().list_zones()]

    @app.get("/zones/reauth")
    async def zones_needing_reauth() -> list[dict[str, Any]]:
        return [serialize_zone(zone) for zone in registry().zones_needing_reauth()]

    @app.post("/zones/{zone_id}/subdomains")
    async def toggle_subdomains(zone_id: str, enabled: bool = True) -> dict[str, Any]:
        onboarding: ZoneOnboarding = services.resolve("onboarding")
        zone = await asyncio.to_thread(onboarding.toggle_subdomains, zone_id, enabled)
        return serialize_zone(zone)

    @app.post("/zones/subdomains/refresh")
    async def refresh_subdomains() -> list[dict[str, Any]]:
        onboarding: ZoneOnboarding = services.resolve("onboarding")
        zones = await asyncio.to_thread(onboarding.refresh_subdomains)
        return [serialize_zone(zone) for zone in zones]

    @app.get("/statistics")
    async def statistics() -> dict[str, Any]:
        cache: StatisticsCache = services.resolve("statistics_cache")
        cached = cache.load()
        if cached is None:
            return {"saved_at": None, "is_stale": True, "statistics": []}
        return {
            "saved_at": serialize_datetime(cached.saved_at),
            "is_stale": cached.is_stale,
            "statistics": [serialize_statistic(item) for item in cached.statistics],
        }

    @app.post("/statistics/refresh")
    async def refresh_statistics(force: bool = True) -> dict[str, Any]:
        service: StatisticsService = services.resolve("statistics")
        results = await asyncio.to_thread(service.refresh, force=force)
        return {"statistics": [serialize_statistic(item) for item in results]}

    @app.post("/sync")
    async def trigger_sync() -> dict[str, Any]:
        report = await asyncio.to_thread(coordinator().refresh_now)
        return serialize_report(report)

    @app.post("/sync/dedupe")
    async def dedupe() -> dict[str, int]:
        deleted = await asyncio.to_thread(coordinator().dedupe_now)
        return {"deleted": deleted}

    return app


def serialize_alias(alias: EmailAlias) -> dict[str, Any]:
    return {
        "id": alias.id,
        "email_address": alias.email_address,
        "website": alias.website,
        "notes": alias.notes,
        "created": serialize_datetime(alias.created),
        "cloudflare_tag": alias.cloudflare_tag,
        "is_enabled": alias.is_enabled,
        "sort_index": alias.sort_index,
        "forward_to": alias.forward_to,
        "zone_id": alias.zone_id,
        "action_type": alias.action_type.value,
        "is_logged_out": alias.is_logged_out,
        "is_manually_created": alias.is_manually_created,
    }


def serialize_zone(zone: Zone) -> dict[str, Any]:
    """Describe a zone without exposing its token."""
    return {
        "zone_id": zone.zone_id,
        "account_id": zone.account_id,
        "account_name": zone.account_name,
        "domain_name": zone.domain_name,
        "subdomains_enabled": zone.subdomains_enabled,
        "subdomains": list(zone.subdomains),
        "needs_reauth": not zone.is_authenticated,
    }


def serialize_statistic(statistic: EmailStatistic) -> dict[str, Any]:
    return {
        "email_address": statistic.email_address,
        "count": statistic.count,
        "received_dates": [serialize_datetime(d) for d in statistic.received_dates],
        "email_details": [
            {
                "from": detail.from_address,
                "date": serialize_datetime(detail.date),
                "action": detail.action.value,
            }
            for detail in statistic.email_details
        ],
    }


def serialize_report(report: SyncReport) -> dict[str, Any]:
    return {
        "created": report.created,
        "updated": report.updated,
        "deleted": report.deleted,
        "unchanged": report.unchanged,
        "zones_synced": list(report.zones_synced),
        "failures": {zone_id: str(exc) for zone_id, exc in report.failures.items()},
        "skipped": report.skipped,
    }


__all__ = ["create_app", "serialize_alias", "serialize_report", "serialize_zone"]
