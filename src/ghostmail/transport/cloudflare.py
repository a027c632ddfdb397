"""Synchronous client for the Cloudflare Email Routing API."""

from __future__ import annotations

import logging
from collections import defaultdict
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta
from types import TracebackType
from typing import Any

import httpx

from ..cache.ttl import TTLCache
from ..core.config import CloudflareSettings
from ..core.datetime_utils import (
    as_utc,
    ensure_utc,
    parse_provider_timestamp,
    utcnow,
)
from ..core.errors import (
    AuthError,
    GhostmailError,
    NetworkError,
    ProviderError,
    RateLimited,
    RetryConfig,
    retry_with_backoff,
)
from ..core.interfaces import RoutingGateway
from ..core.logging import mask_id
from ..core.models import (
    ActionType,
    CatchAllKind,
    CatchAllStatus,
    EmailDetail,
    EmailRule,
    EmailStatistic,
    RoutingAction,
    Zone,
)

LOGGER = logging.getLogger(__name__)

FULL_FETCH_DAYS = 7
DELTA_FETCH_DAYS = 3
DELTA_MAX_CACHE_AGE = timedelta(hours=24)
_ADDRESS_PAGE_SIZE = 50
_ANALYTICS_LIMIT = 10000

_ANALYTICS_QUERY = """
query Viewer {
  viewer {
    zones(filter: {zoneTag: "%(zone_id)s"}) {
      emailRoutingAdaptive(
        filter: {datetime_geq: "%(start)s", datetime_leq: "%(end)s"},
        limit: %(limit)d
      ) {
        to
        from
        datetime
        action
      }
    }
  }
}
"""


class CloudflareClient(RoutingGateway):
    """Zone-scoped Email Routing operations over HTTPS.

    Every request authenticates with the bearer token of the zone it
    addresses. Reads are retried with backoff on rate limiting and
    transport failures; writes are sent once.
    """

    def __init__(
        self,
        settings: CloudflareSettings,
        *,
        retry_config: RetryConfig | None = None,
        transport: httpx.BaseTransport | None = None,
        address_cache: TTLCache | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._settings = settings
        self.retry_config = retry_config or RetryConfig()
        self._address_cache = address_cache or TTLCache()
        self._clock = clock
        self._client = httpx.Client(
            base_url=settings.base_url,
            timeout=settings.timeout_seconds,
            transport=transport,
            headers={"Content-Type": "application/json"},
        )

    def __enter__(self) -> CloudflareClient:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        self.close()

    def close(self) -> None:
        self._client.close()

    # Rules -------------------------------------------------------------------
    def list_rules(self, zone: Zone) -> list[EmailRule]:
        """Return the zone's literal-address rules in server order."""
        raw_rules = self._paginate(
            f"/zones/{zone.zone_id}/email/routing/rules",
            zone,
            per_page=self._settings.page_size,
        )
        rules = [rule for rule in (_parse_rule(raw, zone) for raw in raw_rules) if rule]
        LOGGER.debug(
            "Fetched %d rules (%d routing entries) for zone %s",
            len(rules),
            len(raw_rules),
            mask_id(zone.zone_id),
        )
        return rules

    def create_rule(
        self,
        zone: Zone,
        email_address: str,
        forward_to: str,
        action_type: ActionType = ActionType.FORWARD,
    ) -> EmailRule:
        response = self._send(
            "POST",
            f"/zones/{zone.zone_id}/email/routing/rules",
            zone,
            json=_rule_body(email_address, forward_to, True, action_type),
        )
        result = _payload(response, zone).get("result") or {}
        rule = _parse_rule(result, zone)
        if rule is None:
            tag = result.get("tag") if isinstance(result, dict) else None
            if not tag:
                raise ProviderError(
                    "Rule created without a tag in the response", zone_id=zone.zone_id
                )
            rule = EmailRule(
                email_address=email_address,
                forward_to=forward_to if action_type is ActionType.FORWARD else "",
                is_enabled=True,
                tag=str(tag),
                action_type=action_type,
                zone_id=zone.zone_id,
            )
        LOGGER.info("Created routing rule %s in zone %s", rule.tag, mask_id(zone.zone_id))
        return rule

    def update_rule(
        self,
        zone: Zone,
        tag: str,
        email_address: str,
        is_enabled: bool,
        forward_to: str,
        action_type: ActionType = ActionType.FORWARD,
    ) -> None:
        response = self._send(
            "PUT",
            f"/zones/{zone.zone_id}/email/routing/rules/{tag}",
            zone,
            json=_rule_body(email_address, forward_to, is_enabled, action_type),
        )
        _payload(response, zone)
        LOGGER.info("Updated routing rule %s in zone %s", tag, mask_id(zone.zone_id))

    def delete_rule(self, zone: Zone, tag: str) -> None:
        """Delete a rule; a rule that is already gone counts as deleted."""
        response = self._send(
            "DELETE",
            f"/zones/{zone.zone_id}/email/routing/rules/{tag}",
            zone,
            allow_statuses=(404,),
        )
        if response.status_code == 404:
            LOGGER.info("Routing rule %s already absent", tag)
            return
        _payload(response, zone)
        LOGGER.info("Deleted routing rule %s in zone %s", tag, mask_id(zone.zone_id))

    # Destinations and catch-all ---------------------------------------------
    def list_forwarding_addresses(self, zone: Zone) -> set[str]:
        """Return verified destination addresses of the zone's account."""
        key = TTLCache.make_key("forwarding", zone.account_id, zone.api_token)
        cached = self._address_cache.get(key)
        if cached is not None:
            return set(cached)
        raw = self._paginate(
            f"/accounts/{zone.account_id}/email/routing/addresses",
            zone,
            per_page=_ADDRESS_PAGE_SIZE,
        )
        addresses = {
            str(item["email"]).strip()
            for item in raw
            if isinstance(item, dict) and item.get("email") and item.get("verified")
        }
        self._address_cache.set(key, frozenset(addresses))
        LOGGER.debug(
            "Account %s has %d verified addresses",
            mask_id(zone.account_id),
            len(addresses),
        )
        return addresses

    def invalidate_forwarding_addresses(self) -> None:
        self._address_cache.invalidate("forwarding:")

    def fetch_catch_all_status(self, zone: Zone) -> CatchAllStatus:
        payload = self._get_unless_missing(
            f"/zones/{zone.zone_id}/email/routing/rules/catch_all", zone
        )
        if payload is None:
            return CatchAllStatus(CatchAllKind.DISABLED)
        rule = payload.get("result")
        if not isinstance(rule, dict) or not rule.get("enabled"):
            return CatchAllStatus(CatchAllKind.DISABLED)
        actions = rule.get("actions") or []
        if not actions:
            return CatchAllStatus(CatchAllKind.UNKNOWN)
        action = actions[0]
        kind = str(action.get("type", "")).lower()
        if kind == "forward":
            return CatchAllStatus(
                CatchAllKind.FORWARD, tuple(action.get("value") or ())
            )
        if kind == "drop":
            return CatchAllStatus(CatchAllKind.DROP)
        if kind == "worker":
            return CatchAllStatus(CatchAllKind.WORKER)
        return CatchAllStatus(CatchAllKind.UNKNOWN)

    def update_catch_all(
        self,
        zone: Zone,
        *,
        enabled: bool,
        action: str = "drop",
        forward_to: Sequence[str] = (),
    ) -> None:
        """Replace the zone's catch-all rule; forwarding needs destinations."""
        if action == "forward" and forward_to:
            actions: list[dict[str, Any]] = [
                {"type": "forward", "value": list(forward_to)}
            ]
        else:
            actions = [{"type": "drop"}]
        body = {
            "enabled": enabled,
            "matchers": [{"type": "all"}],
            "actions": actions,
            "name": "Catch-All Rule",
        }
        response = self._send(
            "PUT",
            f"/zones/{zone.zone_id}/email/routing/rules/catch_all",
            zone,
            json=body,
        )
        _payload(response, zone)
        LOGGER.info("Updated catch-all rule for zone %s", mask_id(zone.zone_id))

    # Subdomains --------------------------------------------------------------
    def list_subdomains(self, zone: Zone) -> list[str]:
        """Return hosts below the apex whose MX records route email."""
        try:
            records = self._paginate(
                f"/zones/{zone.zone_id}/dns_records",
                zone,
                params={"type": "MX"},
                per_page=self._settings.page_size,
            )
        except AuthError as exc:
            raise AuthError(
                "Unable to check for subdomains. Ensure the API token has the "
                "Zone > DNS > Read permission",
                zone_id=zone.zone_id,
                cause=exc,
            ) from exc
        apex = zone.domain_name.strip().lower()
        names = set()
        for record in records:
            if not isinstance(record, dict) or record.get("type") != "MX":
                continue
            meta = record.get("meta") or {}
            if meta.get("email_routing") is not True:
                continue
            name = str(record.get("name", "")).strip().lower()
            if name and name != apex:
                names.add(name)
        return sorted(names)

    # Zone details ------------------------------------------------------------
    def fetch_zone_details(self, zone: Zone) -> tuple[str, str]:
        """Return ``(domain_name, account_name)`` for the zone."""
        payload = self._get(f"/zones/{zone.zone_id}", zone)
        result = payload.get("result") or {}
        account = result.get("account") or {}
        return str(result.get("name", "")), str(account.get("name", ""))

    def verify_token(self, zone: Zone) -> bool:
        """Return ``True`` when the token works as a user or account token."""
        for path in ("/user/tokens/verify", "/accounts"):
            try:
                self._get(path, zone)
            except (AuthError, ProviderError) as exc:
                LOGGER.debug("Token check via %s failed: %s", path, exc)
                continue
            LOGGER.info("Token for zone %s verified via %s", mask_id(zone.zone_id), path)
            return True
        return False

    # Statistics --------------------------------------------------------------
    def fetch_statistics(
        self,
        zone: Zone,
        *,
        cached: Sequence[EmailStatistic] | None = None,
        cached_at: datetime | None = None,
        force_full: bool = False,
    ) -> list[EmailStatistic]:
        """Aggregate routing analytics for the past week.

        Cloudflare limits adaptive queries to 24 hours, so the range is
        fetched one window at a time. With a cache younger than a day only
        the last three windows are fetched and older cached details are
        merged back in.
        """
        now = self._clock()
        days = FULL_FETCH_DAYS
        use_delta = False
        cached_time = ensure_utc(cached_at)
        if not force_full and cached and cached_time is not None:
            if now - cached_time < DELTA_MAX_CACHE_AGE:
                days = DELTA_FETCH_DAYS
                use_delta = True
        LOGGER.debug(
            "%s statistics fetch for zone %s (%d windows)",
            "Delta" if use_delta else "Full",
            mask_id(zone.zone_id),
            days,
        )

        details: dict[str, list[EmailDetail]] = defaultdict(list)
        last_error: GhostmailError | None = None
        fetched = 0
        for index in range(days):
            end = now - timedelta(days=index)
            start = end - timedelta(days=1)
            try:
                window = self._fetch_window(zone, start, end)
            except AuthError:
                LOGGER.warning(
                    "Analytics permission missing for zone %s", mask_id(zone.zone_id)
                )
                return []
            except GhostmailError as exc:
                LOGGER.warning(
                    "Failed to fetch analytics window %d for zone %s: %s",
                    index,
                    mask_id(zone.zone_id),
                    exc,
                )
                last_error = exc
                continue
            fetched += 1
            for address, entries in window.items():
                details[address].extend(entries)

        if not fetched and last_error is not None:
            raise NetworkError(
                "No analytics window could be fetched",
                zone_id=zone.zone_id,
                cause=last_error,
            ) from last_error

        if use_delta and cached:
            cutoff = now - timedelta(days=days)
            for statistic in cached:
                older = [d for d in statistic.email_details if d.date < cutoff]
                if older:
                    details[statistic.email_address].extend(older)

        statistics = [
            EmailStatistic.from_details(address, entries)
            for address, entries in details.items()
        ]
        statistics.sort(key=lambda statistic: statistic.count, reverse=True)
        return statistics

    @retry_with_backoff()
    def _fetch_window(
        self, zone: Zone, start: datetime, end: datetime
    ) -> dict[str, list[EmailDetail]]:
        query = _ANALYTICS_QUERY % {
            "zone_id": zone.zone_id,
            "start": _format_timestamp(start),
            "end": _format_timestamp(end),
            "limit": _ANALYTICS_LIMIT,
        }
        response = self._send("POST", "/graphql", zone, json={"query": query})
        try:
            body = response.json()
        except ValueError as exc:
            raise ProviderError(
                "Analytics response was not valid JSON", zone_id=zone.zone_id
            ) from exc
        errors = body.get("errors") or []
        if errors:
            LOGGER.warning("GraphQL error: %s", errors[0].get("message", errors[0]))
            return {}
        zones = ((body.get("data") or {}).get("viewer") or {}).get("zones") or []
        if not zones:
            return {}
        window: dict[str, list[EmailDetail]] = defaultdict(list)
        for entry in zones[0].get("emailRoutingAdaptive") or []:
            date = parse_provider_timestamp(entry.get("datetime"))
            if date is None or not entry.get("to"):
                continue
            window[entry["to"]].append(
                EmailDetail(
                    from_address=entry.get("from", ""),
                    date=date,
                    action=RoutingAction.from_api(entry.get("action")),
                )
            )
        return window

    # HTTP helpers ------------------------------------------------------------
    def _paginate(
        self,
        path: str,
        zone: Zone,
        *,
        per_page: int,
        params: dict[str, Any] | None = None,
    ) -> list[Any]:
        results: list[Any] = []
        page = 1
        while True:
            payload = self._get(
                path, zone, params={**(params or {}), "page": page, "per_page": per_page}
            )
            items = payload.get("result") or []
            results.extend(items)
            info = payload.get("result_info") or {}
            if len(items) < per_page:
                break
            if info.get("has_more") is False:
                break
            total_count = info.get("total_count")
            if isinstance(total_count, int) and len(results) >= total_count:
                break
            total_pages = info.get("total_pages")
            if isinstance(total_pages, int) and page >= total_pages:
                break
            page += 1
        return results

    @retry_with_backoff()
    def _get(
        self, path: str, zone: Zone, *, params: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        return _payload(self._send("GET", path, zone, params=params), zone)

    @retry_with_backoff()
    def _get_unless_missing(self, path: str, zone: Zone) -> dict[str, Any] | None:
        """GET ``path``; a 404 yields ``None``."""
        response = self._send("GET", path, zone, allow_statuses=(404,))
        if response.status_code == 404:
            return None
        return _payload(response, zone)

    def _send(
        self,
        method: str,
        path: str,
        zone: Zone,
        *,
        params: dict[str, Any] | None = None,
        json: Any = None,
        allow_statuses: tuple[int, ...] = (),
    ) -> httpx.Response:
        if not zone.is_authenticated:
            raise AuthError("Zone needs re-authentication", zone_id=zone.zone_id)
        try:
            response = self._client.request(
                method,
                path,
                params=params,
                json=json,
                headers={"Authorization": f"Bearer {zone.api_token}"},
            )
        except httpx.TimeoutException as exc:
            raise NetworkError(
                f"{method} request timed out", zone_id=zone.zone_id, cause=exc
            ) from exc
        except httpx.TransportError as exc:
            raise NetworkError(
                f"{method} request failed: {exc}", zone_id=zone.zone_id, cause=exc
            ) from exc
        if response.status_code in allow_statuses or response.is_success:
            return response
        _raise_for_status(response, zone)
        return response


def _raise_for_status(response: httpx.Response, zone: Zone) -> None:
    status = response.status_code
    message, code = _first_error(response)
    if status in (401, 403):
        raise AuthError(
            message or f"Authentication failed (HTTP {status})",
            zone_id=zone.zone_id,
            details={"status_code": status},
        )
    if status == 429:
        raise RateLimited(
            message or "Rate limited by Cloudflare",
            retry_after=_parse_retry_after(response.headers.get("Retry-After")),
            zone_id=zone.zone_id,
        )
    raise ProviderError(
        message or f"Cloudflare request failed (HTTP {status})",
        status_code=status,
        code=code,
        zone_id=zone.zone_id,
    )


def _payload(response: httpx.Response, zone: Zone) -> dict[str, Any]:
    try:
        body = response.json()
    except ValueError as exc:
        raise ProviderError(
            "Cloudflare returned invalid JSON",
            status_code=response.status_code,
            zone_id=zone.zone_id,
        ) from exc
    if not isinstance(body, dict):
        raise ProviderError("Unexpected response shape", zone_id=zone.zone_id)
    if body.get("success") is False:
        message, code = _first_error(response)
        raise ProviderError(
            message or "Cloudflare reported failure",
            status_code=response.status_code,
            code=code,
            zone_id=zone.zone_id,
        )
    return body


def _first_error(response: httpx.Response) -> tuple[str | None, int | None]:
    try:
        body = response.json()
    except ValueError:
        return None, None
    if not isinstance(body, dict):
        return None, None
    errors = body.get("errors") or []
    if not errors or not isinstance(errors[0], dict):
        return None, None
    code = errors[0].get("code")
    return errors[0].get("message"), code if isinstance(code, int) else None


def _parse_retry_after(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        return None


def _parse_rule(raw: Any, zone: Zone) -> EmailRule | None:
    """Return the rule for a literal ``to`` matcher, or ``None`` to skip it."""
    if not isinstance(raw, dict):
        return None
    actions = raw.get("actions") or []
    matchers = raw.get("matchers") or []
    if not actions or not matchers:
        return None
    action_name = str(actions[0].get("type", ""))
    if action_name not in {item.value for item in ActionType}:
        return None
    matcher = matchers[0]
    if matcher.get("type") != "literal" or matcher.get("field") != "to":
        return None
    address = matcher.get("value")
    if not address or not raw.get("tag"):
        return None
    action_type = ActionType(action_name)
    forward_to = ""
    if action_type is ActionType.FORWARD:
        values = actions[0].get("value") or []
        forward_to = str(values[0]) if values else ""
    return EmailRule(
        email_address=str(address),
        forward_to=forward_to,
        is_enabled=bool(raw.get("enabled", True)),
        tag=str(raw["tag"]),
        action_type=action_type,
        zone_id=zone.zone_id,
    )


def _rule_body(
    email_address: str, forward_to: str, enabled: bool, action_type: ActionType
) -> dict[str, Any]:
    if action_type is ActionType.FORWARD:
        actions: list[dict[str, Any]] = [{"type": "forward", "value": [forward_to]}]
    else:
        actions = [{"type": action_type.value}]
    return {
        "matchers": [{"type": "literal", "field": "to", "value": email_address}],
        "actions": actions,
        "enabled": enabled,
        "priority": 0,
    }


def _format_timestamp(value: datetime) -> str:
    return as_utc(value).strftime("%Y-%m-%dT%H:%M:%SZ")


__all__ = ["CloudflareClient"]
