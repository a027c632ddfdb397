"""Registry of configured zones and their credentials."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace

from ..core.errors import DuplicateZone, GhostmailError, ValidationError, ZoneNotFound
from ..core.events import ChangeNotifier
from ..core.interfaces import RoutingGateway, SecretStore, ZoneRecordStore
from ..core.logging import mask_id
from ..core.models import Zone

LOGGER = logging.getLogger(__name__)

_TOKEN_KEY_PREFIX = "zone-token:"


def token_key(zone_id: str) -> str:
    """Secret store key under which a zone's token is kept."""
    return f"{_TOKEN_KEY_PREFIX}{zone_id}"


class ZoneRegistry:
    """Persisted zones: metadata in the record store, tokens in secrets.

    Tokens are looked up on every read, so a token removed from the secret
    store surfaces as a zone needing re-authentication.
    """

    def __init__(self, records: ZoneRecordStore, secrets: SecretStore) -> None:
        self._records = records
        self._secrets = secrets
        self._changes: ChangeNotifier[str] = ChangeNotifier("zones")

    def subscribe(self, callback: Callable[[str], None]) -> Callable[[], None]:
        """Observe registry mutations; the callback receives the zone id."""
        return self._changes.subscribe(callback)

    def list_zones(self) -> list[Zone]:
        return [self._with_token(zone) for zone in self._records.list_zone_records()]

    def get_zone(self, zone_id: str) -> Zone:
        for zone in self._records.list_zone_records():
            if zone.zone_id == zone_id:
                return self._with_token(zone)
        raise ZoneNotFound(f"No zone registered with id {mask_id(zone_id)}")

    def authenticated_zones(self) -> list[Zone]:
        return [zone for zone in self.list_zones() if zone.is_authenticated]

    def zones_needing_reauth(self) -> list[Zone]:
        return [zone for zone in self.list_zones() if not zone.is_authenticated]

    def add_zone(
        self,
        account_id: str,
        zone_id: str,
        token: str,
        *,
        account_name: str = "",
        domain_name: str = "",
    ) -> Zone:
        account_id = account_id.strip()
        zone_id = zone_id.strip()
        token = token.strip()
        if not account_id or not zone_id:
            raise ValidationError("Account id and zone id are required")
        if any(zone.zone_id == zone_id for zone in self._records.list_zone_records()):
            raise DuplicateZone(f"Zone {mask_id(zone_id)} is already registered")
        zone = Zone(
            account_id=account_id,
            zone_id=zone_id,
            account_name=account_name.strip(),
            domain_name=domain_name.strip(),
        )
        self._records.upsert_zone_record(zone)
        if token:
            self._secrets.set(token_key(zone_id), token)
        LOGGER.info("Added zone %s", mask_id(zone_id))
        self._changes.publish(zone_id)
        return zone.with_token(token)

    def update_zone_token(self, zone_id: str, token: str) -> Zone:
        """Replace only the token of an existing zone."""
        zone = self.get_zone(zone_id)
        token = token.strip()
        if token:
            self._secrets.set(token_key(zone_id), token)
        else:
            self._secrets.delete(token_key(zone_id))
        LOGGER.info("Updated token for zone %s", mask_id(zone_id))
        self._changes.publish(zone_id)
        return zone.with_token(token)

    def update_zone(self, zone: Zone) -> Zone:
        """Replace a zone's metadata; its stored token is left untouched."""
        current = self.get_zone(zone.zone_id)
        updated = replace(zone, account_id=current.account_id, api_token="")
        self._records.upsert_zone_record(updated)
        self._changes.publish(zone.zone_id)
        return self._with_token(updated)

    def remove_zone(self, zone_id: str) -> None:
        if not self._records.delete_zone_record(zone_id):
            raise ZoneNotFound(f"No zone registered with id {mask_id(zone_id)}")
        self._secrets.delete(token_key(zone_id))
        LOGGER.info("Removed zone %s", mask_id(zone_id))
        self._changes.publish(zone_id)

    def _with_token(self, zone: Zone) -> Zone:
        return zone.with_token(self._secrets.get(token_key(zone.zone_id)) or "")


class ZoneOnboarding:
    """Verify a token and resolve zone names before registering it."""

    def __init__(self, registry: ZoneRegistry, gateway: RoutingGateway) -> None:
        self._registry = registry
        self._gateway = gateway

    def add_zone(self, account_id: str, zone_id: str, token: str) -> Zone:
        candidate = Zone(
            account_id=account_id.strip(),
            zone_id=zone_id.strip(),
            api_token=token.strip(),
        )
        if not candidate.is_authenticated:
            raise ValidationError("An API token is required")
        if not self._gateway.verify_token(candidate):
            raise ValidationError("Invalid API token")
        domain_name, account_name = self._gateway.fetch_zone_details(candidate)
        return self._registry.add_zone(
            candidate.account_id,
            candidate.zone_id,
            candidate.api_token,
            account_name=account_name,
            domain_name=domain_name,
        )

    def reauthenticate(self, zone_id: str, token: str) -> Zone:
        """Verify ``token`` against an existing zone, then store it."""
        zone = self._registry.get_zone(zone_id).with_token(token.strip())
        if not zone.is_authenticated or not self._gateway.verify_token(zone):
            raise ValidationError("Invalid API token")
        return self._registry.update_zone_token(zone_id, zone.api_token)

    def toggle_subdomains(self, zone_id: str, enabled: bool) -> Zone:
        """Switch subdomain routing for a zone and persist the discovered hosts."""
        zone = self._registry.get_zone(zone_id)
        if enabled:
            subdomains = tuple(self._gateway.list_subdomains(zone))
            updated = replace(zone, subdomains_enabled=True, subdomains=subdomains)
        else:
            updated = replace(zone, subdomains_enabled=False, subdomains=())
        return self._registry.update_zone(updated)

    def refresh_subdomains(self) -> list[Zone]:
        """Re-read subdomains of every authenticated zone that has them enabled.

        A zone whose lookup fails keeps its stored list.
        """
        refreshed = []
        for zone in self._registry.authenticated_zones():
            if not zone.subdomains_enabled:
                continue
            try:
                subdomains = tuple(self._gateway.list_subdomains(zone))
            except GhostmailError as exc:
                LOGGER.warning(
                    "Subdomain refresh failed for zone %s: %s", mask_id(zone.zone_id), exc
                )
                continue
            if subdomains != zone.subdomains:
                zone = self._registry.update_zone(replace(zone, subdomains=subdomains))
            refreshed.append(zone)
        return refreshed


__all__ = ["ZoneOnboarding", "ZoneRegistry", "token_key"]
