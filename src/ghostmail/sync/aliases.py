"""User-initiated alias operations."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import replace
from datetime import datetime

from ..core.datetime_utils import utcnow
from ..core.errors import AliasNotFound, AuthError, ProviderError, ValidationError
from ..core.interfaces import AliasChangeSet, AliasRepository, RoutingGateway
from ..core.logging import mask_id
from ..core.models import ActionType, EmailAlias, Zone, normalize_address
from ..core.validation import is_safe_url_scheme, require_email_address, sanitize_input
from ..zones.registry import ZoneRegistry

LOGGER = logging.getLogger(__name__)


class AliasService:
    """Create, edit and remove aliases, keeping remote rules in step."""

    def __init__(
        self,
        registry: ZoneRegistry,
        gateway: RoutingGateway,
        repository: AliasRepository,
        *,
        user_identifier: str = "",
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._registry = registry
        self._gateway = gateway
        self._repository = repository
        self._user_identifier = user_identifier
        self._clock = clock

    def create_alias(
        self,
        zone_id: str,
        email_address: str,
        forward_to: str = "",
        *,
        website: str = "",
        notes: str = "",
        action_type: ActionType = ActionType.FORWARD,
    ) -> EmailAlias:
        """Create the remote rule, then record the alias locally.

        The new alias sorts ahead of every existing one until the next
        reconciliation assigns its remote position.
        """
        zone = self._registry.get_zone(zone_id)
        if not zone.is_authenticated:
            raise AuthError("Zone needs re-authentication", zone_id=zone_id)
        address = require_email_address(email_address)
        destination = ""
        if action_type is ActionType.FORWARD:
            destination = self._require_verified_destination(zone, forward_to)

        normalized = normalize_address(address)
        remote = self._gateway.list_rules(zone)
        if any(rule.normalized_address == normalized for rule in remote):
            raise ProviderError(
                f"A routing rule for {address} already exists", zone_id=zone_id
            )
        aliases = self._repository.list_aliases()
        if any(alias.normalized_address == normalized for alias in aliases):
            raise ValidationError(f"Alias {address} already exists", zone_id=zone_id)

        rule = self._gateway.create_rule(zone, address, destination, action_type)
        alias = EmailAlias(
            email_address=address,
            website=_clean_website(website),
            notes=notes.strip(),
            created=self._clock(),
            cloudflare_tag=rule.tag,
            is_enabled=rule.is_enabled,
            sort_index=min((alias.sort_index for alias in aliases), default=1) - 1,
            forward_to=rule.forward_to,
            zone_id=zone.zone_id,
            action_type=rule.action_type,
            is_manually_created=True,
            user_identifier=self._user_identifier,
        )
        self._repository.apply_changes(AliasChangeSet(inserts=[alias]))
        LOGGER.info("Created alias in zone %s", mask_id(zone_id))
        return alias

    def update_alias(
        self,
        alias_id: str,
        *,
        website: str | None = None,
        notes: str | None = None,
        is_enabled: bool | None = None,
        forward_to: str | None = None,
        action_type: ActionType | None = None,
    ) -> EmailAlias:
        """Save metadata locally; routing changes go to the provider first."""
        alias = self._require_alias(alias_id)
        updated = replace(alias)
        if website is not None:
            updated.website = _clean_website(website)
        if notes is not None:
            updated.notes = notes.strip()
        if is_enabled is not None:
            updated.is_enabled = is_enabled
        if action_type is not None:
            updated.action_type = action_type
        if forward_to is not None:
            updated.forward_to = forward_to.strip()
        if updated.action_type is not ActionType.FORWARD:
            updated.forward_to = ""

        routing_changed = (
            updated.is_enabled,
            updated.forward_to,
            updated.action_type,
        ) != (alias.is_enabled, alias.forward_to, alias.action_type)
        if routing_changed:
            if not alias.cloudflare_tag:
                raise ValidationError("Alias has no routing rule to update")
            zone = self._registry.get_zone(alias.zone_id)
            destination_changed = updated.forward_to != alias.forward_to or (
                alias.action_type is not ActionType.FORWARD
            )
            if updated.action_type is ActionType.FORWARD and destination_changed:
                updated.forward_to = self._require_verified_destination(
                    zone, updated.forward_to
                )
            self._gateway.update_rule(
                zone,
                alias.cloudflare_tag,
                alias.email_address,
                updated.is_enabled,
                updated.forward_to,
                updated.action_type,
            )
        self._repository.apply_changes(AliasChangeSet(updates=[updated]))
        return updated

    def delete_alias(self, alias_id: str) -> None:
        """Delete the remote rule, then the local record."""
        alias = self._require_alias(alias_id)
        if alias.cloudflare_tag and alias.zone_id:
            zone = self._registry.get_zone(alias.zone_id)
            self._gateway.delete_rule(zone, alias.cloudflare_tag)
        self._repository.apply_changes(AliasChangeSet(deletes=[alias.id]))
        LOGGER.info("Deleted alias %s", mask_id(alias.id))

    def logout_zone(self, zone_id: str) -> int:
        """Hide a zone's aliases and drop its token until re-authenticated."""
        self._registry.update_zone_token(zone_id, "")
        return self._repository.set_logged_out(zone_id=zone_id, logged_out=True)

    def logout_all(self) -> int:
        for zone in self._registry.authenticated_zones():
            self._registry.update_zone_token(zone.zone_id, "")
        return self._repository.set_logged_out(zone_id=None, logged_out=True)

    def remove_zone(self, zone_id: str) -> None:
        """Log the zone's aliases out, then forget the zone."""
        self._registry.get_zone(zone_id)
        self._repository.set_logged_out(zone_id=zone_id, logged_out=True)
        self._registry.remove_zone(zone_id)

    def _require_verified_destination(self, zone: Zone, forward_to: str) -> str:
        if not forward_to.strip():
            raise ValidationError(
                "A destination address is required for forwarding",
                zone_id=zone.zone_id,
            )
        destination = require_email_address(forward_to)
        verified = {
            normalize_address(item)
            for item in self._gateway.list_forwarding_addresses(zone)
        }
        if normalize_address(destination) not in verified:
            raise ValidationError(
                f"{destination} is not a verified destination address",
                zone_id=zone.zone_id,
            )
        return destination

    def _require_alias(self, alias_id: str) -> EmailAlias:
        alias = self._repository.get_alias(alias_id)
        if alias is None:
            raise AliasNotFound(f"No alias with id {alias_id}")
        return alias


def _clean_website(website: str) -> str:
    cleaned = sanitize_input(website.strip())
    if cleaned and not is_safe_url_scheme(cleaned):
        raise ValidationError("Website uses an unsupported URL scheme")
    return cleaned


__all__ = ["AliasService"]
