"""Reconcile the local alias replica with remote routing rules."""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import UTC, datetime

from ..core.errors import CancelledError, GhostmailError, SyncError
from ..core.interfaces import AliasChangeSet, AliasRepository, RoutingGateway
from ..core.logging import mask_id
from ..core.models import EmailAlias, EmailRule, SyncReport, Zone
from ..zones.registry import ZoneRegistry

LOGGER = logging.getLogger(__name__)

_OLDEST = datetime.min.replace(tzinfo=UTC)


def _created_key(alias: EmailAlias) -> datetime:
    return alias.created or _OLDEST


def pick_newest(aliases: list[EmailAlias]) -> EmailAlias:
    """Return the alias with the latest ``created``; ties keep the first."""
    best = aliases[0]
    for alias in aliases[1:]:
        if _created_key(alias) > _created_key(best):
            best = alias
    return best


def _group_by_address(aliases: list[EmailAlias]) -> dict[str, list[EmailAlias]]:
    groups: dict[str, list[EmailAlias]] = {}
    for alias in aliases:
        groups.setdefault(alias.normalized_address, []).append(alias)
    return groups


class ReconciliationEngine:
    """Bring the replica in line with the rules of every authenticated zone.

    Remote rules are authoritative for routing fields and ordering; local
    metadata (website, notes, created) survives every pass. Zones that
    could not be queried leave their aliases untouched.
    """

    def __init__(
        self,
        registry: ZoneRegistry,
        gateway: RoutingGateway,
        repository: AliasRepository,
        *,
        user_identifier: str = "",
        max_workers: int = 4,
    ) -> None:
        if max_workers <= 0:
            raise ValueError("max_workers must be positive")
        self._registry = registry
        self._gateway = gateway
        self._repository = repository
        self._user_identifier = user_identifier
        self._max_workers = max_workers

    def reconcile(self, cancel_event: threading.Event | None = None) -> SyncReport:
        """Run one pass and return its summary.

        Raises:
            SyncError: every queried zone failed; nothing was written.
            CancelledError: ``cancel_event`` was set before the commit.
        """
        zones = self._registry.authenticated_zones()
        if not zones:
            LOGGER.info("No authenticated zones; nothing to reconcile")
            return SyncReport()
        LOGGER.info("Starting reconciliation for %d zones", len(zones))

        fetched, failures = self._fetch_all(zones, cancel_event)
        if cancel_event is not None and cancel_event.is_set():
            raise CancelledError("Reconciliation cancelled")
        if not fetched:
            if failures:
                raise SyncError(
                    f"Could not fetch rules for any of {len(failures)} zones",
                    failures=failures,
                )
            raise CancelledError("Reconciliation cancelled")

        existing = self._repository.list_aliases(
            include_logged_out=True, insertion_order=True
        )
        changes, report = self._plan(fetched, existing)
        report.failures = dict(failures)
        report.zones_synced = tuple(fetched)
        self._repository.apply_changes(changes)

        LOGGER.info(
            "Reconciliation finished: %d created, %d updated, %d deleted, "
            "%d unchanged, %d zones failed",
            report.created,
            report.updated,
            report.deleted,
            report.unchanged,
            len(failures),
        )
        return report

    def dedupe_local(self) -> int:
        """Delete duplicate aliases, keeping the newest per address."""
        aliases = self._repository.list_aliases(insertion_order=True)
        changes = AliasChangeSet()
        for address, group in _group_by_address(aliases).items():
            if len(group) < 2:
                continue
            keeper = pick_newest(group)
            for alias in group:
                if alias is not keeper:
                    changes.deletes.append(alias.id)
            LOGGER.info(
                "Removing %d duplicate aliases for %s", len(group) - 1, address
            )
        self._repository.apply_changes(changes)
        return len(changes.deletes)

    def _fetch_all(
        self, zones: list[Zone], cancel_event: threading.Event | None
    ) -> tuple[dict[str, list[EmailRule]], dict[str, Exception]]:
        fetched: dict[str, list[EmailRule]] = {}
        failures: dict[str, Exception] = {}
        workers = min(self._max_workers, len(zones))
        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="ghostmail-sync"
        ) as executor:
            futures = {
                zone.zone_id: executor.submit(self._fetch_zone, zone, cancel_event)
                for zone in zones
            }
            # Registry order is kept so earlier zones win duplicate addresses.
            for zone in zones:
                try:
                    fetched[zone.zone_id] = futures[zone.zone_id].result()
                except CancelledError:
                    LOGGER.info("Fetch cancelled for zone %s", mask_id(zone.zone_id))
                except GhostmailError as exc:
                    LOGGER.warning(
                        "Failed to fetch rules for zone %s: %s",
                        mask_id(zone.zone_id),
                        exc,
                    )
                    failures[zone.zone_id] = exc
                except Exception as exc:  # pylint: disable=broad-except
                    LOGGER.error(
                        "Unexpected error fetching zone %s: %s",
                        mask_id(zone.zone_id),
                        exc,
                        exc_info=True,
                    )
                    failures[zone.zone_id] = exc
        return fetched, failures

    def _fetch_zone(
        self, zone: Zone, cancel_event: threading.Event | None
    ) -> list[EmailRule]:
        if cancel_event is not None and cancel_event.is_set():
            raise CancelledError("Reconciliation cancelled", zone_id=zone.zone_id)
        return self._gateway.list_rules(zone)

    def _plan(
        self, fetched: dict[str, list[EmailRule]], existing: list[EmailAlias]
    ) -> tuple[AliasChangeSet, SyncReport]:
        changes = AliasChangeSet()
        report = SyncReport()

        remote = self._dedupe_remote(fetched)
        remote_addresses = {
            rule.normalized_address for rules in remote.values() for rule in rules
        }

        active = [alias for alias in existing if not alias.is_logged_out]
        by_address = {
            address: pick_newest(group)
            for address, group in _group_by_address(active).items()
        }
        # Aliases hidden by a zone logout come back once the zone is synced.
        dormant: dict[tuple[str, str], EmailAlias] = {}
        for alias in existing:
            if alias.is_logged_out:
                dormant.setdefault((alias.zone_id, alias.normalized_address), alias)

        for alias in active:
            if alias.zone_id in fetched and alias.normalized_address not in remote_addresses:
                changes.deletes.append(alias.id)
                report.deleted += 1
        deleted = set(changes.deletes)

        for zone_id, rules in remote.items():
            for position, rule in enumerate(rules):
                sort_index = position + 1
                current = by_address.get(rule.normalized_address)
                if current is not None and current.id in deleted:
                    current = None
                if current is None:
                    revived = dormant.get((zone_id, rule.normalized_address))
                    if revived is not None:
                        changes.updates.append(
                            _apply_rule(revived, rule, sort_index, is_logged_out=False)
                        )
                        report.updated += 1
                        continue
                    changes.inserts.append(
                        EmailAlias.from_rule(
                            rule,
                            sort_index=sort_index,
                            user_identifier=self._user_identifier,
                        )
                    )
                    report.created += 1
                    continue
                updated = _apply_rule(current, rule, sort_index)
                if updated.remote_fields() == current.remote_fields():
                    report.unchanged += 1
                    continue
                changes.updates.append(updated)
                report.updated += 1
        return changes, report

    @staticmethod
    def _dedupe_remote(
        fetched: dict[str, list[EmailRule]]
    ) -> dict[str, list[EmailRule]]:
        seen: set[str] = set()
        unique: dict[str, list[EmailRule]] = {}
        for zone_id, rules in fetched.items():
            kept: list[EmailRule] = []
            for rule in rules:
                address = rule.normalized_address
                if address in seen:
                    LOGGER.warning(
                        "Discarding duplicate rule %s for %s in zone %s",
                        rule.tag,
                        address,
                        mask_id(zone_id),
                    )
                    continue
                seen.add(address)
                kept.append(rule)
            unique[zone_id] = kept
        return unique


def _apply_rule(
    alias: EmailAlias,
    rule: EmailRule,
    sort_index: int,
    *,
    is_logged_out: bool | None = None,
) -> EmailAlias:
    updated = replace(
        alias,
        cloudflare_tag=rule.tag,
        is_enabled=rule.is_enabled,
        forward_to=rule.forward_to,
        action_type=rule.action_type,
        zone_id=rule.zone_id,
        sort_index=sort_index,
    )
    if is_logged_out is not None:
        updated.is_logged_out = is_logged_out
    return updated


__all__ = ["ReconciliationEngine", "pick_newest"]
