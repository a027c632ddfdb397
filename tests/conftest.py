"""Shared fixtures and in-memory fakes."""

from __future__ import annotations

from collections.abc import Iterator, Sequence
from dataclasses import replace
from datetime import datetime
from pathlib import Path

import pytest

from ghostmail.core.config import StorageSettings
from ghostmail.core.models import (
    ActionType,
    CatchAllKind,
    CatchAllStatus,
    EmailRule,
    EmailStatistic,
    Zone,
)
from ghostmail.storage import SqliteAliasRepository
from ghostmail.zones import ZoneRegistry


class MemorySecretStore:
    """Dictionary-backed secret store."""

    def __init__(self) -> None:
        self.values: dict[str, str] = {}

    def get(self, key: str) -> str | None:
        return self.values.get(key)

    def set(self, key: str, value: str) -> None:
        self.values[key] = value

    def delete(self, key: str) -> None:
        self.values.pop(key, None)


class FakeGateway:
    """Routing gateway keeping rules per zone in memory."""

    def __init__(self) -> None:
        self.rules: dict[str, list[EmailRule]] = {}
        self.failures: dict[str, Exception] = {}
        self.forwarding: set[str] = set()
        self.valid_tokens: set[str] = set()
        self.details: dict[str, tuple[str, str]] = {}
        self.statistics: dict[str, list[EmailStatistic]] = {}
        self.statistics_calls: list[tuple[str, object, object]] = []
        self.subdomains: dict[str, list[str]] = {}
        self.subdomain_failures: dict[str, Exception] = {}
        self.created: list[EmailRule] = []
        self.updated: list[tuple[str, bool, str, ActionType]] = []
        self.deleted: list[str] = []
        self.list_calls = 0
        self._next_tag = 0

    def list_rules(self, zone: Zone) -> list[EmailRule]:
        self.list_calls += 1
        if zone.zone_id in self.failures:
            raise self.failures[zone.zone_id]
        return list(self.rules.get(zone.zone_id, []))

    def create_rule(
        self,
        zone: Zone,
        email_address: str,
        forward_to: str,
        action_type: ActionType = ActionType.FORWARD,
    ) -> EmailRule:
        self._next_tag += 1
        rule = EmailRule(
            email_address=email_address,
            forward_to=forward_to,
            is_enabled=True,
            tag=f"created-{self._next_tag}",
            action_type=action_type,
            zone_id=zone.zone_id,
        )
        self.rules.setdefault(zone.zone_id, []).append(rule)
        self.created.append(rule)
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
        self.updated.append((tag, is_enabled, forward_to, action_type))
        self.rules[zone.zone_id] = [
            replace(
                rule,
                is_enabled=is_enabled,
                forward_to=forward_to,
                action_type=action_type,
            )
            if rule.tag == tag
            else rule
            for rule in self.rules.get(zone.zone_id, [])
        ]

    def delete_rule(self, zone: Zone, tag: str) -> None:
        self.deleted.append(tag)
        self.rules[zone.zone_id] = [
            rule for rule in self.rules.get(zone.zone_id, []) if rule.tag != tag
        ]

    def list_forwarding_addresses(self, zone: Zone) -> set[str]:
        return set(self.forwarding)

    def fetch_catch_all_status(self, zone: Zone) -> CatchAllStatus:
        return CatchAllStatus(CatchAllKind.DISABLED)

    def fetch_statistics(
        self,
        zone: Zone,
        *,
        cached: Sequence[EmailStatistic] | None = None,
        cached_at: datetime | None = None,
        force_full: bool = False,
    ) -> list[EmailStatistic]:
        self.statistics_calls.append((zone.zone_id, cached, cached_at))
        if zone.zone_id in self.failures:
            raise self.failures[zone.zone_id]
        return list(self.statistics.get(zone.zone_id, []))

    def list_subdomains(self, zone: Zone) -> list[str]:
        if zone.zone_id in self.subdomain_failures:
            raise self.subdomain_failures[zone.zone_id]
        return sorted(self.subdomains.get(zone.zone_id, []))

    def fetch_zone_details(self, zone: Zone) -> tuple[str, str]:
        return self.details.get(zone.zone_id, ("example.com", "Example Account"))

    def verify_token(self, zone: Zone) -> bool:
        return zone.api_token in self.valid_tokens


def make_rule(
    address: str,
    tag: str,
    *,
    zone_id: str = "zone-1",
    forward_to: str = "me@inbox.test",
    enabled: bool = True,
    action_type: ActionType = ActionType.FORWARD,
) -> EmailRule:
    return EmailRule(
        email_address=address,
        forward_to=forward_to if action_type is ActionType.FORWARD else "",
        is_enabled=enabled,
        tag=tag,
        action_type=action_type,
        zone_id=zone_id,
    )


@pytest.fixture
def repository(tmp_path: Path) -> Iterator[SqliteAliasRepository]:
    repo = SqliteAliasRepository(StorageSettings(db_path=tmp_path / "aliases.db"))
    yield repo
    repo.close()


@pytest.fixture
def secrets() -> MemorySecretStore:
    return MemorySecretStore()


@pytest.fixture
def registry(
    repository: SqliteAliasRepository, secrets: MemorySecretStore
) -> ZoneRegistry:
    return ZoneRegistry(repository, secrets)


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()
