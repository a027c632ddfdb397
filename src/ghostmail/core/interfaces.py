"""Protocol interfaces for decoupling components."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol

from .models import (
    ActionType,
    CatchAllStatus,
    EmailAlias,
    EmailRule,
    EmailStatistic,
    Zone,
)


class SecretStore(Protocol):
    """Key-value capability backed by secure storage."""

    def get(self, key: str) -> str | None:
        """Return the stored secret or ``None``."""
        raise NotImplementedError

    def set(self, key: str, value: str) -> None:
        """Store ``value`` under ``key``, replacing any previous value."""
        raise NotImplementedError

    def delete(self, key: str) -> None:
        """Remove ``key`` if present."""
        raise NotImplementedError


@dataclass(slots=True)
class AliasChangeSet:
    """Mutations applied to the replica in one transaction."""

    inserts: list[EmailAlias] = field(default_factory=list)
    updates: list[EmailAlias] = field(default_factory=list)
    deletes: list[str] = field(default_factory=list)

    def __bool__(self) -> bool:
        return bool(self.inserts or self.updates or self.deletes)


class AliasRepository(Protocol):
    """Durable alias records exposed as a query/insert/delete surface."""

    def list_aliases(
        self, *, include_logged_out: bool = False, insertion_order: bool = False
    ) -> list[EmailAlias]:
        """Return aliases ordered by ``sort_index`` (or by insertion)."""
        raise NotImplementedError

    def get_alias(self, alias_id: str) -> EmailAlias | None:
        """Return a single alias by local id."""
        raise NotImplementedError

    def apply_changes(self, changes: AliasChangeSet) -> None:
        """Commit inserts, updates and deletes atomically and notify observers."""
        raise NotImplementedError

    def set_logged_out(self, *, zone_id: str | None, logged_out: bool) -> int:
        """Flag aliases (of one zone, or all when ``None``); return the count."""
        raise NotImplementedError

    def subscribe(self, callback: Callable[[AliasChangeSet], None]) -> Callable[[], None]:
        """Observe committed change sets."""
        raise NotImplementedError


class ZoneRecordStore(Protocol):
    """Persistence for zone metadata (never tokens)."""

    def list_zone_records(self) -> list[Zone]:
        raise NotImplementedError

    def upsert_zone_record(self, zone: Zone) -> None:
        raise NotImplementedError

    def delete_zone_record(self, zone_id: str) -> bool:
        raise NotImplementedError


class RoutingGateway(Protocol):
    """Zone-scoped operations against the email routing provider."""

    def list_rules(self, zone: Zone) -> list[EmailRule]:
        raise NotImplementedError

    def create_rule(
        self,
        zone: Zone,
        email_address: str,
        forward_to: str,
        action_type: ActionType = ActionType.FORWARD,
    ) -> EmailRule:
        raise NotImplementedError

    def update_rule(
        self,
        zone: Zone,
        tag: str,
        email_address: str,
        is_enabled: bool,
        forward_to: str,
        action_type: ActionType = ActionType.FORWARD,
    ) -> None:
        raise NotImplementedError

    def delete_rule(self, zone: Zone, tag: str) -> None:
        raise NotImplementedError

    def list_forwarding_addresses(self, zone: Zone) -> set[str]:
        raise NotImplementedError

    def fetch_catch_all_status(self, zone: Zone) -> CatchAllStatus:
        raise NotImplementedError

    def fetch_statistics(
        self,
        zone: Zone,
        *,
        cached: Sequence[EmailStatistic] | None = None,
        cached_at: datetime | None = None,
        force_full: bool = False,
    ) -> list[EmailStatistic]:
        raise NotImplementedError

    def list_subdomains(self, zone: Zone) -> list[str]:
        raise NotImplementedError

    def fetch_zone_details(self, zone: Zone) -> tuple[str, str]:
        raise NotImplementedError

    def verify_token(self, zone: Zone) -> bool:
        raise NotImplementedError


__all__ = [
    "AliasChangeSet",
    "AliasRepository",
    "RoutingGateway",
    "SecretStore",
    "ZoneRecordStore",
]
