"""Core domain models used across the application."""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta
from enum import Enum

from .datetime_utils import utcnow


class ActionType(str, Enum):
    """Action a routing rule applies to matching mail."""

    FORWARD = "forward"
    DROP = "drop"
    REJECT = "reject"

    @classmethod
    def parse(cls, value: str | None) -> ActionType:
        """Return the action for ``value``, defaulting to forward."""
        try:
            return cls((value or "").lower())
        except ValueError:
            return cls.FORWARD


class RoutingAction(str, Enum):
    """Outcome recorded for a delivered message in the analytics log."""

    FORWARDED = "forward"
    DROPPED = "drop"
    REJECTED = "reject"
    UNKNOWN = "unknown"

    @classmethod
    def from_api(cls, value: str | None) -> RoutingAction:
        normalized = (value or "").lower()
        if "forward" in normalized:
            return cls.FORWARDED
        if "drop" in normalized:
            return cls.DROPPED
        if "reject" in normalized:
            return cls.REJECTED
        return cls.UNKNOWN


def normalize_address(address: str) -> str:
    """Case-fold and trim an email address for comparisons."""
    return address.strip().lower()


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True, frozen=True)
class Zone:
    """One Cloudflare zone (domain) configuration."""

    account_id: str
    zone_id: str
    api_token: str = ""
    account_name: str = ""
    domain_name: str = ""
    subdomains_enabled: bool = False
    subdomains: tuple[str, ...] = ()

    @property
    def is_authenticated(self) -> bool:
        return bool(self.api_token)

    @property
    def display_name(self) -> str:
        return self.domain_name or self.zone_id

    def with_token(self, api_token: str) -> Zone:
        return replace(self, api_token=api_token)


@dataclass(slots=True, frozen=True)
class EmailRule:
    """Routing rule as reported by the provider."""

    email_address: str
    forward_to: str
    is_enabled: bool
    tag: str
    action_type: ActionType
    zone_id: str

    @property
    def normalized_address(self) -> str:
        return normalize_address(self.email_address)


# pylint: disable=too-many-instance-attributes
@dataclass(slots=True)
class EmailAlias:
    """Local replica record merged from a rule plus user metadata."""

    email_address: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    website: str = ""
    notes: str = ""
    created: datetime | None = None
    cloudflare_tag: str | None = None
    is_enabled: bool = True
    sort_index: int = 0
    forward_to: str = ""
    zone_id: str = ""
    action_type: ActionType = ActionType.FORWARD
    is_logged_out: bool = False
    is_manually_created: bool = False
    icloud_sync_disabled: bool = False
    user_identifier: str = ""

    @property
    def normalized_address(self) -> str:
        return normalize_address(self.email_address)

    def remote_fields(self) -> tuple[object, ...]:
        """Fields owned by the provider, compared during reconciliation."""
        return (
            self.cloudflare_tag,
            self.is_enabled,
            self.forward_to,
            self.action_type,
            self.zone_id,
            self.sort_index,
        )

    @classmethod
    def from_rule(
        cls, rule: EmailRule, *, sort_index: int, user_identifier: str
    ) -> EmailAlias:
        """Seed a provider-originated alias from ``rule``."""
        return cls(
            email_address=rule.email_address,
            cloudflare_tag=rule.tag,
            is_enabled=rule.is_enabled,
            sort_index=sort_index,
            forward_to=rule.forward_to,
            zone_id=rule.zone_id,
            action_type=rule.action_type,
            user_identifier=user_identifier,
        )


@dataclass(slots=True, frozen=True)
class EmailDetail:
    """Single delivery attempt recorded by analytics."""

    from_address: str
    date: datetime
    action: RoutingAction = RoutingAction.FORWARDED


@dataclass(slots=True, frozen=True)
class EmailStatistic:
    """Aggregated analytics for one routed address."""

    email_address: str
    count: int
    received_dates: tuple[datetime, ...]
    email_details: tuple[EmailDetail, ...]

    @classmethod
    def from_details(
        cls, email_address: str, details: list[EmailDetail]
    ) -> EmailStatistic:
        ordered = sorted(details, key=lambda detail: detail.date, reverse=True)
        return cls(
            email_address=email_address,
            count=len(ordered),
            received_dates=tuple(detail.date for detail in ordered),
            email_details=tuple(ordered),
        )


@dataclass(slots=True, frozen=True)
class CachedStatistics:
    """Statistics snapshot paired with the time it was saved."""

    statistics: tuple[EmailStatistic, ...]
    saved_at: datetime
    max_age: timedelta = timedelta(hours=24)

    @property
    def age(self) -> timedelta:
        return utcnow() - self.saved_at

    @property
    def is_stale(self) -> bool:
        return self.age > self.max_age


class CatchAllKind(str, Enum):
    DISABLED = "disabled"
    FORWARD = "forward"
    DROP = "drop"
    WORKER = "worker"
    UNKNOWN = "unknown"


@dataclass(slots=True, frozen=True)
class CatchAllStatus:
    """Zone-level rule applied to addresses without an explicit rule."""

    kind: CatchAllKind
    forward_to: tuple[str, ...] = ()

    @property
    def is_enabled(self) -> bool:
        return self.kind is not CatchAllKind.DISABLED

    @property
    def display_text(self) -> str:
        if self.kind is CatchAllKind.FORWARD:
            if not self.forward_to:
                return "Forward (no address)"
            return "Forward to " + ", ".join(self.forward_to)
        return self.kind.value.capitalize()


@dataclass(slots=True)
class SyncReport:
    """Outcome summary for a reconciliation pass."""

    created: int = 0
    updated: int = 0
    deleted: int = 0
    unchanged: int = 0
    zones_synced: tuple[str, ...] = ()
    failures: dict[str, Exception] = field(default_factory=dict)
    skipped: bool = False

    @property
    def writes(self) -> int:
        return self.created + self.updated + self.deleted

    @property
    def has_failures(self) -> bool:
        return bool(self.failures)


__all__ = [
    "ActionType",
    "CachedStatistics",
    "CatchAllKind",
    "CatchAllStatus",
    "EmailAlias",
    "EmailDetail",
    "EmailRule",
    "EmailStatistic",
    "RoutingAction",
    "SyncReport",
    "Zone",
    "normalize_address",
]
