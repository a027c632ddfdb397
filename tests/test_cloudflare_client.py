"""Tests for the Cloudflare Email Routing client."""

from __future__ import annotations

import json
from collections.abc import Callable, Iterator
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import pytest

from ghostmail.core.config import CloudflareSettings
from ghostmail.core.errors import (
    AuthError,
    NetworkError,
    ProviderError,
    RateLimited,
    RetryConfig,
)
from ghostmail.core.models import (
    ActionType,
    CatchAllKind,
    EmailDetail,
    EmailStatistic,
    Zone,
)
from ghostmail.transport import CloudflareClient

NOW = datetime(2025, 1, 20, 12, 0, tzinfo=UTC)
ZONE = Zone(account_id="acct-1", zone_id="zone-1", api_token="token-1", domain_name="x.com")

Handler = Callable[[httpx.Request], httpx.Response]


def ok(result: Any, **result_info: Any) -> httpx.Response:
    body: dict[str, Any] = {"success": True, "errors": [], "result": result}
    if result_info:
        body["result_info"] = result_info
    return httpx.Response(200, json=body)


def failure(status: int, message: str = "boom", code: int = 1000) -> httpx.Response:
    return httpx.Response(
        status,
        json={"success": False, "errors": [{"code": code, "message": message}]},
    )


def rule(address: str, tag: str, **overrides: Any) -> dict[str, Any]:
    raw = {
        "tag": tag,
        "enabled": True,
        "matchers": [{"type": "literal", "field": "to", "value": address}],
        "actions": [{"type": "forward", "value": ["me@inbox.test"]}],
    }
    raw.update(overrides)
    return raw


class Api:
    """Route requests to queued handlers by method and path."""

    def __init__(self) -> None:
        self.routes: dict[tuple[str, str], list[Handler | httpx.Response]] = {}
        self.requests: list[httpx.Request] = []

    def on(self, method: str, path: str, *responses: Handler | httpx.Response) -> None:
        self.routes.setdefault((method, path), []).extend(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path.removeprefix("/client/v4")
        queue = self.routes.get((request.method, path))
        if not queue:
            return httpx.Response(404, json={"success": False, "errors": []})
        entry = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(entry, httpx.Response):
            return entry
        return entry(request)

    def calls(self, method: str, path: str) -> list[httpx.Request]:
        return [
            request
            for request in self.requests
            if request.method == method
            and request.url.path.removeprefix("/client/v4") == path
        ]


@pytest.fixture
def api() -> Api:
    return Api()


@pytest.fixture
def sleeps() -> list[float]:
    return []


@pytest.fixture
def client(api: Api, sleeps: list[float]) -> Iterator[CloudflareClient]:
    retry = RetryConfig(max_attempts=3, base_delay=0.5, jitter=0.0, sleep=sleeps.append)
    with CloudflareClient(
        CloudflareSettings(page_size=5),
        retry_config=retry,
        transport=httpx.MockTransport(api),
        clock=lambda: NOW,
    ) as cf_client:
        yield cf_client


RULES = "/zones/zone-1/email/routing/rules"


def test_list_rules_sends_bearer_token_and_parses(
    api: Api, client: CloudflareClient
) -> None:
    api.on(
        "GET",
        RULES,
        ok(
            [
                rule("a@x.com", "t-a"),
                rule("b@x.com", "t-b", enabled=False, actions=[{"type": "drop"}]),
            ]
        ),
    )

    rules = client.list_rules(ZONE)

    request = api.requests[0]
    assert request.headers["Authorization"] == "Bearer token-1"
    assert request.url.params["per_page"] == "5"
    assert [(r.email_address, r.tag, r.action_type) for r in rules] == [
        ("a@x.com", "t-a", ActionType.FORWARD),
        ("b@x.com", "t-b", ActionType.DROP),
    ]
    assert rules[0].forward_to == "me@inbox.test"
    assert rules[1].forward_to == ""
    assert rules[1].is_enabled is False
    assert rules[0].zone_id == "zone-1"


def test_list_rules_skips_non_literal_rules(api: Api, client: CloudflareClient) -> None:
    api.on(
        "GET",
        RULES,
        ok(
            [
                rule("a@x.com", "t-a"),
                rule("*", "t-all", matchers=[{"type": "all"}]),
                rule("w@x.com", "t-w", actions=[{"type": "worker", "value": ["w"]}]),
                rule("notag@x.com", ""),
            ]
        ),
    )

    assert [r.tag for r in client.list_rules(ZONE)] == ["t-a"]


def test_list_rules_paginates_until_short_page(
    api: Api, client: CloudflareClient
) -> None:
    first = [rule(f"p1-{i}@x.com", f"a{i}") for i in range(5)]
    second = [rule("last@x.com", "z")]
    api.on("GET", RULES, ok(first), ok(second))

    rules = client.list_rules(ZONE)

    assert len(rules) == 6
    pages = [request.url.params["page"] for request in api.calls("GET", RULES)]
    assert pages == ["1", "2"]


@pytest.mark.parametrize(
    "result_info",
    [
        {"has_more": False},
        {"total_count": 5},
        {"total_pages": 1},
    ],
)
def test_list_rules_stops_on_result_info(
    api: Api, client: CloudflareClient, result_info: dict[str, Any]
) -> None:
    full_page = [rule(f"r{i}@x.com", f"t{i}") for i in range(5)]
    api.on("GET", RULES, ok(full_page, **result_info), ok([rule("extra@x.com", "e")]))

    assert len(client.list_rules(ZONE)) == 5
    assert len(api.calls("GET", RULES)) == 1


def test_auth_failure_is_not_retried(
    api: Api, client: CloudflareClient, sleeps: list[float]
) -> None:
    api.on("GET", RULES, failure(403, "Authentication error", 10000))

    with pytest.raises(AuthError) as excinfo:
        client.list_rules(ZONE)

    assert excinfo.value.message == "Authentication error"
    assert sleeps == []
    assert len(api.requests) == 1


def test_rate_limit_is_retried_with_server_delay(
    api: Api, client: CloudflareClient, sleeps: list[float]
) -> None:
    limited = httpx.Response(429, headers={"Retry-After": "2"}, json={"success": False})
    api.on("GET", RULES, limited, ok([rule("a@x.com", "t-a")]))

    assert len(client.list_rules(ZONE)) == 1
    assert sleeps == [2.0]


def test_rate_limit_gives_up_after_max_attempts(
    api: Api, client: CloudflareClient, sleeps: list[float]
) -> None:
    api.on("GET", RULES, httpx.Response(429, json={"success": False}))

    with pytest.raises(RateLimited):
        client.list_rules(ZONE)
    assert len(api.requests) == 3
    assert sleeps == [0.5, 1.0]


def test_transport_error_becomes_network_error(
    api: Api, client: CloudflareClient
) -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    api.on("GET", RULES, refuse)

    with pytest.raises(NetworkError):
        client.list_rules(ZONE)
    assert len(api.requests) == 3


def test_server_error_and_unsuccessful_body_are_provider_errors(
    api: Api, client: CloudflareClient
) -> None:
    api.on("GET", RULES, failure(500, "Internal error", 7000))
    with pytest.raises(ProviderError) as excinfo:
        client.list_rules(ZONE)
    assert excinfo.value.status_code == 500
    assert excinfo.value.code == 7000

    api.routes.clear()
    api.on("GET", RULES, httpx.Response(200, json={"success": False, "errors": []}))
    with pytest.raises(ProviderError):
        client.list_rules(ZONE)


def test_unauthenticated_zone_sends_nothing(api: Api, client: CloudflareClient) -> None:
    with pytest.raises(AuthError):
        client.list_rules(ZONE.with_token(""))
    assert api.requests == []


def test_create_rule_posts_literal_matcher(api: Api, client: CloudflareClient) -> None:
    api.on("POST", RULES, ok(rule("new@x.com", "new-tag")))

    created = client.create_rule(ZONE, "new@x.com", "me@inbox.test")

    body = json.loads(api.requests[0].content)
    assert body == {
        "matchers": [{"type": "literal", "field": "to", "value": "new@x.com"}],
        "actions": [{"type": "forward", "value": ["me@inbox.test"]}],
        "enabled": True,
        "priority": 0,
    }
    assert created.tag == "new-tag"


def test_create_rule_without_tag_fails(api: Api, client: CloudflareClient) -> None:
    api.on("POST", RULES, ok({}))

    with pytest.raises(ProviderError):
        client.create_rule(ZONE, "new@x.com", "", ActionType.DROP)


def test_writes_are_not_retried(
    api: Api, client: CloudflareClient, sleeps: list[float]
) -> None:
    api.on("PUT", f"{RULES}/t-a", httpx.Response(429, json={"success": False}))

    with pytest.raises(RateLimited):
        client.update_rule(ZONE, "t-a", "a@x.com", False, "", ActionType.REJECT)
    assert len(api.requests) == 1
    assert sleeps == []
    assert json.loads(api.requests[0].content)["actions"] == [{"type": "reject"}]


def test_delete_missing_rule_succeeds(api: Api, client: CloudflareClient) -> None:
    api.on("DELETE", f"{RULES}/gone", failure(404, "not found"))

    client.delete_rule(ZONE, "gone")

    assert len(api.requests) == 1


def test_catch_all_status(api: Api, client: CloudflareClient) -> None:
    path = f"{RULES}/catch_all"
    assert client.fetch_catch_all_status(ZONE).kind is CatchAllKind.DISABLED

    api.on(
        "GET",
        path,
        ok({"enabled": True, "actions": [{"type": "forward", "value": ["me@inbox.test"]}]}),
    )
    status = client.fetch_catch_all_status(ZONE)
    assert status.kind is CatchAllKind.FORWARD
    assert status.forward_to == ("me@inbox.test",)
    assert status.display_text == "Forward to me@inbox.test"

    api.routes.clear()
    api.on("GET", path, ok({"enabled": False, "actions": [{"type": "drop"}]}))
    assert client.fetch_catch_all_status(ZONE).is_enabled is False


def test_update_catch_all_forward(api: Api, client: CloudflareClient) -> None:
    api.on("PUT", f"{RULES}/catch_all", ok({}))

    client.update_catch_all(
        ZONE, enabled=True, action="forward", forward_to=["me@inbox.test"]
    )

    body = json.loads(api.requests[0].content)
    assert body["matchers"] == [{"type": "all"}]
    assert body["actions"] == [{"type": "forward", "value": ["me@inbox.test"]}]
    assert body["enabled"] is True


def test_forwarding_addresses_are_verified_and_cached(
    api: Api, client: CloudflareClient
) -> None:
    path = "/accounts/acct-1/email/routing/addresses"
    api.on(
        "GET",
        path,
        ok(
            [
                {"email": "me@inbox.test", "verified": "2024-01-01T00:00:00Z"},
                {"email": "pending@inbox.test", "verified": None},
            ]
        ),
    )

    assert client.list_forwarding_addresses(ZONE) == {"me@inbox.test"}
    assert client.list_forwarding_addresses(ZONE) == {"me@inbox.test"}
    assert len(api.calls("GET", path)) == 1

    client.invalidate_forwarding_addresses()
    client.list_forwarding_addresses(ZONE)
    assert len(api.calls("GET", path)) == 2


def test_subdomains_require_routing_mx_records(
    api: Api, client: CloudflareClient
) -> None:
    api.on(
        "GET",
        "/zones/zone-1/dns_records",
        ok(
            [
                {"type": "MX", "name": "x.com", "meta": {"email_routing": True}},
                {"type": "MX", "name": "Mail.x.com", "meta": {"email_routing": True}},
                {"type": "MX", "name": "other.x.com", "meta": {}},
                {"type": "MX", "name": "mail.x.com", "meta": {"email_routing": True}},
            ]
        ),
    )

    assert client.list_subdomains(ZONE) == ["mail.x.com"]


def test_subdomains_permission_error(api: Api, client: CloudflareClient) -> None:
    api.on("GET", "/zones/zone-1/dns_records", failure(403, "forbidden"))

    with pytest.raises(AuthError, match="DNS > Read"):
        client.list_subdomains(ZONE)


def test_verify_token_falls_back_to_accounts(
    api: Api, client: CloudflareClient
) -> None:
    api.on("GET", "/user/tokens/verify", failure(401, "Invalid API Token"))
    api.on("GET", "/accounts", ok([{"id": "acct-1"}]))

    assert client.verify_token(ZONE) is True

    api.routes.clear()
    api.on("GET", "/user/tokens/verify", failure(401))
    api.on("GET", "/accounts", failure(403))
    assert client.verify_token(ZONE) is False


def test_zone_details(api: Api, client: CloudflareClient) -> None:
    api.on("GET", "/zones/zone-1", ok({"name": "x.com", "account": {"name": "Personal"}}))

    assert client.fetch_zone_details(ZONE) == ("x.com", "Personal")


def test_zone_details_tolerate_missing_result(
    api: Api, client: CloudflareClient
) -> None:
    api.on("GET", "/zones/zone-1", ok(None))

    assert client.fetch_zone_details(ZONE) == ("", "")


def test_statistics_query_uses_utc_window(api: Api, client: CloudflareClient) -> None:
    api.on("POST", "/graphql", _analytics())

    client.fetch_statistics(ZONE)

    query = json.loads(api.requests[0].content)["query"]
    assert 'datetime_geq: "2025-01-19T12:00:00Z"' in query
    assert 'datetime_leq: "2025-01-20T12:00:00Z"' in query


def _analytics(*entries: tuple[str, str, datetime]) -> httpx.Response:
    rows = [
        {
            "to": to,
            "from": sender,
            "datetime": when.strftime("%Y-%m-%dT%H:%M:%SZ"),
            "action": "forwarded",
        }
        for to, sender, when in entries
    ]
    return httpx.Response(
        200,
        json={"data": {"viewer": {"zones": [{"emailRoutingAdaptive": rows}]}}},
    )


def test_statistics_full_fetch_covers_seven_windows(
    api: Api, client: CloudflareClient
) -> None:
    responses = [
        _analytics(
            ("a@x.com", "news@shop.test", NOW - timedelta(hours=2)),
            ("b@x.com", "friend@mail.test", NOW - timedelta(hours=3)),
        ),
        _analytics(("a@x.com", "news@shop.test", NOW - timedelta(days=1, hours=1))),
    ] + [_analytics() for _ in range(5)]
    api.on("POST", "/graphql", *responses)

    statistics = client.fetch_statistics(ZONE)

    assert len(api.calls("POST", "/graphql")) == 7
    assert [(s.email_address, s.count) for s in statistics] == [
        ("a@x.com", 2),
        ("b@x.com", 1),
    ]
    assert statistics[0].received_dates[0] > statistics[0].received_dates[1]


def test_statistics_delta_merges_older_cached_details(
    api: Api, client: CloudflareClient
) -> None:
    old_detail = EmailDetail("old@shop.test", NOW - timedelta(days=5))
    recent_detail = EmailDetail("dup@shop.test", NOW - timedelta(hours=5))
    cached = [EmailStatistic.from_details("a@x.com", [old_detail, recent_detail])]
    api.on(
        "POST",
        "/graphql",
        _analytics(("a@x.com", "dup@shop.test", NOW - timedelta(hours=5))),
        _analytics(),
        _analytics(),
    )

    statistics = client.fetch_statistics(
        ZONE, cached=cached, cached_at=NOW - timedelta(hours=2)
    )

    assert len(api.calls("POST", "/graphql")) == 3
    assert statistics[0].count == 2
    assert {d.from_address for d in statistics[0].email_details} == {
        "old@shop.test",
        "dup@shop.test",
    }


def test_statistics_old_cache_triggers_full_fetch(
    api: Api, client: CloudflareClient
) -> None:
    cached = [EmailStatistic.from_details("a@x.com", [EmailDetail("s", NOW)])]
    api.on("POST", "/graphql", _analytics())

    client.fetch_statistics(ZONE, cached=cached, cached_at=NOW - timedelta(hours=30))

    assert len(api.calls("POST", "/graphql")) == 7


def test_statistics_without_permission_is_empty(
    api: Api, client: CloudflareClient
) -> None:
    api.on("POST", "/graphql", failure(403, "no analytics"))

    assert client.fetch_statistics(ZONE) == []
    assert len(api.requests) == 1


def test_statistics_graphql_errors_yield_nothing(
    api: Api, client: CloudflareClient
) -> None:
    api.on(
        "POST",
        "/graphql",
        httpx.Response(200, json={"data": None, "errors": [{"message": "bad query"}]}),
    )

    assert client.fetch_statistics(ZONE) == []


def test_statistics_all_windows_failing_raises(
    api: Api, client: CloudflareClient
) -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    api.on("POST", "/graphql", refuse)

    with pytest.raises(NetworkError) as excinfo:
        client.fetch_statistics(ZONE)

    assert excinfo.value.zone_id == "zone-1"
    assert isinstance(excinfo.value.cause, NetworkError)


def test_statistics_partial_window_failure_keeps_other_windows(
    api: Api, client: CloudflareClient
) -> None:
    responses: list[httpx.Response] = [
        _analytics(("a@x.com", "news@shop.test", NOW - timedelta(hours=2)))
    ]
    responses += [failure(400, "bad window") for _ in range(6)]
    api.on("POST", "/graphql", *responses)

    statistics = client.fetch_statistics(ZONE)

    assert [(s.email_address, s.count) for s in statistics] == [("a@x.com", 1)]
