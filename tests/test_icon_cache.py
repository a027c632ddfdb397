"""Tests for the website icon cache."""

from __future__ import annotations

import io
from collections.abc import Callable, Iterator
from pathlib import Path

import httpx
import pytest
from PIL import Image

from ghostmail.cache import IconCache
from ghostmail.cache.icons import host_from_website, parse_icon_links


def _png(size: int) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGBA", (size, size), (200, 40, 40, 255)).save(buffer, format="PNG")
    return buffer.getvalue()


class IconServer:
    """Serve canned responses keyed by URL and record requests."""

    def __init__(self) -> None:
        self.routes: dict[str, bytes] = {}
        self.requests: list[str] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        self.requests.append(url)
        body = self.routes.get(url)
        if body is None:
            return httpx.Response(404)
        return httpx.Response(200, content=body)


@pytest.fixture
def server() -> IconServer:
    return IconServer()


@pytest.fixture
def make_cache(
    tmp_path: Path, server: IconServer
) -> Iterator[Callable[[], IconCache]]:
    caches: list[IconCache] = []

    def factory() -> IconCache:
        cache = IconCache(tmp_path / "icons", transport=httpx.MockTransport(server))
        caches.append(cache)
        return cache

    yield factory
    for cache in caches:
        cache.close()


def test_host_from_website() -> None:
    assert host_from_website("Shop.Example.com/path") == "shop.example.com"
    assert host_from_website("https://news.example:8443/x") == "news.example"
    assert host_from_website("javascript:alert(1)") is None
    assert host_from_website("  ") is None


def test_parse_icon_links() -> None:
    html = """
    <link rel="stylesheet" href="/site.css">
    <link rel="icon" href="/small.png">
    <LINK REL='apple-touch-icon' HREF='/big.png'>
    """

    assert parse_icon_links(html) == ["/small.png", "/big.png"]


def test_largest_site_icon_wins_and_is_cached_on_disk(
    tmp_path: Path, server: IconServer, make_cache: Callable[[], IconCache]
) -> None:
    server.routes["https://shop.example/"] = (
        b'<link rel="icon" href="/small.png"><link rel="apple-touch-icon" href="/big.png">'
    )
    server.routes["https://shop.example/small.png"] = _png(16)
    server.routes["https://shop.example/big.png"] = _png(64)

    image = make_cache().image("shop.example")

    assert image is not None
    assert image.size == (64, 64)
    assert (tmp_path / "icons" / "shop.example.ico").exists()

    requests_before = len(server.requests)
    reloaded = make_cache().image("https://shop.example/account")
    assert reloaded is not None and reloaded.size == (64, 64)
    assert len(server.requests) == requests_before


def test_falls_back_to_icon_endpoints(
    server: IconServer, make_cache: Callable[[], IconCache]
) -> None:
    server.routes["https://icons.duckduckgo.com/ip3/plain.example.ico"] = _png(32)

    image = make_cache().image("plain.example")

    assert image is not None and image.size == (32, 32)


def test_miss_leaves_marker_until_refresh(
    tmp_path: Path, server: IconServer, make_cache: Callable[[], IconCache]
) -> None:
    cache = make_cache()

    assert cache.image("nothing.example") is None
    assert cache.has_missing_icon("nothing.example")
    assert (tmp_path / "icons" / "nothing.example.ico.missing").exists()

    requests_before = len(server.requests)
    assert make_cache().image("nothing.example") is None
    assert len(server.requests) == requests_before

    server.routes["https://nothing.example/favicon.ico"] = _png(16)
    refreshed = cache.refresh_image("nothing.example")
    assert refreshed is not None
    assert not cache.has_missing_icon("nothing.example")


def test_undecodable_payload_is_a_miss(
    server: IconServer, make_cache: Callable[[], IconCache]
) -> None:
    server.routes["https://broken.example/favicon.ico"] = b"not an image at all"

    cache = make_cache()

    assert cache.image("broken.example") is None
    assert cache.has_missing_icon("broken.example")


def test_unsafe_website_is_ignored(
    server: IconServer, make_cache: Callable[[], IconCache]
) -> None:
    cache = make_cache()

    assert cache.image("data:text/html,hi") is None
    assert server.requests == []


def test_svg_icon_is_cached_as_png(
    tmp_path: Path,
    server: IconServer,
    make_cache: Callable[[], IconCache],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    server.routes["https://vector.example/"] = b'<link rel="icon" href="/logo.svg">'
    server.routes["https://vector.example/logo.svg"] = (
        b'<?xml version="1.0"?><svg xmlns="http://www.w3.org/2000/svg"></svg>'
    )
    rasterized: list[bytes] = []

    def fake_rasterize(data: bytes) -> Image.Image:
        rasterized.append(data)
        return Image.new("RGBA", (64, 64), (0, 0, 255, 255))

    monkeypatch.setattr("ghostmail.cache.icons._rasterize_svg", fake_rasterize)

    image = make_cache().image("vector.example")

    assert image is not None and image.size == (64, 64)
    stored = (tmp_path / "icons" / "vector.example.ico").read_bytes()
    assert stored.startswith(b"\x89PNG\r\n\x1a\n")

    reloaded = make_cache().image("vector.example")
    assert reloaded is not None and reloaded.size == (64, 64)
    assert len(rasterized) == 1
