"""Website icon cache with negative-result markers."""

from __future__ import annotations

import io
import logging
import os
import re
import tempfile
import threading
from pathlib import Path
from types import TracebackType
from urllib.parse import quote, urljoin, urlsplit

import httpx
from PIL import Image, UnidentifiedImageError

from ..core.config import CacheSettings
from ..core.datetime_utils import serialize_datetime, utcnow
from ..core.validation import is_safe_url_scheme

LOGGER = logging.getLogger(__name__)

SVG_SIZE = (64, 64)
_LINK_PATTERN = re.compile(
    r"""<link[^>]+rel=['"]?([^'">]+)['"]?[^>]*href=['"]?([^'">]+)['"]?[^>]*>""",
    re.IGNORECASE,
)
_USER_AGENT = "Mozilla/5.0 (compatible; ghostmail-icons)"


def host_from_website(website: str) -> str | None:
    """Extract the host of ``website``, assuming https when no scheme is given."""
    candidate = website.strip()
    if not candidate or not is_safe_url_scheme(candidate):
        return None
    if "://" not in candidate:
        candidate = f"https://{candidate}"
    try:
        host = urlsplit(candidate).hostname
    except ValueError:
        host = None
    if host:
        return host.lower()
    first = candidate.split("://", 1)[1].split("/", 1)[0]
    return first.lower() or None


def parse_icon_links(html: str) -> list[str]:
    """Return ``href`` values of ``<link>`` tags whose rel mentions an icon."""
    return [
        href.strip()
        for rel, href in _LINK_PATTERN.findall(html)
        if "icon" in rel.lower()
    ]


class IconCache:
    """Memory and disk cache of favicons keyed by host.

    A host that produced no icon gets an on-disk ``.missing`` marker so it
    is not fetched again until :meth:`refresh_image` is called.
    """

    def __init__(
        self,
        cache_dir: Path | str,
        *,
        timeout_seconds: float = 15.0,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._cache_dir = Path(cache_dir)
        self._cache_dir.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._images: dict[str, Image.Image] = {}
        self._missing: set[str] = set()
        self._client = httpx.Client(
            timeout=timeout_seconds,
            transport=transport,
            follow_redirects=True,
            headers={"User-Agent": _USER_AGENT},
        )

    @classmethod
    def from_settings(
        cls, settings: CacheSettings, transport: httpx.BaseTransport | None = None
    ) -> IconCache:
        return cls(
            settings.icon_dir,
            timeout_seconds=settings.icon_timeout_seconds,
            transport=transport,
        )

    def __enter__(self) -> IconCache:
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

    def image(self, website: str) -> Image.Image | None:
        """Return the icon for ``website`` or ``None`` when none exists."""
        host = host_from_website(website)
        if host is None:
            return None
        with self._lock:
            cached = self._images.get(host)
            if cached is not None:
                return cached
            if host in self._missing:
                return None
        if self._marker_path(host).exists():
            with self._lock:
                self._missing.add(host)
            return None

        icon_path = self._icon_path(host)
        if icon_path.exists():
            decoded = _decode(icon_path.read_bytes(), icon_path.name)
            if decoded is not None:
                image = decoded[0]
                with self._lock:
                    self._images[host] = image
                return image
            LOGGER.debug("Removing undecodable cached icon for %s", host)
            icon_path.unlink(missing_ok=True)

        return self._fetch_and_store(host)

    def refresh_image(self, website: str) -> Image.Image | None:
        """Forget everything cached for the host and fetch again."""
        host = host_from_website(website)
        if host is None:
            return None
        with self._lock:
            self._images.pop(host, None)
            self._missing.discard(host)
        self._marker_path(host).unlink(missing_ok=True)
        self._icon_path(host).unlink(missing_ok=True)
        return self._fetch_and_store(host)

    def has_missing_icon(self, website: str) -> bool:
        host = host_from_website(website)
        if host is None:
            return False
        with self._lock:
            if host in self._missing:
                return True
        return self._marker_path(host).exists()

    def _fetch_and_store(self, host: str) -> Image.Image | None:
        found = self._best_icon_from_site(host) or self._icon_from_endpoints(host)
        if found is None:
            LOGGER.debug("No icon found for %s", host)
            _atomic_write(
                self._marker_path(host),
                (serialize_datetime(utcnow()) or "").encode("utf-8"),
            )
            with self._lock:
                self._missing.add(host)
            return None
        image, data = found
        _atomic_write(self._icon_path(host), data)
        self._marker_path(host).unlink(missing_ok=True)
        with self._lock:
            self._images[host] = image
            self._missing.discard(host)
        return image

    def _best_icon_from_site(self, host: str) -> tuple[Image.Image, bytes] | None:
        base_url = f"https://{host}/"
        html = self._download(base_url)
        candidates: list[str] = []
        if html:
            text = html.decode("utf-8", errors="ignore")
            candidates.extend(urljoin(base_url, href) for href in parse_icon_links(text))
        candidates.append(urljoin(base_url, "/favicon.ico"))

        best: tuple[Image.Image, bytes] | None = None
        best_score = 0
        for url in dict.fromkeys(candidates):
            data = self._download(url)
            if not data:
                continue
            decoded = _decode(data, url)
            if decoded is None:
                continue
            score = decoded[0].width * decoded[0].height
            if score > best_score:
                best, best_score = decoded, score
        return best

    def _icon_from_endpoints(self, host: str) -> tuple[Image.Image, bytes] | None:
        encoded = quote(host, safe="")
        endpoints = (
            f"https://icons.duckduckgo.com/ip2/{encoded}.ico",
            f"https://icons.duckduckgo.com/ip3/{encoded}.ico",
            f"https://www.google.com/s2/favicons?sz=64&domain={encoded}",
        )
        for url in endpoints:
            data = self._download(url)
            if not data:
                continue
            decoded = _decode(data, url)
            if decoded is not None:
                return decoded
        return None

    def _download(self, url: str) -> bytes | None:
        try:
            response = self._client.get(url)
        except httpx.HTTPError as exc:
            LOGGER.debug("Icon request to %s failed: %s", url, exc)
            return None
        if response.status_code != 200 or not response.content:
            return None
        return response.content

    def _icon_path(self, host: str) -> Path:
        safe = host.replace(":", "_").replace("/", "_")
        return self._cache_dir / f"{safe}.ico"

    def _marker_path(self, host: str) -> Path:
        icon_path = self._icon_path(host)
        return icon_path.with_name(icon_path.name + ".missing")


def _decode(data: bytes, source: str) -> tuple[Image.Image, bytes] | None:
    """Return the decoded image and the bytes to keep on disk.

    Raster data is kept as downloaded; SVG is rasterized and kept as PNG.
    Zero-sized images are rejected.
    """
    try:
        with Image.open(io.BytesIO(data)) as opened:
            opened.load()
            image = opened.copy()
    except (UnidentifiedImageError, OSError, ValueError, Image.DecompressionBombError):
        image = None
    stored = data
    if image is None and _looks_like_svg(data, source):
        image = _rasterize_svg(data)
        if image is not None:
            buffer = io.BytesIO()
            image.save(buffer, format="PNG")
            stored = buffer.getvalue()
    if image is None or image.width == 0 or image.height == 0:
        return None
    return image, stored


def _looks_like_svg(data: bytes, source: str) -> bool:
    if urlsplit(source).path.lower().endswith(".svg"):
        return True
    return b"<svg" in data[:1024].lower()


def _rasterize_svg(data: bytes) -> Image.Image | None:
    # cairosvg loads the native cairo library on import.
    try:
        import cairosvg  # pylint: disable=import-outside-toplevel

        png = cairosvg.svg2png(
            bytestring=data, output_width=SVG_SIZE[0], output_height=SVG_SIZE[1]
        )
        with Image.open(io.BytesIO(png)) as opened:
            opened.load()
            return opened.copy()
    except Exception as exc:  # pylint: disable=broad-except
        LOGGER.debug("SVG rasterization failed: %s", exc)
        return None


def _atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.replace(temp_name, path)
    except OSError:
        Path(temp_name).unlink(missing_ok=True)
        raise


__all__ = ["IconCache", "host_from_website", "parse_icon_links"]
