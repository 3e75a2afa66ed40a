"""Memoized, coalescing image acquisition for render_chat_video."""

from __future__ import annotations

from concurrent.futures import Future
from dataclasses import dataclass
from http.client import HTTPException
from io import BytesIO
import logging
import os
import threading
import time
from typing import Callable, Protocol
from urllib.error import URLError
from urllib.parse import urlparse
from urllib.request import Request, urlopen

from PIL import Image, UnidentifiedImageError

from domain.chat_video import AssetFetchError

LOGGER = logging.getLogger("render_chat_video.assets")

TWEMOJI_URL_TEMPLATE = "https://cdnjs.cloudflare.com/ajax/libs/twemoji/14.0.2/72x72/{code}.png"
ZERO_WIDTH_JOINER = "\u200d"
VARIATION_SELECTOR_16 = "\ufe0f"
PLACEHOLDER_SIZE = (100, 100)
PLACEHOLDER_RGBA = (51, 51, 51, 255)
DEFAULT_FETCH_ATTEMPTS = 3
DEFAULT_BACKOFF_SECONDS = 1.5
DEFAULT_FETCH_TIMEOUT_SECONDS = 10.0
HTTP_SCHEMES = ("http", "https")
USER_AGENT = "render_chat_video/1.0"


@dataclass(frozen=True)
class Asset:
    """Decoded image owned by the AssetCache."""

    key: str
    image: Image.Image
    placeholder: bool


class ImageProvider(Protocol):
    """Acquires and decodes an image for a source location."""

    def fetch(self, source: str) -> Image.Image:
        """Return the decoded image or raise AssetFetchError."""


def emoji_codepoint(cluster: str) -> str:
    """Return the Twemoji file code for an emoji cluster."""
    if ZERO_WIDTH_JOINER not in cluster:
        cluster = cluster.replace(VARIATION_SELECTOR_16, "")
    return "-".join(f"{ord(character):x}" for character in cluster)


def emoji_source(cluster: str) -> str:
    """Return the remote PNG location for an emoji cluster."""
    return TWEMOJI_URL_TEMPLATE.format(code=emoji_codepoint(cluster))


def build_placeholder_image() -> Image.Image:
    """Build the fixed-size image used when an asset cannot be fetched."""
    return Image.new("RGBA", PLACEHOLDER_SIZE, PLACEHOLDER_RGBA)


def decode_image_bytes(payload: bytes, source: str) -> Image.Image:
    """Decode image bytes into an RGBA image."""
    try:
        with Image.open(BytesIO(payload)) as image:
            image.load()
            return image.convert("RGBA")
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, ValueError) as exc:
        raise AssetFetchError(f"could not decode image from {source}: {exc}") from exc


class HttpImageProvider:
    """Loads images from http(s) URLs or local paths."""

    def __init__(self, timeout_seconds: float = DEFAULT_FETCH_TIMEOUT_SECONDS) -> None:
        self.timeout_seconds = timeout_seconds

    def fetch(self, source: str) -> Image.Image:
        try:
            parsed = urlparse(source)
        except ValueError as exc:
            raise AssetFetchError(f"invalid image source {source!r}: {exc}") from exc
        if parsed.scheme in HTTP_SCHEMES:
            return self.fetch_remote(source)
        if parsed.scheme == "file":
            return self.fetch_local(parsed.path)
        return self.fetch_local(source)

    def fetch_local(self, file_path: str) -> Image.Image:
        if not os.path.isfile(file_path):
            raise AssetFetchError(f"image file not found: {file_path}")
        try:
            with open(file_path, "rb") as file_handle:
                payload = file_handle.read()
        except OSError as exc:
            raise AssetFetchError(f"could not read image file {file_path}: {exc}") from exc
        return decode_image_bytes(payload, file_path)

    def fetch_remote(self, url: str) -> Image.Image:
        request = Request(url, headers={"User-Agent": USER_AGENT})
        try:
            with urlopen(request, timeout=self.timeout_seconds) as response:
                content_type = response.headers.get("Content-Type", "") or ""
                if content_type.lower().startswith("video/"):
                    raise AssetFetchError(f"expected an image but got {content_type}: {url}")
                payload = response.read()
        except (URLError, HTTPException, TimeoutError, OSError, ValueError) as exc:
            raise AssetFetchError(f"failed to fetch {url}: {exc}") from exc
        return decode_image_bytes(payload, url)


class AssetCache:
    """Thread-safe memoized image cache shared across jobs.

    Concurrent requests for the same key while a fetch is in flight wait on
    the same future, so each key is fetched at most once. Failures are
    retried with exponential backoff and then replaced by a cached
    placeholder; callers never see a fetch error.
    """

    def __init__(
        self,
        provider: ImageProvider | None = None,
        attempts: int = DEFAULT_FETCH_ATTEMPTS,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if attempts <= 0:
            raise ValueError("attempts must be positive")
        self.provider = provider if provider is not None else HttpImageProvider()
        self.attempts = attempts
        self.backoff_seconds = backoff_seconds
        self.sleep = sleep
        self._assets: dict[str, Asset] = {}
        self._in_flight: dict[str, Future[Asset]] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Asset:
        """Return the cached asset for key, fetching it once if needed."""
        with self._lock:
            cached = self._assets.get(key)
            if cached is not None:
                return cached
            pending = self._in_flight.get(key)
            if pending is None:
                pending = Future()
                self._in_flight[key] = pending
                owner = True
            else:
                owner = False

        if not owner:
            return pending.result()

        try:
            asset = self.acquire(key)
        except (KeyboardInterrupt, SystemExit) as exc:
            with self._lock:
                self._in_flight.pop(key, None)
            pending.set_exception(exc)
            raise

        with self._lock:
            self._assets[key] = asset
            self._in_flight.pop(key, None)
        pending.set_result(asset)
        return asset

    def get_emoji(self, cluster: str) -> Asset:
        """Return the glyph bitmap for an emoji cluster."""
        return self.get(emoji_source(cluster))

    def acquire(self, key: str) -> Asset:
        """Fetch with retries, substituting a placeholder on failure."""
        for attempt in range(1, self.attempts + 1):
            try:
                image = self.provider.fetch(key)
                if image.mode != "RGBA":
                    image = image.convert("RGBA")
                return Asset(key=key, image=image, placeholder=False)
            except Exception as exc:
                LOGGER.warning(
                    "render_chat_video.asset.fetch_retry: %s (attempt %d/%d): %s",
                    key,
                    attempt,
                    self.attempts,
                    str(exc).strip(),
                )
                if attempt < self.attempts:
                    self.sleep(self.backoff_seconds * (2 ** (attempt - 1)))

        LOGGER.warning("render_chat_video.asset.placeholder: %s", key)
        return Asset(key=key, image=build_placeholder_image(), placeholder=True)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            return key in self._assets
