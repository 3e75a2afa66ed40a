"""Tests for image acquisition and the shared asset cache."""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from io import BytesIO
from pathlib import Path
from typing import Iterator

import pytest
from PIL import Image

from domain.chat_video import AssetFetchError
from service.assets import (
    PLACEHOLDER_RGBA,
    AssetCache,
    HttpImageProvider,
    emoji_codepoint,
    emoji_source,
)
from support import FailingImageProvider, SolidImageProvider


class BlockingImageProvider:
    """Holds every fetch until released, counting calls."""

    def __init__(self) -> None:
        self.calls = 0
        self.started = threading.Event()
        self.release = threading.Event()
        self._lock = threading.Lock()

    def fetch(self, source: str) -> Image.Image:
        with self._lock:
            self.calls += 1
        self.started.set()
        self.release.wait(timeout=5)
        return Image.new("RGBA", (8, 8), (0, 255, 0, 255))


class FlakyImageProvider:
    """Fails a fixed number of times before succeeding."""

    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.calls = 0

    def fetch(self, source: str) -> Image.Image:
        self.calls += 1
        if self.calls <= self.failures:
            raise AssetFetchError("temporary failure")
        return Image.new("RGB", (4, 4), (10, 20, 30))


def test_concurrent_requests_share_one_fetch() -> None:
    """Requests for a key that is being fetched wait for the same result."""
    provider = BlockingImageProvider()
    cache = AssetCache(provider=provider)

    with ThreadPoolExecutor(max_workers=6) as executor:
        futures = [executor.submit(cache.get, "https://example.test/a.png") for _ in range(6)]
        assert provider.started.wait(timeout=5)
        provider.release.set()
        assets = [future.result(timeout=5) for future in futures]

    assert provider.calls == 1
    assert all(asset is assets[0] for asset in assets)
    assert "https://example.test/a.png" in cache


def test_cached_asset_is_not_refetched() -> None:
    """A second request for a cached key does not touch the provider."""
    provider = SolidImageProvider()
    cache = AssetCache(provider=provider)

    first = cache.get("story.png")
    second = cache.get("story.png")

    assert first is second
    assert provider.calls == ["story.png"]
    assert not first.placeholder


def test_failed_fetch_retries_then_uses_placeholder() -> None:
    """Three failed attempts back off and then cache a placeholder."""
    provider = FailingImageProvider()
    delays: list[float] = []
    cache = AssetCache(provider=provider, sleep=delays.append)

    asset = cache.get("https://example.test/missing.png")
    again = cache.get("https://example.test/missing.png")

    assert delays == [1.5, 3.0]
    assert len(provider.calls) == 3
    assert asset.placeholder
    assert asset.image.size == (100, 100)
    assert asset.image.getpixel((50, 50)) == PLACEHOLDER_RGBA
    assert again is asset


def test_fetch_recovers_after_one_failure() -> None:
    """A transient failure is retried once and the image is converted to RGBA."""
    provider = FlakyImageProvider(failures=1)
    delays: list[float] = []
    cache = AssetCache(provider=provider, sleep=delays.append)

    asset = cache.get("flaky.png")

    assert delays == [1.5]
    assert provider.calls == 2
    assert not asset.placeholder
    assert asset.image.mode == "RGBA"


def test_attempts_must_be_positive() -> None:
    with pytest.raises(ValueError):
        AssetCache(provider=SolidImageProvider(), attempts=0)


@pytest.mark.parametrize(
    ("cluster", "expected"),
    [
        ("\U0001f44d", "1f44d"),
        ("\u2764\ufe0f", "2764"),
        ("\U0001f44d\U0001f3fd", "1f44d-1f3fd"),
        ("\U0001f3f3\ufe0f\u200d\U0001f308", "1f3f3-fe0f-200d-1f308"),
    ],
)
def test_emoji_codepoint(cluster: str, expected: str) -> None:
    """Variation selectors are dropped unless the cluster is a ZWJ sequence."""
    assert emoji_codepoint(cluster) == expected


def test_get_emoji_uses_twemoji_source() -> None:
    """Emoji glyphs are cached under their remote PNG location."""
    provider = SolidImageProvider()
    cache = AssetCache(provider=provider)

    asset = cache.get_emoji("\U0001f525")

    assert asset.key == emoji_source("\U0001f525")
    assert asset.key.endswith("/1f525.png")
    assert provider.calls == [asset.key]


def test_http_provider_reads_local_paths(tmp_path: Path) -> None:
    """Plain paths and file:// URLs load from disk."""
    image_path = tmp_path / "red.png"
    Image.new("RGB", (3, 2), (255, 0, 0)).save(image_path)
    provider = HttpImageProvider()

    from_path = provider.fetch(str(image_path))
    from_url = provider.fetch(image_path.as_uri())

    assert from_path.size == (3, 2)
    assert from_path.mode == "RGBA"
    assert from_url.getpixel((0, 0)) == (255, 0, 0, 255)


def test_http_provider_rejects_missing_and_undecodable_files(tmp_path: Path) -> None:
    """Missing files and non-image bytes raise AssetFetchError."""
    provider = HttpImageProvider()
    garbage_path = tmp_path / "garbage.png"
    garbage_path.write_bytes(b"definitely not a png")

    with pytest.raises(AssetFetchError):
        provider.fetch(str(tmp_path / "missing.png"))
    with pytest.raises(AssetFetchError):
        provider.fetch(str(garbage_path))


class BrokenImageProvider:
    """Raises an unexpected error type on every fetch."""

    def __init__(self) -> None:
        self.calls = 0
        self._lock = threading.Lock()

    def fetch(self, source: str) -> Image.Image:
        with self._lock:
            self.calls += 1
        raise RuntimeError(f"decoder crashed on {source}")


def test_unexpected_provider_errors_fall_back_to_placeholder() -> None:
    """Any provider error counts as a failed attempt and ends in a placeholder."""
    provider = BrokenImageProvider()
    cache = AssetCache(provider=provider, sleep=lambda _: None)

    asset = cache.get("weird.png")

    assert asset.placeholder
    assert provider.calls == 3
    assert "weird.png" in cache


def test_waiters_share_placeholder_when_fetch_fails() -> None:
    """Coalesced requests all receive the same cached placeholder."""
    provider = BrokenImageProvider()
    cache = AssetCache(provider=provider, attempts=2, sleep=lambda _: time.sleep(0.05))

    with ThreadPoolExecutor(max_workers=4) as executor:
        futures = [executor.submit(cache.get, "shared.png") for _ in range(4)]
        assets = [future.result(timeout=5) for future in futures]

    assert all(asset.placeholder for asset in assets)
    assert all(asset is assets[0] for asset in assets)
    assert provider.calls == 2


def test_malformed_url_becomes_placeholder() -> None:
    """A source that cannot be parsed is reported as a fetch error."""
    with pytest.raises(AssetFetchError):
        HttpImageProvider().fetch("http://[::1/cat.png")

    asset = AssetCache(HttpImageProvider(), sleep=lambda _: None).get("http://[::1/cat.png")

    assert asset.placeholder


def test_oversized_image_becomes_placeholder(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Images over Pillow's pixel limit are treated as undecodable."""
    image_path = tmp_path / "huge.png"
    Image.new("RGB", (64, 64), (0, 0, 255)).save(image_path)
    monkeypatch.setattr(Image, "MAX_IMAGE_PIXELS", 1000)

    with pytest.raises(AssetFetchError):
        HttpImageProvider().fetch(str(image_path))

    asset = AssetCache(HttpImageProvider(), sleep=lambda _: None).get(str(image_path))

    assert asset.placeholder


class ImageRequestHandler(BaseHTTPRequestHandler):
    """Serves fixed responses per path and counts requests."""

    hits: dict[str, int] = {}
    hits_lock = threading.Lock()

    def do_GET(self) -> None:
        with self.hits_lock:
            self.hits[self.path] = self.hits.get(self.path, 0) + 1

        if self.path == "/ok.png":
            buffer = BytesIO()
            Image.new("RGB", (5, 5), (0, 128, 0)).save(buffer, format="PNG")
            self.send_body(200, "image/png", buffer.getvalue())
        elif self.path == "/clip.mp4":
            self.send_body(200, "video/mp4", b"\x00\x00\x00\x18ftypmp42")
        elif self.path == "/slow.png":
            time.sleep(1.0)
            self.send_body(200, "image/png", b"")
        else:
            self.send_body(404, "text/plain", b"not found")

    def send_body(self, status: int, content_type: str, body: bytes) -> None:
        try:
            self.send_response(status)
            self.send_header("Content-Type", content_type)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)
        except OSError:
            pass

    def log_message(self, format: str, *args: object) -> None:
        return


@pytest.fixture
def image_server(monkeypatch: pytest.MonkeyPatch) -> Iterator[str]:
    """Run a local HTTP server; yields its base URL."""
    monkeypatch.setenv("no_proxy", "*")
    monkeypatch.setenv("NO_PROXY", "*")
    ImageRequestHandler.hits = {}
    server = ThreadingHTTPServer(("127.0.0.1", 0), ImageRequestHandler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://127.0.0.1:{server.server_address[1]}"
    finally:
        server.shutdown()
        server.server_close()


def test_remote_image_is_fetched(image_server: str) -> None:
    """An image/* response decodes into an RGBA image."""
    image = HttpImageProvider(timeout_seconds=2.0).fetch(f"{image_server}/ok.png")

    assert image.size == (5, 5)
    assert image.getpixel((2, 2)) == (0, 128, 0, 255)


@pytest.mark.parametrize("path", ["/clip.mp4", "/missing.png", "/slow.png"])
def test_remote_failures_end_in_cached_placeholder(image_server: str, path: str) -> None:
    """Video content, HTTP errors and timeouts retry and then cache a placeholder."""
    cache = AssetCache(
        HttpImageProvider(timeout_seconds=0.2), attempts=2, sleep=lambda _: None
    )

    asset = cache.get(f"{image_server}{path}")
    again = cache.get(f"{image_server}{path}")

    assert asset.placeholder
    assert again is asset
    assert ImageRequestHandler.hits[path] == 2
