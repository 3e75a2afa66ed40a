"""Test doubles: a stub ffmpeg executable and offline image providers."""

from __future__ import annotations

import stat
import sys
import threading
import time
from pathlib import Path
from typing import Iterable

from PIL import Image

from domain.chat_video import AssetFetchError

STUB_FFMPEG_TEMPLATE = """#!__PYTHON__
import hashlib
import os
import sys
import time

args = sys.argv[1:]
codec = args[args.index("-c:v") + 1]
with open(__LOG__, "a", encoding="utf-8") as log_file:
    log_file.write(codec + " " + str(os.getpid()) + "\\n")
if codec in __FAILING__:
    sys.stderr.write("encoder " + codec + " unavailable\\n")
    sys.exit(1)
if codec in __STALLING__:
    time.sleep(60)
    sys.exit(1)
digest = hashlib.sha256()
total = 0
while True:
    chunk = sys.stdin.buffer.read(65536)
    if not chunk:
        break
    digest.update(chunk)
    total += len(chunk)
with open(args[-1], "w", encoding="utf-8") as output_file:
    output_file.write(str(total) + " " + digest.hexdigest() + "\\n")
"""


def write_stub_ffmpeg(
    target_dir: Path,
    failing_codecs: Iterable[str] = (),
    stalling_codecs: Iterable[str] = (),
) -> tuple[Path, Path]:
    """Write an executable ffmpeg stand-in; returns (binary, invocation log)."""
    binary_path = target_dir / "ffmpeg-stub"
    log_path = target_dir / "ffmpeg-invocations.log"
    script = (
        STUB_FFMPEG_TEMPLATE.replace("__PYTHON__", sys.executable)
        .replace("__LOG__", repr(str(log_path)))
        .replace("__FAILING__", repr(tuple(failing_codecs)))
        .replace("__STALLING__", repr(tuple(stalling_codecs)))
    )
    binary_path.write_text(script, encoding="utf-8")
    binary_path.chmod(binary_path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return binary_path, log_path


def read_invocations(log_path: Path) -> list[str]:
    """Return the codecs the stub was started with, in order."""
    if not log_path.exists():
        return []
    return [codec for codec, _ in read_invocation_pids(log_path)]


def read_invocation_pids(log_path: Path) -> list[tuple[str, int]]:
    """Return (codec, pid) for each stub start, in order."""
    if not log_path.exists():
        return []
    invocations = []
    for line in log_path.read_text(encoding="utf-8").splitlines():
        parts = line.split()
        if len(parts) == 2:
            invocations.append((parts[0], int(parts[1])))
    return invocations


def cancel_when_started(log_path: Path, codec: str, cancel_event: threading.Event) -> threading.Thread:
    """Set cancel_event once the stub has been started with codec."""

    def watch() -> None:
        deadline = time.monotonic() + 30
        while time.monotonic() < deadline:
            if codec in read_invocations(log_path):
                cancel_event.set()
                return
            time.sleep(0.02)

    watcher = threading.Thread(target=watch, daemon=True)
    watcher.start()
    return watcher


class SolidImageProvider:
    """Returns a solid image for every source and records each fetch."""

    def __init__(
        self,
        color: tuple[int, int, int, int] = (250, 200, 40, 255),
        size: tuple[int, int] = (72, 72),
        colors: dict[str, tuple[int, int, int, int]] | None = None,
        sizes: dict[str, tuple[int, int]] | None = None,
    ) -> None:
        self.color = color
        self.size = size
        self.colors = colors or {}
        self.sizes = sizes or {}
        self.calls: list[str] = []
        self._lock = threading.Lock()

    def fetch(self, source: str) -> Image.Image:
        with self._lock:
            self.calls.append(source)
        return Image.new(
            "RGBA",
            self.sizes.get(source, self.size),
            self.colors.get(source, self.color),
        )


class FailingImageProvider:
    """Fails every fetch."""

    def __init__(self) -> None:
        self.calls: list[str] = []

    def fetch(self, source: str) -> Image.Image:
        self.calls.append(source)
        raise AssetFetchError(f"unreachable: {source}")

