"""Shared fixtures."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Callable, Iterable

import pytest

from support import write_stub_ffmpeg


@pytest.fixture
def stub_ffmpeg(tmp_path: Path) -> Callable[..., tuple[Path, Path]]:
    """Factory for stub ffmpeg executables inside tmp_path."""
    if sys.platform == "win32":
        pytest.skip("stub ffmpeg relies on a POSIX shebang")

    def factory(
        failing_codecs: Iterable[str] = (), stalling_codecs: Iterable[str] = ()
    ) -> tuple[Path, Path]:
        return write_stub_ffmpeg(tmp_path, failing_codecs, stalling_codecs)

    return factory
