#!/usr/bin/env -S uv run
# /// script
# requires-python = ">=3.11"
# dependencies = [
#   "pillow>=10.1",
#   "numpy>=1.26",
#   "regex>=2023.0"
# ]
# ///
"""Render a chat script into a scrolling phone-conversation MP4."""

from __future__ import annotations

import argparse
from dataclasses import dataclass
import json
import logging
import os
import shutil
import sys
from typing import Sequence, Tuple

from domain.chat_video import (
    FFMPEG_NOT_FOUND_CODE,
    INPUT_FILE_CODE,
    INVALID_CONFIG_CODE,
    RenderConfig,
    RenderPipelineError,
    RenderValidationError,
    extract_required_assets,
    parse_script,
    resolve_theme,
)
from service.assets import AssetCache
from service.layout import FontBook
from service.pipeline import JobContext, PipelineCapabilities, run_job

LOGGER = logging.getLogger("render_chat_video")

DEFAULT_REPEAT = 2
DEFAULT_HOLD_SECONDS = 2.0
DEFAULT_FADE_FRAMES = 8
DEFAULT_FPS = 30


@dataclass(frozen=True)
class RenderRequest:
    """Parsed CLI request and runtime options."""

    script_text: str
    list_required_assets: bool
    context: JobContext | None
    fonts_dir: str | None


def configure_logging() -> None:
    """Configure logging for CLI output."""
    logging.basicConfig(level=logging.INFO, format="%(message)s")


def read_utf8_text_strict(file_path: str) -> str:
    """Read a UTF-8 file with strict decoding."""
    try:
        with open(file_path, "rb") as file_handle:
            file_bytes = file_handle.read()
    except FileNotFoundError as exc:
        raise RenderValidationError(
            INPUT_FILE_CODE, f"script file not found: {file_path}"
        ) from exc

    try:
        return file_bytes.decode("utf-8", errors="strict")
    except UnicodeDecodeError as exc:
        raise RenderValidationError(
            INPUT_FILE_CODE,
            f"script file is not valid UTF-8 at byte offset {exc.start}",
        ) from exc


def parse_asset_arguments(values: Sequence[str]) -> dict[str, str]:
    """Parse repeated NAME=SOURCE arguments into a mapping."""
    sources: dict[str, str] = {}
    for value in values:
        name, separator, source = value.partition("=")
        if not separator or not name.strip() or not source.strip():
            raise RenderValidationError(
                INVALID_CONFIG_CODE, f"asset must be NAME=SOURCE: {value!r}"
            )
        sources[name.strip()] = source.strip()
    return sources


def ensure_ffmpeg_available(ffmpeg_binary: str) -> None:
    """Ensure the ffmpeg binary resolves to an executable."""
    if not shutil.which(ffmpeg_binary):
        raise RenderPipelineError(FFMPEG_NOT_FOUND_CODE, f"ffmpeg not on PATH: {ffmpeg_binary}")


def parse_args(argv: Sequence[str]) -> RenderRequest:
    """Parse CLI arguments into a RenderRequest."""
    parser = argparse.ArgumentParser(prog="render_chat_video.py", add_help=True)
    parser.add_argument("--script-file", required=True)
    parser.add_argument("--output-video-file", default="chat.mp4")
    parser.add_argument("--theme", default="ios_dark")
    parser.add_argument("--story-image", default=None)
    parser.add_argument(
        "--asset", action="append", default=[], help="inline image as NAME=SOURCE"
    )
    parser.add_argument("--repeat", type=int, default=DEFAULT_REPEAT)
    parser.add_argument("--hold-seconds", type=float, default=DEFAULT_HOLD_SECONDS)
    parser.add_argument("--fade-frames", type=int, default=DEFAULT_FADE_FRAMES)
    parser.add_argument("--fps", type=int, default=DEFAULT_FPS)
    parser.add_argument("--fonts-dir", default=None)
    parser.add_argument("--keyframes-dir", default=None)
    parser.add_argument("--job-id", default="cli")
    parser.add_argument("--no-widget", action="store_true")
    parser.add_argument("--software-encoding", action="store_true")
    parser.add_argument("--ffmpeg", default="ffmpeg")
    parser.add_argument("--list-required-assets", action="store_true")

    parsed = parser.parse_args(argv)
    script_text = read_utf8_text_strict(parsed.script_file)
    if parsed.list_required_assets:
        return RenderRequest(
            script_text=script_text,
            list_required_assets=True,
            context=None,
            fonts_dir=parsed.fonts_dir,
        )

    if not parsed.output_video_file.lower().endswith(".mp4"):
        raise RenderValidationError(
            INVALID_CONFIG_CODE, "output video file must use the .mp4 extension"
        )
    output_dir = os.path.dirname(os.path.abspath(parsed.output_video_file))
    if not os.path.isdir(output_dir):
        raise RenderValidationError(
            INVALID_CONFIG_CODE, f"output directory does not exist: {output_dir}"
        )
    parse_script(script_text, widget_enabled=not parsed.no_widget)

    config = RenderConfig(
        theme=resolve_theme(parsed.theme),
        repeat_window=parsed.repeat,
        hold_seconds=parsed.hold_seconds,
        fade_frame_count=parsed.fade_frames,
        fps=parsed.fps,
    )
    capabilities = PipelineCapabilities(
        widget_enabled=not parsed.no_widget,
        hardware_encoding=not parsed.software_encoding,
        export_keyframes=parsed.keyframes_dir is not None,
    )
    context = JobContext(
        job_id=parsed.job_id,
        script_text=script_text,
        render_config=config,
        output_video_file=parsed.output_video_file,
        story_image=parsed.story_image,
        asset_sources=parse_asset_arguments(parsed.asset) or None,
        keyframes_dir=parsed.keyframes_dir,
        capabilities=capabilities,
        ffmpeg_binary=parsed.ffmpeg,
    )
    return RenderRequest(
        script_text=script_text,
        list_required_assets=False,
        context=context,
        fonts_dir=parsed.fonts_dir,
    )


def report_missing_assets(
    required: Tuple[str, ...], context: JobContext
) -> None:
    if context.asset_sources is None:
        return
    for name in required:
        if name not in context.asset_sources:
            LOGGER.warning(
                "render_chat_video.input.missing_asset: %s referenced but not provided",
                name,
            )


def main() -> int:
    """CLI entrypoint."""
    configure_logging()

    try:
        request = parse_args(sys.argv[1:])
        if request.list_required_assets:
            print(json.dumps(list(extract_required_assets(request.script_text))))
            return 0
        context = request.context
        if context is None:
            raise RenderValidationError(INVALID_CONFIG_CODE, "no job to run")
        report_missing_assets(extract_required_assets(request.script_text), context)
        fonts = (
            FontBook.from_directory(request.fonts_dir)
            if request.fonts_dir
            else FontBook.default()
        )
        ensure_ffmpeg_available(context.ffmpeg_binary)
        result = run_job(context, AssetCache(), fonts)
        LOGGER.info(
            "render_chat_video.output: %s (%d frames, %s encoder)",
            result.output_video_file,
            result.total_frames,
            result.encode.codec,
        )
        return 0
    except RenderValidationError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except RenderPipelineError as exc:
        LOGGER.error("%s: %s", exc.code, str(exc).strip())
        return 1
    except Exception as exc:
        LOGGER.error("render_chat_video.unhandled_error: %s", str(exc).strip())
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
