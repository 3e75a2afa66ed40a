"""Job runner: script to finished video for render_chat_video."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
import tempfile
import threading
from typing import Mapping, Tuple

from domain.chat_video import (
    INVALID_CONFIG_CODE,
    FrameState,
    JobCancelledError,
    RenderConfig,
    RenderValidationError,
    parse_script,
)
from service.assets import AssetCache
from service.composer import FrameComposer
from service.encoder import EncodeResult, EncodeSettings, EncodeSink
from service.layout import FontBook
from service.timeline import build_timeline

LOGGER = logging.getLogger("render_chat_video.pipeline")


@dataclass(frozen=True)
class PipelineCapabilities:
    """Optional pipeline features."""

    widget_enabled: bool = True
    hardware_encoding: bool = True
    export_keyframes: bool = False


@dataclass(frozen=True)
class JobContext:
    """Per-job inputs; nothing here is shared between jobs."""

    job_id: str
    script_text: str
    render_config: RenderConfig
    output_video_file: str
    story_image: str | None = None
    asset_sources: Mapping[str, str] | None = None
    keyframes_dir: str | None = None
    capabilities: PipelineCapabilities = PipelineCapabilities()
    ffmpeg_binary: str = "ffmpeg"
    cancel_event: threading.Event = field(default_factory=threading.Event, compare=False)

    def __post_init__(self) -> None:
        if not self.job_id.strip():
            raise RenderValidationError(INVALID_CONFIG_CODE, "job_id must not be empty")
        if self.capabilities.export_keyframes and not self.keyframes_dir:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "keyframe export requires a keyframes directory"
            )

    def cancel(self) -> None:
        self.cancel_event.set()


@dataclass(frozen=True)
class RenderResult:
    job_id: str
    output_video_file: str
    total_frames: int
    rendered_frames: int
    encode: EncodeResult
    keyframes: Tuple[str, ...]


def run_job(
    context: JobContext,
    assets: AssetCache,
    fonts: FontBook | None = None,
) -> RenderResult:
    """Render the job's script into its output video.

    Raises RenderValidationError for bad input, EncodeError when no encoder
    attempt succeeds and JobCancelledError when the job is cancelled, also
    while the encoder is flushing or replaying the spool. The work directory
    and any encoder process are released on every path.
    """
    config = context.render_config
    capabilities = context.capabilities
    script = parse_script(context.script_text, widget_enabled=capabilities.widget_enabled)
    plan = build_timeline(
        script,
        config,
        story_asset=context.story_image,
        asset_sources=context.asset_sources,
    )
    composer = FrameComposer(config, fonts or FontBook.default(), assets)
    settings = EncodeSettings(
        width=config.canvas_width,
        height=config.canvas_height,
        fps=config.fps,
        output_video_file=context.output_video_file,
        ffmpeg_binary=context.ffmpeg_binary,
        hardware_encoding=capabilities.hardware_encoding,
    )
    keyframes_dir = context.keyframes_dir if capabilities.export_keyframes else None
    if keyframes_dir:
        os.makedirs(keyframes_dir, exist_ok=True)

    LOGGER.info(
        "render_chat_video.job.start: %s (%d messages, %d elements, %d frames)",
        context.job_id,
        len(script.messages),
        len(script.elements),
        plan.total_frames,
    )

    keyframes: list[str] = []
    rendered_frames = 0
    with tempfile.TemporaryDirectory(prefix=f"render_chat_video_{context.job_id}_") as work_dir:
        with EncodeSink(settings, work_dir, cancel_event=context.cancel_event) as sink:
            previous_block = None
            previous_state: FrameState | None = None
            frame_image = None
            frame_bytes = b""
            for block in plan.iter_ticks():
                if context.cancel_event.is_set():
                    raise JobCancelledError(f"job {context.job_id} cancelled")
                if block is not previous_block:
                    previous_block = block
                    if frame_image is None or block.state != previous_state:
                        frame_image = composer.render(block.state)
                        frame_bytes = frame_image.tobytes()
                        previous_state = block.state
                        rendered_frames += 1
                    if keyframes_dir and block.keyframe_name:
                        keyframe_path = os.path.join(keyframes_dir, block.keyframe_name)
                        frame_image.save(keyframe_path)
                        keyframes.append(keyframe_path)
                sink.write(frame_bytes)
            encode_result = sink.finish()

    LOGGER.info(
        "render_chat_video.job.done: %s -> %s (%s)",
        context.job_id,
        encode_result.output_video_file,
        encode_result.attempt.value,
    )
    return RenderResult(
        job_id=context.job_id,
        output_video_file=encode_result.output_video_file,
        total_frames=plan.total_frames,
        rendered_frames=rendered_frames,
        encode=encode_result,
        keyframes=tuple(keyframes),
    )
