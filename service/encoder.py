"""Streaming ffmpeg encoder with a replayable frame spool and codec fallback."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import hashlib
import logging
import os
import queue
import subprocess
import sys
import threading
from typing import Iterator, Tuple

from PIL import Image

from domain.chat_video import (
    FFMPEG_FALLBACK_CODE,
    FFMPEG_NOT_FOUND_CODE,
    FFMPEG_PROCESS_CODE,
    FRAME_SIZE_CODE,
    INVALID_CONFIG_CODE,
    EncodeError,
    JobCancelledError,
    RenderPipelineError,
    RenderValidationError,
)

LOGGER = logging.getLogger("render_chat_video.encoder")

QUEUE_DEPTH = 4
OUTPUT_PIXEL_FORMAT = "yuv420p"
FALLBACK_CODEC = "libx264"
STDERR_TAIL_BYTES = 2000
SPOOL_COMPRESS_LEVEL = 1
POLL_SECONDS = 0.1


class CodecAttempt(str, Enum):
    """Which encoder attempt produced the output."""

    PRIMARY = "primary"
    FALLBACK = "fallback"


@dataclass(frozen=True)
class VideoEncodingSpec:
    codec: str
    args: Tuple[str, ...]


ENCODING_SPECS = {
    "h264_nvenc": VideoEncodingSpec(
        codec="h264_nvenc",
        args=("-preset", "p2", "-rc", "vbr", "-cq", "28", "-profile:v", "high"),
    ),
    "h264_videotoolbox": VideoEncodingSpec(
        codec="h264_videotoolbox",
        args=("-q:v", "70", "-profile:v", "high", "-level", "4.2"),
    ),
    FALLBACK_CODEC: VideoEncodingSpec(
        codec=FALLBACK_CODEC,
        args=("-preset", "fast", "-crf", "18"),
    ),
}


def select_primary_codec(hardware_encoding: bool, platform: str = sys.platform) -> str:
    """Pick the first-choice encoder for the host platform."""
    if not hardware_encoding:
        return FALLBACK_CODEC
    if platform.startswith("linux") or platform == "win32":
        return "h264_nvenc"
    if platform == "darwin":
        return "h264_videotoolbox"
    return FALLBACK_CODEC


@dataclass(frozen=True)
class EncodeSettings:
    """Output geometry, rate and encoder selection for one video."""

    width: int
    height: int
    fps: int
    output_video_file: str
    ffmpeg_binary: str = "ffmpeg"
    hardware_encoding: bool = True
    platform: str = sys.platform

    def __post_init__(self) -> None:
        if not self.output_video_file.lower().endswith(".mp4"):
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "output video file must use the .mp4 extension"
            )
        if self.width <= 0 or self.height <= 0 or self.width % 2 or self.height % 2:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "frame dimensions must be positive and even"
            )
        if self.fps <= 0:
            raise RenderValidationError(INVALID_CONFIG_CODE, "fps must be positive")

    @property
    def frame_size(self) -> int:
        """Bytes in one RGBA frame."""
        return self.width * self.height * 4

    @property
    def primary_codec(self) -> str:
        return select_primary_codec(self.hardware_encoding, self.platform)


@dataclass(frozen=True)
class EncodeResult:
    output_video_file: str
    attempt: CodecAttempt
    codec: str
    frame_count: int


def build_ffmpeg_command(settings: EncodeSettings, encoding: VideoEncodingSpec) -> list[str]:
    """Build the ffmpeg command for a raw RGBA frame stream."""
    ffmpeg_cmd = [
        settings.ffmpeg_binary,
        "-y",
        "-f",
        "rawvideo",
        "-pix_fmt",
        "rgba",
        "-s",
        f"{settings.width}x{settings.height}",
        "-r",
        str(settings.fps),
        "-i",
        "-",
        "-an",
        "-c:v",
        encoding.codec,
    ]
    ffmpeg_cmd.extend(encoding.args)
    ffmpeg_cmd.extend(
        [
            "-pix_fmt",
            OUTPUT_PIXEL_FORMAT,
            "-movflags",
            "+faststart",
            settings.output_video_file,
        ]
    )
    return ffmpeg_cmd


def open_ffmpeg_process(
    settings: EncodeSettings,
    encoding: VideoEncodingSpec,
    stderr_path: str,
) -> subprocess.Popen[bytes]:
    """Start ffmpeg reading frames from stdin, logging stderr to a file."""
    ffmpeg_cmd = build_ffmpeg_command(settings, encoding)
    LOGGER.info("render_chat_video.encoder.start: %s", " ".join(ffmpeg_cmd))
    with open(stderr_path, "wb") as stderr_file:
        try:
            return subprocess.Popen(
                ffmpeg_cmd,
                stdin=subprocess.PIPE,
                stdout=subprocess.DEVNULL,
                stderr=stderr_file,
            )
        except FileNotFoundError as exc:
            raise EncodeError(
                FFMPEG_NOT_FOUND_CODE, f"ffmpeg not found: {settings.ffmpeg_binary}"
            ) from exc
        except OSError as exc:
            raise EncodeError(
                FFMPEG_PROCESS_CODE, f"failed to start ffmpeg: {exc}"
            ) from exc


def read_stderr_tail(stderr_path: str) -> str:
    try:
        with open(stderr_path, "rb") as stderr_file:
            stderr_bytes = stderr_file.read()
    except OSError:
        return ""
    return stderr_bytes[-STDERR_TAIL_BYTES:].decode("utf-8", errors="replace").strip()


_CLOSE = object()


class FramePipeWriter:
    """Feeds frames to an encoder's stdin from a writer thread.

    The queue between the caller and the thread is bounded: ``write`` blocks
    while it is full and returns as soon as the encoder can take more input.
    After a write error the thread keeps draining the queue so the caller
    never blocks forever; the error is reported through ``failed``.

    Every wait (a full queue, the writer thread, the encoder exit) polls the
    optional cancel event and raises JobCancelledError once it is set; the
    caller then calls ``abort``.
    """

    def __init__(
        self,
        process: subprocess.Popen[bytes],
        depth: int = QUEUE_DEPTH,
        cancel_event: threading.Event | None = None,
    ) -> None:
        if process.stdin is None:
            raise RenderPipelineError(FFMPEG_PROCESS_CODE, "ffmpeg stdin unavailable")
        self.process = process
        self.cancel_event = cancel_event
        self.error: BaseException | None = None
        self._queue: queue.Queue[object] = queue.Queue(maxsize=depth)
        self._closed = False
        self._close_queued = False
        self._thread = threading.Thread(
            target=self._run, name="render_chat_video-ffmpeg-writer", daemon=True
        )
        self._thread.start()

    @property
    def failed(self) -> bool:
        return_code = self.process.poll()
        return self.error is not None or (return_code is not None and return_code != 0)

    def check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise JobCancelledError("encoding cancelled")

    def write(self, frame: bytes) -> None:
        if self._closed:
            raise RenderPipelineError(FFMPEG_PROCESS_CODE, "frame writer is closed")
        self._put(frame)

    def close(self) -> int:
        """Flush queued frames, close stdin and wait for the encoder to exit."""
        self._closed = True
        if not self._close_queued:
            self._put(_CLOSE)
        while self._thread.is_alive():
            self.check_cancelled()
            self._thread.join(timeout=POLL_SECONDS)
        while True:
            self.check_cancelled()
            try:
                return self.process.wait(timeout=POLL_SECONDS)
            except subprocess.TimeoutExpired:
                continue

    def abort(self) -> None:
        """Kill the encoder and stop the writer thread."""
        self._closed = True
        if self.process.poll() is None:
            self.process.kill()
        if not self._close_queued:
            # a killed encoder fails the pending write, so the thread drains
            self._queue.put(_CLOSE)
            self._close_queued = True
        self._thread.join()
        self.process.wait()

    def _put(self, item: object) -> None:
        while True:
            self.check_cancelled()
            try:
                self._queue.put(item, timeout=POLL_SECONDS)
            except queue.Full:
                continue
            if item is _CLOSE:
                self._close_queued = True
            return

    def _run(self) -> None:
        stdin = self.process.stdin
        try:
            while True:
                item = self._queue.get()
                if item is _CLOSE:
                    break
                if self.error is not None:
                    continue
                try:
                    stdin.write(item)
                except (OSError, ValueError) as exc:
                    self.error = exc
        finally:
            try:
                stdin.close()
            except OSError as exc:
                if self.error is None:
                    self.error = exc


@dataclass
class SpoolEntry:
    path: str
    repeat: int


class FrameSpool:
    """Job-scoped on-disk copy of the frame stream.

    Consecutive identical frames are stored once with a repeat count, so the
    stream can be replayed in identical order.
    """

    def __init__(self, directory: str, size: Tuple[int, int]) -> None:
        os.makedirs(directory, exist_ok=True)
        self.directory = directory
        self.size = size
        self.entries: list[SpoolEntry] = []
        self._last_digest: bytes | None = None

    @property
    def frame_count(self) -> int:
        return sum(entry.repeat for entry in self.entries)

    def append(self, frame: bytes) -> None:
        digest = hashlib.sha1(frame).digest()
        if self.entries and digest == self._last_digest:
            self.entries[-1].repeat += 1
            return
        frame_path = os.path.join(self.directory, f"frame_{len(self.entries):06d}.png")
        Image.frombytes("RGBA", self.size, frame).save(
            frame_path, compress_level=SPOOL_COMPRESS_LEVEL
        )
        self.entries.append(SpoolEntry(path=frame_path, repeat=1))
        self._last_digest = digest

    def __iter__(self) -> Iterator[bytes]:
        for entry in self.entries:
            with Image.open(entry.path) as image:
                frame = image.convert("RGBA").tobytes()
            for _ in range(entry.repeat):
                yield frame


class EncodeSink:
    """Accepts ordered RGBA frames and produces the output video.

    Frames are spooled and forwarded to the primary encoder. If the primary
    encoder fails at any point, one fallback attempt with libx264 replays the
    spool. Use as a context manager so the encoder is killed on any exit path
    that did not finish. Setting cancel_event makes any pending or later
    write, wait or replay raise JobCancelledError.
    """

    def __init__(
        self,
        settings: EncodeSettings,
        work_dir: str,
        queue_depth: int = QUEUE_DEPTH,
        cancel_event: threading.Event | None = None,
    ) -> None:
        self.settings = settings
        self.work_dir = work_dir
        self.queue_depth = queue_depth
        self.cancel_event = cancel_event
        self.spool = FrameSpool(
            os.path.join(work_dir, "frames"), (settings.width, settings.height)
        )
        self.frame_count = 0
        self._writer: FramePipeWriter | None = None
        self._primary_error: str | None = None
        self._started = False
        self._finished = False

    def __enter__(self) -> "EncodeSink":
        self.start()
        return self

    def __exit__(self, exc_type, exc_value, traceback) -> bool:
        if not self._finished:
            self.abort()
        return False

    def stderr_path(self, attempt: CodecAttempt) -> str:
        return os.path.join(self.work_dir, f"ffmpeg_{attempt.value}.log")

    def start(self) -> None:
        if self._started:
            return
        self._started = True
        encoding = ENCODING_SPECS[self.settings.primary_codec]
        try:
            process = open_ffmpeg_process(
                self.settings, encoding, self.stderr_path(CodecAttempt.PRIMARY)
            )
        except EncodeError as exc:
            self._primary_error = f"{exc.code}: {exc}"
            LOGGER.warning(
                "render_chat_video.encoder.primary_failed: %s", self._primary_error
            )
            return
        self._writer = FramePipeWriter(process, self.queue_depth, self.cancel_event)

    def write(self, frame: bytes) -> None:
        if len(frame) != self.settings.frame_size:
            raise RenderPipelineError(
                FRAME_SIZE_CODE,
                f"frame has {len(frame)} bytes, expected {self.settings.frame_size}",
            )
        self.check_cancelled()
        if not self._started:
            self.start()
        self.spool.append(frame)
        self.frame_count += 1
        if self._writer is None:
            return
        if self._writer.failed:
            self.abandon_primary()
            return
        self._writer.write(frame)

    def abandon_primary(self) -> None:
        writer = self._writer
        if writer is None:
            return
        self._writer = None
        writer.abort()
        self._primary_error = self.describe_failure(writer, CodecAttempt.PRIMARY)
        LOGGER.warning(
            "render_chat_video.encoder.primary_failed: %s", self._primary_error
        )

    def describe_failure(self, writer: FramePipeWriter, attempt: CodecAttempt) -> str:
        return_code = writer.process.returncode
        detail = read_stderr_tail(self.stderr_path(attempt))
        reason = f"exit code {return_code}"
        if writer.error is not None:
            reason = f"{reason} ({writer.error})"
        return f"ffmpeg failed with {reason}. {detail}".strip()

    def finish(self) -> EncodeResult:
        """Close the stream, wait for the encoder and fall back if needed."""
        if self._finished:
            raise RenderPipelineError(FFMPEG_PROCESS_CODE, "encode sink already finished")
        if self.frame_count == 0:
            raise EncodeError(FFMPEG_PROCESS_CODE, "no frames were written")
        self.check_cancelled()

        primary_codec = self.settings.primary_codec
        writer = self._writer
        if writer is not None:
            return_code = writer.close()
            self._writer = None
            if return_code == 0 and writer.error is None:
                self._finished = True
                return self.build_result(CodecAttempt.PRIMARY, primary_codec)
            self._primary_error = self.describe_failure(writer, CodecAttempt.PRIMARY)
            LOGGER.warning(
                "render_chat_video.encoder.primary_failed: %s", self._primary_error
            )

        result = self.run_fallback()
        self._finished = True
        return result

    def run_fallback(self) -> EncodeResult:
        LOGGER.warning(
            "render_chat_video.encoder.fallback: %s failed, replaying %d frames with %s",
            self.settings.primary_codec,
            self.spool.frame_count,
            FALLBACK_CODEC,
        )
        process = open_ffmpeg_process(
            self.settings,
            ENCODING_SPECS[FALLBACK_CODEC],
            self.stderr_path(CodecAttempt.FALLBACK),
        )
        writer = FramePipeWriter(process, self.queue_depth, self.cancel_event)
        self._writer = writer
        for frame in self.spool:
            self.check_cancelled()
            writer.write(frame)
        return_code = writer.close()
        self._writer = None
        if return_code != 0 or writer.error is not None:
            raise EncodeError(
                FFMPEG_FALLBACK_CODE,
                self.describe_failure(writer, CodecAttempt.FALLBACK),
            )
        return self.build_result(CodecAttempt.FALLBACK, FALLBACK_CODEC)

    def check_cancelled(self) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise JobCancelledError("encoding cancelled")

    def build_result(self, attempt: CodecAttempt, codec: str) -> EncodeResult:
        LOGGER.info(
            "render_chat_video.encoder.done: %s (%s, %d frames)",
            self.settings.output_video_file,
            codec,
            self.frame_count,
        )
        return EncodeResult(
            output_video_file=self.settings.output_video_file,
            attempt=attempt,
            codec=codec,
            frame_count=self.frame_count,
        )

    def abort(self) -> None:
        """Kill any running encoder; the sink cannot be used afterwards."""
        self._finished = True
        writer = self._writer
        self._writer = None
        if writer is not None:
            writer.abort()
