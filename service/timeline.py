"""Timeline construction for render_chat_video."""

from __future__ import annotations

from dataclasses import dataclass
import logging
from typing import Iterator, Mapping, Sequence, Tuple

from domain.chat_video import (
    INVALID_CONFIG_CODE,
    ChatFrame,
    ElementKind,
    FrameState,
    ImageFrame,
    InitialFrame,
    Message,
    ParsedScript,
    RenderConfig,
    RenderValidationError,
    SpecialElement,
    WidgetFrame,
    select_visible_messages,
)

LOGGER = logging.getLogger("render_chat_video.timeline")

WIDGET_HOLD_MULTIPLIER = 2
WIDGET_MESSAGE_COUNT = 3


@dataclass(frozen=True)
class ScheduledFrame:
    """A frame state held over a contiguous frame range."""

    state: FrameState
    start_frame: int
    frame_count: int
    keyframe_name: str | None = None

    def __post_init__(self) -> None:
        if self.start_frame < 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "start_frame must be non-negative"
            )
        if self.frame_count <= 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "frame_count must be positive"
            )

    @property
    def end_frame(self) -> int:
        return self.start_frame + self.frame_count


@dataclass(frozen=True)
class TimelinePlan:
    """Ordered frame states covering every tick of the video."""

    fps: int
    scheduled_frames: Tuple[ScheduledFrame, ...]

    def __post_init__(self) -> None:
        if not self.scheduled_frames:
            raise RenderValidationError(INVALID_CONFIG_CODE, "timeline has no frames")

        expected_start = 0
        for scheduled_frame in self.scheduled_frames:
            if scheduled_frame.start_frame != expected_start:
                raise RenderValidationError(
                    INVALID_CONFIG_CODE, "scheduled frames are not contiguous"
                )
            expected_start = scheduled_frame.end_frame

    @property
    def total_frames(self) -> int:
        return self.scheduled_frames[-1].end_frame

    @property
    def duration_seconds(self) -> float:
        return self.total_frames / float(self.fps)

    @property
    def keyframes(self) -> Tuple[ScheduledFrame, ...]:
        return tuple(
            scheduled_frame
            for scheduled_frame in self.scheduled_frames
            if scheduled_frame.keyframe_name
        )

    def iter_ticks(self) -> Iterator[ScheduledFrame]:
        """Yield the scheduled block for every tick, in order.

        Each call starts a fresh pass over the plan.
        """
        for scheduled_frame in self.scheduled_frames:
            for _ in range(scheduled_frame.frame_count):
                yield scheduled_frame


def group_elements(
    elements: Sequence[SpecialElement],
) -> dict[int, Tuple[SpecialElement, ...]]:
    """Group elements by anchor, keeping the first element of each kind."""
    grouped: dict[int, list[SpecialElement]] = {}
    for element in elements:
        anchored = grouped.setdefault(element.anchor_index, [])
        if any(existing.kind == element.kind for existing in anchored):
            LOGGER.warning(
                "render_chat_video.timeline.duplicate_element: ignored extra %s after message %d",
                element.kind.value,
                element.anchor_index + 1,
            )
            continue
        anchored.append(element)
    return {anchor: tuple(anchored) for anchor, anchored in grouped.items()}


def build_widget_frame(messages: Sequence[Message], anchor_index: int) -> WidgetFrame:
    """Build the widget state from the latest messages and the next reply."""
    recent = messages[max(0, anchor_index - WIDGET_MESSAGE_COUNT + 1) : anchor_index + 1]
    suggestion_index = anchor_index + 1
    suggestion = messages[suggestion_index].text if suggestion_index < len(messages) else ""
    return WidgetFrame(messages=tuple(recent), suggestion_text=suggestion)


class TimelineBuilder:
    """Accumulates contiguous frame blocks."""

    def __init__(self, fps: int) -> None:
        self.fps = fps
        self.cursor = 0
        self.blocks: list[ScheduledFrame] = []

    def append(self, state: FrameState, frame_count: int, keyframe_name: str | None = None) -> None:
        self.blocks.append(ScheduledFrame(state, self.cursor, frame_count, keyframe_name))
        self.cursor += frame_count

    def build(self) -> TimelinePlan:
        return TimelinePlan(fps=self.fps, scheduled_frames=tuple(self.blocks))


def build_timeline(
    script: ParsedScript,
    config: RenderConfig,
    story_asset: str | None = None,
    asset_sources: Mapping[str, str] | None = None,
) -> TimelinePlan:
    """Expand a parsed script into a timeline plan.

    When asset_sources is given, image elements whose name has no source are
    skipped; otherwise the name itself is used as the asset key.
    """
    messages = script.messages
    hold_frames = config.hold_frames
    elements = group_elements(script.elements)
    builder = TimelineBuilder(config.fps)

    def emit_elements(anchor_index: int) -> None:
        ordinal = anchor_index + 1
        for element in elements.get(anchor_index, ()):
            if element.kind == ElementKind.WIDGET:
                builder.append(
                    build_widget_frame(messages, anchor_index),
                    hold_frames * WIDGET_HOLD_MULTIPLIER,
                    f"widget_{ordinal}.png",
                )
                continue
            asset_key = element.asset_key or ""
            if asset_sources is not None:
                if asset_key not in asset_sources:
                    LOGGER.warning(
                        "render_chat_video.timeline.missing_image: %s has no source; skipped",
                        asset_key,
                    )
                    continue
                asset_key = asset_sources[asset_key]
            builder.append(ImageFrame(asset=asset_key), hold_frames, f"inline_{ordinal}.png")

    emit_elements(-1)
    for message_index in range(len(messages)):
        visible = select_visible_messages(messages, message_index, config.repeat_window)
        if message_index > 0:
            fade_count = config.fade_frame_count
            for fade_index in range(1, fade_count + 1):
                builder.append(ChatFrame(visible, fade_index / fade_count), 1)
            settled: FrameState = ChatFrame(visible, 1.0)
        else:
            settled = InitialFrame(first_message=messages[0], story_asset=story_asset)
        builder.append(settled, hold_frames, f"message_{message_index + 1}.png")
        emit_elements(message_index)

    return builder.build()
