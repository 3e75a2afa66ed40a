"""Domain types and script parsing for render_chat_video."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import math
import re
from typing import Sequence, Tuple

INVALID_COLOR_CODE = "render_chat_video.input.invalid_color"
INVALID_CONFIG_CODE = "render_chat_video.input.invalid_config"
INVALID_THEME_CODE = "render_chat_video.input.invalid_theme"
EMPTY_SCRIPT_CODE = "render_chat_video.input.empty_script"
INPUT_FILE_CODE = "render_chat_video.input.file_error"
FONT_DIR_CODE = "render_chat_video.input.fonts_missing"
FONT_LOAD_CODE = "render_chat_video.input.fonts_unloadable"
ASSET_FETCH_CODE = "render_chat_video.asset.fetch_failed"
FFMPEG_NOT_FOUND_CODE = "render_chat_video.ffmpeg.not_found"
FFMPEG_PROCESS_CODE = "render_chat_video.ffmpeg.process_failed"
FFMPEG_FALLBACK_CODE = "render_chat_video.ffmpeg.fallback_failed"
FRAME_SIZE_CODE = "render_chat_video.ffmpeg.frame_size"
JOB_CANCELLED_CODE = "render_chat_video.job.cancelled"

WIDGET_TOKEN = "[PLUG_WIDGET]"
IMAGE_EXTENSIONS = ("png", "jpg", "jpeg", "gif", "webp")
IMAGE_TRIGGER_PATTERN = re.compile(
    r"(?P<name>[^\s<>]+\.(?:" + "|".join(IMAGE_EXTENSIONS) + r"))\s*<(?P<seconds>[\d.]+)s>",
    re.IGNORECASE,
)
SIDE_PREFIX_PATTERN = re.compile(r"^(?:R\)|L\))\s*")

CANVAS_WIDTH = 1080
CANVAS_HEIGHT = 1920
HOLD_FRAME_EPSILON = 1e-9


class RenderValidationError(ValueError):
    """Validation error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class RenderPipelineError(RuntimeError):
    """Runtime error with a stable error code."""

    def __init__(self, code: str, message: str) -> None:
        super().__init__(message)
        self.code = code


class EmptyScriptError(RenderValidationError):
    """Raised when a script yields no messages."""

    def __init__(self, message: str = "script contains no messages") -> None:
        super().__init__(EMPTY_SCRIPT_CODE, message)


class AssetFetchError(RenderPipelineError):
    """Raised by image providers when an asset cannot be acquired."""

    def __init__(self, message: str) -> None:
        super().__init__(ASSET_FETCH_CODE, message)


class EncodeError(RenderPipelineError):
    """Raised when the encoder fails to produce the output video."""


class JobCancelledError(RenderPipelineError):
    """Raised when a job is aborted before its video is finalized."""

    def __init__(self, message: str = "job cancelled") -> None:
        super().__init__(JOB_CANCELLED_CODE, message)


class Side(str, Enum):
    """Which participant sent a message."""

    LEFT = "left"
    RIGHT = "right"


class ElementKind(str, Enum):
    """Kinds of special timeline elements."""

    IMAGE = "image"
    WIDGET = "widget"


class ThemeName(str, Enum):
    """Supported visual themes."""

    IOS_DARK = "ios_dark"
    IOS_PINK = "ios_pink"
    IOS_LIGHT = "ios_light"


@dataclass(frozen=True)
class Message:
    """One chat message in conversation order."""

    side: Side
    text: str


@dataclass(frozen=True)
class SpecialElement:
    """Inline image or widget fired after the anchored message."""

    anchor_index: int
    kind: ElementKind
    asset_key: str | None = None
    duration_seconds: float | None = None

    def __post_init__(self) -> None:
        if self.anchor_index < -1:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "anchor_index must be -1 or greater"
            )
        if self.kind == ElementKind.IMAGE and not self.asset_key:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "image elements require an asset key"
            )


@dataclass(frozen=True)
class ParsedScript:
    """Messages and special elements parsed from a script."""

    messages: Tuple[Message, ...]
    elements: Tuple[SpecialElement, ...]


@dataclass(frozen=True)
class Theme:
    """Resolved RGBA palette for one theme."""

    name: str
    right_bubble: Tuple[int, int, int, int]
    right_text: Tuple[int, int, int, int]
    left_bubble: Tuple[int, int, int, int]
    left_text: Tuple[int, int, int, int]
    background: Tuple[int, int, int, int]
    secondary: Tuple[int, int, int, int]

    @property
    def is_light(self) -> bool:
        """Return True when the background is white."""
        return self.background[:3] == (255, 255, 255)


@dataclass(frozen=True)
class RenderConfig:
    """Validated rendering configuration for one job."""

    theme: Theme
    repeat_window: int
    hold_seconds: float
    fade_frame_count: int
    fps: int
    canvas_width: int = CANVAS_WIDTH
    canvas_height: int = CANVAS_HEIGHT

    def __post_init__(self) -> None:
        if self.repeat_window < 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "repeat_window must be non-negative"
            )
        if self.hold_seconds <= 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "hold_seconds must be positive"
            )
        if self.fade_frame_count < 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "fade_frame_count must be non-negative"
            )
        if self.fps <= 0:
            raise RenderValidationError(INVALID_CONFIG_CODE, "fps must be positive")
        if self.canvas_width <= 0 or self.canvas_height <= 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "canvas dimensions must be positive"
            )
        if self.canvas_width % 2 or self.canvas_height % 2:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "canvas dimensions must be even"
            )
        if self.hold_frames <= 0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "hold_seconds and fps produce zero hold frames"
            )

    @property
    def hold_frames(self) -> int:
        """Number of frames a settled message stays on screen."""
        return int(math.floor(self.hold_seconds * self.fps + HOLD_FRAME_EPSILON))

    @property
    def canvas_size(self) -> Tuple[int, int]:
        return (self.canvas_width, self.canvas_height)


@dataclass(frozen=True)
class InitialFrame:
    """Story reply screen showing the first message."""

    first_message: Message
    story_asset: str | None


@dataclass(frozen=True)
class ChatFrame:
    """Trailing window of messages blended at an opacity."""

    visible_messages: Tuple[Message, ...]
    opacity: float

    def __post_init__(self) -> None:
        if not self.visible_messages:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "chat frames need at least one message"
            )
        if self.opacity < 0.0 or self.opacity > 1.0:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, f"opacity must be between 0 and 1: {self.opacity}"
            )


@dataclass(frozen=True)
class ImageFrame:
    """Full-screen inline image."""

    asset: str


@dataclass(frozen=True)
class WidgetFrame:
    """Suggestion widget overlay."""

    messages: Tuple[Message, ...]
    suggestion_text: str

    def __post_init__(self) -> None:
        if len(self.messages) > 3:
            raise RenderValidationError(
                INVALID_CONFIG_CODE, "widget frames show at most three messages"
            )


FrameState = InitialFrame | ChatFrame | ImageFrame | WidgetFrame


def parse_hex_color_to_rgba(color_value: str, alpha: int = 255) -> Tuple[int, int, int, int]:
    """Parse a #RRGGBB color into an RGBA tuple."""
    match_value = re.fullmatch(r"#([0-9a-fA-F]{6})", color_value.strip())
    if not match_value:
        raise RenderValidationError(
            INVALID_COLOR_CODE,
            f"invalid color value: {color_value!r}",
        )

    rgb_hex = match_value.group(1)
    red_value = int(rgb_hex[0:2], 16)
    green_value = int(rgb_hex[2:4], 16)
    blue_value = int(rgb_hex[4:6], 16)
    return (red_value, green_value, blue_value, alpha)


def build_theme(
    name: str,
    right_bubble: str,
    right_text: str,
    left_bubble: str,
    left_text: str,
    background: str,
    secondary: str,
) -> Theme:
    """Build a Theme from hex colors."""
    return Theme(
        name=name,
        right_bubble=parse_hex_color_to_rgba(right_bubble),
        right_text=parse_hex_color_to_rgba(right_text),
        left_bubble=parse_hex_color_to_rgba(left_bubble),
        left_text=parse_hex_color_to_rgba(left_text),
        background=parse_hex_color_to_rgba(background),
        secondary=parse_hex_color_to_rgba(secondary),
    )


THEMES = {
    ThemeName.IOS_DARK: build_theme(
        "iOS Dark", "#007AFF", "#FFFFFF", "#26262B", "#FFFFFF", "#000000", "#8E8E93"
    ),
    ThemeName.IOS_PINK: build_theme(
        "iOS Dark Pink", "#C01F4A", "#FFFFFF", "#2A2A2E", "#FFFFFF", "#000000", "#8E8E93"
    ),
    ThemeName.IOS_LIGHT: build_theme(
        "iOS Light", "#007AFF", "#FFFFFF", "#E9E9EB", "#000000", "#FFFFFF", "#8E8E93"
    ),
}


def parse_theme_name(value: str) -> ThemeName:
    """Parse a theme name into a ThemeName."""
    normalized = value.strip().lower()
    try:
        return ThemeName(normalized)
    except ValueError as exc:
        raise RenderValidationError(
            INVALID_THEME_CODE, f"invalid theme: {value!r}"
        ) from exc


def resolve_theme(value: ThemeName | str) -> Theme:
    """Resolve a theme name into its palette."""
    theme_name = value if isinstance(value, ThemeName) else parse_theme_name(value)
    return THEMES[theme_name]


def match_image_trigger(line: str) -> re.Match[str] | None:
    """Return the inline-image match for a script line, if any."""
    return IMAGE_TRIGGER_PATTERN.search(line)


def iter_script_lines(script_text: str) -> Tuple[str, ...]:
    """Return trimmed, non-empty script lines."""
    normalized = script_text.replace("\ufeff", "")
    return tuple(line.strip() for line in normalized.splitlines() if line.strip())


def parse_message_line(line: str) -> Message:
    """Parse a plain script line into a message."""
    side = Side.RIGHT if line.startswith("R") else Side.LEFT
    return Message(side=side, text=SIDE_PREFIX_PATTERN.sub("", line, count=1))


def parse_script(script_text: str, widget_enabled: bool = True) -> ParsedScript:
    """Parse a chat script into messages and special elements."""
    messages: list[Message] = []
    elements: list[SpecialElement] = []

    for line in iter_script_lines(script_text):
        anchor_index = len(messages) - 1
        if widget_enabled and line == WIDGET_TOKEN:
            elements.append(SpecialElement(anchor_index, ElementKind.WIDGET))
            continue
        image_match = match_image_trigger(line)
        if image_match:
            elements.append(
                SpecialElement(
                    anchor_index,
                    ElementKind.IMAGE,
                    asset_key=image_match.group("name"),
                    duration_seconds=parse_trigger_seconds(image_match.group("seconds")),
                )
            )
            continue
        messages.append(parse_message_line(line))

    if not messages:
        raise EmptyScriptError()

    return ParsedScript(messages=tuple(messages), elements=tuple(elements))


def parse_trigger_seconds(value: str) -> float | None:
    """Parse the <N.Ns> duration of an image trigger."""
    try:
        return float(value)
    except ValueError:
        return None


def extract_required_assets(script_text: str) -> Tuple[str, ...]:
    """List inline image names referenced by a script, in first-seen order."""
    names: list[str] = []
    for line in iter_script_lines(script_text):
        if line == WIDGET_TOKEN:
            continue
        image_match = match_image_trigger(line)
        if image_match and image_match.group("name") not in names:
            names.append(image_match.group("name"))
    return tuple(names)


def select_visible_messages(
    messages: Sequence[Message], current_index: int, repeat_window: int
) -> Tuple[Message, ...]:
    """Return the trailing window of messages ending at current_index."""
    start_index = max(0, current_index - repeat_window)
    return tuple(messages[start_index : current_index + 1])
