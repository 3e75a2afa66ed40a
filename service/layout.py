"""Font loading and emoji-aware text layout for render_chat_video."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
import logging
import math
import os
from typing import Mapping, Sequence, Tuple

import regex
from PIL import ImageFont

from domain.chat_video import FONT_DIR_CODE, FONT_LOAD_CODE, RenderValidationError

LOGGER = logging.getLogger("render_chat_video.layout")

GRAPHEME_PATTERN = regex.compile(r"\X")
PICTOGRAPHIC_PATTERN = regex.compile(r"\p{Extended_Pictographic}")
EMOJI_SCALE = 1.1
EMOJI_GAP = 4
FONT_SAMPLE_SIZE = 32


class FontRole(str, Enum):
    """Weights used by the frame layouts."""

    REGULAR = "regular"
    SEMIBOLD = "semibold"
    HEAVY = "heavy"


ROLE_KEYWORDS = (
    (FontRole.SEMIBOLD, ("semibold", "demibold", "medium")),
    (FontRole.HEAVY, ("black", "heavy", "extrabold", "bold")),
    (FontRole.REGULAR, ("regular", "book", "text")),
)

FontType = ImageFont.FreeTypeFont | ImageFont.ImageFont


def list_font_files(fonts_dir: str) -> list[str]:
    """List font files from the fonts directory."""
    if not os.path.isdir(fonts_dir):
        raise RenderValidationError(
            FONT_DIR_CODE, f"fonts directory does not exist: {fonts_dir}"
        )

    font_files: list[str] = []
    for entry_name in sorted(os.listdir(fonts_dir)):
        lower_name = entry_name.lower()
        if lower_name.endswith(".ttf") or lower_name.endswith(".otf"):
            font_files.append(os.path.join(fonts_dir, entry_name))

    if not font_files:
        raise RenderValidationError(
            FONT_DIR_CODE,
            f"no font files found in {fonts_dir}",
        )
    return font_files


def filter_loadable_fonts(font_files: Sequence[str], sample_size: int) -> list[str]:
    """Filter font files to those loadable at the sample size."""
    loadable_fonts: list[str] = []
    for font_file_path in font_files:
        try:
            ImageFont.truetype(
                font_file_path, size=sample_size, layout_engine=ImageFont.Layout.BASIC
            )
        except OSError as exc:
            LOGGER.warning(
                "%s: skipped font %s (%s)",
                FONT_LOAD_CODE,
                font_file_path,
                str(exc).strip(),
            )
            continue
        loadable_fonts.append(font_file_path)

    if not loadable_fonts:
        raise RenderValidationError(
            FONT_LOAD_CODE, "failed to load any fonts from fonts directory"
        )

    return loadable_fonts


def assign_font_roles(font_files: Sequence[str]) -> dict[FontRole, str]:
    """Pick a font file per role from file names, defaulting to the first file."""
    assigned: dict[FontRole, str] = {}
    for font_file_path in font_files:
        stem = os.path.splitext(os.path.basename(font_file_path))[0].lower()
        for role, keywords in ROLE_KEYWORDS:
            if any(keyword in stem for keyword in keywords):
                assigned.setdefault(role, font_file_path)
                break
    regular = assigned.get(FontRole.REGULAR, font_files[0])
    assigned[FontRole.REGULAR] = regular
    assigned.setdefault(FontRole.SEMIBOLD, regular)
    assigned.setdefault(FontRole.HEAVY, assigned[FontRole.SEMIBOLD])
    return assigned


class FontBook:
    """Fonts by role and size, initialized once before rendering."""

    def __init__(self, font_files: Mapping[FontRole, str] | None = None) -> None:
        self.font_files = dict(font_files or {})
        self._cache: dict[Tuple[FontRole, int], FontType] = {}

    @classmethod
    def from_directory(cls, fonts_dir: str) -> "FontBook":
        font_files = filter_loadable_fonts(list_font_files(fonts_dir), FONT_SAMPLE_SIZE)
        return cls(assign_font_roles(font_files))

    @classmethod
    def default(cls) -> "FontBook":
        """Use Pillow's bundled font for every role."""
        return cls()

    def font(self, role: FontRole, size: int) -> FontType:
        cache_key = (role, size)
        cached_font = self._cache.get(cache_key)
        if cached_font is not None:
            return cached_font
        font_file_path = self.font_files.get(role)
        if font_file_path is None:
            font = ImageFont.load_default(size=size)
        else:
            try:
                font = ImageFont.truetype(
                    font_file_path, size=size, layout_engine=ImageFont.Layout.BASIC
                )
            except OSError as exc:
                raise RenderValidationError(
                    FONT_LOAD_CODE,
                    f"failed to load font {font_file_path} at size {size}",
                ) from exc
        self._cache[cache_key] = font
        return font


def split_graphemes(text_value: str) -> Tuple[str, ...]:
    """Split text into extended grapheme clusters."""
    return tuple(GRAPHEME_PATTERN.findall(text_value))


def is_pictographic(cluster: str) -> bool:
    """Return True when a cluster is drawn as an emoji bitmap."""
    return PICTOGRAPHIC_PATTERN.search(cluster) is not None


def is_sticker(text_value: str) -> bool:
    """Return True when the trimmed text is made only of pictographic clusters."""
    clusters = split_graphemes(text_value.strip())
    return bool(clusters) and all(is_pictographic(cluster) for cluster in clusters)


def measure_text_width(text_value: str, font: FontType) -> float:
    """Measure text width using font metrics."""
    if not text_value:
        return 0.0
    try:
        return float(font.getlength(text_value))
    except AttributeError:
        bbox = font.getbbox(text_value)
        return float(bbox[2] - bbox[0])


@dataclass(frozen=True)
class TextStyle:
    """Font role, size and wrapping limits for a block of text."""

    role: FontRole
    font_size: int
    line_height: int
    max_width: float

    @property
    def emoji_size(self) -> int:
        return int(round(self.font_size * EMOJI_SCALE))

    @property
    def emoji_advance(self) -> int:
        return self.emoji_size + EMOJI_GAP


@dataclass(frozen=True)
class TextRun:
    """Contiguous text or a single emoji cluster positioned on a line."""

    text: str
    x: float
    width: float
    pictographic: bool


@dataclass(frozen=True)
class TextLine:
    text: str
    runs: Tuple[TextRun, ...]
    width: float


@dataclass(frozen=True)
class TextBlock:
    """Wrapped lines and their measured geometry."""

    lines: Tuple[TextLine, ...]
    width: float
    height: int
    style: TextStyle


@dataclass(frozen=True)
class BubbleStyle:
    """Geometry of a chat bubble and its sticker variant."""

    text: TextStyle
    sticker: TextStyle
    pad_x: int
    pad_y: int
    max_width: int
    corner_radius: int
    spacing: int


@dataclass(frozen=True)
class BubbleLayout:
    """Measured bubble shared by the measure and draw passes."""

    block: TextBlock
    width: int
    height: int
    sticker: bool
    spacing: int

    @property
    def advance(self) -> int:
        """Vertical space the bubble takes in a stack."""
        return self.height + self.spacing


class LayoutEngine:
    """Wraps and measures text, memoizing results per (text, style).

    The measure pass and the draw pass read the same memoized objects, so the
    geometry cannot change between them.
    """

    def __init__(self, fonts: FontBook) -> None:
        self.fonts = fonts
        self._blocks: dict[Tuple[str, TextStyle], TextBlock] = {}
        self._bubbles: dict[Tuple[str, BubbleStyle], BubbleLayout] = {}

    def layout(self, text_value: str, style: TextStyle) -> TextBlock:
        cache_key = (text_value, style)
        cached = self._blocks.get(cache_key)
        if cached is not None:
            return cached
        lines = tuple(
            self.layout_line(line_text, style)
            for line_text in self.wrap(text_value.strip(), style)
        )
        block = TextBlock(
            lines=lines,
            width=max((line.width for line in lines), default=0.0),
            height=len(lines) * style.line_height,
            style=style,
        )
        self._blocks[cache_key] = block
        return block

    def measure(self, text_value: str, style: TextStyle) -> int:
        return self.layout(text_value, style).height

    def layout_bubble(self, text_value: str, style: BubbleStyle) -> BubbleLayout:
        cache_key = (text_value, style)
        cached = self._bubbles.get(cache_key)
        if cached is not None:
            return cached
        sticker = is_sticker(text_value)
        block = self.layout(text_value, style.sticker if sticker else style.text)
        width = min(int(math.ceil(block.width)) + 2 * style.pad_x, style.max_width)
        bubble = BubbleLayout(
            block=block,
            width=width,
            height=block.height + 2 * style.pad_y,
            sticker=sticker,
            spacing=style.spacing,
        )
        self._bubbles[cache_key] = bubble
        return bubble

    def measure_bubble(self, text_value: str, style: BubbleStyle) -> int:
        return self.layout_bubble(text_value, style).advance

    def wrap(self, text_value: str, style: TextStyle) -> Tuple[str, ...]:
        """Greedy word wrap; an overlong word keeps a line to itself."""
        lines: list[str] = []
        current: str | None = None
        for word in text_value.split(" "):
            candidate = word if current is None else f"{current} {word}"
            if current is not None and self.line_width(candidate, style) > style.max_width:
                lines.append(current)
                current = word
            else:
                current = candidate
        lines.append(current or "")
        return tuple(lines)

    def line_width(self, text_value: str, style: TextStyle) -> float:
        return self.layout_line(text_value, style).width

    def layout_line(self, text_value: str, style: TextStyle) -> TextLine:
        font = self.fonts.font(style.role, style.font_size)
        runs: list[TextRun] = []
        cursor = 0.0
        pending = ""
        for cluster in split_graphemes(text_value):
            if not is_pictographic(cluster):
                pending += cluster
                continue
            if pending:
                width = measure_text_width(pending, font)
                runs.append(TextRun(pending, cursor, width, False))
                cursor += width
                pending = ""
            runs.append(TextRun(cluster, cursor, float(style.emoji_advance), True))
            cursor += style.emoji_advance
        if pending:
            width = measure_text_width(pending, font)
            runs.append(TextRun(pending, cursor, width, False))
            cursor += width
        return TextLine(text=text_value, runs=tuple(runs), width=cursor)
