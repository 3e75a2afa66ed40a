"""Suggestion widget overlay: header, recent messages and the suggested reply."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Tuple

from PIL import Image, ImageDraw, ImageFilter

from domain.chat_video import Message, Side, Theme, WidgetFrame
from service.gradient import paste_gradient
from service.layout import BubbleLayout, BubbleStyle, FontRole, LayoutEngine, TextLine, TextStyle
from service.painter import TextPainter, paste_sprite

WIDGET_TOP = 400
WIDGET_WIDTH = 1040
WIDGET_RADIUS = 50

HEADER_TEXT = "RIZZ APP"
HEADER_FONT_SIZE = 110
HEADER_OFFSET = 160
HEADER_STROKE = 11
HEADER_SHEAR = 0.2
HEADER_SHADOW_RGBA = (0, 0, 0, 89)
HEADER_SHADOW_BLUR = 6
HEADER_SHADOW_OFFSET = 10
HEADER_GRADIENT = ((245, 198, 214, 255), (185, 182, 245, 255))

ICON_SIZE = 32
ICON_OUTLINE = 24
ICON_STROKE = 12
ICON_INSET = 60
ICON_RAISE = 30
ICON_GRADIENT = ((224, 215, 255, 255), (245, 198, 214, 255))

BACKGROUND_GRADIENT = ((224, 215, 255, 255), (255, 255, 255, 255))

CHAT_AREA_INSET = 60
CHAT_AREA_OFFSET = 260
CHAT_AREA_RADIUS = 50
CHAT_PADDING_VERT = 50
BUBBLE_GAP = 18
BUBBLE_SIDE_MARGIN = 40
BUBBLE_FONT_SIZE = 36
BUBBLE_LINE_HEIGHT = 44
BUBBLE_TEXT_WIDTH = 550
BUBBLE_PAD_X = 30
BUBBLE_PAD_Y = 20
BUBBLE_RADIUS = 28

LABEL_TEXT = "AI generated RIZZ"
LABEL_FONT_SIZE = 46
LABEL_TOP_GAP = 80
LABEL_BOTTOM_GAP = 60
LABEL_RULE_RGBA = (0, 0, 0, 26)
LABEL_RULE_WIDTH = 2
HINT_EMOJI = "\U0001f447"
HINT_SIZE = 56
HINT_GAP = 20
HINT_RULE_GAP = 15

SUGGESTION_FONT_SIZE = 44
SUGGESTION_LINE_HEIGHT = 60
SUGGESTION_TEXT_INSET = 60
SUGGESTION_COPY_SPACE = 130
SUGGESTION_MIN_HEIGHT = 140
SUGGESTION_PADDING = 120
SUGGESTION_RADIUS = 45
SUGGESTION_BOTTOM_MARGIN = 80

COPY_ICON_SIZE = (28, 34)
COPY_ICON_OFFSET = 8
COPY_ICON_STROKE = 4
COPY_ICON_INSET = 100

BLACK = (0, 0, 0, 255)
WHITE = (255, 255, 255, 255)

WIDGET_BUBBLE_TEXT_STYLE = TextStyle(
    role=FontRole.SEMIBOLD,
    font_size=BUBBLE_FONT_SIZE,
    line_height=BUBBLE_LINE_HEIGHT,
    max_width=BUBBLE_TEXT_WIDTH,
)

WIDGET_BUBBLE_STYLE = BubbleStyle(
    text=WIDGET_BUBBLE_TEXT_STYLE,
    sticker=WIDGET_BUBBLE_TEXT_STYLE,
    pad_x=BUBBLE_PAD_X,
    pad_y=BUBBLE_PAD_Y,
    max_width=BUBBLE_TEXT_WIDTH + 2 * BUBBLE_PAD_X,
    corner_radius=BUBBLE_RADIUS,
    spacing=BUBBLE_GAP,
)

LABEL_STYLE = TextStyle(
    role=FontRole.HEAVY,
    font_size=LABEL_FONT_SIZE,
    line_height=LABEL_FONT_SIZE,
    max_width=float("inf"),
)


@dataclass(frozen=True)
class PlacedBubble:
    message: Message
    layout: BubbleLayout
    left: int
    top: int


@dataclass(frozen=True)
class WidgetLayout:
    """Geometry of one widget frame, computed before anything is drawn."""

    left: int
    top: int
    width: int
    chat_area: Tuple[int, int, int, int]
    bubbles: Tuple[PlacedBubble, ...]
    label_y: int
    suggestion_box: Tuple[int, int, int, int]
    suggestion_lines: Tuple[TextLine, ...]
    suggestion_style: TextStyle

    @property
    def total_height(self) -> int:
        _, box_top, _, box_height = self.suggestion_box
        return box_top + box_height + SUGGESTION_BOTTOM_MARGIN - self.top

    @property
    def header_y(self) -> int:
        return self.top + HEADER_OFFSET


def shear_sprite(sprite: Image.Image, factor: float) -> Image.Image:
    """Slant a sprite to the right by factor pixels per row, keeping the bottom edge."""
    width, height = sprite.size
    extra = int(round(factor * height))
    return sprite.transform(
        (width + extra, height),
        Image.Transform.AFFINE,
        (1, factor, -factor * height, 0, 1, 0),
        resample=Image.Resampling.BICUBIC,
    )


class WidgetRenderer:
    """Lays out and draws the suggestion widget onto a frame."""

    def __init__(self, theme: Theme, engine: LayoutEngine, painter: TextPainter) -> None:
        self.theme = theme
        self.engine = engine
        self.painter = painter
        self._header: Tuple[Image.Image, Tuple[int, int]] | None = None

    def measure(self, frame: WidgetFrame, canvas_width: int) -> WidgetLayout:
        left = (canvas_width - WIDGET_WIDTH) // 2
        top = WIDGET_TOP
        area_left = left + CHAT_AREA_INSET
        area_top = top + CHAT_AREA_OFFSET
        area_width = WIDGET_WIDTH - 2 * CHAT_AREA_INSET

        bubbles: list[PlacedBubble] = []
        cursor_y = area_top + CHAT_PADDING_VERT
        for message in frame.messages:
            bubble = self.engine.layout_bubble(message.text, WIDGET_BUBBLE_STYLE)
            if message.side == Side.RIGHT:
                bubble_left = area_left + area_width - bubble.width - BUBBLE_SIDE_MARGIN
            else:
                bubble_left = area_left + BUBBLE_SIDE_MARGIN
            bubbles.append(PlacedBubble(message, bubble, bubble_left, cursor_y))
            cursor_y += bubble.advance
        bubble_stack = sum(bubble.layout.height for bubble in bubbles)
        bubble_stack += BUBBLE_GAP * max(0, len(bubbles) - 1)
        area_height = 2 * CHAT_PADDING_VERT + bubble_stack

        suggestion_style = TextStyle(
            role=FontRole.SEMIBOLD,
            font_size=SUGGESTION_FONT_SIZE,
            line_height=SUGGESTION_LINE_HEIGHT,
            max_width=area_width - SUGGESTION_TEXT_INSET - SUGGESTION_COPY_SPACE,
        )
        suggestion_lines: Tuple[TextLine, ...] = ()
        if frame.suggestion_text.strip():
            suggestion_lines = self.engine.layout(frame.suggestion_text, suggestion_style).lines

        label_y = area_top + area_height + LABEL_TOP_GAP
        box_top = label_y + LABEL_BOTTOM_GAP
        box_height = max(
            SUGGESTION_MIN_HEIGHT,
            len(suggestion_lines) * SUGGESTION_LINE_HEIGHT + SUGGESTION_PADDING,
        )
        return WidgetLayout(
            left=left,
            top=top,
            width=WIDGET_WIDTH,
            chat_area=(area_left, area_top, area_width, area_height),
            bubbles=tuple(bubbles),
            label_y=label_y,
            suggestion_box=(area_left, box_top, area_width, box_height),
            suggestion_lines=suggestion_lines,
            suggestion_style=suggestion_style,
        )

    def draw(self, image: Image.Image, frame: WidgetFrame) -> WidgetLayout:
        layout = self.measure(frame, image.width)
        self.draw_background(image, layout)
        self.draw_header(image, layout)
        self.draw_chat_area(image, layout)
        self.draw_label(image, layout)
        self.draw_suggestion(image, layout)
        return layout

    def draw_background(self, image: Image.Image, layout: WidgetLayout) -> None:
        mask = Image.new("L", (layout.width, layout.total_height), 0)
        ImageDraw.Draw(mask).rounded_rectangle(
            (0, 0, layout.width - 1, layout.total_height - 1), radius=WIDGET_RADIUS, fill=255
        )
        paste_gradient(
            image,
            mask,
            (layout.left, layout.top),
            BACKGROUND_GRADIENT[0],
            BACKGROUND_GRADIENT[1],
            "vertical",
        )

    def header_sprite(self) -> Tuple[Image.Image, Tuple[int, int]]:
        """Render the header title once; returns the sprite and its offset from the anchor."""
        if self._header is not None:
            return self._header
        font = self.engine.fonts.font(FontRole.HEAVY, HEADER_FONT_SIZE)
        measure_draw = ImageDraw.Draw(Image.new("RGBA", (1, 1)))
        left, top, right, bottom = measure_draw.textbbox(
            (0, 0), HEADER_TEXT, font=font, stroke_width=HEADER_STROKE, anchor="ms"
        )
        margin = HEADER_SHADOW_BLUR * 3
        width = right - left + 2 * margin
        height = bottom - top + 2 * margin + HEADER_SHADOW_OFFSET
        origin = (margin - left, margin - top)

        fill_mask = Image.new("L", (width, height), 0)
        ImageDraw.Draw(fill_mask).text(origin, HEADER_TEXT, font=font, fill=255, anchor="ms")

        shadow_mask = Image.new("L", (width, height), 0)
        shadow_mask.paste(fill_mask, (0, HEADER_SHADOW_OFFSET))
        shadow_mask = shadow_mask.filter(ImageFilter.GaussianBlur(HEADER_SHADOW_BLUR))
        sprite = Image.new("RGBA", (width, height), (0, 0, 0, 0))
        shadow = Image.new("RGBA", (width, height), HEADER_SHADOW_RGBA[:3] + (0,))
        shadow.putalpha(shadow_mask.point(lambda value: value * HEADER_SHADOW_RGBA[3] // 255))
        sprite.alpha_composite(shadow)

        outline = Image.new("RGBA", (width, height), (0, 0, 0, 0))
        ImageDraw.Draw(outline).text(
            origin,
            HEADER_TEXT,
            font=font,
            fill=BLACK,
            stroke_width=HEADER_STROKE,
            stroke_fill=BLACK,
            anchor="ms",
        )
        sprite.alpha_composite(outline)
        paste_gradient(
            sprite, fill_mask, (0, 0), HEADER_GRADIENT[0], HEADER_GRADIENT[1], "horizontal"
        )

        sprite = shear_sprite(sprite, HEADER_SHEAR)
        offset = (-origin[0] - int(round(HEADER_SHEAR * height / 2)), -origin[1])
        self._header = (sprite, offset)
        return self._header

    def draw_header(self, image: Image.Image, layout: WidgetLayout) -> None:
        sprite, (offset_x, offset_y) = self.header_sprite()
        center_x = image.width // 2
        paste_sprite(image, sprite, (center_x + offset_x, layout.header_y + offset_y))
        icon_y = layout.header_y - ICON_RAISE
        self.draw_icon(image, "arrow", (layout.left + ICON_INSET, icon_y))
        self.draw_icon(image, "plus", (layout.left + layout.width - ICON_INSET, icon_y))

    def draw_icon(self, image: Image.Image, kind: str, center: Tuple[int, int]) -> None:
        half = ICON_SIZE + ICON_OUTLINE // 2
        box = 2 * half
        if kind == "arrow":
            strokes = (
                ((half + ICON_SIZE // 2, half - ICON_SIZE), (half - ICON_SIZE // 2, half),
                 (half + ICON_SIZE // 2, half + ICON_SIZE)),
            )
        else:
            strokes = (
                ((half, half - ICON_SIZE), (half, half + ICON_SIZE)),
                ((half - ICON_SIZE, half), (half + ICON_SIZE, half)),
            )

        outline_mask = Image.new("L", (box, box), 0)
        fill_mask = Image.new("L", (box, box), 0)
        for mask, stroke_width in ((outline_mask, ICON_OUTLINE), (fill_mask, ICON_STROKE)):
            mask_draw = ImageDraw.Draw(mask)
            for points in strokes:
                mask_draw.line(points, fill=255, width=stroke_width, joint="curve")
                radius = stroke_width / 2
                for point_x, point_y in (points[0], points[-1]):
                    mask_draw.ellipse(
                        (point_x - radius, point_y - radius, point_x + radius, point_y + radius),
                        fill=255,
                    )

        icon = Image.new("RGBA", (box, box), (0, 0, 0, 0))
        icon.paste(BLACK, (0, 0, box, box), outline_mask)
        paste_gradient(icon, fill_mask, (0, 0), ICON_GRADIENT[0], ICON_GRADIENT[1], "diag-down")
        paste_sprite(image, icon, (center[0] - half, center[1] - half))

    def draw_chat_area(self, image: Image.Image, layout: WidgetLayout) -> None:
        area_left, area_top, area_width, area_height = layout.chat_area
        draw = ImageDraw.Draw(image)
        draw.rounded_rectangle(
            (area_left, area_top, area_left + area_width, area_top + area_height),
            radius=CHAT_AREA_RADIUS,
            fill=self.theme.background,
        )
        for placed in layout.bubbles:
            bubble = placed.layout
            if placed.message.side == Side.RIGHT:
                bubble_fill, text_fill = self.theme.right_bubble, self.theme.right_text
            else:
                bubble_fill, text_fill = self.theme.left_bubble, self.theme.left_text
            draw.rounded_rectangle(
                (placed.left, placed.top, placed.left + bubble.width, placed.top + bubble.height),
                radius=WIDGET_BUBBLE_STYLE.corner_radius,
                fill=bubble_fill,
            )
            self.painter.draw_block(
                image,
                bubble.block,
                (placed.left + WIDGET_BUBBLE_STYLE.pad_x, placed.top + WIDGET_BUBBLE_STYLE.pad_y),
                text_fill,
            )

    def draw_label(self, image: Image.Image, layout: WidgetLayout) -> None:
        area_left, _, area_width, _ = layout.chat_area
        center_x = image.width // 2
        label_y = layout.label_y
        font = self.engine.fonts.font(LABEL_STYLE.role, LABEL_STYLE.font_size)
        text_width = self.engine.line_width(LABEL_TEXT, LABEL_STYLE)

        break_start = text_width / 2 + HINT_GAP + HINT_SIZE + HINT_RULE_GAP
        rule_draw = ImageDraw.Draw(image, "RGBA")
        rule_draw.line(
            ((area_left, label_y), (center_x - break_start, label_y)),
            fill=LABEL_RULE_RGBA,
            width=LABEL_RULE_WIDTH,
        )
        rule_draw.line(
            ((center_x + break_start, label_y), (area_left + area_width, label_y)),
            fill=LABEL_RULE_RGBA,
            width=LABEL_RULE_WIDTH,
        )
        ImageDraw.Draw(image).text(
            (center_x, label_y), LABEL_TEXT, font=font, fill=BLACK, anchor="mm"
        )

        hint_spacing = text_width / 2 + HINT_GAP + HINT_SIZE / 2
        for direction, mirrored in ((-1, False), (1, True)):
            self.painter.draw_emoji_centered(
                image,
                HINT_EMOJI,
                (center_x + direction * hint_spacing, label_y),
                HINT_SIZE,
                BLACK,
                LABEL_STYLE,
                mirrored=mirrored,
            )

    def draw_suggestion(self, image: Image.Image, layout: WidgetLayout) -> None:
        box_left, box_top, box_width, box_height = layout.suggestion_box
        draw = ImageDraw.Draw(image)
        draw.rounded_rectangle(
            (box_left, box_top, box_left + box_width, box_top + box_height),
            radius=SUGGESTION_RADIUS,
            fill=WHITE,
        )
        line_count = len(layout.suggestion_lines)
        text_top = box_top + box_height / 2 - line_count * SUGGESTION_LINE_HEIGHT / 2
        self.painter.draw_lines(
            image,
            layout.suggestion_lines,
            layout.suggestion_style,
            (box_left + SUGGESTION_TEXT_INSET, text_top),
            BLACK,
        )
        self.draw_copy_icon(image, (box_left + box_width - COPY_ICON_INSET, box_top + box_height // 2 - 20))

    def draw_copy_icon(self, image: Image.Image, origin: Tuple[int, int]) -> None:
        icon_x, icon_y = origin
        icon_width, icon_height = COPY_ICON_SIZE
        draw = ImageDraw.Draw(image)
        back = (
            icon_x + COPY_ICON_OFFSET,
            icon_y + COPY_ICON_OFFSET,
            icon_x + COPY_ICON_OFFSET + icon_width,
            icon_y + COPY_ICON_OFFSET + icon_height,
        )
        front = (icon_x, icon_y, icon_x + icon_width, icon_y + icon_height)
        draw.rectangle(back, outline=BLACK, width=COPY_ICON_STROKE)
        draw.rectangle(front, fill=WHITE, outline=BLACK, width=COPY_ICON_STROKE)
