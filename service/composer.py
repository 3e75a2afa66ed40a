"""Frame rasterization for render_chat_video."""

from __future__ import annotations

from typing import Tuple

from PIL import Image, ImageDraw, ImageOps

from domain.chat_video import (
    ChatFrame,
    FrameState,
    ImageFrame,
    InitialFrame,
    Message,
    RenderConfig,
    Side,
    Theme,
    WidgetFrame,
)
from service.assets import AssetCache
from service.layout import (
    BubbleLayout,
    BubbleStyle,
    FontBook,
    FontRole,
    LayoutEngine,
    TextStyle,
)
from service.painter import TextPainter, paste_sprite
from service.widget import WidgetRenderer


BUBBLE_FONT_SIZE = 44
STICKER_FONT_SIZE = 115
BUBBLE_PAD_X = 36
BUBBLE_PAD_Y = 26
BUBBLE_MAX_WIDTH = 780
BUBBLE_RADIUS = 50
BUBBLE_SPACING = 15
BUBBLE_EDGE_MARGIN = 40
LINE_HEIGHT_RATIO = 1.2

SCROLLBAR_WIDTH = 6
SCROLLBAR_HEIGHT = 250
SCROLLBAR_RIGHT_PADDING = 10
SCROLLBAR_TOP = 700
SCROLLBAR_ALPHA = 77

STORY_BOX = (610, 650, 420, 560)
STORY_RADIUS = 35
STORY_CAPTION = "Sent a reply to your story"
STORY_CAPTION_SIZE = 34
STORY_CAPTION_POSITION = (610, 610)
INITIAL_BUBBLE_TOP = 1240

IMAGE_FRAME_BACKGROUND = (0, 0, 0, 255)


def build_text_style(role: FontRole, font_size: int, max_width: float) -> TextStyle:
    return TextStyle(
        role=role,
        font_size=font_size,
        line_height=int(round(font_size * LINE_HEIGHT_RATIO)),
        max_width=max_width,
    )


CHAT_BUBBLE_STYLE = BubbleStyle(
    text=build_text_style(FontRole.REGULAR, BUBBLE_FONT_SIZE, BUBBLE_MAX_WIDTH - 2 * BUBBLE_PAD_X),
    sticker=build_text_style(
        FontRole.REGULAR, STICKER_FONT_SIZE, BUBBLE_MAX_WIDTH - 2 * BUBBLE_PAD_X
    ),
    pad_x=BUBBLE_PAD_X,
    pad_y=BUBBLE_PAD_Y,
    max_width=BUBBLE_MAX_WIDTH,
    corner_radius=BUBBLE_RADIUS,
    spacing=BUBBLE_SPACING,
)


def build_rounded_mask(size: Tuple[int, int], radius: int) -> Image.Image:
    """Build an L-mode mask with a filled rounded rectangle."""
    mask = Image.new("L", size, 0)
    ImageDraw.Draw(mask).rounded_rectangle(
        (0, 0, size[0] - 1, size[1] - 1), radius=radius, fill=255
    )
    return mask


def scale_alpha(layer: Image.Image, opacity: float) -> Image.Image:
    """Return a copy of an RGBA layer with its alpha multiplied by opacity."""
    if opacity >= 1.0:
        return layer
    alpha = layer.getchannel("A").point(lambda value: int(round(value * opacity)))
    faded = layer.copy()
    faded.putalpha(alpha)
    return faded


def fit_within(size: Tuple[int, int], bounds: Tuple[int, int]) -> Tuple[int, int]:
    """Scale size to fit inside bounds, preserving aspect ratio."""
    width, height = size
    bound_width, bound_height = bounds
    scale = min(bound_width / width, bound_height / height)
    return (max(1, int(round(width * scale))), max(1, int(round(height * scale))))


class FrameComposer:
    """Renders a FrameState into a full-canvas RGBA image."""

    def __init__(
        self,
        config: RenderConfig,
        fonts: FontBook,
        assets: AssetCache,
        engine: LayoutEngine | None = None,
    ) -> None:
        self.config = config
        self.theme: Theme = config.theme
        self.assets = assets
        self.engine = engine if engine is not None else LayoutEngine(fonts)
        self.painter = TextPainter(self.engine, assets)
        self.widget = WidgetRenderer(self.theme, self.engine, self.painter)

    def render(self, state: FrameState) -> Image.Image:
        if isinstance(state, InitialFrame):
            return self.render_initial(state)
        if isinstance(state, ChatFrame):
            return self.render_chat(state)
        if isinstance(state, ImageFrame):
            return self.render_image(state)
        if isinstance(state, WidgetFrame):
            frame_image = self.new_background()
            self.widget.draw(frame_image, state)
            return frame_image
        raise TypeError(f"unsupported frame state: {type(state).__name__}")

    def new_background(self, color: Tuple[int, int, int, int] | None = None) -> Image.Image:
        return Image.new(
            "RGBA", self.config.canvas_size, color or self.theme.background
        )

    def layout_bubble(self, message: Message) -> BubbleLayout:
        return self.engine.layout_bubble(message.text, CHAT_BUBBLE_STYLE)

    def measure_bubble(self, message: Message) -> int:
        return self.engine.measure_bubble(message.text, CHAT_BUBBLE_STYLE)

    def draw_bubble(self, image: Image.Image, message: Message, top: float) -> int:
        """Draw one bubble with its top edge at top; return the stack advance."""
        top = int(round(top))
        bubble = self.layout_bubble(message)
        if message.side == Side.RIGHT:
            left = self.config.canvas_width - bubble.width - BUBBLE_EDGE_MARGIN
            bubble_fill = self.theme.right_bubble
            text_fill = self.theme.right_text
        else:
            left = BUBBLE_EDGE_MARGIN
            bubble_fill = self.theme.left_bubble
            text_fill = self.theme.left_text

        if bubble.sticker:
            text_fill = (0, 0, 0, 255) if self.theme.is_light else (255, 255, 255, 255)
        else:
            ImageDraw.Draw(image).rounded_rectangle(
                (left, top, left + bubble.width, top + bubble.height),
                radius=CHAT_BUBBLE_STYLE.corner_radius,
                fill=bubble_fill,
            )
        self.painter.draw_block(
            image,
            bubble.block,
            (left + CHAT_BUBBLE_STYLE.pad_x, top + CHAT_BUBBLE_STYLE.pad_y),
            text_fill,
        )
        return bubble.advance

    def draw_scrollbar(self, image: Image.Image) -> None:
        if self.theme.is_light:
            color = (0, 0, 0, SCROLLBAR_ALPHA)
        else:
            color = (255, 255, 255, SCROLLBAR_ALPHA)
        right = self.config.canvas_width - SCROLLBAR_RIGHT_PADDING
        ImageDraw.Draw(image, "RGBA").rounded_rectangle(
            (right - SCROLLBAR_WIDTH, SCROLLBAR_TOP, right, SCROLLBAR_TOP + SCROLLBAR_HEIGHT),
            radius=SCROLLBAR_WIDTH // 2,
            fill=color,
        )

    def draw_story(self, image: Image.Image, story_asset: str | None) -> None:
        left, top, width, height = STORY_BOX
        mask = build_rounded_mask((width, height), STORY_RADIUS)
        if story_asset is None:
            tile = Image.new("RGBA", (width, height), self.theme.left_bubble)
        else:
            source = self.assets.get(story_asset).image
            tile = ImageOps.fit(source, (width, height), Image.Resampling.LANCZOS)
        image.paste(tile, (left, top), mask)

    def render_initial(self, state: InitialFrame) -> Image.Image:
        frame_image = self.new_background()
        self.draw_scrollbar(frame_image)
        self.draw_story(frame_image, state.story_asset)

        font = self.engine.fonts.font(FontRole.SEMIBOLD, STORY_CAPTION_SIZE)
        ImageDraw.Draw(frame_image).text(
            STORY_CAPTION_POSITION,
            STORY_CAPTION,
            font=font,
            fill=self.theme.secondary,
            anchor="ls",
        )

        first_message = Message(side=Side.RIGHT, text=state.first_message.text)
        self.draw_bubble(frame_image, first_message, INITIAL_BUBBLE_TOP)
        return frame_image

    def render_chat(self, state: ChatFrame) -> Image.Image:
        total_height = sum(self.measure_bubble(message) for message in state.visible_messages)
        cursor_y = (self.config.canvas_height - total_height) / 2

        layer = Image.new("RGBA", self.config.canvas_size, (0, 0, 0, 0))
        for message in state.visible_messages:
            cursor_y += self.draw_bubble(layer, message, cursor_y)

        frame_image = self.new_background()
        frame_image.alpha_composite(scale_alpha(layer, state.opacity))
        return frame_image

    def render_image(self, state: ImageFrame) -> Image.Image:
        frame_image = self.new_background(IMAGE_FRAME_BACKGROUND)
        source = self.assets.get(state.asset).image
        fitted_size = fit_within(source.size, self.config.canvas_size)
        fitted = source.resize(fitted_size, Image.Resampling.LANCZOS)
        paste_sprite(
            frame_image,
            fitted,
            (
                (self.config.canvas_width - fitted_size[0]) // 2,
                (self.config.canvas_height - fitted_size[1]) // 2,
            ),
        )
        return frame_image
