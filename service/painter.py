"""Draws laid-out text blocks and emoji glyphs onto RGBA images."""

from __future__ import annotations

from typing import Tuple

from PIL import Image, ImageDraw, ImageOps

from service.assets import AssetCache
from service.layout import LayoutEngine, TextBlock, TextLine, TextStyle

RGBA = Tuple[int, int, int, int]


class TextPainter:
    """Draws TextBlocks produced by a LayoutEngine, fetching emoji through the AssetCache."""

    def __init__(self, engine: LayoutEngine, assets: AssetCache) -> None:
        self.engine = engine
        self.assets = assets
        self._glyphs: dict[Tuple[str, int, bool], Image.Image | None] = {}

    def emoji_glyph(self, cluster: str, size: int, mirrored: bool = False) -> Image.Image | None:
        """Return the scaled emoji bitmap, or None when only a placeholder exists."""
        cache_key = (cluster, size, mirrored)
        if cache_key in self._glyphs:
            return self._glyphs[cache_key]
        asset = self.assets.get_emoji(cluster)
        glyph: Image.Image | None = None
        if not asset.placeholder:
            glyph = asset.image.resize((size, size), Image.Resampling.LANCZOS)
            if mirrored:
                glyph = ImageOps.mirror(glyph)
        self._glyphs[cache_key] = glyph
        return glyph

    def draw_block(
        self,
        image: Image.Image,
        block: TextBlock,
        origin: Tuple[float, float],
        fill: RGBA,
    ) -> None:
        """Draw a block with its first line box starting at origin."""
        self.draw_lines(image, block.lines, block.style, origin, fill)

    def draw_lines(
        self,
        image: Image.Image,
        lines: Tuple[TextLine, ...],
        style: TextStyle,
        origin: Tuple[float, float],
        fill: RGBA,
    ) -> None:
        left, top = origin
        font = self.engine.fonts.font(style.role, style.font_size)
        draw = ImageDraw.Draw(image)
        for line_index, line in enumerate(lines):
            center_y = top + line_index * style.line_height + style.line_height / 2
            for run in line.runs:
                run_x = left + run.x
                if not run.pictographic:
                    draw.text((run_x, center_y), run.text, font=font, fill=fill, anchor="lm")
                    continue
                glyph = self.emoji_glyph(run.text, style.emoji_size)
                if glyph is None:
                    draw.text((run_x, center_y), run.text, font=font, fill=fill, anchor="lm")
                    continue
                glyph_top = center_y - style.font_size / 2
                paste_sprite(image, glyph, (int(round(run_x)), int(round(glyph_top))))

    def draw_emoji_centered(
        self,
        image: Image.Image,
        cluster: str,
        center: Tuple[float, float],
        size: int,
        fill: RGBA,
        style: TextStyle,
        mirrored: bool = False,
    ) -> None:
        """Draw an emoji centered on a point, falling back to text for placeholders."""
        glyph = self.emoji_glyph(cluster, size, mirrored)
        center_x, center_y = center
        if glyph is None:
            font = self.engine.fonts.font(style.role, style.font_size)
            ImageDraw.Draw(image).text(
                (center_x, center_y), cluster, font=font, fill=fill, anchor="mm"
            )
            return
        paste_sprite(
            image,
            glyph,
            (int(round(center_x - size / 2)), int(round(center_y - size / 2))),
        )


def paste_sprite(target: Image.Image, sprite: Image.Image, position: Tuple[int, int]) -> None:
    """Alpha-composite a sprite onto target, clipping at the edges."""
    pos_x, pos_y = position
    crop_left = max(0, -pos_x)
    crop_top = max(0, -pos_y)
    if crop_left >= sprite.width or crop_top >= sprite.height:
        return
    if crop_left or crop_top:
        sprite = sprite.crop((crop_left, crop_top, sprite.width, sprite.height))
    dest = (pos_x + crop_left, pos_y + crop_top)
    if dest[0] >= target.width or dest[1] >= target.height:
        return
    if sprite.mode != "RGBA":
        sprite = sprite.convert("RGBA")
    target.alpha_composite(sprite, dest=dest)
