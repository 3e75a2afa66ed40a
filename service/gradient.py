"""Linear gradients for widget backdrops and gradient-filled shapes."""

from __future__ import annotations

from typing import Tuple

import numpy as np
from PIL import Image

RGBA = Tuple[int, int, int, int]

GRADIENT_DIRECTIONS = ("horizontal", "vertical", "diag-down", "diag-up")


def build_linear_gradient(
    start_color: RGBA,
    end_color: RGBA,
    width: int,
    height: int,
    direction: str = "vertical",
) -> Image.Image:
    """
    Build an RGBA gradient between two colors in a given direction.

    direction:
        - "horizontal": left to right
        - "vertical": top to bottom
        - "diag-down": top-left to bottom-right
        - "diag-up": bottom-left to top-right
    """
    if width <= 0 or height <= 0:
        raise ValueError(f"gradient size must be positive: {width}x{height}")

    start = np.array(start_color, dtype=np.float32)
    end = np.array(end_color, dtype=np.float32)

    yy, xx = np.mgrid[0:height, 0:width].astype(np.float32)
    if direction == "horizontal":
        alpha = xx / max(width - 1, 1)
    elif direction == "vertical":
        alpha = yy / max(height - 1, 1)
    elif direction == "diag-down":
        alpha = (xx + yy) / max((width - 1) + (height - 1), 1)
    elif direction == "diag-up":
        alpha = (xx + (height - 1 - yy)) / max((width - 1) + (height - 1), 1)
    else:
        raise ValueError(f"Unsupported gradient direction: {direction}")

    alpha = alpha[..., np.newaxis]
    interpolated = (1.0 - alpha) * start + alpha * end
    final_array = np.clip(np.rint(interpolated), 0, 255).astype(np.uint8)
    return Image.fromarray(final_array)


def paste_gradient(
    target: Image.Image,
    mask: Image.Image,
    origin: Tuple[int, int],
    start_color: RGBA,
    end_color: RGBA,
    direction: str = "vertical",
) -> None:
    """Fill the opaque area of an L-mode mask with a gradient on target."""
    gradient = build_linear_gradient(
        start_color, end_color, mask.width, mask.height, direction
    )
    target.paste(gradient, origin, mask)
