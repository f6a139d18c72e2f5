"""PNG artifact writer using Pillow."""

from __future__ import annotations

import base64
import io
from typing import TYPE_CHECKING

from PIL import Image, ImageColor, ImageDraw, ImageFont

from captchaguard.render.svg import glyph_layout, random_ink

if TYPE_CHECKING:
    import random

PNG_DATA_URI_PREFIX = "data:image/png;base64,"


def _load_font(size: int) -> ImageFont.ImageFont | ImageFont.FreeTypeFont:
    # Falls back to the bitmap font (fixed size) when FreeType is unavailable.
    return ImageFont.load_default(size=size)


def render_png(
    text: str,
    *,
    width: int,
    height: int,
    font_size: int,
    noise: int,
    color: bool,
    background: str,
    rng: random.Random,
) -> str:
    """Render ``text`` to a PNG and return it as a base64 ``data:`` URI."""
    image = Image.new("RGB", (width, height), background)

    for ch, x, y, size, angle in glyph_layout(text, width, height, font_size, rng):
        font = _load_font(max(1, int(size)))
        canvas = max(4, int(size * 2))
        glyph = Image.new("RGBA", (canvas, canvas), (0, 0, 0, 0))
        draw = ImageDraw.Draw(glyph)
        left, top, right, bottom = draw.textbbox((0, 0), ch, font=font)
        origin = ((canvas - (right - left)) / 2 - left, (canvas - (bottom - top)) / 2 - top)
        draw.text(origin, ch, font=font, fill=ImageColor.getrgb(random_ink(rng, color)))
        glyph = glyph.rotate(angle, resample=Image.Resampling.BICUBIC)
        image.paste(glyph, (int(x - canvas / 2), int(y - canvas / 2)), glyph)

    draw = ImageDraw.Draw(image)
    for _ in range(noise):
        points = [(rng.uniform(0, width), rng.uniform(0, height)) for _ in range(3)]
        draw.line(points, fill=random_ink(rng, color), width=rng.randint(1, 2))

    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return PNG_DATA_URI_PREFIX + base64.b64encode(buffer.getvalue()).decode("ascii")
