"""SVG artifact writer: jittered, rotated glyphs under bezier noise strokes."""

from __future__ import annotations

from typing import TYPE_CHECKING
from xml.sax.saxutils import escape, quoteattr

if TYPE_CHECKING:
    import random

SVG_NS = "http://www.w3.org/2000/svg"
MAX_ROTATION_DEG = 25.0


def random_ink(rng: random.Random, color: bool) -> str:
    """Dark enough to read on a light background."""
    if not color:
        return "#444444"
    r, g, b = (rng.randint(0, 150) for _ in range(3))
    return f"#{r:02x}{g:02x}{b:02x}"


def glyph_layout(
    text: str, width: int, height: int, font_size: int, rng: random.Random
) -> list[tuple[str, float, float, float, float]]:
    """Place each glyph in its own horizontal slot.

    Returns ``(char, x, y, size, angle)`` tuples, ``x``/``y`` being the glyph
    center. Shared by the SVG and raster writers.
    """
    slot = width / (len(text) + 1)
    base_size = min(float(font_size), height * 0.9, slot * 1.6)
    placed = []
    for i, ch in enumerate(text):
        size = base_size * rng.uniform(0.8, 1.0)
        x = slot * (i + 1) + rng.uniform(-0.15, 0.15) * slot
        y = height / 2 + rng.uniform(-0.1, 0.1) * height
        angle = rng.uniform(-MAX_ROTATION_DEG, MAX_ROTATION_DEG)
        placed.append((ch, x, y, size, angle))
    return placed


def _noise_path(width: int, height: int, rng: random.Random, color: bool) -> str:
    x0, x3 = rng.uniform(0, width * 0.2), rng.uniform(width * 0.8, width)
    y0, y3 = rng.uniform(0, height), rng.uniform(0, height)
    x1, y1 = rng.uniform(0, width), rng.uniform(0, height)
    x2, y2 = rng.uniform(0, width), rng.uniform(0, height)
    d = f"M{x0:.1f} {y0:.1f} C{x1:.1f} {y1:.1f},{x2:.1f} {y2:.1f},{x3:.1f} {y3:.1f}"
    stroke = random_ink(rng, color)
    stroke_width = rng.uniform(1.0, 2.0)
    return f'<path d="{d}" stroke="{stroke}" stroke-width="{stroke_width:.1f}" fill="none"/>'


def render_svg(
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
    """Render ``text`` as a standalone SVG document string.

    Only the glyphs are emitted as ``<text>`` nodes, in reading order, so the
    visible text of the document is exactly ``text``.
    """
    parts = [
        f'<svg xmlns="{SVG_NS}" width="{width}" height="{height}" '
        f'viewBox="0 0 {width} {height}">',
        f"<rect width=\"100%\" height=\"100%\" fill={quoteattr(background)}/>",
    ]
    for ch, x, y, size, angle in glyph_layout(text, width, height, font_size, rng):
        parts.append(
            f'<text x="{x:.1f}" y="{y:.1f}" font-size="{size:.1f}" '
            f'font-family="monospace" font-weight="bold" text-anchor="middle" '
            f'dominant-baseline="central" fill="{random_ink(rng, color)}" '
            f'transform="rotate({angle:.1f} {x:.1f} {y:.1f})">{escape(ch)}</text>'
        )
    parts.extend(_noise_path(width, height, rng, color) for _ in range(noise))
    parts.append("</svg>")
    return "".join(parts)
