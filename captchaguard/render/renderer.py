"""Challenge content selection and artifact rendering."""

from __future__ import annotations

import random
import re
import string
from dataclasses import dataclass
from typing import TYPE_CHECKING

import structlog

from captchaguard.exceptions import RenderError
from captchaguard.models.challenge import ChallengeOptions
from captchaguard.render.raster import render_png
from captchaguard.render.svg import render_svg
from captchaguard.types import ChallengeKind, ImageFormat

if TYPE_CHECKING:
    from captchaguard.config.settings import Settings

logger = structlog.get_logger(__name__)

# Glyphs easily confused with 0/O or 1/I/l are never drawn.
AMBIGUOUS_CHARS = "0Oo1Iil"
FREE_TEXT_ALPHABET = "".join(
    ch for ch in string.ascii_letters + string.digits if ch not in AMBIGUOUS_CHARS
)
NUMERIC_ALPHABET = "".join(ch for ch in string.digits if ch not in AMBIGUOUS_CHARS)

MATH_OPERAND_MIN = 1
MATH_OPERAND_MAX = 9

_HEX_COLOR = re.compile(r"^#(?:[0-9a-fA-F]{3}|[0-9a-fA-F]{6})$")

# (min, max) inclusive
_LIMITS = {
    "length": (1, 32),
    "width": (20, 2000),
    "height": (20, 1000),
    "noise": (0, 50),
    "font_size": (8, 400),
}


@dataclass(frozen=True)
class RenderDefaults:
    length: int = 4
    width: int = 120
    height: int = 40
    font_size: int = 50
    noise: int = 2
    color: bool = True
    background: str = "#f0f0f0"

    @classmethod
    def from_settings(cls, settings: Settings) -> RenderDefaults:
        return cls(
            length=settings.captcha_length,
            width=settings.captcha_width,
            height=settings.captcha_height,
            font_size=settings.captcha_font_size,
            noise=settings.captcha_noise,
            color=settings.captcha_color,
            background=settings.captcha_background,
        )


@dataclass(frozen=True)
class RenderedChallenge:
    """An answer and the artifact that depicts it, always produced together.

    ``display_text`` is what is drawn; for arithmetic it is the expression
    and ``answer`` its result, otherwise the two are identical.
    """

    answer: str
    display_text: str
    artifact: str
    image_format: ImageFormat


class ChallengeRenderer:
    """Produces ``(answer, artifact)`` pairs. Never touches storage."""

    def __init__(
        self,
        defaults: RenderDefaults | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self._defaults = defaults or RenderDefaults()
        self._rng = rng or random.SystemRandom()

    @property
    def defaults(self) -> RenderDefaults:
        return self._defaults

    def render(
        self, kind: ChallengeKind, options: ChallengeOptions | None = None
    ) -> RenderedChallenge:
        """Choose content for ``kind`` and draw it.

        Raises RenderError for out-of-range options or a writer failure.
        """
        options = options or ChallengeOptions()
        params = self._resolve(options)

        if kind == ChallengeKind.ARITHMETIC:
            display_text, answer = self._expression()
        elif kind == ChallengeKind.NUMERIC:
            display_text = self._random_text(NUMERIC_ALPHABET, params["length"])
            answer = display_text
        elif kind == ChallengeKind.FREE_TEXT:
            display_text = self._random_text(FREE_TEXT_ALPHABET, params["length"])
            answer = display_text
        else:
            msg = f"No renderer for challenge kind: {kind}"
            raise RenderError(msg)

        writer = render_png if options.image_format == ImageFormat.PNG else render_svg
        try:
            artifact = writer(
                display_text,
                width=params["width"],
                height=params["height"],
                font_size=params["font_size"],
                noise=params["noise"],
                color=params["color"],
                background=params["background"],
                rng=self._rng,
            )
        except (OSError, ValueError, TypeError) as exc:
            logger.warning("captcha_render_failed", kind=str(kind), error=str(exc))
            msg = f"Failed to render {kind} challenge: {exc}"
            raise RenderError(msg) from exc

        return RenderedChallenge(
            answer=answer,
            display_text=display_text,
            artifact=artifact,
            image_format=options.image_format,
        )

    def _resolve(self, options: ChallengeOptions) -> dict[str, object]:
        params: dict[str, object] = {}
        for name, (low, high) in _LIMITS.items():
            value = getattr(options, name)
            if value is None:
                value = getattr(self._defaults, name)
            if not low <= value <= high:
                msg = f"Option '{name}' must be between {low} and {high}, got {value}"
                raise RenderError(msg)
            params[name] = value

        background = options.background or self._defaults.background
        if not _HEX_COLOR.match(background):
            msg = f"Option 'background' must be a hex color, got {background!r}"
            raise RenderError(msg)
        params["background"] = background
        params["color"] = self._defaults.color if options.color is None else options.color
        return params

    def _random_text(self, alphabet: str, length: int) -> str:
        return "".join(self._rng.choice(alphabet) for _ in range(length))

    def _expression(self) -> tuple[str, str]:
        a = self._rng.randint(MATH_OPERAND_MIN, MATH_OPERAND_MAX)
        b = self._rng.randint(MATH_OPERAND_MIN, MATH_OPERAND_MAX)
        if self._rng.random() < 0.5:
            return f"{a}+{b}=?", str(a + b)
        if b > a:
            a, b = b, a
        return f"{a}-{b}=?", str(a - b)
