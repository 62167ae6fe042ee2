"""
text_layout.py - font lookup, greedy word wrap with ellipsis truncation, casing.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Callable, List, Optional

from PIL import ImageFont

BASE_DIR = Path(__file__).resolve().parent
FONTS_DIR = Path(os.getenv("FONTS_DIR", str(BASE_DIR / "fonts")))

ELLIPSIS = "…"

WEIGHT_SUFFIX = {
    "regular": "Regular",
    "medium": "Medium",
    "semibold": "SemiBold",
    "bold": "Bold",
}

logger = logging.getLogger(__name__)

Measure = Callable[[str], float]


@dataclass(frozen=True)
class WrappedLine:
    text: str
    width: float


@lru_cache(maxsize=64)
def load_font(family: str, weight: str, size: int) -> ImageFont.FreeTypeFont:
    """Resolve <FONTS_DIR>/<Family>-<Weight>.ttf, falling back to Pillow's bundled font."""
    suffix = WEIGHT_SUFFIX.get(weight, "Regular")
    candidates = [
        FONTS_DIR / f"{family}-{suffix}.ttf",
        FONTS_DIR / f"{family}-Regular.ttf",
        FONTS_DIR / f"{family}.ttf",
    ]
    for path in candidates:
        if path.exists():
            try:
                return ImageFont.truetype(str(path), size)
            except OSError as exc:
                logger.warning("Failed to load font %s: %s", path, exc)
    logger.debug("No font file for %s/%s in %s, using default", family, weight, FONTS_DIR)
    return ImageFont.load_default(size=size)


def font_measure(font: ImageFont.FreeTypeFont) -> Measure:
    return lambda text: float(font.getlength(text))


def wrap_text(text: str, max_width: float, measure: Measure, max_lines: Optional[int] = None) -> List[WrappedLine]:
    """Greedy word wrap. A word wider than max_width sits alone on its line."""
    words = text.split()
    lines: List[WrappedLine] = []
    current = ""
    for word in words:
        candidate = f"{current} {word}" if current else word
        if current and measure(candidate) > max_width:
            lines.append(WrappedLine(current, measure(current)))
            current = word
        else:
            current = candidate
    if current:
        lines.append(WrappedLine(current, measure(current)))

    if max_lines and len(lines) > max_lines:
        lines = lines[:max_lines]
        lines[-1] = _ellipsize(lines[-1].text, max_width, measure)
    return lines


def _ellipsize(text: str, max_width: float, measure: Measure) -> WrappedLine:
    while text and measure(text + ELLIPSIS) > max_width:
        text = text[:-1].rstrip()
    line = text + ELLIPSIS
    return WrappedLine(line, measure(line))


def apply_text_casing(text: str, mode: Optional[str]) -> str:
    if not text:
        return text
    normalized = (mode or "none").lower()
    if normalized in {"upper", "uppercase", "all_caps", "caps"}:
        return text.upper()
    if normalized in {"lower", "lowercase", "all_lower"}:
        return text.lower()
    return text
