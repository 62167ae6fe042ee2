"""
image_fit.py - cover/contain placement math and rounded-rectangle clipping.

All geometry is in canvas pixels (floats); rasterisation rounds only at the
last step so the math stays testable on its own.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List, Optional, Tuple

from PIL import Image, ImageChops, ImageDraw, ImageFilter

ARC_STEPS = 12


@dataclass(frozen=True)
class Box:
    x: float
    y: float
    width: float
    height: float

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    def inset(self, amount: float) -> "Box":
        return Box(self.x + amount, self.y + amount, self.width - amount * 2, self.height - amount * 2)

    def to_pixels(self) -> Tuple[int, int, int, int]:
        left, top = int(round(self.x)), int(round(self.y))
        right = max(left + 1, int(round(self.right)))
        bottom = max(top + 1, int(round(self.bottom)))
        return left, top, right, bottom


@dataclass(frozen=True)
class Shadow:
    blur: float
    offset_x: float
    offset_y: float
    color: Tuple[int, int, int, int]


def cover_rects(src_w: float, src_h: float, box: Box) -> Tuple[Box, Box]:
    """Crop the source about its centre so it fills the whole box."""
    img_ratio = src_w / src_h
    box_ratio = box.width / box.height
    sx, sy, sw, sh = 0.0, 0.0, float(src_w), float(src_h)
    if img_ratio > box_ratio:
        sw = src_h * box_ratio
        sx = (src_w - sw) / 2
    else:
        sh = src_w / box_ratio
        sy = (src_h - sh) / 2
    return Box(sx, sy, sw, sh), box


def contain_rects(src_w: float, src_h: float, box: Box) -> Tuple[Box, Box]:
    """Scale the whole source into the box, letterboxing the off axis."""
    img_ratio = src_w / src_h
    box_ratio = box.width / box.height
    if img_ratio > box_ratio:
        dw = box.width
        dh = box.width / img_ratio
        dx = box.x
        dy = box.y + (box.height - dh) / 2
    else:
        dh = box.height
        dw = box.height * img_ratio
        dx = box.x + (box.width - dw) / 2
        dy = box.y
    return Box(0.0, 0.0, float(src_w), float(src_h)), Box(dx, dy, dw, dh)


def fill_rects(src_w: float, src_h: float, box: Box) -> Tuple[Box, Box]:
    return Box(0.0, 0.0, float(src_w), float(src_h)), box


FIT_MODES = {
    "cover": cover_rects,
    "contain": contain_rects,
    "fill": fill_rects,
}


def _quarter_arc(cx: float, cy: float, r: float, start_deg: float, steps: int) -> List[Tuple[float, float]]:
    points = []
    for i in range(steps + 1):
        angle = math.radians(start_deg + 90.0 * i / steps)
        points.append((cx + r * math.cos(angle), cy + r * math.sin(angle)))
    return points


def rounded_rect_path(box: Box, radius: float, steps: int = ARC_STEPS) -> List[Tuple[float, float]]:
    """Closed outline: four quarter-circle corners joined by straight edges.

    The radius is applied uniformly and capped at half the shorter side.
    """
    r = max(0.0, min(radius, box.width / 2, box.height / 2))
    x, y, w, h = box.x, box.y, box.width, box.height
    if r == 0:
        return [(x, y), (x + w, y), (x + w, y + h), (x, y + h)]
    points: List[Tuple[float, float]] = [(x + r, y)]
    points += _quarter_arc(x + w - r, y + r, r, -90.0, steps)
    points += _quarter_arc(x + w - r, y + h - r, r, 0.0, steps)
    points += _quarter_arc(x + r, y + h - r, r, 90.0, steps)
    points += _quarter_arc(x + r, y + r, r, 180.0, steps)
    return points


def clip_mask(size: Tuple[int, int], box: Box, radius: float = 0) -> Image.Image:
    mask = Image.new("L", size, 0)
    draw = ImageDraw.Draw(mask)
    if radius and radius > 0:
        draw.polygon(rounded_rect_path(box, radius), fill=255)
    else:
        left, top, right, bottom = box.to_pixels()
        draw.rectangle([left, top, right - 1, bottom - 1], fill=255)
    return mask


def draw_image_fitted(
    surface: Image.Image,
    image: Image.Image,
    box: Box,
    fit: str = "cover",
    radius: float = 0,
    shadow: Optional[Shadow] = None,
) -> None:
    """Place image into box on an RGBA surface, clipped to the (rounded) box."""
    if box.width <= 0 or box.height <= 0 or image.width == 0 or image.height == 0:
        return
    compute = FIT_MODES.get(fit, cover_rects)
    src, dst = compute(image.width, image.height, box)
    left, top, right, bottom = dst.to_pixels()
    resized = image.convert("RGBA").resize(
        (right - left, bottom - top),
        Image.LANCZOS,
        box=(src.x, src.y, src.right, src.bottom),
    )

    placed = Image.new("RGBA", surface.size, (0, 0, 0, 0))
    placed.paste(resized, (left, top))
    mask = clip_mask(surface.size, box, radius)
    placed.putalpha(ImageChops.multiply(placed.getchannel("A"), mask))

    if shadow is not None:
        surface.alpha_composite(_shadow_layer(placed, shadow))
    surface.alpha_composite(placed)


def _shadow_layer(placed: Image.Image, shadow: Shadow) -> Image.Image:
    r, g, b, a = shadow.color
    silhouette = placed.getchannel("A").point(lambda v: v * a // 255)
    tinted = Image.new("RGBA", placed.size, (r, g, b, 0))
    tinted.putalpha(silhouette)
    if shadow.blur > 0:
        tinted = tinted.filter(ImageFilter.GaussianBlur(shadow.blur / 2))
    shifted = Image.new("RGBA", placed.size, (0, 0, 0, 0))
    shifted.paste(tinted, (int(round(shadow.offset_x)), int(round(shadow.offset_y))))
    return shifted
