"""
template_engine.py - frame compositor.

Paints one frame of a template onto a PIL canvas:
- background (solid / linear gradient / cover-fit user image)
- layers in list order, each on its own transparent surface so opacity is
  applied to the finished layer and never leaks into the next one
Output is PNG bytes.
"""

from __future__ import annotations

import io
import logging
import math
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from PIL import Image, ImageDraw

from api.template_schema import (
    AccentBarLayer,
    CtaImageLayer,
    Frame,
    GradientBackground,
    ImageBackground,
    ImageLayer,
    LogoLayer,
    RectLayer,
    SolidBackground,
    Template,
    TextLayer,
)
from image_fit import Box, Shadow, draw_image_fitted, rounded_rect_path
from text_layout import apply_text_casing, font_measure, load_font, wrap_text
from variables import RenderVariables, build_color_variables, resolve_color, resolve_variables, to_rgba

logger = logging.getLogger(__name__)

FALLBACK_RGBA = (0, 0, 0, 255)


# ---------- Geometry helpers ----------

def layer_box(layer) -> Box:
    """Translate (x, y) by the layer anchor into a top-left based box."""
    x, y, w, h = layer.x, layer.y, layer.width, layer.height
    if layer.anchor == "center":
        x, y = x - w / 2, y - h / 2
    elif layer.anchor == "bottom-left":
        y = y - h
    elif layer.anchor == "bottom-right":
        x, y = x - w, y - h
    return Box(x, y, w, h)


def gradient_axis(angle: float, width: int, height: int) -> Tuple[float, float, float, float]:
    rad = math.radians(angle)
    x1 = width / 2 - math.cos(rad) * width / 2
    y1 = height / 2 - math.sin(rad) * height / 2
    x2 = width / 2 + math.cos(rad) * width / 2
    y2 = height / 2 + math.sin(rad) * height / 2
    return x1, y1, x2, y2


def render_gradient(size: Tuple[int, int], colors: Sequence[Tuple[int, int, int, int]], angle: float) -> Image.Image:
    """Linear gradient with stops spread evenly over [0, 1] along the angle axis."""
    width, height = size
    x1, y1, x2, y2 = gradient_axis(angle, width, height)
    dx, dy = x2 - x1, y2 - y1
    length_sq = dx * dx + dy * dy or 1.0
    ys, xs = np.mgrid[0:height, 0:width].astype(np.float64)
    t = ((xs + 0.5 - x1) * dx + (ys + 0.5 - y1) * dy) / length_sq
    t = np.clip(t, 0.0, 1.0)

    stops = np.linspace(0.0, 1.0, num=len(colors))
    table = np.array(colors, dtype=np.float64)
    pixels = np.empty((height, width, 4), dtype=np.uint8)
    for channel in range(4):
        pixels[..., channel] = np.rint(np.interp(t, stops, table[:, channel])).astype(np.uint8)
    return Image.fromarray(pixels, "RGBA")


# ---------- Core engine ----------

@dataclass
class FrameRenderRequest:
    template: Template
    variables: RenderVariables
    user_images: List[Image.Image] = field(default_factory=list)
    assets: Dict[str, Image.Image] = field(default_factory=dict)
    frame_index: int = 0


class TemplateEngine:
    def __init__(self, request: FrameRenderRequest):
        self.request = request
        self.color_vars = build_color_variables(request.variables)

    def render(self) -> bytes:
        image = self.render_image()
        out = io.BytesIO()
        image.save(out, format="PNG")
        return out.getvalue()

    def render_image(self) -> Image.Image:
        template = self.request.template
        index = self.request.frame_index
        if index < 0 or index >= len(template.frames):
            raise IndexError(f"Frame {index} not found in template '{template.id}'")
        frame = template.frames[index]

        canvas = Image.new("RGBA", (template.width, template.height), (0, 0, 0, 0))
        self._draw_background(canvas, frame)

        for position, layer in enumerate(frame.layers):
            if not layer.visible:
                continue
            with self._layer_surface(canvas, layer.opacity) as surface:
                self._draw_layer(surface, layer, position)
        return canvas

    # ----- colors -----

    def _rgba(self, value: str) -> Tuple[int, int, int, int]:
        resolved = resolve_color(value, self.color_vars)
        try:
            return to_rgba(resolved)
        except ValueError:
            logger.warning("Unparseable color %r (resolved %r), using black", value, resolved)
            return FALLBACK_RGBA

    # ----- background -----

    def _draw_background(self, canvas: Image.Image, frame: Frame) -> None:
        bg = frame.background
        size = canvas.size
        if isinstance(bg, SolidBackground):
            canvas.paste(Image.new("RGBA", size, self._rgba(bg.color)), (0, 0))
        elif isinstance(bg, GradientBackground):
            colors = [self._rgba(c) for c in bg.colors]
            canvas.paste(render_gradient(size, colors, bg.angle), (0, 0))
        elif isinstance(bg, ImageBackground):
            image = self._user_image(bg.index)
            if image is None:
                logger.warning("Background image %d missing; leaving canvas blank", bg.index)
                return
            draw_image_fitted(canvas, image, Box(0, 0, size[0], size[1]), "cover")
        else:
            raise TypeError(f"unsupported background {type(bg).__name__}")

    # ----- layers -----

    @contextmanager
    def _layer_surface(self, canvas: Image.Image, opacity: Optional[float]) -> Iterator[Image.Image]:
        """Yield a scratch surface; blend it onto the canvas once the layer is fully drawn."""
        surface = Image.new("RGBA", canvas.size, (0, 0, 0, 0))
        yield surface
        if opacity is not None and opacity < 1:
            alpha = surface.getchannel("A").point(lambda v: int(round(v * opacity)))
            surface.putalpha(alpha)
        canvas.alpha_composite(surface)

    def _draw_layer(self, surface: Image.Image, layer, position: int) -> None:
        if isinstance(layer, RectLayer):
            self._draw_rect(surface, layer)
        elif isinstance(layer, ImageLayer):
            self._draw_user_image(surface, layer, position)
        elif isinstance(layer, TextLayer):
            self._draw_text(surface, layer)
        elif isinstance(layer, (LogoLayer, CtaImageLayer)):
            self._draw_asset(surface, layer, position)
        elif isinstance(layer, AccentBarLayer):
            self._draw_accent_bar(surface, layer)
        else:
            raise TypeError(f"unsupported layer {type(layer).__name__}")

    def _draw_rect(self, surface: Image.Image, layer: RectLayer) -> None:
        box = layer_box(layer)
        draw = ImageDraw.Draw(surface)
        fill = self._rgba(layer.fill)
        radius = layer.border_radius
        if radius > 0:
            path = rounded_rect_path(box, radius)
            draw.polygon(path, fill=fill)
        else:
            path = []
            left, top, right, bottom = box.to_pixels()
            draw.rectangle([left, top, right - 1, bottom - 1], fill=fill)

        if layer.stroke:
            color = self._rgba(layer.stroke.color)
            width = max(1, int(round(layer.stroke.width)))
            if path:
                draw.line(path + [path[0]], fill=color, width=width, joint="curve")
            else:
                draw.rectangle([left, top, right - 1, bottom - 1], outline=color, width=width)

    def _draw_user_image(self, surface: Image.Image, layer: ImageLayer, position: int) -> None:
        image = self._user_image(layer.index)
        if image is None:
            logger.warning("Missing user image at index %d (layer %d); skipping", layer.index, position)
            return
        shadow = None
        if layer.shadow:
            shadow = Shadow(
                blur=layer.shadow.blur,
                offset_x=layer.shadow.offset_x,
                offset_y=layer.shadow.offset_y,
                color=self._rgba(layer.shadow.color),
            )
        draw_image_fitted(surface, image, layer_box(layer), layer.fit, layer.border_radius, shadow)

    def _draw_text(self, surface: Image.Image, layer: TextLayer) -> None:
        text = resolve_variables(layer.content, self.request.variables)
        text = apply_text_casing(text, layer.text_transform)
        if not text.strip():
            return

        font = load_font(layer.font_family, layer.font_weight, int(round(layer.font_size)))
        measure = font_measure(font)
        box = layer_box(layer)
        padding = layer.padding
        lines = wrap_text(text, box.width - padding * 2, measure, layer.max_lines)

        line_spacing = layer.font_size * layer.line_height
        total_height = len(lines) * line_spacing
        if layer.vertical_align == "middle":
            start_y = box.y + (box.height - total_height) / 2
        elif layer.vertical_align == "bottom":
            start_y = box.y + box.height - total_height - padding
        else:
            start_y = box.y + padding

        draw = ImageDraw.Draw(surface)
        fill = self._rgba(layer.color)
        for idx, line in enumerate(lines):
            if layer.align == "center":
                x = box.x + (box.width - line.width) / 2
            elif layer.align == "right":
                x = box.x + box.width - line.width - padding
            else:
                x = box.x + padding
            y = start_y + idx * line_spacing
            if layer.letter_spacing:
                self._draw_spaced(draw, line.text, x, y, font, fill, layer.letter_spacing)
            else:
                draw.text((x, y), line.text, font=font, fill=fill)

    @staticmethod
    def _draw_spaced(draw, text: str, x: float, y: float, font, fill, spacing: float) -> None:
        # Advance by plain glyph width; kerning pairs are not applied.
        cursor = x
        for char in text:
            draw.text((cursor, y), char, font=font, fill=fill)
            cursor += font.getlength(char) + spacing

    def _draw_asset(self, surface: Image.Image, layer, position: int) -> None:
        image = self.request.assets.get(layer.variant)
        if image is None:
            logger.warning("No %s asset available (layer %d); skipping", layer.variant, position)
            return
        box = layer_box(layer)
        if layer.background:
            draw = ImageDraw.Draw(surface)
            left, top, right, bottom = box.to_pixels()
            draw.rectangle([left, top, right - 1, bottom - 1], fill=self._rgba(layer.background))
        inner = box.inset(layer.padding)
        draw_image_fitted(surface, image, inner, layer.fit, layer.border_radius)

    def _draw_accent_bar(self, surface: Image.Image, layer: AccentBarLayer) -> None:
        draw = ImageDraw.Draw(surface)
        left, top, right, bottom = layer_box(layer).to_pixels()
        draw.rectangle([left, top, right - 1, bottom - 1], fill=self._rgba(layer.color))

    def _user_image(self, index: int) -> Optional[Image.Image]:
        images = self.request.user_images
        if 0 <= index < len(images):
            return images[index]
        return None


# ---------- Public API ----------

def render_frame(
    template: Template,
    variables: RenderVariables,
    user_images: Optional[List[Image.Image]] = None,
    assets: Optional[Mapping[str, Image.Image]] = None,
    frame_index: int = 0,
) -> bytes:
    """Render one frame of a template to PNG bytes."""
    request = FrameRenderRequest(
        template=template,
        variables=variables,
        user_images=list(user_images or []),
        assets=dict(assets or {}),
        frame_index=frame_index,
    )
    return TemplateEngine(request).render()
