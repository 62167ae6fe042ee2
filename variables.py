"""
variables.py - per-job render variables and {{placeholder}} resolution.
"""

from __future__ import annotations

import re
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Mapping, Tuple, Union

from PIL import ImageColor

DEFAULT_PRIMARY = "#235BAA"
DEFAULT_SECONDARY = "#FFFFFF"
MISSING_COLOR = "#000000"
LIST_SEPARATOR = ", "

_PLACEHOLDER_RE = re.compile(r"\{\{(\w+)\}\}")
_RGBA_FUNC_RE = re.compile(
    r"^rgba?\(\s*(\d+)\s*,\s*(\d+)\s*,\s*(\d+)\s*(?:,\s*([0-9.]+)\s*)?\)$", re.IGNORECASE
)


@dataclass(frozen=True)
class RenderVariables:
    title: str = ""
    subtitle: str = ""
    body: str = ""
    phone: str = ""
    service_areas: str = ""
    primary_colour: str = ""
    secondary_colour: str = ""
    company_name: str = ""
    website: str = ""
    logo_url: str = ""
    user_images: Tuple[str, ...] = field(default_factory=tuple)
    square_cta_image_url: str = ""
    landscape_cta_image_url: str = ""

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "RenderVariables":
        known = {f for f in cls.__dataclass_fields__}
        values = {k: v for k, v in data.items() if k in known and v is not None}
        if "user_images" in values:
            urls = values["user_images"]
            if isinstance(urls, str):
                urls = (urls,)
            values["user_images"] = tuple(u for u in urls if u)
        return cls(**values)

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


VariableSource = Union[RenderVariables, Mapping[str, Any]]


def _as_mapping(variables: VariableSource) -> Mapping[str, Any]:
    if isinstance(variables, RenderVariables):
        return variables.as_dict()
    return variables


def _stringify(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, (list, tuple)):
        return LIST_SEPARATOR.join(str(v) for v in value)
    return str(value)


def resolve_variables(text: str, variables: VariableSource) -> str:
    """Replace every {{name}} token in one pass; unknown names become ''."""
    if not text:
        return ""
    values = _as_mapping(variables)
    return _PLACEHOLDER_RE.sub(lambda m: _stringify(values.get(m.group(1))), text)


def build_color_variables(variables: VariableSource) -> Dict[str, str]:
    values = _as_mapping(variables)
    primary = values.get("primary_colour") or DEFAULT_PRIMARY
    secondary = values.get("secondary_colour") or DEFAULT_SECONDARY
    return {
        "primary_colour": primary,
        "secondary_colour": secondary,
        "primary_color": primary,
        "secondary_color": secondary,
    }


def resolve_color(value: str, color_vars: Mapping[str, str]) -> str:
    if value.startswith("{{") and value.endswith("}}"):
        key = value[2:-2].strip()
        return color_vars.get(key) or MISSING_COLOR
    if value.startswith("$"):
        return color_vars.get(value[1:]) or MISSING_COLOR
    return value


def to_rgba(color: str) -> Tuple[int, int, int, int]:
    """Parse a CSS-ish color string into an RGBA tuple.

    Accepts everything PIL's ImageColor understands plus ``rgba(r, g, b, a)``
    with a fractional alpha. Unparseable values raise ValueError.
    """
    match = _RGBA_FUNC_RE.match(color.strip())
    if match:
        r, g, b, a = match.groups()
        alpha = 255 if a is None else int(round(max(0.0, min(1.0, float(a))) * 255))
        return int(r), int(g), int(b), alpha
    rgb = ImageColor.getrgb(color.strip())
    if len(rgb) == 3:
        return rgb[0], rgb[1], rgb[2], 255
    return rgb  # type: ignore[return-value]
