"""
Pydantic models for template documents.

Backgrounds and layers are discriminated on ``type``; any unknown or invalid
shape rejects the whole document.
"""

from __future__ import annotations

import json
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator


class TemplateValidationError(Exception): ...


_OUTPUT_ALIASES = {"png": "still", "mp4": "video"}

# Slideshow timing used when a frame or template leaves it unset.
DEFAULT_FRAME_MS = 3000
DEFAULT_TRANSITION_MS = 800


class _Model(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, populate_by_name=True)


# ---------- Backgrounds ----------

class SolidBackground(_Model):
    type: Literal["solid"]
    color: str


class GradientBackground(_Model):
    type: Literal["gradient"]
    colors: List[str] = Field(min_length=2)
    angle: float = 0


class ImageBackground(_Model):
    type: Literal["image"]
    source: Literal["user_image"] = "user_image"
    index: int = Field(ge=0)


Background = Annotated[
    Union[SolidBackground, GradientBackground, ImageBackground],
    Field(discriminator="type"),
]


# ---------- Layers ----------

class BaseLayer(_Model):
    x: float
    y: float
    width: float = Field(gt=0)
    height: float = Field(gt=0)
    anchor: Literal["top-left", "center", "bottom-left", "bottom-right"] = "top-left"
    opacity: Optional[float] = Field(default=None, ge=0, le=1)
    border_radius: float = Field(default=0, ge=0, alias="borderRadius")
    visible: bool = True

    @model_validator(mode="after")
    def _radius_fits_box(self):
        if self.border_radius > min(self.width, self.height) / 2:
            raise ValueError("borderRadius must not exceed half of the smaller side")
        return self


class ShadowSpec(_Model):
    blur: float = Field(ge=0)
    offset_x: float = Field(alias="offsetX")
    offset_y: float = Field(alias="offsetY")
    color: str


class StrokeSpec(_Model):
    color: str
    width: float = Field(gt=0)


class ImageLayer(BaseLayer):
    type: Literal["image"]
    source: Literal["user_image"] = "user_image"
    index: int = Field(ge=0)
    fit: Literal["cover", "contain", "fill"] = "cover"
    shadow: Optional[ShadowSpec] = None


class TextLayer(BaseLayer):
    type: Literal["text"]
    content: str
    font_family: str = Field(alias="fontFamily")
    font_size: float = Field(gt=0, alias="fontSize")
    font_weight: Literal["regular", "medium", "semibold", "bold"] = Field(default="regular", alias="fontWeight")
    color: str
    align: Literal["left", "center", "right"] = "left"
    vertical_align: Literal["top", "middle", "bottom"] = Field(default="top", alias="verticalAlign")
    max_lines: Optional[int] = Field(default=None, ge=1, alias="maxLines")
    line_height: float = Field(default=1.3, gt=0, alias="lineHeight")
    text_transform: Literal["uppercase", "lowercase", "none"] = Field(default="none", alias="textTransform")
    padding: float = Field(default=0, ge=0)
    letter_spacing: Optional[float] = Field(default=None, alias="letterSpacing")


class RectLayer(BaseLayer):
    type: Literal["rect"]
    fill: str
    stroke: Optional[StrokeSpec] = None


class LogoLayer(BaseLayer):
    type: Literal["logo"]
    fit: Literal["contain", "cover"] = "contain"
    padding: float = Field(default=0, ge=0)
    background: Optional[str] = None

    @property
    def variant(self) -> str:
        return "logo"


class CtaImageLayer(BaseLayer):
    type: Literal["cta_image"]
    variant: Literal["square", "landscape"]
    fit: Literal["contain", "cover"] = "contain"
    padding: float = Field(default=0, ge=0)
    background: Optional[str] = None


class AccentBarLayer(BaseLayer):
    type: Literal["accent_bar"]
    color: str


Layer = Annotated[
    Union[ImageLayer, TextLayer, RectLayer, LogoLayer, CtaImageLayer, AccentBarLayer],
    Field(discriminator="type"),
]

AssetLayer = Union[LogoLayer, CtaImageLayer]


# ---------- Template ----------

class Frame(_Model):
    duration_ms: Optional[float] = Field(default=None, gt=0, alias="durationMs")
    background: Background
    layers: List[Layer] = Field(default_factory=list)


class Transition(_Model):
    type: Literal["fade", "slide_left", "slide_right", "zoom", "crossfade"] = "fade"
    duration_ms: float = Field(gt=0, alias="durationMs")


class Template(_Model):
    id: str = Field(min_length=1)
    name: str
    reference: Optional[str] = None
    output_format: Literal["still", "video"] = Field(alias="outputFormat")
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    image_count: int = Field(ge=0, alias="imageCount")
    category_keys: List[str] = Field(default_factory=list, alias="categoryKeys")
    fps: Optional[float] = Field(default=None, gt=0)
    duration: Optional[float] = None
    frames: List[Frame] = Field(min_length=1)
    transition: Optional[Transition] = None

    @field_validator("output_format", mode="before")
    @classmethod
    def _normalize_output(cls, value: Any) -> Any:
        if isinstance(value, str):
            return _OUTPUT_ALIASES.get(value, value)
        return value

    @model_validator(mode="after")
    def _video_needs_frames(self):
        if self.output_format != "video":
            return self
        if len(self.frames) < 2:
            raise ValueError("video templates require at least 2 frames")
        transition_ms = self.transition.duration_ms if self.transition else DEFAULT_TRANSITION_MS
        for index, frame in enumerate(self.frames[:-1]):
            hold_ms = frame.duration_ms or DEFAULT_FRAME_MS
            if hold_ms <= transition_ms:
                raise ValueError(
                    f"frame {index} holds {hold_ms:g}ms, which must exceed the {transition_ms:g}ms transition"
                )
        return self

    @property
    def is_video(self) -> bool:
        return self.output_format == "video"

    def to_json(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


def _format_errors(exc: ValidationError) -> str:
    parts = []
    for err in exc.errors()[:5]:
        loc = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{loc or '<root>'}: {err.get('msg')}")
    more = len(exc.errors()) - len(parts)
    if more > 0:
        parts.append(f"... and {more} more")
    return "; ".join(parts)


def parse_template(payload: Union[str, bytes, Dict[str, Any]]) -> Template:
    """Validate a template document (JSON text or decoded dict)."""
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as exc:
            raise TemplateValidationError(f"template is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise TemplateValidationError("template must be a JSON object")
    try:
        return Template.model_validate(payload)
    except ValidationError as exc:
        tid = payload.get("id", "<unknown>")
        raise TemplateValidationError(f"invalid template '{tid}': {_format_errors(exc)}") from exc
