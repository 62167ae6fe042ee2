"""
Render job pipeline.

render_job() is the job boundary: whatever happens inside, the caller gets a
RenderResult back and never an exception.
"""

from __future__ import annotations

import base64
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Tuple

from PIL import Image

from asset_cache import AssetCache, default_cache
from template_engine import render_frame
from template_selection import TemplateSelector
from variables import RenderVariables
from video_assembler import render_video

from . import records, storage, template_registry
from .template_schema import Template

LOG = logging.getLogger(__name__)

SKIP_FLAGS = ("is_text_only", "upload_as_gallery", "is_user_uploaded_video")

SAMPLE_VARIABLES: Dict[str, Any] = {
    "title": "Professional Service Completed",
    "subtitle": "Quality workmanship delivered on time and within budget",
    "body": "Sample post body text for preview purposes.",
    "phone": "(021) 555-1234",
    "service_areas": "Cape Town • Northern Suburbs • Southern Suburbs",
    "primary_colour": "#235BAA",
    "secondary_colour": "#4582D0",
    "logo_url": "",
    "user_images": [],
    "company_name": "Sample Company",
    "website": "https://example.co.za",
}


@dataclass
class RenderResult:
    success: bool
    record_id: str
    output_url: Optional[str] = None
    output_format: Optional[str] = None
    template_used: Optional[str] = None
    render_time_ms: int = 0
    skipped: bool = False
    reason: Optional[str] = None
    error: Optional[str] = None
    not_found: bool = False

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"success": self.success}
        if self.skipped:
            payload.update(skipped=True, reason=self.reason)
            return payload
        if self.success:
            payload.update(
                outputUrl=self.output_url,
                outputFormat=self.output_format,
                templateUsed=self.template_used,
                renderTimeMs=self.render_time_ms,
            )
        else:
            payload["error"] = self.error
        return payload


def build_selector() -> TemplateSelector:
    return TemplateSelector(
        lookup=template_registry.find_template,
        managed=template_registry.list_managed,
        state_store=records.AirtableRotationStore(),
    )


def resolve_template(job: records.JobRecord, template_id: Optional[str] = None) -> Optional[Template]:
    """Explicit reference (record id, then built-in id) first, auto-selection otherwise."""
    ref = template_id or job.template_ref
    if ref:
        for lookup in (template_registry.get_by_record_id, template_registry.get_template):
            try:
                return lookup(ref)
            except template_registry.TemplateNotFound:
                continue
        LOG.info("Template reference %s for %s not found; auto-selecting", ref, job.record_id)

    image_count = len(job.user_images)
    prefer_video = job.output_format == "video" or job.post_type == "slideshow"
    categories = [job.post_category_key] if job.post_category_key else None
    template = build_selector().auto_select(
        image_count,
        job.record_id,
        category_filter=categories,
        prefer_video=prefer_video,
        post_type=job.post_type,
        tenant_id=job.company_id,
    )
    if template is not None:
        LOG.info(
            "Auto-selected template %s for %s (%d images, postType=%s, category=%s)",
            template.id, job.record_id, image_count, job.post_type or "none", job.post_category_key or "none",
        )
    return template


def load_images(
    user_image_urls: List[str],
    asset_urls: Mapping[str, str],
    cache: Optional[AssetCache] = None,
) -> Tuple[List[Image.Image], Dict[str, Image.Image]]:
    """Fetch user images and asset images in one concurrent batch.

    User images that fail to load are dropped and the survivors keep their
    relative order. Assets are keyed by variant (logo / square / landscape).
    """
    if cache is None:
        cache = default_cache()
    wanted = [u for u in user_image_urls if u] + [u for u in asset_urls.values() if u]
    loaded = cache.get_all(wanted)
    images = [loaded[u] for u in user_image_urls if u in loaded]
    assets = {variant: loaded[url] for variant, url in asset_urls.items() if url and url in loaded}
    return images, assets


def job_asset_urls(variables: RenderVariables) -> Dict[str, str]:
    return {
        "logo": variables.logo_url,
        "square": variables.square_cta_image_url,
        "landscape": variables.landscape_cta_image_url,
    }


def render_output(
    template: Template,
    variables: RenderVariables,
    images: List[Image.Image],
    assets: Mapping[str, Image.Image],
) -> Tuple[bytes, str]:
    if template.is_video:
        return render_video(template, variables, images, assets), "mp4"
    return render_frame(template, variables, images, assets), "png"


def _mark_failed(record_id: str, error: str) -> None:
    try:
        records.update_render_result(record_id, "failed", error=error)
    except Exception as exc:
        LOG.warning("Could not write failed status for %s: %s", record_id, exc)


def render_job(record_id: str, template_id: Optional[str] = None, cache: Optional[AssetCache] = None) -> RenderResult:
    started = time.monotonic()
    try:
        job = records.get_job_record(record_id)

        for name in SKIP_FLAGS:
            if getattr(job, name):
                LOG.info("Skipping %s: %s", record_id, name)
                return RenderResult(success=True, record_id=record_id, skipped=True, reason=name)

        template = resolve_template(job, template_id)
        if template is None:
            error = f"Template not found for ID: {template_id or job.template_ref}"
            _mark_failed(record_id, error)
            return RenderResult(success=False, record_id=record_id, error=error, not_found=True)

        variables = job.to_variables()
        images, assets = load_images(list(job.user_images), job_asset_urls(variables), cache)
        data, extension = render_output(template, variables, images, assets)

        key = storage.render_key(record_id, extension)
        output_url = storage.upload_render(data, key, storage.CONTENT_TYPES[extension])
        records.update_render_result(record_id, "completed", output_url=output_url)
    except Exception as exc:
        LOG.exception("Render failed for %s", record_id)
        _mark_failed(record_id, str(exc))
        return RenderResult(success=False, record_id=record_id, error=str(exc))

    elapsed_ms = int((time.monotonic() - started) * 1000)
    LOG.info("%s rendered with %s in %dms -> %s", record_id, template.id, elapsed_ms, output_url)
    return RenderResult(
        success=True,
        record_id=record_id,
        output_url=output_url,
        output_format=extension,
        template_used=template.id,
        render_time_ms=elapsed_ms,
    )


def render_preview(
    template_id: str,
    overrides: Optional[Mapping[str, Any]] = None,
    cache: Optional[AssetCache] = None,
) -> Dict[str, Any]:
    """Render frame 0 with sample content (plus overrides) as a PNG data URL."""
    template = template_registry.get_template(template_id)
    merged = {**SAMPLE_VARIABLES, **(overrides or {})}
    variables = RenderVariables.from_mapping(merged)
    images, assets = load_images(list(variables.user_images), job_asset_urls(variables), cache)
    png = render_frame(template, variables, images, assets)
    encoded = base64.b64encode(png).decode("ascii")
    return {
        "previewBase64": f"data:image/png;base64,{encoded}",
        "templateId": template.id,
        "width": template.width,
        "height": template.height,
    }
