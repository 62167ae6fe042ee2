"""
Record-store client (Airtable REST API).

Reads render jobs from the post builder table, writes render results back,
lists template records for the managed catalog and keeps each company's
template rotation state as a JSON blob on its company record.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

import requests

from variables import RenderVariables

logger = logging.getLogger(__name__)

AIRTABLE_API_URL = "https://api.airtable.com/v0"
AIRTABLE_TOKEN = os.getenv("AIRTABLE_TOKEN", "")
AIRTABLE_BASE_ID = os.getenv("AIRTABLE_BASE_ID", "")
POST_BUILDER_TABLE = os.getenv("POST_BUILDER_TABLE", "post_builder")
TEMPLATES_TABLE = os.getenv("TEMPLATES_TABLE", "templates")
COMPANIES_TABLE = os.getenv("COMPANIES_TABLE", "companies")
AIRTABLE_TIMEOUT = float(os.getenv("AIRTABLE_TIMEOUT", "15"))

ROTATION_STATE_FIELD = "template_rotation_state"
USER_IMAGE_FIELDS = [f"user_image_{i}_square" for i in range(1, 9)]

DEFAULT_TITLE = "Untitled"
DEFAULT_PRIMARY = "#235BAA"
DEFAULT_SECONDARY = "#4582D0"


class RecordStoreError(Exception): ...


def _headers() -> Dict[str, str]:
    return {"Authorization": f"Bearer {AIRTABLE_TOKEN}", "Content-Type": "application/json"}


def _request(method: str, path: str, **kwargs) -> Dict[str, Any]:
    if not AIRTABLE_TOKEN or not AIRTABLE_BASE_ID:
        raise RecordStoreError("AIRTABLE_TOKEN and AIRTABLE_BASE_ID must be set")
    url = f"{AIRTABLE_API_URL}/{AIRTABLE_BASE_ID}/{path}"
    try:
        response = requests.request(method, url, headers=_headers(), timeout=AIRTABLE_TIMEOUT, **kwargs)
    except requests.RequestException as exc:
        raise RecordStoreError(f"Airtable request failed: {exc}") from exc

    if response.status_code >= 400:
        logger.warning("Airtable %s %s status=%s body=%r", method, path, response.status_code, response.text[:400])
        raise RecordStoreError(f"Airtable API error {response.status_code}: {response.text[:400]}")
    try:
        return response.json()
    except ValueError as exc:
        raise RecordStoreError(f"Airtable returned invalid JSON: {exc}") from exc


# ---------- Field helpers ----------

def attachment_url(value: Any) -> str:
    """First URL of an attachment (or lookup-of-attachment) field."""
    if not value or not isinstance(value, list):
        return ""
    first = value[0]
    if isinstance(first, list):
        return attachment_url(first)
    if isinstance(first, dict):
        return first.get("url") or first.get("thumbnails", {}).get("full", {}).get("url", "")
    return ""


def text_value(value: Any) -> str:
    """Plain text from a text field or the first item of a lookup."""
    if value is None or value == "":
        return ""
    if isinstance(value, list):
        return str(value[0]) if value else ""
    return str(value)


def flag(value: Any) -> bool:
    if isinstance(value, list):
        return any(bool(v) for v in value)
    return bool(value)


# ---------- Jobs ----------

@dataclass(frozen=True)
class JobRecord:
    record_id: str
    title: str = DEFAULT_TITLE
    subtitle: str = ""
    body: str = ""
    primary_colour: str = DEFAULT_PRIMARY
    secondary_colour: str = DEFAULT_SECONDARY
    logo_url: str = ""
    user_images: Tuple[str, ...] = field(default_factory=tuple)
    phone: str = ""
    service_areas: str = ""
    company_name: str = ""
    website: str = ""
    square_cta_image_url: str = ""
    landscape_cta_image_url: str = ""
    template_ref: Optional[str] = None
    output_format: str = "still"
    post_type: Optional[str] = None
    post_category_key: Optional[str] = None
    company_id: Optional[str] = None
    is_text_only: bool = False
    upload_as_gallery: bool = False
    is_user_uploaded_video: bool = False

    def to_variables(self) -> RenderVariables:
        return RenderVariables(
            title=self.title,
            subtitle=self.subtitle,
            body=self.body,
            phone=self.phone,
            service_areas=self.service_areas,
            primary_colour=self.primary_colour,
            secondary_colour=self.secondary_colour,
            company_name=self.company_name,
            website=self.website,
            logo_url=self.logo_url,
            user_images=self.user_images,
            square_cta_image_url=self.square_cta_image_url,
            landscape_cta_image_url=self.landscape_cta_image_url,
        )


def parse_job_record(data: Mapping[str, Any]) -> JobRecord:
    record_id = data.get("id")
    if not record_id:
        raise RecordStoreError("record payload has no id")
    f = data.get("fields") or {}

    images = tuple(url for url in (attachment_url(f.get(name)) for name in USER_IMAGE_FIELDS) if url)
    template_field = f.get("template_id")
    template_ref = None
    if isinstance(template_field, list) and template_field:
        template_ref = str(template_field[0])
    elif isinstance(template_field, str) and template_field:
        template_ref = template_field

    output_format = text_value(f.get("output_format")).lower() or "still"
    company = f.get("company")
    return JobRecord(
        record_id=record_id,
        title=text_value(f.get("content_title")) or DEFAULT_TITLE,
        subtitle=text_value(f.get("content_subtitle")),
        body=text_value(f.get("content_body")),
        primary_colour=text_value(f.get("primary_colour")) or DEFAULT_PRIMARY,
        secondary_colour=text_value(f.get("secondary_colour")) or DEFAULT_SECONDARY,
        logo_url=attachment_url(f.get("logo")),
        user_images=images,
        phone=text_value(f.get("phone")),
        service_areas=text_value(f.get("service_areas")),
        company_name=text_value(f.get("company_name")),
        website=text_value(f.get("website")),
        square_cta_image_url=attachment_url(f.get("square_cta_image")),
        landscape_cta_image_url=attachment_url(f.get("landscape_cta_image")),
        template_ref=template_ref,
        output_format={"png": "still", "mp4": "video"}.get(output_format, output_format),
        post_type=text_value(f.get("post_type")) or None,
        post_category_key=text_value(f.get("post_category_key")) or None,
        company_id=text_value(company) or None,
        is_text_only=flag(f.get("is_text_only")),
        upload_as_gallery=flag(f.get("upload_as_gallery")),
        is_user_uploaded_video=flag(f.get("is_user_uploaded_video")),
    )


def get_job_record(record_id: str) -> JobRecord:
    return parse_job_record(_request("GET", f"{POST_BUILDER_TABLE}/{record_id}"))


def update_render_result(record_id: str, status: str, output_url: str = "", error: Optional[str] = None) -> None:
    fields: Dict[str, Any] = {
        "render_status": "completed" if status == "completed" else f"failed: {error or 'unknown'}",
        "final_output_url": output_url or "",
    }
    if output_url:
        fields["final_output"] = [{"url": output_url}]
    _request("PATCH", f"{POST_BUILDER_TABLE}/{record_id}", json={"fields": fields})
    logger.info("Record %s marked %s", record_id, status)


# ---------- Templates ----------

def iter_records(table: str, params: Optional[Dict[str, Any]] = None) -> Iterator[Dict[str, Any]]:
    """Walk every page of a table listing."""
    query = dict(params or {})
    while True:
        page = _request("GET", table, params=query)
        for record in page.get("records", []):
            yield record
        offset = page.get("offset")
        if not offset:
            return
        query["offset"] = offset


def list_template_records() -> List[Dict[str, Any]]:
    records = list(iter_records(TEMPLATES_TABLE))
    logger.info("Fetched %d template records", len(records))
    return records


# ---------- Rotation state ----------

class AirtableRotationStore:
    """Per-company rotation state kept as JSON text on the company record."""

    def __init__(self, table: str = COMPANIES_TABLE, field_name: str = ROTATION_STATE_FIELD):
        self.table = table
        self.field_name = field_name

    def get_rotation_state(self, company_id: str) -> Dict[str, Any]:
        data = _request("GET", f"{self.table}/{company_id}")
        raw = (data.get("fields") or {}).get(self.field_name)
        if not raw:
            return {}
        try:
            state = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("Ignoring unreadable rotation state on %s", company_id)
            return {}
        return state if isinstance(state, dict) else {}

    def set_rotation_state(self, company_id: str, state: Mapping[str, Any]) -> None:
        payload = {"fields": {self.field_name: json.dumps(state)}}
        _request("PATCH", f"{self.table}/{company_id}", json=payload)
