"""
FastAPI application exposing the render engine.
"""

from __future__ import annotations

import logging
import os
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent
load_dotenv(BASE_DIR / ".env")

from fastapi import APIRouter, Body, Depends, FastAPI, Header, HTTPException, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from . import records, tasks, template_registry
from .template_schema import TemplateValidationError

logger = logging.getLogger(__name__)

API_PREFIX = "/api"
API_KEY = os.getenv("API_KEY")
TEMPLATE_REFRESH_SECONDS = float(os.getenv("TEMPLATE_REFRESH_SECONDS", "300"))


def verify_api_key(x_api_key: Optional[str] = Header(default=None)) -> None:
    if API_KEY and x_api_key != API_KEY:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid API key")


router = APIRouter(prefix=API_PREFIX, dependencies=[Depends(verify_api_key)])


class RenderRequest(BaseModel):
    record_id: Optional[str] = Field(default=None, alias="recordId")
    template_id: Optional[str] = Field(default=None, alias="templateId")


class PreviewRequest(BaseModel):
    template_id: Optional[str] = Field(default=None, alias="templateId")
    variables: Dict[str, Any] = Field(default_factory=dict)


def _summary(template) -> Dict[str, Any]:
    return {
        "id": template.id,
        "name": template.name,
        "outputFormat": template.output_format,
        "imageCount": template.image_count,
    }


def _managed_view(entry) -> Dict[str, Any]:
    return {
        "templateId": entry.template.id,
        "recordId": entry.record_id,
        "name": entry.template.name,
        "outputFormat": entry.template.output_format,
        "imageCount": entry.template.image_count,
        "rotationWeight": entry.rotation_weight,
        "categoryKeys": list(entry.category_keys),
    }


# ---------- Render ----------

@router.post("/render/sync")
async def render_sync(body: RenderRequest) -> JSONResponse:
    if not body.record_id:
        return JSONResponse({"success": False, "error": "recordId is required"}, status_code=400)
    result = await run_in_threadpool(tasks.render_job, body.record_id, body.template_id)
    if result.not_found:
        code = 404
    elif result.success:
        code = 200
    else:
        code = 500
    return JSONResponse(result.to_dict(), status_code=code)


@router.post("/preview")
async def preview(body: PreviewRequest) -> JSONResponse:
    if not body.template_id:
        raise HTTPException(status_code=400, detail="templateId is required")
    try:
        payload = await run_in_threadpool(tasks.render_preview, body.template_id, body.variables)
    except template_registry.TemplateNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return JSONResponse(payload)


# ---------- Templates ----------

@router.get("/templates")
async def list_templates() -> JSONResponse:
    return JSONResponse({"templates": [_summary(t) for t in template_registry.list_templates()]})


@router.get("/templates/managed")
async def list_managed() -> JSONResponse:
    entries = template_registry.list_managed()
    return JSONResponse({"count": len(entries), "templates": [_managed_view(m) for m in entries]})


@router.get("/templates/rotation-pool")
async def rotation_pool(format: str = "still", imageCount: int = 2, category: Optional[str] = None) -> JSONResponse:
    kind = "video" if format in ("video", "mp4") else "still"
    categories = [category] if category else None
    pool = template_registry.rotation_pool(kind, imageCount, categories)
    return JSONResponse({
        "format": kind,
        "imageCount": imageCount,
        "categoryKeys": categories,
        "poolSize": len(pool),
        "templates": [_managed_view(m) for m in pool],
    })


@router.post("/templates/sync")
async def sync_templates() -> JSONResponse:
    try:
        count = await run_in_threadpool(template_registry.refresh)
    except records.RecordStoreError as exc:
        return JSONResponse({"success": False, "error": str(exc)}, status_code=500)
    return JSONResponse({"success": True, "syncedTemplates": count})


@router.get("/templates/{template_id}")
async def get_template(template_id: str) -> JSONResponse:
    try:
        template = template_registry.get_template(template_id)
    except template_registry.TemplateNotFound as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc)) from exc
    return JSONResponse(template.to_json())


@router.post("/templates")
async def save_template(payload: Dict[str, Any] = Body(...)) -> JSONResponse:
    try:
        template = template_registry.save_template(payload)
    except TemplateValidationError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return JSONResponse({"success": True, "id": template.id})


# ---------- App ----------

@asynccontextmanager
async def lifespan(_app: FastAPI):
    template_registry.snapshot()
    stop = None
    if records.AIRTABLE_TOKEN and records.AIRTABLE_BASE_ID:
        try:
            await run_in_threadpool(template_registry.refresh)
        except records.RecordStoreError as exc:
            logger.warning("Initial catalog refresh failed: %s", exc)
        if TEMPLATE_REFRESH_SECONDS > 0:
            stop = template_registry.start_background_refresh(TEMPLATE_REFRESH_SECONDS)
    else:
        logger.info("Record store not configured; serving built-in templates only")
    yield
    if stop is not None:
        stop.set()


APP = FastAPI(title="Render Engine", version="1.0.0", lifespan=lifespan)

APP.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)


@APP.get("/health")
async def health() -> JSONResponse:
    snap = template_registry.snapshot()
    return JSONResponse({"status": "ok", "builtinTemplates": len(snap.builtins), "managedTemplates": len(snap.managed)})


APP.include_router(router)

__all__ = ["APP"]


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="[%(name)s] %(levelname)s %(message)s")
    uvicorn.run(APP, host=os.getenv("HOST", "0.0.0.0"), port=int(os.getenv("PORT", "8000")))
