# api/template_registry.py
"""
Template catalog.

Two sources feed the catalog:
- built-in templates, one JSON document per file under TEMPLATE_DIR
- managed templates, loaded from the record store on refresh

Every refresh builds a new immutable CatalogSnapshot and swaps it in under a
lock, so readers always see one whole catalog.
"""
from __future__ import annotations

import json
import logging
import os
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .template_schema import Template, TemplateValidationError, parse_template
from template_selection import STILL, VIDEO, TemplateWithMeta, build_pool

logger = logging.getLogger(__name__)

TEMPLATES_ROOT = Path(__file__).resolve().parent.parent / "templates" / "builtin"
TEMPLATE_DIR = Path(os.getenv("TEMPLATE_DIR", str(TEMPLATES_ROOT)))

# External template record ids that stand for a built-in layout.
AIRTABLE_TO_BUILTIN: Dict[str, str] = {
    "rec1S46CH1YGXZTK7": "main-2-image",
    "rec4bqtFERB8S1u7u": "before-after",
    "recEI3fjr6S9itCwZ": "before-after",
    "recu9Fo6bSoJADZoa": "main-1-image",
}

# () -> [{"id": record_id, "fields": {...}}, ...]
RecordLoader = Callable[[], Iterable[Mapping[str, Any]]]


class TemplateNotFound(Exception): ...


@dataclass(frozen=True)
class CatalogSnapshot:
    builtins: Mapping[str, Template] = field(default_factory=lambda: MappingProxyType({}))
    managed: Tuple[TemplateWithMeta, ...] = ()
    loaded_at: float = 0.0

    def by_record_id(self, record_id: str) -> Optional[TemplateWithMeta]:
        for entry in self.managed:
            if entry.record_id == record_id:
                return entry
        return None

    def managed_by_template_id(self, template_id: str) -> Optional[TemplateWithMeta]:
        for entry in self.managed:
            if entry.template.id == template_id:
                return entry
        return None


_lock = threading.Lock()
_snapshot: Optional[CatalogSnapshot] = None


# ---------- Built-ins ----------

def load_builtins(root: Path = None) -> Dict[str, Template]:
    root = Path(root or TEMPLATE_DIR)
    templates: Dict[str, Template] = {}
    if not root.exists():
        logger.warning("Built-in template dir %s does not exist", root)
        return templates
    for path in sorted(root.glob("*.json")):
        try:
            template = parse_template(path.read_text(encoding="utf-8"))
        except (OSError, TemplateValidationError) as exc:
            # Skip bad templates; keep the rest usable
            logger.warning("Skipping built-in %s: %s", path.name, exc)
            continue
        templates[template.id] = template
    logger.info("Loaded %d built-in templates from %s", len(templates), root)
    return templates


def _loaded() -> CatalogSnapshot:
    # caller holds _lock
    global _snapshot
    if _snapshot is None:
        _snapshot = CatalogSnapshot(builtins=MappingProxyType(load_builtins()), loaded_at=time.time())
    return _snapshot


def _current() -> CatalogSnapshot:
    with _lock:
        return _loaded()


def _publish(snapshot: Optional[CatalogSnapshot]) -> None:
    global _snapshot
    with _lock:
        _snapshot = snapshot


def _publish_managed(entries: Sequence[TemplateWithMeta]) -> CatalogSnapshot:
    """Swap in a new managed set on top of the latest published built-ins."""
    global _snapshot
    with _lock:
        _snapshot = CatalogSnapshot(builtins=_loaded().builtins, managed=tuple(entries), loaded_at=time.time())
        return _snapshot


def _publish_builtin(template: Template) -> CatalogSnapshot:
    """Add one template to the latest published built-ins, keeping the managed set."""
    global _snapshot
    with _lock:
        current = _loaded()
        builtins = dict(current.builtins)
        builtins[template.id] = template
        _snapshot = CatalogSnapshot(builtins=MappingProxyType(builtins), managed=current.managed, loaded_at=time.time())
        return _snapshot


def snapshot() -> CatalogSnapshot:
    return _current()


# ---------- Managed catalog ----------

def _as_list(value: Any) -> Tuple[str, ...]:
    if not value:
        return ()
    if isinstance(value, str):
        return tuple(v.strip() for v in value.split(",") if v.strip())
    return tuple(str(v) for v in value if v)


def _weight(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 1.0


def managed_entry(record: Mapping[str, Any], builtins: Mapping[str, Template]) -> Optional[TemplateWithMeta]:
    """Turn one template record into a catalog entry; None for inactive records."""
    record_id = record.get("id")
    fields = record.get("fields") or {}
    if not record_id:
        raise TemplateValidationError("template record has no id")
    if not fields.get("template_active"):
        return None

    raw = fields.get("template_json")
    builtin_id = fields.get("builtin_id") or AIRTABLE_TO_BUILTIN.get(record_id)
    if raw:
        template = parse_template(raw)
    elif builtin_id and builtin_id in builtins:
        template = builtins[builtin_id]
    else:
        raise TemplateValidationError(f"record {record_id} has neither template_json nor a known builtin_id")

    categories = _as_list(fields.get("category_keys")) or tuple(template.category_keys)
    return TemplateWithMeta(
        template=template,
        record_id=record_id,
        rotation_weight=_weight(fields.get("rotation_weight", 1)),
        category_keys=categories,
    )


def refresh(loader: Optional[RecordLoader] = None) -> int:
    """Reload managed templates and publish a new snapshot. Returns the managed count."""
    if loader is None:
        from . import records

        loader = records.list_template_records

    current = _current()
    started = time.monotonic()
    entries: List[TemplateWithMeta] = []
    for record in loader():
        try:
            entry = managed_entry(record, current.builtins)
        except TemplateValidationError as exc:
            logger.warning("Skipping template record %s: %s", record.get("id"), exc)
            continue
        if entry is not None:
            entries.append(entry)

    _publish_managed(entries)
    logger.info("Catalog refreshed: %d managed templates in %.2fs", len(entries), time.monotonic() - started)
    return len(entries)


def start_background_refresh(interval: float, loader: Optional[RecordLoader] = None) -> threading.Event:
    """Refresh every ``interval`` seconds on a daemon thread; set the returned event to stop."""
    stop = threading.Event()

    def _loop() -> None:
        while not stop.wait(interval):
            try:
                refresh(loader)
            except Exception as exc:
                logger.warning("Background catalog refresh failed: %s", exc)

    threading.Thread(target=_loop, name="template-refresh", daemon=True).start()
    return stop


# ---------- Lookups ----------

def get_template(template_id: str) -> Template:
    snap = _current()
    template = snap.builtins.get(template_id)
    if template is not None:
        return template
    entry = snap.managed_by_template_id(template_id)
    if entry is not None:
        return entry.template
    raise TemplateNotFound(f"template '{template_id}' not found")


def find_template(template_id: str) -> Optional[Template]:
    try:
        return get_template(template_id)
    except TemplateNotFound:
        return None


def get_by_record_id(record_id: str) -> Template:
    snap = _current()
    builtin_id = AIRTABLE_TO_BUILTIN.get(record_id)
    if builtin_id and builtin_id in snap.builtins:
        return snap.builtins[builtin_id]
    entry = snap.by_record_id(record_id)
    if entry is not None:
        return entry.template
    raise TemplateNotFound(f"no template for record '{record_id}'")


def list_templates() -> List[Template]:
    snap = _current()
    seen = dict(snap.builtins)
    for entry in snap.managed:
        seen.setdefault(entry.template.id, entry.template)
    return list(seen.values())


def list_managed() -> Tuple[TemplateWithMeta, ...]:
    return _current().managed


def rotation_pool(kind: str, image_count: int, category_keys: Optional[Sequence[str]] = None) -> List[TemplateWithMeta]:
    if kind not in (STILL, VIDEO):
        raise ValueError(f"unknown output kind '{kind}'")
    return build_pool(_current().managed, kind, image_count, category_keys)


def save_template(payload: Any) -> Template:
    """Validate a template document and add it to the built-in overlay."""
    template = payload if isinstance(payload, Template) else parse_template(payload)
    _publish_builtin(template)
    logger.info("Saved template '%s'", template.id)
    return template


def reset() -> None:
    """Drop the current snapshot; the next lookup reloads built-ins from disk."""
    _publish(None)
