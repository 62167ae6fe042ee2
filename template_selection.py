"""
template_selection.py - pick a template for a job.

Decision order for auto_select:
  1. before/after post type or category -> fixed before/after template
  2. slideshow post type, or video preferred with 3+ images -> fixed slideshow
  3. tenant rotation over the managed catalog (weighted round-robin)
  4. deterministic hash of the job id over a small built-in set

Rotation state is read, advanced and written back without locking. Two
concurrent renders for one tenant may repeat or skip a rotation step.
"""

from __future__ import annotations

import copy
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from api.template_schema import Template

logger = logging.getLogger(__name__)

STILL = "still"
VIDEO = "video"

BEFORE_AFTER_TEMPLATE_ID = "before-after"
SLIDESHOW_TEMPLATE_ID = "slideshow-base"
SINGLE_IMAGE_FALLBACK = "main-1-image"
TWO_IMAGE_FALLBACKS = ("main-2-image", "main-2-image-split")
MULTI_IMAGE_FALLBACKS = ("main-3-image", "main-3-image-grid", "main-3-image-stack")

BEFORE_AFTER_KEYS = {"before_after", "before-after"}
SLIDESHOW_POST_TYPE = "slideshow"
VIDEO_MIN_IMAGES = 3
MAX_POOL_COPIES = 10


@dataclass(frozen=True)
class TemplateWithMeta:
    template: Template
    record_id: str
    rotation_weight: float = 1
    category_keys: Tuple[str, ...] = field(default_factory=tuple)


RotationState = Dict[str, Dict[str, Any]]


def pool_copies(weight: float) -> int:
    """clamp(round(weight), 1, 10), rounding halves up."""
    return max(1, min(MAX_POOL_COPIES, int(math.floor(weight + 0.5))))


def build_pool(
    entries: Iterable[TemplateWithMeta],
    kind: str,
    image_count: int,
    category_filter: Optional[Sequence[str]] = None,
) -> List[TemplateWithMeta]:
    wanted = set(category_filter or ())
    eligible = [
        entry for entry in entries
        if entry.template.output_format == kind
        and entry.template.image_count <= image_count
        and (not wanted or wanted.intersection(entry.category_keys))
        and entry.rotation_weight > 0
    ]
    eligible.sort(key=lambda entry: entry.record_id)
    pool: List[TemplateWithMeta] = []
    for entry in eligible:
        pool.extend([entry] * pool_copies(entry.rotation_weight))
    return pool


def select_next(
    pool: Sequence[TemplateWithMeta],
    state: Optional[RotationState],
    kind: str,
) -> Tuple[Optional[TemplateWithMeta], RotationState]:
    """Advance state[kind].lastIndex by one modulo the pool size."""
    new_state: RotationState = copy.deepcopy(state) if state else {}
    if not pool:
        return None, new_state
    slot = new_state.get(kind) if isinstance(new_state.get(kind), dict) else {}
    last = slot.get("lastIndex", -1)
    if not isinstance(last, int):
        last = -1
    index = (last + 1) % len(pool)
    new_state[kind] = {**slot, "lastIndex": index}
    return pool[index], new_state


def hash_string(value: str) -> int:
    """32-bit rolling hash (h * 31 + code), signed wrap, absolute value."""
    h = 0
    for char in value:
        h = (h * 31 + ord(char)) & 0xFFFFFFFF
    if h >= 0x80000000:
        h -= 0x100000000
    return abs(h)


def fallback_template_id(image_count: int, job_id: str) -> str:
    if image_count <= 1:
        return SINGLE_IMAGE_FALLBACK
    choices = TWO_IMAGE_FALLBACKS if image_count == 2 else MULTI_IMAGE_FALLBACKS
    return choices[hash_string(job_id) % len(choices)]


class TemplateSelector:
    """Auto-selection over a template lookup, a managed catalog and a rotation store.

    ``lookup(id)`` returns a built-in template or None, ``managed()`` returns the
    current managed catalog, ``state_store`` exposes
    ``get_rotation_state(tenant_id)`` / ``set_rotation_state(tenant_id, state)``.
    """

    def __init__(
        self,
        lookup: Callable[[str], Optional[Template]],
        managed: Callable[[], Sequence[TemplateWithMeta]],
        state_store: Any = None,
    ):
        self.lookup = lookup
        self.managed = managed
        self.state_store = state_store

    def auto_select(
        self,
        image_count: int,
        job_id: str,
        category_filter: Optional[Sequence[str]] = None,
        prefer_video: bool = False,
        post_type: Optional[str] = None,
        tenant_id: Optional[str] = None,
    ) -> Optional[Template]:
        categories = list(category_filter or [])

        if post_type in BEFORE_AFTER_KEYS or BEFORE_AFTER_KEYS.intersection(categories):
            logger.info("Job %s: before/after routing", job_id)
            return self.lookup(BEFORE_AFTER_TEMPLATE_ID)

        wants_video = prefer_video and image_count >= VIDEO_MIN_IMAGES
        if post_type == SLIDESHOW_POST_TYPE or wants_video:
            logger.info("Job %s: slideshow routing (%d images)", job_id, image_count)
            return self.lookup(SLIDESHOW_TEMPLATE_ID)

        kind = VIDEO if wants_video else STILL
        if tenant_id:
            chosen = self._rotate(kind, image_count, categories, tenant_id)
            if chosen is not None:
                return chosen

        template_id = fallback_template_id(image_count, job_id)
        logger.info("Job %s: hash fallback -> %s", job_id, template_id)
        return self.lookup(template_id)

    def _rotate(self, kind: str, image_count: int, categories: List[str], tenant_id: str) -> Optional[Template]:
        pool = build_pool(self.managed(), kind, image_count, categories or None)
        if not pool:
            logger.info("Empty %s rotation pool for tenant %s (%d images)", kind, tenant_id, image_count)
            return None
        if self.state_store is None:
            return None
        try:
            state = self.state_store.get_rotation_state(tenant_id)
            chosen, new_state = select_next(pool, state, kind)
            self.state_store.set_rotation_state(tenant_id, new_state)
        except Exception as exc:
            logger.warning("Rotation state unavailable for tenant %s: %s", tenant_id, exc)
            return None
        if chosen is None:
            return None
        logger.info(
            "Tenant %s rotation -> %s (index %s of %d)",
            tenant_id, chosen.template.id, new_state[kind]["lastIndex"], len(pool),
        )
        return chosen.template
