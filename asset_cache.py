"""
asset_cache.py - fetch, normalise and decode remote images with a bounded cache.

Eviction is strict insertion order: when the cache is full the oldest inserted
URL is dropped before the new one is stored. Cache hits do not refresh an
entry's position.
"""

from __future__ import annotations

import io
import logging
import os
import subprocess
import tempfile
import threading
from collections import deque
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Deque, Dict, Iterable, Optional, Tuple

import requests
from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

ASSET_CACHE_SIZE = int(os.getenv("ASSET_CACHE_SIZE", "100"))
ASSET_FETCH_TIMEOUT = float(os.getenv("ASSET_FETCH_TIMEOUT", "20"))
ASSET_FETCH_WORKERS = int(os.getenv("ASSET_FETCH_WORKERS", "8"))
FFMPEG_BIN = os.getenv("FFMPEG_BIN", "ffmpeg")

USER_AGENT = "RenderEngine/1.0"

HEIF_CONTENT_TYPES = {"image/heic", "image/heif", "image/heic-sequence", "image/heif-sequence"}
HEIF_BRANDS = {b"heic", b"heix", b"hevc", b"hevx", b"heim", b"heis", b"hevm", b"hevs", b"mif1", b"msf1"}

# (body, content_type)
Fetcher = Callable[[str], Tuple[bytes, str]]


class AssetError(Exception): ...


def http_fetch(url: str) -> Tuple[bytes, str]:
    try:
        resp = requests.get(url, headers={"User-Agent": USER_AGENT}, timeout=ASSET_FETCH_TIMEOUT)
        resp.raise_for_status()
    except requests.RequestException as exc:
        raise AssetError(f"Failed to fetch image {url}: {exc}") from exc
    return resp.content, resp.headers.get("Content-Type", "")


def is_heif(data: bytes, content_type: str = "") -> bool:
    """HEIC/HEIF by declared type or by the ISO-BMFF ftyp brand."""
    declared = (content_type or "").split(";")[0].strip().lower()
    if declared in HEIF_CONTENT_TYPES:
        return True
    return len(data) >= 12 and data[4:8] == b"ftyp" and data[8:12] in HEIF_BRANDS


def transcode_to_png(data: bytes, suffix: str = ".heic") -> bytes:
    with tempfile.TemporaryDirectory(prefix="asset-") as tmp:
        src = Path(tmp) / f"source{suffix}"
        src.write_bytes(data)
        cmd = [
            FFMPEG_BIN, "-hide_banner", "-loglevel", "error",
            "-i", str(src),
            "-frames:v", "1",
            "-f", "image2pipe", "-vcodec", "png", "pipe:1",
        ]
        try:
            proc = subprocess.run(cmd, capture_output=True, timeout=60)
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise AssetError(f"transcode failed: {exc}") from exc
    if proc.returncode != 0 or not proc.stdout:
        stderr = proc.stderr.decode("utf-8", errors="ignore").strip()
        raise AssetError(f"transcode failed (code {proc.returncode}): {stderr}")
    return proc.stdout


def decode_image(data: bytes, content_type: str = "") -> Image.Image:
    if is_heif(data, content_type):
        data = transcode_to_png(data)
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise AssetError(f"Failed to decode image: {exc}") from exc
    return image.convert("RGBA")


class AssetCache:
    """Thread-safe URL -> decoded image cache with a fixed capacity."""

    def __init__(self, capacity: int = ASSET_CACHE_SIZE, fetcher: Optional[Fetcher] = None):
        if capacity < 1:
            raise ValueError("capacity must be >= 1")
        self.capacity = capacity
        self._fetch = fetcher or http_fetch
        self._entries: Dict[str, Image.Image] = {}
        self._order: Deque[str] = deque()
        self._lock = threading.Lock()
        self._key_locks: Dict[str, threading.Lock] = {}

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, url: str) -> bool:
        with self._lock:
            return url in self._entries

    def peek(self, url: str) -> Optional[Image.Image]:
        with self._lock:
            return self._entries.get(url)

    def _key_lock(self, url: str) -> threading.Lock:
        with self._lock:
            lock = self._key_locks.get(url)
            if lock is None:
                lock = self._key_locks[url] = threading.Lock()
            return lock

    def _store(self, url: str, image: Image.Image) -> None:
        with self._lock:
            if url in self._entries:
                self._entries[url] = image
                return
            while len(self._order) >= self.capacity:
                oldest = self._order.popleft()
                self._entries.pop(oldest, None)
                self._key_locks.pop(oldest, None)
                logger.debug("Evicted %s from asset cache", oldest)
            self._order.append(url)
            self._entries[url] = image

    def get(self, url: str) -> Image.Image:
        cached = self.peek(url)
        if cached is not None:
            return cached
        key_lock = self._key_lock(url)
        stored = False
        try:
            with key_lock:
                # another caller may have filled it while we waited
                cached = self.peek(url)
                if cached is not None:
                    stored = True
                    return cached
                data, content_type = self._fetch(url)
                image = decode_image(data, content_type)
                self._store(url, image)
                stored = True
                return image
        finally:
            if not stored:
                self._drop_key_lock(url, key_lock)

    def _drop_key_lock(self, url: str, lock: threading.Lock) -> None:
        with self._lock:
            if self._key_locks.get(url) is lock:
                del self._key_locks[url]

    def get_all(self, urls: Iterable[str], max_workers: int = ASSET_FETCH_WORKERS) -> Dict[str, Image.Image]:
        """Fetch every URL concurrently; failures are logged and left out of the result."""
        unique = [u for u in dict.fromkeys(urls) if u]
        results: Dict[str, Image.Image] = {}
        if not unique:
            return results
        with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(unique)))) as executor:
            future_to_url = {executor.submit(self.get, url): url for url in unique}
            for future in as_completed(future_to_url):
                url = future_to_url[future]
                try:
                    results[url] = future.result()
                except Exception as exc:
                    logger.warning("Failed to load image %s: %s", url, exc)
        return results

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._order.clear()
            self._key_locks.clear()


_default_cache: Optional[AssetCache] = None
_default_lock = threading.Lock()


def default_cache() -> AssetCache:
    global _default_cache
    with _default_lock:
        if _default_cache is None:
            _default_cache = AssetCache()
        return _default_cache
