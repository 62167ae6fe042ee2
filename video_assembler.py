"""
video_assembler.py - multi-frame slideshow encoding.

Every frame is rendered to a still PNG in a temp dir, then ffmpeg loops each
still for its hold duration and chains pairwise xfade transitions:

    [0:v][1:v]xfade=...:offset=o0[v1];[v1][2:v]xfade=...:offset=o1[v2];...

where offset_i = sum(hold[0..i]) - (i + 1) * transition, i.e. every transition
eats into the end of the hold before it.
"""

from __future__ import annotations

import logging
import os
import shlex
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Mapping, Optional, Sequence

from PIL import Image

from api.template_schema import DEFAULT_FRAME_MS, DEFAULT_TRANSITION_MS, Template
from template_engine import render_frame
from variables import RenderVariables

logger = logging.getLogger(__name__)

FFMPEG_BIN = os.getenv("FFMPEG_BIN", "ffmpeg")
ENCODER_TIMEOUT = float(os.getenv("ENCODER_TIMEOUT", "180"))

DEFAULT_FPS = 30
DEFAULT_TRANSITION = "fade"

SLIDESHOW_VIDEO_ENCODING = (
    "-c:v libx264 "
    "-preset fast "
    "-crf 23 "
    "-pix_fmt yuv420p "
    "-movflags +faststart"
)

TRANSITION_NAMES = {
    "fade": "fade",
    "crossfade": "fade",
    "slide_left": "slideleft",
    "slide_right": "slideright",
    "zoom": "smoothup",
}


class EncoderError(Exception): ...


@dataclass(frozen=True)
class SlideshowPlan:
    frame_durations: List[float]
    transition: str
    transition_duration: float
    fps: float
    width: int
    height: int


def _seconds(value: float) -> str:
    text = f"{value:.3f}".rstrip("0").rstrip(".")
    return text or "0"


def plan_slideshow(template: Template) -> SlideshowPlan:
    transition = template.transition
    transition_type = transition.type if transition else DEFAULT_TRANSITION
    transition_ms = transition.duration_ms if transition else DEFAULT_TRANSITION_MS
    return SlideshowPlan(
        frame_durations=[(f.duration_ms or DEFAULT_FRAME_MS) / 1000 for f in template.frames],
        transition=TRANSITION_NAMES.get(transition_type, "fade"),
        transition_duration=transition_ms / 1000,
        fps=template.fps or DEFAULT_FPS,
        width=template.width,
        height=template.height,
    )


def build_xfade_filter(
    frame_durations: Sequence[float],
    transition: str,
    transition_duration: float,
    width: Optional[int] = None,
    height: Optional[int] = None,
) -> str:
    """Chain N-1 xfade stages across N looped stills; the last stage is labelled [v]."""
    n = len(frame_durations)
    if n < 2:
        raise ValueError("a crossfade chain needs at least 2 frames")

    final_format = "format=yuv420p"
    if (width is not None and width % 2) or (height is not None and height % 2):
        final_format = "scale=trunc(iw/2)*2:trunc(ih/2)*2," + final_format

    steps: List[str] = []
    offset = 0.0
    for i in range(n - 1):
        if frame_durations[i] <= transition_duration:
            raise ValueError(f"frame {i} hold {frame_durations[i]:g}s does not exceed the {transition_duration:g}s transition")
        offset += frame_durations[i] - transition_duration
        left = "[0:v]" if i == 0 else f"[v{i}]"
        right = f"[{i + 1}:v]"
        last = i == n - 2
        out = "[v]" if last else f"[v{i + 1}]"
        suffix = f",{final_format}" if last else ""
        steps.append(
            f"{left}{right}xfade=transition={transition}"
            f":duration={_seconds(transition_duration)}"
            f":offset={_seconds(offset)}{suffix}{out}"
        )
    return ";".join(steps)


def build_ffmpeg_command(frame_paths: Sequence[Path], plan: SlideshowPlan, output_path: Path) -> List[str]:
    cmd = [FFMPEG_BIN, "-y", "-hide_banner", "-loglevel", "error"]
    for path, duration in zip(frame_paths, plan.frame_durations):
        cmd += ["-loop", "1", "-t", _seconds(duration), "-framerate", _seconds(plan.fps), "-i", str(path)]
    cmd += [
        "-filter_complex",
        build_xfade_filter(plan.frame_durations, plan.transition, plan.transition_duration, plan.width, plan.height),
        "-map", "[v]",
    ]
    cmd += shlex.split(SLIDESHOW_VIDEO_ENCODING)
    cmd += ["-r", _seconds(plan.fps), str(output_path)]
    return cmd


def _run_encoder(cmd: List[str], timeout: float) -> None:
    logger.debug("FFmpeg command:\n%s", " ".join(shlex.quote(x) for x in cmd))
    try:
        proc = subprocess.run(cmd, capture_output=True, timeout=timeout)
    except subprocess.TimeoutExpired as exc:
        stderr = (exc.stderr or b"").decode("utf-8", errors="ignore").strip()
        raise EncoderError(f"FFmpeg timed out after {timeout:g}s: {stderr}") from exc
    except OSError as exc:
        raise EncoderError(f"FFmpeg could not be started: {exc}") from exc
    if proc.returncode != 0:
        stderr = proc.stderr.decode("utf-8", errors="ignore").strip()
        raise EncoderError(f"FFmpeg exited with code {proc.returncode}: {stderr}")


def render_video(
    template: Template,
    variables: RenderVariables,
    user_images: Optional[List[Image.Image]] = None,
    assets: Optional[Mapping[str, Image.Image]] = None,
    timeout: Optional[float] = None,
) -> bytes:
    """Render every frame and encode them into one MP4 with chained transitions."""
    if len(template.frames) < 2:
        raise ValueError(f"video template '{template.id}' requires at least 2 frames")

    plan = plan_slideshow(template)
    tmp_dir = Path(tempfile.mkdtemp(prefix="render-video-"))
    try:
        frame_paths: List[Path] = []
        for index in range(len(template.frames)):
            png = render_frame(template, variables, user_images, assets, frame_index=index)
            path = tmp_dir / f"frame_{index:03d}.png"
            path.write_bytes(png)
            frame_paths.append(path)

        output_path = tmp_dir / "output.mp4"
        _run_encoder(build_ffmpeg_command(frame_paths, plan, output_path), timeout or ENCODER_TIMEOUT)
        if not output_path.exists():
            raise EncoderError("FFmpeg reported success but produced no output file")
        data = output_path.read_bytes()
        logger.info("Encoded %d frames for '%s' (%d bytes)", len(frame_paths), template.id, len(data))
        return data
    finally:
        shutil.rmtree(tmp_dir, ignore_errors=True)
