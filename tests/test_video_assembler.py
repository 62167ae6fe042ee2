import subprocess
from pathlib import Path

import pytest

import video_assembler as va
from api.template_schema import parse_template
from variables import RenderVariables

from utils import solid_frame, template_payload


def video_template(frames=None, **overrides):
    frames = frames or [solid_frame("#FF0000", 3000), solid_frame("#00FF00", 3000)]
    return parse_template(template_payload(frames=frames, outputFormat="video", width=64, height=64, **overrides))


def test_xfade_two_frames():
    graph = va.build_xfade_filter([3, 3], "fade", 0.8)
    assert graph == "[0:v][1:v]xfade=transition=fade:duration=0.8:offset=2.2,format=yuv420p[v]"


def test_xfade_offsets_accumulate():
    graph = va.build_xfade_filter([3, 2, 4], "slideleft", 0.5)
    assert graph.split(";") == [
        "[0:v][1:v]xfade=transition=slideleft:duration=0.5:offset=2.5[v1]",
        "[v1][2:v]xfade=transition=slideleft:duration=0.5:offset=4,format=yuv420p[v]",
    ]


def test_xfade_odd_dimensions_scaled_even():
    graph = va.build_xfade_filter([1, 1], "fade", 0.25, width=101, height=100)
    assert graph.endswith("scale=trunc(iw/2)*2:trunc(ih/2)*2,format=yuv420p[v]")


def test_xfade_needs_two_frames():
    with pytest.raises(ValueError):
        va.build_xfade_filter([3], "fade", 0.8)


def test_xfade_rejects_hold_shorter_than_transition():
    with pytest.raises(ValueError, match="frame 0"):
        va.build_xfade_filter([0.5, 0.5], "fade", 0.8)


def test_plan_slideshow_defaults():
    plan = va.plan_slideshow(video_template(frames=[solid_frame(), solid_frame(duration_ms=1500)]))
    assert plan.frame_durations == [3.0, 1.5]
    assert plan.transition == "fade"
    assert plan.transition_duration == pytest.approx(0.8)
    assert plan.fps == 30


@pytest.mark.parametrize(
    "kind, expected",
    [("fade", "fade"), ("crossfade", "fade"), ("slide_left", "slideleft"), ("slide_right", "slideright"), ("zoom", "smoothup")],
)
def test_plan_slideshow_transition_names(kind, expected):
    plan = va.plan_slideshow(video_template(transition={"type": kind, "durationMs": 500}, fps=24))
    assert plan.transition == expected
    assert plan.transition_duration == pytest.approx(0.5)
    assert plan.fps == 24


def test_ffmpeg_command_shape():
    plan = va.plan_slideshow(video_template())
    cmd = va.build_ffmpeg_command([Path("f0.png"), Path("f1.png")], plan, Path("out.mp4"))

    assert cmd.count("-loop") == 2
    assert cmd[cmd.index("-map") + 1] == "[v]"
    assert "+faststart" in cmd
    assert cmd[cmd.index("-c:v") + 1] == "libx264"
    assert cmd[cmd.index("-pix_fmt") + 1] == "yuv420p"
    assert cmd[-1] == "out.mp4"


def test_render_video_rejects_single_frame_before_encoder(monkeypatch):
    def fail_run(*_, **__):
        raise AssertionError("encoder should not run")

    monkeypatch.setattr(va.subprocess, "run", fail_run)
    single = parse_template(template_payload())
    with pytest.raises(ValueError):
        va.render_video(single, RenderVariables())


def test_single_frame_video_template_rejected_by_schema():
    from api.template_schema import TemplateValidationError

    with pytest.raises(TemplateValidationError):
        parse_template(template_payload(outputFormat="video"))


def _track_tempdir(monkeypatch, tmp_path):
    created = []

    def fake_mkdtemp(prefix=""):
        path = tmp_path / f"{prefix}{len(created)}"
        path.mkdir()
        created.append(path)
        return str(path)

    monkeypatch.setattr(va.tempfile, "mkdtemp", fake_mkdtemp)
    return created


def test_render_video_success_cleans_up(monkeypatch, tmp_path):
    created = _track_tempdir(monkeypatch, tmp_path)
    seen = {}

    def fake_run(cmd, capture_output=None, timeout=None):
        seen["cmd"] = cmd
        seen["frames"] = sorted(p.name for p in created[0].glob("frame_*.png"))
        Path(cmd[-1]).write_bytes(b"mp4-bytes")
        return subprocess.CompletedProcess(cmd, 0, b"", b"")

    monkeypatch.setattr(va.subprocess, "run", fake_run)
    data = va.render_video(video_template(), RenderVariables())

    assert data == b"mp4-bytes"
    assert seen["frames"] == ["frame_000.png", "frame_001.png"]
    assert not created[0].exists()


def test_render_video_encoder_failure_includes_stderr(monkeypatch, tmp_path):
    created = _track_tempdir(monkeypatch, tmp_path)

    def fake_run(cmd, capture_output=None, timeout=None):
        return subprocess.CompletedProcess(cmd, 1, b"", b"Invalid filtergraph")

    monkeypatch.setattr(va.subprocess, "run", fake_run)
    with pytest.raises(va.EncoderError, match="Invalid filtergraph"):
        va.render_video(video_template(), RenderVariables())
    assert not created[0].exists()


def test_render_video_timeout(monkeypatch, tmp_path):
    created = _track_tempdir(monkeypatch, tmp_path)

    def fake_run(cmd, capture_output=None, timeout=None):
        raise subprocess.TimeoutExpired(cmd, timeout, stderr=b"still encoding")

    monkeypatch.setattr(va.subprocess, "run", fake_run)
    with pytest.raises(va.EncoderError, match="timed out"):
        va.render_video(video_template(), RenderVariables(), timeout=5)
    assert not created[0].exists()


def test_render_video_missing_binary(monkeypatch, tmp_path):
    _track_tempdir(monkeypatch, tmp_path)

    def fake_run(cmd, capture_output=None, timeout=None):
        raise FileNotFoundError("ffmpeg")

    monkeypatch.setattr(va.subprocess, "run", fake_run)
    with pytest.raises(va.EncoderError, match="could not be started"):
        va.render_video(video_template(), RenderVariables())
