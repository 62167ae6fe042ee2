import base64
import json

import pytest

from asset_cache import AssetCache

from utils import load_registry, open_png, png_bytes, template_payload

IMAGE_LAYER = {"type": "image", "index": 0, "x": 0, "y": 0, "width": 100, "height": 100, "fit": "cover"}


@pytest.fixture
def tasks(monkeypatch, tmp_path):
    """tasks module wired to a template dir with one tiny still template."""
    (tmp_path / "tiny.json").write_text(
        json.dumps(template_payload(id="tiny", imageCount=1, layers=[IMAGE_LAYER])), encoding="utf-8"
    )
    load_registry(monkeypatch, tmp_path)
    import api.tasks as tasks_module

    return tasks_module


@pytest.fixture
def calls(monkeypatch, tasks):
    """Capture record updates and uploads instead of talking to real services."""
    seen = {"updates": [], "uploads": []}

    def fake_update(record_id, status, output_url="", error=None):
        seen["updates"].append((record_id, status, output_url, error))

    def fake_upload(data, key, content_type):
        seen["uploads"].append((data, key, content_type))
        return f"https://media.example.com/{key}"

    monkeypatch.setattr(tasks.records, "update_render_result", fake_update)
    monkeypatch.setattr(tasks.storage, "upload_render", fake_upload)
    return seen


def job(monkeypatch, tasks, **fields):
    record = tasks.records.JobRecord(record_id="recJob", **fields)
    monkeypatch.setattr(tasks.records, "get_job_record", lambda record_id: record)
    return record


def image_cache(failing=()):
    def fetch(url):
        if url in failing:
            raise RuntimeError(f"404 for {url}")
        return png_bytes((0, 0, 255, 255)), "image/png"

    return AssetCache(capacity=10, fetcher=fetch)


@pytest.mark.parametrize("flag", ["is_text_only", "upload_as_gallery", "is_user_uploaded_video"])
def test_skip_flags_short_circuit(monkeypatch, tasks, calls, flag):
    job(monkeypatch, tasks, **{flag: True})
    result = tasks.render_job("recJob")

    assert result.success and result.skipped
    assert result.to_dict() == {"success": True, "skipped": True, "reason": flag}
    assert calls["updates"] == [] and calls["uploads"] == []


def test_render_job_uploads_png_and_marks_completed(monkeypatch, tasks, calls):
    job(monkeypatch, tasks, template_ref="tiny", user_images=("https://cdn/1.png",))
    result = tasks.render_job("recJob", cache=image_cache())

    assert result.success, result.error
    assert result.template_used == "tiny"
    assert result.output_format == "png"
    data, key, content_type = calls["uploads"][0]
    assert key.startswith("renders/") and key.endswith(".png")
    assert content_type == "image/png"
    assert open_png(data).getpixel((50, 50)) == (0, 0, 255, 255)
    assert calls["updates"] == [("recJob", "completed", result.output_url, None)]

    payload = result.to_dict()
    assert payload["outputUrl"] == result.output_url
    assert payload["templateUsed"] == "tiny"
    assert "error" not in payload


def test_explicit_template_argument_wins(monkeypatch, tasks, calls):
    job(monkeypatch, tasks, template_ref="recSomethingElse")
    result = tasks.render_job("recJob", template_id="tiny", cache=image_cache())
    assert result.template_used == "tiny"


def test_missing_user_image_is_dropped(monkeypatch, tasks, calls):
    job(monkeypatch, tasks, template_ref="tiny", user_images=("https://cdn/gone.png", "https://cdn/2.png"))
    result = tasks.render_job("recJob", cache=image_cache(failing={"https://cdn/gone.png"}))

    assert result.success
    assert open_png(calls["uploads"][0][0]).getpixel((50, 50)) == (0, 0, 255, 255)


def test_no_template_reports_not_found(monkeypatch, tasks, calls):
    job(monkeypatch, tasks, user_images=("https://cdn/1.png",))
    result = tasks.render_job("recJob", cache=image_cache())

    assert not result.success
    assert result.not_found
    assert "Template not found" in result.error
    assert calls["updates"][0][1] == "failed"
    assert calls["uploads"] == []


def test_upload_failure_marks_record_failed(monkeypatch, tasks, calls):
    job(monkeypatch, tasks, template_ref="tiny")

    def broken_upload(*_args, **_kwargs):
        raise tasks.storage.StorageError("bucket unavailable")

    monkeypatch.setattr(tasks.storage, "upload_render", broken_upload)
    result = tasks.render_job("recJob", cache=image_cache())

    assert not result.success and not result.not_found
    assert result.to_dict() == {"success": False, "error": "bucket unavailable"}
    assert calls["updates"] == [("recJob", "failed", "", "bucket unavailable")]


def test_failure_while_marking_failed_is_swallowed(monkeypatch, tasks):
    def lookup(record_id):
        raise tasks.records.RecordStoreError("store down")

    def update(*_args, **_kwargs):
        raise tasks.records.RecordStoreError("still down")

    monkeypatch.setattr(tasks.records, "get_job_record", lookup)
    monkeypatch.setattr(tasks.records, "update_render_result", update)

    result = tasks.render_job("recJob")
    assert not result.success
    assert result.error == "store down"


def test_load_images_compacts_and_keys_assets(tasks):
    cache = image_cache(failing={"https://cdn/b.png"})
    images, assets = tasks.load_images(
        ["https://cdn/a.png", "https://cdn/b.png", "https://cdn/c.png"],
        {"logo": "https://cdn/logo.png", "square": "", "landscape": "https://cdn/b.png"},
        cache,
    )
    assert len(images) == 2
    assert set(assets) == {"logo"}


def test_empty_injected_cache_is_used(monkeypatch, tasks):
    def shared_cache():
        raise AssertionError("shared cache must not replace an injected one")

    monkeypatch.setattr(tasks, "default_cache", shared_cache)
    cache = image_cache()
    assert len(cache) == 0

    images, _ = tasks.load_images(["https://cdn/a.png"], {}, cache)

    assert len(images) == 1
    assert "https://cdn/a.png" in cache


def test_render_preview_returns_data_url(tasks):
    preview = tasks.render_preview("tiny", {"title": "Hello"}, cache=image_cache())

    assert preview["templateId"] == "tiny"
    assert (preview["width"], preview["height"]) == (100, 100)
    prefix = "data:image/png;base64,"
    assert preview["previewBase64"].startswith(prefix)
    image = open_png(base64.b64decode(preview["previewBase64"][len(prefix):]))
    assert image.size == (100, 100)


def test_render_preview_unknown_template(tasks):
    with pytest.raises(tasks.template_registry.TemplateNotFound):
        tasks.render_preview("missing")
