import json
import threading

import pytest

from utils import BUILTIN_DIR, load_registry, template_payload

BUILTIN_IDS = {
    "main-1-image",
    "main-2-image",
    "main-2-image-split",
    "main-3-image",
    "main-3-image-grid",
    "main-3-image-stack",
    "before-after",
    "slideshow-base",
}


def record(record_id, active=True, **fields):
    fields.setdefault("template_active", active)
    return {"id": record_id, "fields": fields}


def test_shipped_builtins_all_validate(monkeypatch):
    registry = load_registry(monkeypatch)
    ids = {t.id for t in registry.list_templates()}
    assert ids == BUILTIN_IDS
    assert len(list(BUILTIN_DIR.glob("*.json"))) == len(BUILTIN_IDS)
    assert registry.get_template("slideshow-base").is_video


def test_invalid_builtin_is_skipped(tmp_path, monkeypatch):
    (tmp_path / "good.json").write_text(json.dumps(template_payload(id="good")), encoding="utf-8")
    (tmp_path / "bad.json").write_text(json.dumps({"id": "bad"}), encoding="utf-8")
    registry = load_registry(monkeypatch, tmp_path)

    assert [t.id for t in registry.list_templates()] == ["good"]
    with pytest.raises(registry.TemplateNotFound):
        registry.get_template("bad")


def test_record_id_map_resolves_builtin(monkeypatch):
    registry = load_registry(monkeypatch)
    assert registry.get_by_record_id("rec4bqtFERB8S1u7u").id == "before-after"
    assert registry.get_by_record_id("recu9Fo6bSoJADZoa").id == "main-1-image"
    with pytest.raises(registry.TemplateNotFound):
        registry.get_by_record_id("recUnknown")


def test_refresh_builds_managed_snapshot(monkeypatch):
    registry = load_registry(monkeypatch)
    custom = template_payload(id="custom-still", imageCount=1)
    records = [
        record("recB", template_json=json.dumps(custom), rotation_weight=3, category_keys=["roofing"]),
        record("recA", builtin_id="main-2-image"),
        record("recOff", active=False, template_json=json.dumps(custom)),
        record("recBroken", template_json="{oops"),
        record("recEmpty"),
    ]
    before = registry.snapshot()

    count = registry.refresh(lambda: records)

    assert count == 2
    assert before.managed == ()
    managed = {m.record_id: m for m in registry.list_managed()}
    assert set(managed) == {"recA", "recB"}
    assert managed["recB"].rotation_weight == 3
    assert managed["recB"].category_keys == ("roofing",)
    assert managed["recA"].category_keys == ("general",)
    assert registry.get_by_record_id("recB").id == "custom-still"
    assert registry.get_template("custom-still").image_count == 1


def test_refresh_replaces_previous_managed_set(monkeypatch):
    registry = load_registry(monkeypatch)
    registry.refresh(lambda: [record("recA", builtin_id="main-1-image")])
    first = registry.snapshot()
    registry.refresh(lambda: [])

    assert registry.list_managed() == ()
    assert len(first.managed) == 1


def test_rotation_pool_uses_managed_entries(monkeypatch):
    registry = load_registry(monkeypatch)
    registry.refresh(lambda: [
        record("recA", builtin_id="main-1-image", rotation_weight=2),
        record("recB", builtin_id="main-3-image"),
    ])
    pool = registry.rotation_pool("still", 2)
    assert [m.record_id for m in pool] == ["recA", "recA"]
    with pytest.raises(ValueError):
        registry.rotation_pool("gif", 2)


def test_save_template_adds_and_validates(monkeypatch):
    registry = load_registry(monkeypatch)
    saved = registry.save_template(template_payload(id="designed"))
    assert registry.get_template("designed") is saved

    from api.template_schema import TemplateValidationError

    with pytest.raises(TemplateValidationError):
        registry.save_template({"id": "broken"})


def test_save_during_refresh_survives(monkeypatch):
    registry = load_registry(monkeypatch)
    loading = threading.Event()
    release = threading.Event()

    def slow_loader():
        loading.set()
        release.wait(5)
        return [record("recA", builtin_id="main-1-image")]

    worker = threading.Thread(target=registry.refresh, args=(slow_loader,))
    worker.start()
    assert loading.wait(5)
    registry.save_template(template_payload(id="saved-mid-refresh"))
    release.set()
    worker.join(5)

    assert registry.find_template("saved-mid-refresh") is not None
    assert [m.record_id for m in registry.list_managed()] == ["recA"]


def test_background_refresh_stops(monkeypatch):
    registry = load_registry(monkeypatch)
    calls = []

    def loader():
        calls.append(1)
        return []

    stop = registry.start_background_refresh(0.01, loader)
    for _ in range(200):
        if calls:
            break
        stop.wait(0.01)
    stop.set()
    assert calls
