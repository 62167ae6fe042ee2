import copy
import importlib
import io
import sys
from pathlib import Path

from PIL import Image

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

BUILTIN_DIR = ROOT / 'templates' / 'builtin'

BASE_TEMPLATE = {
    'id': 'test-template',
    'name': 'Test Template',
    'outputFormat': 'still',
    'width': 100,
    'height': 100,
    'imageCount': 0,
    'categoryKeys': [],
    'frames': [
        {'background': {'type': 'solid', 'color': '#FFFFFF'}, 'layers': []},
    ],
}


def template_payload(layers=None, background=None, frames=None, **overrides):
    """Small still template document; layers/background apply to frame 0."""
    payload = copy.deepcopy(BASE_TEMPLATE)
    if frames is not None:
        payload['frames'] = frames
    if layers is not None:
        payload['frames'][0]['layers'] = layers
    if background is not None:
        payload['frames'][0]['background'] = background
    payload.update(overrides)
    return payload


def solid_frame(color='#FFFFFF', duration_ms=None, layers=None):
    frame = {'background': {'type': 'solid', 'color': color}, 'layers': layers or []}
    if duration_ms is not None:
        frame['durationMs'] = duration_ms
    return frame


def solid_image(color=(255, 0, 0, 255), size=(20, 20)):
    return Image.new('RGBA', size, color)


def png_bytes(color=(255, 0, 0, 255), size=(4, 4)):
    out = io.BytesIO()
    solid_image(color, size).save(out, format='PNG')
    return out.getvalue()


def open_png(data):
    image = Image.open(io.BytesIO(data))
    image.load()
    return image.convert('RGBA')


def load_registry(monkeypatch, template_dir=BUILTIN_DIR):
    monkeypatch.setenv('TEMPLATE_DIR', str(template_dir))
    import api.template_registry as template_registry

    return importlib.reload(template_registry)


def prepare_app(monkeypatch, api_key=None, template_dir=BUILTIN_DIR):
    """Configure environment and return (APP, registry_module)."""
    if api_key is None:
        monkeypatch.delenv('API_KEY', raising=False)
    else:
        monkeypatch.setenv('API_KEY', api_key)
    monkeypatch.setenv('TEMPLATE_REFRESH_SECONDS', '0')
    template_registry = load_registry(monkeypatch, template_dir)

    import api.app as app_module

    app_module = importlib.reload(app_module)
    return app_module.APP, template_registry


def get_test_client(app):
    from fastapi.testclient import TestClient

    return TestClient(app)
