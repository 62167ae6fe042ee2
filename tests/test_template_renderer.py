import json

import pytest

from cli import template_renderer

from utils import load_registry, open_png, solid_image, template_payload


def write_template(tmp_path, **overrides):
    path = tmp_path / 'template.json'
    path.write_text(json.dumps(template_payload(**overrides)), encoding='utf-8')
    return path


def test_renders_png_from_template_file(tmp_path):
    layers = [{'type': 'image', 'index': 0, 'x': 0, 'y': 0, 'width': 100, 'height': 100}]
    template = write_template(tmp_path, layers=layers)
    photo = tmp_path / 'photo.png'
    solid_image((0, 255, 0, 255)).save(photo)
    output = tmp_path / 'out' / 'render.png'

    code = template_renderer.run_cli([
        '--template', str(template), '--image', str(photo), '--output', str(output),
    ])

    assert code == 0
    assert open_png(output.read_bytes()).getpixel((50, 50)) == (0, 255, 0, 255)


def test_set_overrides_vars_file(tmp_path):
    layers = [{'type': 'rect', 'x': 0, 'y': 0, 'width': 100, 'height': 100, 'fill': '{{primary_colour}}'}]
    template = write_template(tmp_path, layers=layers)
    vars_file = tmp_path / 'vars.json'
    vars_file.write_text(json.dumps({'primary_colour': '#0000FF'}), encoding='utf-8')
    output = tmp_path / 'render.png'

    code = template_renderer.run_cli([
        '--template', str(template), '--vars', str(vars_file),
        '--set', 'primary_colour=#FF0000', '--output', str(output),
    ])

    assert code == 0
    assert open_png(output.read_bytes()).getpixel((10, 10)) == (255, 0, 0, 255)


def test_list_does_not_need_output(monkeypatch, capsys):
    monkeypatch.setattr(template_renderer, 'template_registry', load_registry(monkeypatch))
    assert template_renderer.run_cli(['--list']) == 0
    assert 'main-1-image' in capsys.readouterr().out


@pytest.mark.parametrize(
    'argv',
    [
        ['--output', 'x.png'],
        ['--template', 'no-such-template', '--output', 'x.png'],
        ['--template', 'main-1-image', '--output', 'x.png', '--set', 'novalue'],
    ],
)
def test_bad_arguments_exit(argv):
    with pytest.raises(SystemExit) as exc:
        template_renderer.run_cli(argv)
    assert exc.value.code == 2


def test_parse_setting_keeps_equals_in_value():
    assert template_renderer._parse_setting('website=https://x.co/?a=b') == ('website', 'https://x.co/?a=b')
