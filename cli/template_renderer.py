#!/usr/bin/env python3
"""
Command-line entrypoint for the render engine.

Examples:
    # Built-in template, one local photo
    python cli/template_renderer.py --template main-1-image --image photo.jpg --output out.png

    # Template JSON on disk with a variables file
    python cli/template_renderer.py --template my_template.json --vars vars.json --image a.jpg --image b.jpg --output out.png

    # Slideshow (video templates write MP4)
    python cli/template_renderer.py --template slideshow-base --image 1.jpg --image 2.jpg --image 3.jpg --output out.mp4

    # Single variable overrides
    python cli/template_renderer.py --template main-2-image --set title="Spring Sale" --set primary_colour="#AA2233" --output out.png
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Tuple

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from api import template_registry  # noqa: E402
from api.template_schema import Template, TemplateValidationError, parse_template  # noqa: E402
from asset_cache import AssetError, decode_image  # noqa: E402
from template_engine import render_frame  # noqa: E402
from variables import RenderVariables  # noqa: E402
from video_assembler import EncoderError, render_video  # noqa: E402

ASSET_VARIANTS = ("logo", "square", "landscape")


def _parse_setting(raw: str) -> Tuple[str, Any]:
    if "=" not in raw:
        raise argparse.ArgumentTypeError("Variables must be provided as key=value")
    key, value = raw.split("=", 1)
    key = key.strip()
    if not key:
        raise argparse.ArgumentTypeError("Variable name cannot be empty")
    return key, value.strip()


def _collect_variables(vars_file: Optional[Path], settings: Optional[Iterable[Tuple[str, Any]]]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    if vars_file:
        try:
            values.update(json.loads(vars_file.read_text(encoding="utf-8-sig")))
        except FileNotFoundError:
            raise SystemExit(f"Variables file not found: {vars_file}")
        except json.JSONDecodeError as exc:
            raise SystemExit(f"Variables file is not valid JSON: {exc}")
    for key, value in settings or []:
        values[key] = value
    return values


def load_template(ref: str) -> Template:
    """A path to a template JSON file, or a built-in template id."""
    path = Path(ref)
    if path.suffix == ".json" or path.exists():
        return parse_template(path.read_text(encoding="utf-8"))
    return template_registry.get_template(ref)


def _read_image(path: Path):
    return decode_image(path.read_bytes())


def build_arg_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Render a template to a PNG or MP4 file.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--template", help="Built-in template id or path to a template JSON file.")
    parser.add_argument("--output", type=Path, help="Destination file (.png or .mp4).")
    parser.add_argument("--vars", type=Path, dest="vars_file", help="JSON file of render variables.")
    parser.add_argument("--set", action="append", default=[], dest="settings", type=_parse_setting,
                        help="Variable as key=value. Repeat for multiple variables.")
    parser.add_argument("--image", action="append", default=[], type=Path, dest="images",
                        help="Local user image, in order. Repeat for multiple images.")
    for variant in ASSET_VARIANTS:
        parser.add_argument(f"--{variant}", type=Path, help=f"Local {variant} asset image.")
    parser.add_argument("--frame", type=int, default=0, help="Frame index for still output (default: 0).")
    parser.add_argument("--list", action="store_true", help="List built-in templates and exit.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    return parser


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = build_arg_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="[%(name)s] %(levelname)s %(message)s",
    )

    if args.list:
        for template in template_registry.list_templates():
            print(f"{template.id:24} {template.output_format:6} images={template.image_count}")
        return 0
    if not args.template or not args.output:
        parser.error("--template and --output are required")

    try:
        template = load_template(args.template)
    except (TemplateValidationError, template_registry.TemplateNotFound, OSError) as exc:
        parser.error(str(exc))

    variables = RenderVariables.from_mapping(_collect_variables(args.vars_file, args.settings))
    try:
        images = [_read_image(p) for p in args.images]
        assets = {v: _read_image(getattr(args, v)) for v in ASSET_VARIANTS if getattr(args, v)}
    except (OSError, AssetError) as exc:
        parser.error(f"Could not read image: {exc}")

    output_path: Path = args.output
    output_path.parent.mkdir(parents=True, exist_ok=True)
    try:
        if template.is_video:
            data = render_video(template, variables, images, assets)
        else:
            data = render_frame(template, variables, images, assets, frame_index=args.frame)
    except (EncoderError, IndexError, ValueError) as exc:
        print(f"[template_renderer] Render failed: {exc}", file=sys.stderr)
        return 1

    output_path.write_bytes(data)
    print(f"[template_renderer] Rendered {template.id} -> {output_path} ({len(data)} bytes)")
    return 0


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
