from __future__ import annotations

import argparse
import asyncio
from pathlib import Path

from config_loader import load_config
from logging_utils import configure_logging, get_logger

from .errors import RenderModeError
from .exporter import ExportSummary, SlideExporter
from .models import MediaAsset
from .orchestrator import RenderWindowOrchestrator
from .progress import ConsoleBar

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Render a slide script to PNG images off-screen")
    parser.add_argument("script", help="Path to the slide script (.py)")
    parser.add_argument(
        "--media",
        nargs="*",
        default=[],
        metavar="FILE",
        help="Media files made available to the script as media/<filename>",
    )
    parser.add_argument(
        "--config",
        default="config.yaml",
        help="Path to YAML configuration (default: config.yaml)",
    )
    parser.add_argument(
        "--output-dir",
        help="Override output directory defined in config.yaml",
    )
    parser.add_argument("--width", type=int, help="Capture width in pixels")
    parser.add_argument("--height", type=int, help="Capture height in pixels")
    parser.add_argument(
        "--sandbox",
        choices=["process", "thread"],
        help="Host render windows in child processes or worker threads",
    )
    parser.add_argument(
        "--no-progress",
        action="store_true",
        help="Disable the console progress bar",
    )
    return parser


async def run_export(config, script: str, media: list[MediaAsset], args: argparse.Namespace) -> ExportSummary:
    bar = None if args.no_progress else ConsoleBar(label=Path(args.script).name)

    def on_progress(percent: int, message: str) -> None:
        if bar is not None:
            bar.update(percent, message)

    try:
        async with RenderWindowOrchestrator(config.raw) as orchestrator:
            exporter = SlideExporter(orchestrator, config.raw)
            return await exporter.export_to_png(
                script,
                config.output_dir,
                media=media,
                width=args.width,
                height=args.height,
                on_progress=on_progress,
            )
    finally:
        if bar is not None:
            bar.finish()


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    config = load_config(args.config)
    if args.output_dir:
        config.output_dir = Path(args.output_dir).expanduser().resolve()
    if args.sandbox:
        config.raw["sandbox"]["mode"] = args.sandbox

    configure_logging(level=config.logging_level, log_file=config.log_file)

    script_path = Path(args.script).expanduser()
    script = script_path.read_text(encoding="utf-8")
    media = [MediaAsset.from_path(path) for path in args.media]
    logger.info("Exporting %s with %d media files", script_path, len(media))

    try:
        summary = asyncio.run(run_export(config, script, media, args))
    except RenderModeError as exc:
        logger.error("Export failed: %s", exc)
        return 1

    for result in summary.failed:
        logger.error("Slide %d failed: %s", result.index + 1, result.error)
    logger.info("Saved %d slides to %s", len(summary.saved), summary.output_dir)
    return 1 if summary.failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
