from __future__ import annotations

import asyncio
import base64
import importlib.util
import io
import logging
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest
from PIL import Image

from render_mode import capture as capture_module
from render_mode.capture import EMPTY_PNG_DATA_URI, CaptureService, decode_png_data_uri
from render_mode.errors import CaptureError
from render_mode.media_resolver import MediaResolver
from render_mode.models import SlideDefinition
from render_mode.render_context import RenderContext


def _open(uri: str) -> Image.Image:
    return Image.open(io.BytesIO(decode_png_data_uri(uri))).convert("RGBA")


def _context_with_panel(width: int = 40, height: int = 30) -> RenderContext:
    context = RenderContext(width, height)

    def init(ctx):
        ctx.container.create(
            "div",
            text="Title",
            style={"background-color": "#00ff00", "width": "100%", "height": "100%", "color": "#000000"},
        )
        return {}

    context.activate_slide(SlideDefinition(init=init), MediaResolver())
    context.render_once()
    return context


class _FailingService(CaptureService):
    async def capture_snapshot(self, source, width, height):
        raise CaptureError("snapshot unavailable")

    async def capture_manual(self, source, width, height):
        raise ValueError("manual exploded")


def test_snapshot_tier_scales_to_target_resolution() -> None:
    context = _context_with_panel(64, 36)
    service = CaptureService(tiers=["snapshot"])

    uri = asyncio.run(service.capture(context, 1920, 1080))

    image = _open(uri)
    assert image.size == (1920, 1080)
    assert service.last_tier == "snapshot"
    r, g, b, _ = image.getpixel((1900, 1060))
    assert g > 200 and r < 60 and b < 60


def test_snapshot_paints_inline_images() -> None:
    context = RenderContext(20, 20)
    swatch = io.BytesIO()
    Image.new("RGB", (2, 2), (0, 0, 255)).save(swatch, format="PNG")
    src = "data:image/png;base64," + base64.b64encode(swatch.getvalue()).decode("ascii")

    def init(ctx):
        ctx.container.create("img", src=src, style={"width": 20, "height": 20})
        return {}

    context.activate_slide(SlideDefinition(init=init), MediaResolver())

    bitmap = CaptureService().snapshot_bitmap(context)

    assert bitmap.getpixel((10, 10)) == (0, 0, 255, 255)


def test_missing_subtree_library_falls_through(monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture) -> None:
    monkeypatch.setattr(importlib.util, "find_spec", lambda name, *args: None)
    caplog.set_level(logging.WARNING)
    context = _context_with_panel()
    service = CaptureService()

    uri = asyncio.run(service.capture(context, 40, 30))

    assert service.last_tier == "snapshot"
    assert _open(uri).size == (40, 30)
    assert "Capture tier 'subtree' failed: playwright is not installed" in caplog.text


def test_manual_tier_draws_leaf_backgrounds() -> None:
    context = _context_with_panel()
    service = CaptureService(tiers=["manual"])

    uri = asyncio.run(service.capture(context, 80, 60))

    image = _open(uri)
    assert service.last_tier == "manual"
    assert image.size == (80, 60)
    assert image.getpixel((78, 58))[1] > 200


def test_every_tier_failing_yields_placeholder(caplog: pytest.LogCaptureFixture) -> None:
    context = _context_with_panel()
    service = _FailingService({"capture": {"tiers": ["bogus", "snapshot", "manual"]}})
    caplog.set_level(logging.WARNING)

    uri = asyncio.run(service.capture(context, 320, 180))

    image = _open(uri)
    assert service.last_tier == "placeholder"
    assert image.size == (320, 180)
    assert image.getpixel((0, 0)) == (0, 0, 0, 255)
    assert "Unknown capture tier 'bogus' skipped" in caplog.text
    assert "snapshot unavailable" in caplog.text
    assert "manual exploded" in caplog.text


def test_placeholder_draws_failure_label() -> None:
    service = CaptureService({"capture": {"failure_background": "#202020"}})

    image = _open(service.placeholder(400, 100))

    assert image.size == (400, 100)
    assert image.getpixel((0, 0)) == (32, 32, 32, 255)
    reds = [px for px in image.getdata() if px[0] > 200 and px[1] < 80]
    assert reds


def test_placeholder_never_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    def broken_new(*args, **kwargs):
        raise MemoryError("no canvas")

    monkeypatch.setattr(capture_module.Image, "new", broken_new)

    assert CaptureService().placeholder(10, 10) == EMPTY_PNG_DATA_URI


def test_decode_png_data_uri_rejects_other_payloads() -> None:
    with pytest.raises(ValueError):
        decode_png_data_uri("data:image/jpeg;base64,AAAA")
