"""Rasterise a render context into a PNG data URI through a tier chain.

Tiers run in a fixed order and the first one that returns an image wins:

``subtree``     Playwright screenshot of the serialised overlay on top of the
                3D surface, when Playwright is installed.
``snapshot``    Full compositor: pixel buffer, backgrounds, images, borders
                and wrapped text, rendered at surface size and then drawn
                onto a canvas of the target resolution.
``manual``      Lossy: pixel buffer plus background rectangles and a single
                text line for each leaf element.
placeholder     Plain canvas with a failure label. Always last, never raises.
"""
from __future__ import annotations

import base64
import importlib.util
import io
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from PIL import Image, ImageDraw

from logging_utils import get_logger

from .errors import CaptureError
from .markup import Box, Element, font_size_of, wrap_text
from .render_context import RenderContext
from .utils import image_from_data_uri, image_to_data_uri, is_data_uri, load_font, parse_color, parse_length

logger = get_logger(__name__)

# 1x1 transparent PNG, used only if even the placeholder cannot be drawn.
EMPTY_PNG_DATA_URI = (
    "data:image/png;base64,"
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAADUlEQVR42mNkYPhfDwAChwGA60e6kgAAAABJRU5ErkJggg=="
)
PLACEHOLDER_TIER = "placeholder"

Tier = Callable[[RenderContext, int, int], Awaitable[str]]


def _background_url(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    text = value.strip()
    if text.startswith("url(") and text.endswith(")"):
        return text[4:-1].strip("'\" ")
    return None


class CaptureService:
    """Capture a context at a target resolution, degrading tier by tier."""

    def __init__(self, config: Optional[Dict[str, Any]] = None, *, tiers: Optional[Sequence[str]] = None) -> None:
        cfg = config.get("capture", {}) if isinstance(config, dict) else {}
        render_cfg = config.get("render", {}) if isinstance(config, dict) else {}
        self.tier_names: List[str] = list(tiers if tiers is not None else cfg.get("tiers", ["subtree", "snapshot", "manual"]))
        self.failure_background = parse_color(cfg.get("failure_background", "#000000"), (0, 0, 0, 255))
        self.failure_color = parse_color(cfg.get("failure_color", "#ff0000"), (255, 0, 0, 255))
        self.failure_label = str(cfg.get("failure_label", "Screenshot Failed - See Console"))
        self.font_path = render_cfg.get("font_path") if isinstance(render_cfg, dict) else None
        self._tiers: Dict[str, Tier] = {
            "subtree": self.capture_subtree,
            "snapshot": self.capture_snapshot,
            "manual": self.capture_manual,
        }
        self.last_tier: Optional[str] = None

    async def capture(self, source: RenderContext, width: int, height: int) -> str:
        """Return a PNG data URI of ``source``; never raises."""
        for name in self.tier_names:
            tier = self._tiers.get(name)
            if tier is None:
                logger.warning("Unknown capture tier '%s' skipped", name)
                continue
            try:
                image_data = await tier(source, width, height)
            except Exception as exc:
                logger.warning("Capture tier '%s' failed: %s", name, exc)
                continue
            self.last_tier = name
            logger.debug("Captured %dx%d frame with tier '%s'", width, height, name)
            return image_data
        self.last_tier = PLACEHOLDER_TIER
        return self.placeholder(width, height)

    # tier 1 -----------------------------------------------------------

    async def capture_subtree(self, source: RenderContext, width: int, height: int) -> str:
        if importlib.util.find_spec("playwright") is None:
            raise CaptureError("playwright is not installed")
        from playwright.async_api import async_playwright  # lazy import

        underlay = image_to_data_uri(source.surface.to_image())
        document = (
            "<!DOCTYPE html><html><head><style>"
            "html,body{margin:0;padding:0;overflow:hidden;background:#000}"
            "#stage{position:relative;width:%dpx;height:%dpx}"
            "#stage>img.surface{position:absolute;left:0;top:0;width:100%%;height:100%%}"
            "#stage>div{position:absolute;left:0;top:0;width:100%%;height:100%%}"
            "</style></head><body><div id=\"stage\"><img class=\"surface\" src=\"%s\">%s</div></body></html>"
        ) % (source.width, source.height, underlay, source.root.to_html())

        async with async_playwright() as pw:
            browser = await pw.chromium.launch()
            try:
                page = await browser.new_page(viewport={"width": source.width, "height": source.height})
                await page.set_content(document, wait_until="load")
                png_bytes = await page.locator("#stage").screenshot(type="png")
            finally:
                await browser.close()
        with Image.open(io.BytesIO(png_bytes)) as shot:
            return image_to_data_uri(_fit(shot.convert("RGBA"), width, height))

    # tier 2 -----------------------------------------------------------

    async def capture_snapshot(self, source: RenderContext, width: int, height: int) -> str:
        bitmap = self.snapshot_bitmap(source)
        canvas = Image.new("RGBA", (int(width), int(height)), (0, 0, 0, 255))
        canvas.alpha_composite(_fit(bitmap, width, height))
        return image_to_data_uri(canvas)

    def snapshot_bitmap(self, source: RenderContext) -> Image.Image:
        """Composite the surface and the full overlay tree at surface size."""
        base = source.surface.to_image().convert("RGBA")
        boxes = source.layout()
        for element in source.root.descendants():
            box = boxes.get(id(element))
            if box is None or not element.visible or box.opacity <= 0:
                continue
            self._paint_element(base, element, box, detailed=True)
        return base

    # tier 3 -----------------------------------------------------------

    async def capture_manual(self, source: RenderContext, width: int, height: int) -> str:
        canvas = Image.new("RGBA", (int(width), int(height)), (0, 0, 0, 255))
        source.render_once()
        canvas.alpha_composite(_fit(source.surface.to_image().convert("RGBA"), width, height))
        scale_x = width / max(1, source.width)
        scale_y = height / max(1, source.height)
        boxes = source.layout()
        for element in source.root.descendants():
            box = boxes.get(id(element))
            if box is None or not element.visible or box.opacity <= 0:
                continue
            scaled = Box(box.x * scale_x, box.y * scale_y, box.width * scale_x, box.height * scale_y, box.opacity)
            try:
                self._paint_element(canvas, element, scaled, detailed=False, font_scale=scale_y)
            except (OSError, ValueError) as exc:
                logger.debug("Manual capture skipped <%s>: %s", element.tag, exc)
        return image_to_data_uri(canvas)

    # tier 4 -----------------------------------------------------------

    def placeholder(self, width: int, height: int) -> str:
        try:
            canvas = Image.new("RGBA", (max(1, int(width)), max(1, int(height))), self.failure_background)
            draw = ImageDraw.Draw(canvas)
            font = load_font(self.font_path, 24)
            text_width = font.getlength(self.failure_label)
            draw.text(
                ((canvas.width - text_width) / 2, canvas.height / 2 - 12),
                self.failure_label,
                fill=self.failure_color,
                font=font,
            )
            return image_to_data_uri(canvas)
        except Exception:
            logger.exception("Placeholder capture failed; returning empty image")
            return EMPTY_PNG_DATA_URI

    # ------------------------------------------------------------------

    def _paint_element(
        self,
        canvas: Image.Image,
        element: Element,
        box: Box,
        *,
        detailed: bool,
        font_scale: float = 1.0,
    ) -> None:
        if box.width <= 0 or box.height <= 0:
            return
        layer = Image.new("RGBA", canvas.size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(layer)
        rect = box.as_rect()

        background = element.style.get("background-color") or element.style.get("background")
        if background and _background_url(background) is None:
            color = parse_color(background, (0, 0, 0, 0))
            if color[3] > 0:
                draw.rectangle(rect, fill=color)

        if detailed:
            self._paint_images(layer, element, box)
            border_width = parse_length(element.style.get("border-width"), box.width) or 0
            if border_width > 0 and element.style.get("border-style", "solid") != "none":
                border_color = parse_color(element.style.get("border-color", "#ffffff"))
                draw.rectangle(rect, outline=border_color, width=int(border_width))

        if element.text.strip() and (detailed or not element.has_children()):
            self._paint_text(draw, element, box, multiline=detailed, font_scale=font_scale)

        if box.opacity < 1.0:
            alpha = layer.getchannel("A").point(lambda v: int(v * box.opacity))
            layer.putalpha(alpha)
        canvas.alpha_composite(layer)

    def _paint_images(self, layer: Image.Image, element: Element, box: Box) -> None:
        sources = []
        background_url = _background_url(element.style.get("background-image"))
        if background_url:
            sources.append(background_url)
        if element.tag == "img" and element.get_attribute("src"):
            sources.append(element.get_attribute("src"))
        for src in sources:
            if not is_data_uri(src):
                logger.debug("Snapshot skips non-inline image source %s", src[:60])
                continue
            image = image_from_data_uri(src)
            size = (max(1, int(box.width)), max(1, int(box.height)))
            fitted = image.resize(size)
            layer.alpha_composite(fitted, dest=(int(box.x), int(box.y)))

    def _paint_text(self, draw: ImageDraw.ImageDraw, element: Element, box: Box, *, multiline: bool, font_scale: float) -> None:
        size = max(1, int(round(font_size_of(element) * font_scale)))
        font = load_font(self.font_path, size)
        color = parse_color(element.style.get("color", "#ffffff"))
        padding = parse_length(element.style.get("padding"), box.width) or 0.0
        padding *= font_scale
        lines = wrap_text(element.text, font, box.width - 2 * padding) if multiline else [element.text.strip().splitlines()[0]]
        align = element.style.get("text-align", "left")
        y = box.y + padding
        for line in lines:
            line_width = font.getlength(line)
            if align == "center":
                x = box.x + (box.width - line_width) / 2
            elif align == "right":
                x = box.right - padding - line_width
            else:
                x = box.x + padding
            draw.text((x, y), line, fill=color, font=font)
            y += size * 1.25


def _fit(image: Image.Image, width: int, height: int) -> Image.Image:
    target = (max(1, int(width)), max(1, int(height)))
    if image.size == target:
        return image
    resampling = getattr(Image, "Resampling", Image)
    return image.resize(target, resampling.LANCZOS)


def decode_png_data_uri(uri: str) -> bytes:
    prefix = "data:image/png;base64,"
    if not uri.startswith(prefix):
        raise ValueError("Expected a PNG data URI")
    return base64.b64decode(uri[len(prefix):])
