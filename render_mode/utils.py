from __future__ import annotations

import base64
import io
import re
import uuid
from functools import lru_cache
from pathlib import Path
from typing import Tuple

from PIL import Image, ImageFont

_DATA_URI_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?P<b64>;base64)?,(?P<payload>.*)$", re.S)
_RGBA_RE = re.compile(r"^rgba?\(([^)]*)\)$")

NAMED_COLORS = {
    "black": (0, 0, 0, 255),
    "white": (255, 255, 255, 255),
    "red": (255, 0, 0, 255),
    "green": (0, 128, 0, 255),
    "blue": (0, 0, 255, 255),
    "yellow": (255, 255, 0, 255),
    "gray": (128, 128, 128, 255),
    "grey": (128, 128, 128, 255),
    "transparent": (0, 0, 0, 0),
}


def generate_id(prefix: str = "rw") -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def parse_color(
    value: object,
    fallback: Tuple[int, int, int, int] = (255, 255, 255, 255),
) -> Tuple[int, int, int, int]:
    """Parse ``#rgb``, ``#rrggbb(aa)``, ``rgb()/rgba()``, names or 0xRRGGBB ints."""
    if value is None:
        return fallback
    if isinstance(value, int):
        return ((value >> 16) & 0xFF, (value >> 8) & 0xFF, value & 0xFF, 255)
    if isinstance(value, (tuple, list)):
        seq = [int(v) for v in value]
        if len(seq) == 3:
            return (seq[0], seq[1], seq[2], 255)
        if len(seq) == 4:
            return (seq[0], seq[1], seq[2], seq[3])
        return fallback
    text = str(value).strip().lower()
    if not text:
        return fallback
    if text in NAMED_COLORS:
        return NAMED_COLORS[text]
    match = _RGBA_RE.match(text)
    if match:
        parts = [p.strip() for p in match.group(1).split(",")]
        try:
            r, g, b = (int(float(p)) for p in parts[:3])
            alpha = float(parts[3]) if len(parts) > 3 else 1.0
        except (ValueError, IndexError):
            return fallback
        return (r, g, b, int(round(max(0.0, min(1.0, alpha)) * 255)))
    text = text.lstrip("#")
    if len(text) not in (3, 6, 8):
        return fallback
    if len(text) == 3:
        text = "".join(ch * 2 for ch in text)
    try:
        r = int(text[0:2], 16)
        g = int(text[2:4], 16)
        b = int(text[4:6], 16)
        a = int(text[6:8], 16) if len(text) == 8 else 255
    except ValueError:
        return fallback
    return (r, g, b, a)


@lru_cache(maxsize=32)
def load_font(path: str | None, size: int) -> ImageFont.ImageFont:
    if path:
        try:
            font_path = Path(path).expanduser()
            if font_path.exists():
                return ImageFont.truetype(str(font_path), size=size)
        except OSError:
            pass
    for candidate in ("Arial.ttf", "DejaVuSans.ttf"):
        try:
            return ImageFont.truetype(candidate, size=size)
        except OSError:
            continue
    try:
        return ImageFont.load_default(size=size)
    except TypeError:  # Pillow < 10.1 has no sized default font
        return ImageFont.load_default()


def is_data_uri(value: object) -> bool:
    return isinstance(value, str) and value.startswith("data:")


def decode_data_uri(uri: str) -> Tuple[str, bytes]:
    match = _DATA_URI_RE.match(uri)
    if not match:
        raise ValueError("Not a data URI")
    mime = match.group("mime") or "text/plain"
    payload = match.group("payload")
    if match.group("b64"):
        return mime, base64.b64decode(payload)
    return mime, payload.encode("utf-8")


def image_from_data_uri(uri: str) -> Image.Image:
    _, payload = decode_data_uri(uri)
    with Image.open(io.BytesIO(payload)) as img:
        return img.convert("RGBA")


def image_to_data_uri(image: Image.Image) -> str:
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buffer.getvalue()).decode("ascii")


def parse_length(value: object, reference: float) -> float | None:
    """Resolve ``12``, ``"12px"`` or ``"50%"`` against ``reference``."""
    if value is None:
        return None
    if isinstance(value, (int, float)):
        return float(value)
    text = str(value).strip()
    try:
        if text.endswith("%"):
            return float(text[:-1]) * reference / 100.0
        if text.endswith("px"):
            return float(text[:-2])
        return float(text)
    except ValueError:
        return None
