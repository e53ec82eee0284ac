"""Minimal element tree for the 2D overlay of a slide.

Slides build their overlay by calling ``container.create(...)``; the render
context lays the tree out into pixel boxes before drawing or capturing it.
Only what slide authors commonly use is modelled: absolute ``left/top``
offsets, ``width/height`` in px or %, vertical block flow, ``padding``,
``font-size``, ``text-align``, ``opacity`` and ``display: none``.
"""
from __future__ import annotations

import html
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional

from PIL import ImageFont

from .utils import image_from_data_uri, is_data_uri, load_font, parse_length

DEFAULT_FONT_SIZE = 16
LINE_HEIGHT = 1.25


class Element:
    def __init__(
        self,
        tag: str = "div",
        *,
        text: str = "",
        style: Optional[Dict[str, Any]] = None,
        **attributes: Any,
    ) -> None:
        self.tag = tag.lower()
        self.text = text
        self.style: Dict[str, Any] = dict(style or {})
        self.attributes: Dict[str, str] = {
            key.replace("_", "-"): str(value) for key, value in attributes.items()
        }
        self.children: List[Element] = []
        self.parent: Optional[Element] = None

    def __repr__(self) -> str:
        return f"<Element {self.tag} children={len(self.children)}>"

    # tree -------------------------------------------------------------

    def create(self, tag: str = "div", *, text: str = "", style: Optional[Dict[str, Any]] = None, **attributes: Any) -> "Element":
        """Create a child element, append it and return it."""
        return self.append(Element(tag, text=text, style=style, **attributes))

    def append(self, child: "Element") -> "Element":
        if child.parent is not None:
            child.parent.remove(child)
        child.parent = self
        self.children.append(child)
        return child

    def remove(self, child: "Element") -> None:
        if child in self.children:
            self.children.remove(child)
            child.parent = None

    def detach(self) -> None:
        if self.parent is not None:
            self.parent.remove(self)

    def clear(self) -> None:
        for child in list(self.children):
            child.clear()
            self.remove(child)

    def iter(self) -> Iterator["Element"]:
        """Yield this element and all descendants in document order."""
        yield self
        for child in self.children:
            yield from child.iter()

    def descendants(self) -> Iterator["Element"]:
        for child in self.children:
            yield from child.iter()

    def has_children(self) -> bool:
        return bool(self.children)

    # attributes -------------------------------------------------------

    def get_attribute(self, name: str) -> Optional[str]:
        return self.attributes.get(name)

    def set_attribute(self, name: str, value: Any) -> None:
        self.attributes[name] = str(value)

    @property
    def visible(self) -> bool:
        return self.style.get("display") != "none" and self.style.get("visibility") != "hidden"

    # serialisation ----------------------------------------------------

    def style_text(self) -> str:
        parts = []
        for key, value in self.style.items():
            if isinstance(value, (int, float)) and key not in ("opacity", "z-index", "font-weight"):
                value = f"{value}px"
            parts.append(f"{key}: {value}")
        return "; ".join(parts)

    def to_html(self) -> str:
        attrs = dict(self.attributes)
        if self.style:
            attrs["style"] = self.style_text()
        attr_text = "".join(f' {key}="{html.escape(value, quote=True)}"' for key, value in attrs.items())
        if self.tag in ("img", "br", "hr"):
            return f"<{self.tag}{attr_text}>"
        inner = html.escape(self.text) + "".join(child.to_html() for child in self.children)
        return f"<{self.tag}{attr_text}>{inner}</{self.tag}>"


@dataclass(frozen=True)
class Box:
    x: float
    y: float
    width: float
    height: float
    opacity: float = 1.0

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    def as_rect(self) -> tuple[int, int, int, int]:
        return (
            int(round(self.x)),
            int(round(self.y)),
            int(round(self.right)),
            int(round(self.bottom)),
        )


def font_size_of(element: Element) -> int:
    node: Optional[Element] = element
    while node is not None:
        size = parse_length(node.style.get("font-size"), DEFAULT_FONT_SIZE)
        if size:
            return max(1, int(size))
        node = node.parent
    return DEFAULT_FONT_SIZE


def _opacity_of(element: Element) -> float:
    try:
        return max(0.0, min(1.0, float(element.style.get("opacity", 1.0))))
    except (TypeError, ValueError):
        return 1.0


def wrap_text(text: str, font: ImageFont.ImageFont, max_width: float) -> List[str]:
    lines: List[str] = []
    for paragraph in text.splitlines() or [""]:
        words = paragraph.split()
        if not words:
            lines.append("")
            continue
        current = words[0]
        for word in words[1:]:
            candidate = f"{current} {word}"
            if font.getlength(candidate) <= max_width or max_width <= 0:
                current = candidate
            else:
                lines.append(current)
                current = word
        lines.append(current)
    return lines


def _intrinsic_image_height(element: Element, width: float) -> float:
    src = element.get_attribute("src")
    if not is_data_uri(src):
        return 0.0
    try:
        image = image_from_data_uri(src)  # type: ignore[arg-type]
    except (OSError, ValueError):
        return 0.0
    if image.width <= 0:
        return 0.0
    return image.height * (width / image.width)


def layout(root: Element, width: float, height: float, *, font_path: str | None = None) -> Dict[int, Box]:
    """Compute pixel boxes for every visible element, keyed by ``id(element)``."""
    boxes: Dict[int, Box] = {}
    root_box = Box(0.0, 0.0, float(width), float(height), _opacity_of(root))
    boxes[id(root)] = root_box
    _layout_children(root, root_box, boxes, font_path)
    return boxes


def _layout_children(parent: Element, parent_box: Box, boxes: Dict[int, Box], font_path: str | None) -> float:
    padding = parse_length(parent.style.get("padding"), parent_box.width) or 0.0
    cursor_y = parent_box.y + padding
    inner_width = max(0.0, parent_box.width - 2 * padding)
    if parent.text:
        cursor_y += _text_height(parent, inner_width, font_path)
    for child in parent.children:
        if child.style.get("display") == "none":
            continue
        box = _box_for(child, parent_box, padding, inner_width, cursor_y, boxes, font_path)
        if child.style.get("position") != "absolute" and child.style.get("top") is None:
            cursor_y = box.bottom
    return cursor_y + padding - parent_box.y


def _box_for(
    element: Element,
    parent_box: Box,
    padding: float,
    inner_width: float,
    cursor_y: float,
    boxes: Dict[int, Box],
    font_path: str | None,
) -> Box:
    left = parse_length(element.style.get("left"), parent_box.width)
    top = parse_length(element.style.get("top"), parent_box.height)
    x = parent_box.x + (left if left is not None else padding)
    y = parent_box.y + top if top is not None else cursor_y
    width = parse_length(element.style.get("width"), parent_box.width)
    if width is None:
        width = inner_width - (left - padding if left is not None else 0.0)
    width = max(0.0, width)
    explicit_height = parse_length(element.style.get("height"), parent_box.height)
    opacity = parent_box.opacity * _opacity_of(element)

    provisional = Box(x, y, width, explicit_height or 0.0, opacity)
    boxes[id(element)] = provisional
    content_height = _layout_children(element, provisional, boxes, font_path)
    if explicit_height is not None:
        height = explicit_height
    elif element.tag == "img":
        height = _intrinsic_image_height(element, width)
    else:
        height = content_height
    box = Box(x, y, width, max(0.0, height), opacity)
    boxes[id(element)] = box
    return box


def _text_height(element: Element, width: float, font_path: str | None) -> float:
    size = font_size_of(element)
    font = load_font(font_path, size)
    lines = wrap_text(element.text, font, width)
    return len(lines) * size * LINE_HEIGHT
