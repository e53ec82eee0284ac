from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from PIL import Image, ImageDraw

from logging_utils import get_logger

from .errors import ActivationError, TransitionError
from .markup import Box, Element, layout
from .media_resolver import MediaResolver, rewrite_container_media
from .models import SlideDefinition
from .scene_graph import (
    Mesh,
    Object3D,
    PerspectiveCamera,
    Scene,
    dispose_object,
    dispose_references,
)
from .tweens import Tweener
from .utils import parse_color

logger = get_logger(__name__)

CONTAINER_ATTRIBUTE = "data-slide-container"


@dataclass
class SlideContext:
    """Argument passed to a slide's ``init`` hook."""

    scene: Scene
    container: Element

    def __getitem__(self, key: str) -> Any:
        return getattr(self, key)


@dataclass
class SlideInstance:
    """The live state of the one active slide of a context."""

    index: int
    definition: SlideDefinition
    state: Any
    container: Element
    errors: List[TransitionError] = field(default_factory=list)


def _attach_container(state: Any, container: Element) -> None:
    if isinstance(state, dict):
        state.setdefault("_container", container)
        return
    try:
        setattr(state, "_container", container)
    except AttributeError:
        logger.debug("Slide state %s does not accept a container reference", type(state).__name__)


class Surface:
    """RGBA pixel buffer the 3D scene is drawn onto."""

    def __init__(self, width: int, height: int, clear_color: Tuple[int, int, int, int]) -> None:
        self.width = int(width)
        self.height = int(height)
        self.clear_color = clear_color
        self.pixels = np.zeros((self.height, self.width, 4), dtype=np.uint8)
        self.pixels[:, :] = clear_color

    def to_image(self) -> Image.Image:
        return Image.fromarray(self.pixels)

    def draw(self, scene: Scene, camera: PerspectiveCamera) -> None:
        canvas = Image.new("RGBA", (self.width, self.height), scene.background or self.clear_color)
        focal = camera.focal_length(self.height)
        items = []
        for mesh, world in _visible_meshes(scene):
            depth = camera.position.z - world[2]
            if depth <= camera.near or depth >= camera.far:
                continue
            items.append((depth, mesh, world))
        # painter's order: farthest first
        for depth, mesh, (wx, wy, _wz, sx, sy, rz) in sorted(items, key=lambda item: -item[0]):
            ratio = focal / depth
            cx = self.width / 2 + (wx - camera.position.x) * ratio
            cy = self.height / 2 - (wy - camera.position.y) * ratio
            half_w = mesh.geometry.width * sx * ratio / 2
            half_h = mesh.geometry.height * sy * ratio / 2
            self._draw_mesh(canvas, mesh, cx, cy, half_w, half_h, rz)
        self.pixels = np.asarray(canvas, dtype=np.uint8).copy()

    def _draw_mesh(self, canvas: Image.Image, mesh: Mesh, cx: float, cy: float, half_w: float, half_h: float, rz: float) -> None:
        if half_w <= 0 or half_h <= 0:
            return
        material = mesh.materials[0]
        r, g, b, a = material.color
        alpha = int(a * max(0.0, min(1.0, material.opacity)))
        layer = Image.new("RGBA", canvas.size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(layer)
        if mesh.geometry.kind == "sphere":
            draw.ellipse((cx - half_w, cy - half_h, cx + half_w, cy + half_h), fill=(r, g, b, alpha))
        else:
            corners = _rotated_rect(cx, cy, half_w, half_h, rz)
            texture = material.map.image if material.map is not None else None
            if texture is not None and abs(rz) < 1e-6:
                size = (max(1, int(half_w * 2)), max(1, int(half_h * 2)))
                tile = texture.resize(size)
                if alpha < 255:
                    tile.putalpha(tile.getchannel("A").point(lambda v: v * alpha // 255))
                layer.paste(tile, (int(cx - half_w), int(cy - half_h)), tile)
            else:
                draw.polygon(corners, fill=(r, g, b, alpha))
        canvas.alpha_composite(layer)


def _rotated_rect(cx: float, cy: float, half_w: float, half_h: float, angle: float) -> List[Tuple[float, float]]:
    cos_a, sin_a = math.cos(angle), math.sin(angle)
    points = []
    for dx, dy in ((-half_w, -half_h), (half_w, -half_h), (half_w, half_h), (-half_w, half_h)):
        # screen y grows downward, so rotate with the inverted sign
        points.append((cx + dx * cos_a + dy * sin_a, cy - dx * sin_a + dy * cos_a))
    return points


def _visible_meshes(root: Object3D):
    """Yield (mesh, world transform) for visible meshes under ``root``."""
    stack = [(root, (0.0, 0.0, 0.0, 1.0, 1.0, 0.0))]
    while stack:
        node, (px, py, pz, psx, psy, prz) = stack.pop()
        if not node.visible:
            continue
        cos_r, sin_r = math.cos(prz), math.sin(prz)
        lx, ly = node.position.x * psx, node.position.y * psy
        world = (
            px + lx * cos_r - ly * sin_r,
            py + lx * sin_r + ly * cos_r,
            pz + node.position.z,
            psx * node.scale.x,
            psy * node.scale.y,
            prz + node.rotation.z,
        )
        if isinstance(node, Mesh):
            yield node, world
        for child in node.children:
            stack.append((child, world))


class RenderContext:
    """One scene graph, one camera, one surface and at most one live slide."""

    def __init__(self, width: int, height: int, config: Optional[Dict[str, Any]] = None, *, tweener: Optional[Tweener] = None) -> None:
        render_cfg = config.get("render", {}) if isinstance(config, dict) else {}
        camera_cfg = render_cfg.get("camera", {}) if isinstance(render_cfg, dict) else {}
        self.width = int(width)
        self.height = int(height)
        self.font_path = render_cfg.get("font_path")
        self.background = parse_color(render_cfg.get("background", "#000000"), (0, 0, 0, 255))
        self.tweener = tweener or Tweener()
        self.scene = Scene()
        self.camera = PerspectiveCamera(
            fov=float(camera_cfg.get("fov", 75)),
            aspect=self.width / max(1, self.height),
            near=float(camera_cfg.get("near", 0.1)),
            far=float(camera_cfg.get("far", 100)),
        )
        self.camera.position.z = float(camera_cfg.get("z", 3))
        self.surface = Surface(self.width, self.height, self.background)
        self.root = Element("div", id="export-render-container", style={"width": self.width, "height": self.height})
        self.active: Optional[SlideInstance] = None
        self.frames_rendered = 0

    def activate_slide(self, definition: SlideDefinition, resolver: MediaResolver, *, index: int = 0) -> SlideInstance:
        """Tear down the previous slide, then run ``init`` for ``definition``."""
        self.deactivate_slide()

        container = self.root.create(
            "div",
            style={"position": "absolute", "left": 0, "top": 0, "width": "100%", "height": "100%"},
            **{CONTAINER_ATTRIBUTE: f"slide-{index}"},
        )
        try:
            state = definition.init(SlideContext(scene=self.scene, container=container))
        except Exception as exc:
            logger.error("Error initializing slide %d: %s", index, exc, exc_info=True)
            self._release(container, None)
            raise ActivationError(f"Slide {index} init failed: {exc}", index=index) from exc

        rewrite_container_media(container, resolver)
        _attach_container(state, container)
        self.active = SlideInstance(index=index, definition=definition, state=state, container=container)
        return self.active

    def deactivate_slide(self) -> Optional[SlideInstance]:
        instance = self.active
        if instance is None:
            return None
        self.active = None
        self._release(instance.container, instance.state)
        return instance

    def render_once(self) -> None:
        self.surface.draw(self.scene, self.camera)
        self.frames_rendered += 1

    def layout(self) -> Dict[int, Box]:
        return layout(self.root, self.width, self.height, font_path=self.font_path)

    def dispose(self) -> None:
        self.deactivate_slide()
        self.tweener.clear()
        self.root.clear()

    # ------------------------------------------------------------------

    def _release(self, container: Element, state: Any) -> None:
        self.tweener.clear()
        released = 0
        for obj in self.scene.clear():
            released += dispose_object(obj)
        released += dispose_references(state)
        container.clear()
        container.detach()
        logger.debug("Released %d graphics resources", released)
