"""Small retained-mode scene graph handed to slide scripts as ``graph``.

Objects own their geometry, materials and textures; nothing is reclaimed
implicitly. ``dispose_object`` walks a subtree and releases every resource
it references, which is what the render context does when a slide is torn
down.
"""
from __future__ import annotations

import math
from dataclasses import dataclass
from types import ModuleType, SimpleNamespace
from typing import TYPE_CHECKING, Any, Callable, Iterator, List, Optional, Sequence, Set, Union

from PIL import Image

from logging_utils import get_logger

from .utils import image_from_data_uri, is_data_uri, parse_color

if TYPE_CHECKING:
    from .media_resolver import MediaResolver

logger = get_logger(__name__)


@dataclass
class Vector3:
    x: float = 0.0
    y: float = 0.0
    z: float = 0.0

    def set(self, x: float, y: float, z: float) -> "Vector3":
        self.x, self.y, self.z = float(x), float(y), float(z)
        return self

    def copy(self) -> "Vector3":
        return Vector3(self.x, self.y, self.z)


class Disposable:
    def __init__(self) -> None:
        self.disposed = False

    def dispose(self) -> None:
        self.disposed = True


class Texture(Disposable):
    def __init__(self, image: Optional[Image.Image] = None, source: Optional[str] = None) -> None:
        super().__init__()
        self.image = image
        self.source = source

    def dispose(self) -> None:
        super().dispose()
        if self.image is not None:
            self.image.close()
            self.image = None


class Geometry(Disposable):
    kind = "plane"

    def __init__(self, width: float = 1.0, height: float = 1.0, depth: float = 0.0) -> None:
        super().__init__()
        self.width = float(width)
        self.height = float(height)
        self.depth = float(depth)


class PlaneGeometry(Geometry):
    kind = "plane"

    def __init__(self, width: float = 1.0, height: float = 1.0) -> None:
        super().__init__(width, height, 0.0)


class BoxGeometry(Geometry):
    kind = "box"


class SphereGeometry(Geometry):
    kind = "sphere"

    def __init__(self, radius: float = 1.0) -> None:
        super().__init__(radius * 2, radius * 2, radius * 2)
        self.radius = float(radius)


class MeshBasicMaterial(Disposable):
    def __init__(
        self,
        color: Any = 0xFFFFFF,
        *,
        opacity: float = 1.0,
        transparent: bool = False,
        map: Optional[Texture] = None,
    ) -> None:
        super().__init__()
        self.color = parse_color(color)
        self.opacity = float(opacity)
        self.transparent = transparent
        self.map = map

    def dispose(self) -> None:
        super().dispose()
        if self.map is not None:
            self.map.dispose()


class Object3D:
    def __init__(self) -> None:
        self.position = Vector3()
        self.rotation = Vector3()
        self.scale = Vector3(1.0, 1.0, 1.0)
        self.visible = True
        self.children: List[Object3D] = []
        self.parent: Optional[Object3D] = None
        self.name = ""

    def add(self, *objects: "Object3D") -> "Object3D":
        for obj in objects:
            if obj.parent is not None:
                obj.parent.remove(obj)
            obj.parent = self
            self.children.append(obj)
        return self

    def remove(self, *objects: "Object3D") -> "Object3D":
        for obj in objects:
            if obj in self.children:
                self.children.remove(obj)
                obj.parent = None
        return self

    def traverse(self) -> Iterator["Object3D"]:
        yield self
        for child in list(self.children):
            yield from child.traverse()


class Group(Object3D):
    pass


class Mesh(Object3D):
    def __init__(self, geometry: Geometry, material: MeshBasicMaterial | Sequence[MeshBasicMaterial]) -> None:
        super().__init__()
        self.geometry = geometry
        self.material = material

    @property
    def materials(self) -> List[MeshBasicMaterial]:
        if isinstance(self.material, (list, tuple)):
            return list(self.material)
        return [self.material]


class Scene(Object3D):
    def __init__(self, background: Any = None) -> None:
        super().__init__()
        self.background = parse_color(background) if background is not None else None

    def clear(self) -> List[Object3D]:
        removed = list(self.children)
        self.remove(*removed)
        return removed


class PerspectiveCamera(Object3D):
    def __init__(self, fov: float = 75.0, aspect: float = 16 / 9, near: float = 0.1, far: float = 100.0) -> None:
        super().__init__()
        self.fov = float(fov)
        self.aspect = float(aspect)
        self.near = float(near)
        self.far = float(far)

    def focal_length(self, viewport_height: float) -> float:
        return (viewport_height / 2.0) / math.tan(math.radians(self.fov) / 2.0)


ResolverSource = Union["MediaResolver", Callable[[], Optional["MediaResolver"]], None]


class TextureLoader:
    """Load textures, resolving ``media/...`` references to inline data first.

    ``resolver`` may be a zero-argument callable; it is then asked for the
    current media table on every load.
    """

    def __init__(self, resolver: ResolverSource = None) -> None:
        self._resolver = resolver

    @property
    def resolver(self) -> Optional["MediaResolver"]:
        if callable(self._resolver):
            return self._resolver()
        return self._resolver

    def load(self, url: str) -> Texture:
        resolver = self.resolver
        source = resolver.resolve(url) if resolver is not None else url
        if not is_data_uri(source):
            logger.warning("TextureLoader: cannot load non-inline source %s", url)
            return Texture(source=url)
        try:
            return Texture(image=image_from_data_uri(source), source=url)
        except (OSError, ValueError) as exc:
            logger.warning("TextureLoader: failed to decode %s: %s", url, exc)
            return Texture(source=url)


def dispose_object(obj: Object3D) -> int:
    """Detach ``obj`` and release geometry, materials and textures of its subtree."""
    released = 0
    for node in list(obj.traverse()):
        if isinstance(node, Mesh):
            if not node.geometry.disposed:
                node.geometry.dispose()
                released += 1
            for material in node.materials:
                if not material.disposed:
                    material.dispose()
                    released += 1
    if obj.parent is not None:
        obj.parent.remove(obj)
    for node in list(obj.traverse()):
        node.children = []
    return released


def dispose_references(value: Any) -> int:
    """Release every scene object and resource reachable from ``value``.

    Walks dicts, sequences, sets and plain instance attributes, so meshes or
    textures a slide keeps in its state without adding them to the scene are
    released as well.
    """
    released = 0
    seen: Set[int] = set()
    stack = [value]
    while stack:
        item = stack.pop()
        if item is None or isinstance(item, (str, bytes, int, float)) or id(item) in seen:
            continue
        seen.add(id(item))
        if isinstance(item, Object3D):
            released += dispose_object(item)
        elif isinstance(item, Disposable):
            if not item.disposed:
                item.dispose()
                released += 1
        elif isinstance(item, dict):
            stack.extend(item.values())
        elif isinstance(item, (list, tuple, set, frozenset)):
            stack.extend(item)
        elif not callable(item) and not isinstance(item, ModuleType):
            attributes = getattr(item, "__dict__", None)
            if isinstance(attributes, dict):
                stack.extend(attributes.values())
    return released


def build_namespace(resolver: ResolverSource = None) -> SimpleNamespace:
    """Return the scene-graph handle injected into slide scripts."""

    def texture_loader() -> TextureLoader:
        return TextureLoader(resolver)

    return SimpleNamespace(
        Vector3=Vector3,
        Object3D=Object3D,
        Group=Group,
        Mesh=Mesh,
        Scene=Scene,
        PerspectiveCamera=PerspectiveCamera,
        PlaneGeometry=PlaneGeometry,
        BoxGeometry=BoxGeometry,
        SphereGeometry=SphereGeometry,
        MeshBasicMaterial=MeshBasicMaterial,
        Texture=Texture,
        TextureLoader=texture_loader,
    )
