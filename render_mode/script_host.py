"""Execute author slide scripts in a namespace with four injected bindings.

A slide script is Python source. It sees exactly ``graph`` (scene-graph
constructors), ``tween`` (the context's tween timeline), ``scene`` (a
scratch scene) and ``play_slides`` (the registration callback), plus a
reduced builtins table that also carries ``load_media_from_project``.
"""
from __future__ import annotations

import builtins
from typing import Any, Dict, List, Optional, Sequence

from logging_utils import get_logger

from .errors import ScriptError
from .media_resolver import MediaResolver, is_media_reference
from .models import SlideDefinition
from .scene_graph import Scene, build_namespace
from .tweens import Tweener

logger = get_logger(__name__)

SCRIPT_FILENAME = "<slides>"

_ALLOWED_BUILTINS = (
    "abs", "all", "any", "bool", "callable", "dict", "divmod", "enumerate",
    "filter", "float", "format", "getattr", "hasattr", "int", "isinstance",
    "iter", "len", "list", "map", "max", "min", "next", "object", "pow",
    "property", "range", "repr", "reversed", "round", "set", "setattr",
    "slice", "sorted", "staticmethod", "classmethod", "str", "sum", "super",
    "tuple", "zip", "__build_class__",
    "Exception", "ValueError", "TypeError", "KeyError", "IndexError",
    "RuntimeError", "AttributeError", "ZeroDivisionError", "StopIteration",
)


def _script_print(*args: Any, sep: str = " ", **_: Any) -> None:
    logger.info("Slide script: %s", sep.join(str(arg) for arg in args))


class SlideScriptHost:
    """Capture the slide array an author script registers."""

    def __init__(self, resolver: Optional[MediaResolver] = None, tweener: Optional[Tweener] = None) -> None:
        self.resolver = resolver or MediaResolver()
        self.tweener = tweener or Tweener()
        self.slides: List[SlideDefinition] = []
        self.last_error: Optional[str] = None

    def load_media_from_project(self, path: str) -> Optional[str]:
        """Global helper for scripts: ``media/<name>`` -> data URI or ``None``."""
        if not is_media_reference(path):
            return None
        return self.resolver.lookup(path)

    def build_builtins(self) -> Dict[str, Any]:
        table = {name: getattr(builtins, name) for name in _ALLOWED_BUILTINS}
        table["print"] = _script_print
        table["load_media_from_project"] = self.load_media_from_project
        return table

    def load(self, code: str) -> int:
        """Run ``code`` and return the number of registered slides (0 on failure)."""
        self.slides = []
        self.last_error = None
        registered: List[Sequence[Any]] = []

        def play_slides(slides: Sequence[Any]) -> None:
            if registered:
                logger.warning("play_slides called more than once; keeping the first registration")
                return
            registered.append(slides)

        namespace: Dict[str, Any] = {
            "__builtins__": self.build_builtins(),
            "__name__": "slides",
            "graph": build_namespace(lambda: self.resolver),
            "tween": self.tweener,
            "scene": Scene(),
            "play_slides": play_slides,
        }

        try:
            compiled = compile(code, SCRIPT_FILENAME, "exec")
            exec(compiled, namespace)
            if not registered:
                raise ScriptError("Script did not call play_slides")
            self.slides = self._normalize(registered[0])
        except Exception as exc:
            self.slides = []
            self.last_error = f"{type(exc).__name__}: {exc}"
            logger.error("Error loading slides: %s", self.last_error)
            return 0

        logger.info("Loaded %d slides from script", len(self.slides))
        return len(self.slides)

    @staticmethod
    def _normalize(raw: Any) -> List[SlideDefinition]:
        if not isinstance(raw, (list, tuple)):
            raise ScriptError("play_slides expects a list of slides")
        return [SlideDefinition.coerce(item, index=idx) for idx, item in enumerate(raw)]

