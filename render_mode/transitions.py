"""Drive slide enter/exit hooks and decide when a frame is stable."""
from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional

from logging_utils import get_logger

from .errors import ActivationError, TransitionError
from .markup import Element
from .media_resolver import MediaResolver
from .models import SlideDefinition
from .render_context import RenderContext, SlideInstance
from .tweens import AnimationClock

logger = get_logger(__name__)


class SlidePhase(str, Enum):
    IDLE = "idle"
    ACTIVATING = "activating"
    ENTERING = "entering"
    STABLE = "stable"
    EXITING = "exiting"
    DISPOSED = "disposed"


def ensure_all_visible(container: Element) -> None:
    """Force full visibility on every element without moving anything."""
    for element in container.iter():
        element.style["opacity"] = 1
        element.style["visibility"] = "visible"
        if element.text.strip() and not element.has_children():
            color = str(element.style.get("color", "")).replace(" ", "").lower()
            if color in ("transparent", "rgba(0,0,0,0)"):
                element.style["color"] = "#ffffff"


class TransitionScheduler:
    """Per-context lifecycle ``idle → activating → entering → stable → exiting → disposed``."""

    def __init__(self, context: RenderContext, clock: AnimationClock, config: Optional[Dict[str, Any]] = None) -> None:
        cfg = config.get("transitions", {}) if isinstance(config, dict) else {}
        self.context = context
        self.clock = clock
        self.time_scale = float(cfg.get("time_scale", 100))
        self.settle_seconds = float(cfg.get("settle_seconds", 0.5))
        self.exit_overlap_seconds = float(cfg.get("exit_overlap_seconds", 0.3))
        self.force_visible = bool(cfg.get("force_visible", True))
        self.phase = SlidePhase.IDLE

    @property
    def instance(self) -> Optional[SlideInstance]:
        return self.context.active

    async def enter(
        self,
        definition: SlideDefinition,
        resolver: MediaResolver,
        *,
        index: int = 0,
        stabilize: bool = True,
    ) -> SlideInstance:
        """Activate ``definition`` and run its enter transition.

        With ``stabilize`` the tween timeline is fast-forwarded for the
        settle interval, so the returned instance is fully revealed and the
        surface holds a fresh frame. Without it the transition plays at
        normal speed, which is what a live show wants.
        """
        if self.context.active is not None:
            await self.exit(overlap_seconds=0.0)

        self.phase = SlidePhase.ACTIVATING
        try:
            instance = self.context.activate_slide(definition, resolver, index=index)
        except ActivationError:
            self.phase = SlidePhase.IDLE
            raise

        if definition.transition_in is not None:
            self.phase = SlidePhase.ENTERING
            self._call_hook(instance, "transition_in", definition.transition_in)
            if stabilize:
                await self.clock.settle(self.settle_seconds, self.time_scale)

        if stabilize and self.force_visible:
            ensure_all_visible(instance.container)
        self.phase = SlidePhase.STABLE
        self.context.render_once()
        return instance

    async def exit(self, *, overlap_seconds: Optional[float] = None) -> Optional[SlideInstance]:
        """Run ``transition_out``, let the overlap window pass, then dispose."""
        instance = self.context.active
        if instance is None:
            return None

        overlap = self.exit_overlap_seconds if overlap_seconds is None else overlap_seconds
        hook = instance.definition.transition_out
        if hook is not None:
            self.phase = SlidePhase.EXITING
            self._call_hook(instance, "transition_out", hook)
            if overlap > 0:
                await self.clock.wait(overlap)

        instance.container.style["display"] = "none"
        self.context.deactivate_slide()
        self.phase = SlidePhase.DISPOSED
        return instance

    @staticmethod
    def _call_hook(instance: SlideInstance, name: str, hook: Any) -> None:
        try:
            hook(instance.state)
        except Exception as exc:
            logger.error("Error during %s for slide %d: %s", name, instance.index, exc, exc_info=True)
            instance.errors.append(TransitionError(f"{name} failed for slide {instance.index}: {exc}"))
