"""Drive a slide script in real time inside the current event loop."""
from __future__ import annotations

import asyncio
from typing import Any, Callable, Dict, Optional, Sequence

from logging_utils import get_logger

from .errors import ActivationError, ScriptError
from .media_resolver import MediaResolver
from .models import MediaAsset
from .render_context import RenderContext
from .script_host import SlideScriptHost
from .transitions import TransitionScheduler
from .tweens import AnimationClock, Tweener

logger = get_logger(__name__)

FrameCallback = Callable[[RenderContext, float], Any]


class LiveShow:
    """Full-speed presentation: real-time transitions and a continuous render loop."""

    def __init__(
        self,
        script: str,
        media: Sequence[MediaAsset] = (),
        config: Optional[Dict[str, Any]] = None,
        *,
        width: Optional[int] = None,
        height: Optional[int] = None,
        on_frame: Optional[FrameCallback] = None,
    ) -> None:
        cfg = config or {}
        render_cfg = cfg.get("render", {})
        self.script = script
        self.on_frame = on_frame
        self.resolver = MediaResolver(media)
        self.tweener = Tweener()
        self.context = RenderContext(
            int(width or render_cfg.get("width", 1920)),
            int(height or render_cfg.get("height", 1080)),
            cfg,
            tweener=self.tweener,
        )
        self.clock = AnimationClock(self.tweener, fps=float(render_cfg.get("fps", 60)), on_frame=self._frame)
        self.scheduler = TransitionScheduler(self.context, self.clock, cfg)
        self.host = SlideScriptHost(resolver=self.resolver, tweener=self.tweener)
        self.current_index = -1
        self.is_transitioning = False
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def slide_count(self) -> int:
        return len(self.host.slides)

    async def start(self, index: int = 0) -> int:
        count = self.host.load(self.script)
        if count == 0:
            raise ScriptError("No slides found in the presentation.")
        self._loop_task = asyncio.create_task(self.clock.run())
        await self.go_to(index)
        return count

    async def next_slide(self) -> bool:
        return await self.go_to(self.current_index + 1)

    async def prev_slide(self) -> bool:
        return await self.go_to(self.current_index - 1)

    async def go_to(self, index: int) -> bool:
        """Show slide ``index`` (wrapping around); ignored during a transition."""
        if self.is_transitioning:
            logger.debug("Navigation ignored while a transition is running")
            return False
        if not self.slide_count:
            return False

        target = index % self.slide_count
        self.is_transitioning = True
        try:
            await self.scheduler.exit()
            try:
                await self.scheduler.enter(self.host.slides[target], self.resolver, index=target, stabilize=False)
            except ActivationError as exc:
                logger.error("Slide %d could not be shown: %s", target, exc)
            self.current_index = target
        finally:
            self.is_transitioning = False
        return True

    async def stop(self) -> None:
        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None
        self.context.dispose()

    def _frame(self, dt: float) -> None:
        self.context.render_once()
        if self.on_frame is not None:
            self.on_frame(self.context, dt)
