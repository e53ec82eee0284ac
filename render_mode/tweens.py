"""Time-based tweening handed to slide scripts as ``tween``.

A ``Tweener`` is one global timeline per render context. Tweens advance only
when the timeline is ticked, and every tick is multiplied by ``time_scale``;
raising ``time_scale`` is how capture fast-forwards authored animations.
"""
from __future__ import annotations

import asyncio
import math
import re
import time
from collections.abc import MutableMapping
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from logging_utils import get_logger

logger = get_logger(__name__)

_NUMBER_RE = re.compile(r"^\s*(-?\d+(?:\.\d+)?)\s*([a-z%]*)\s*$")


def _power_in(p: int) -> Callable[[float], float]:
    return lambda t: t ** p


def _power_out(p: int) -> Callable[[float], float]:
    return lambda t: 1 - (1 - t) ** p


def _power_in_out(p: int) -> Callable[[float], float]:
    def ease(t: float) -> float:
        if t < 0.5:
            return (2 ** (p - 1)) * t ** p
        return 1 - ((-2 * t + 2) ** p) / 2

    return ease


def _back_out(t: float) -> float:
    c1 = 1.70158
    c3 = c1 + 1
    return 1 + c3 * (t - 1) ** 3 + c1 * (t - 1) ** 2


def _sine_in_out(t: float) -> float:
    return -(math.cos(math.pi * t) - 1) / 2


EASES: Dict[str, Callable[[float], float]] = {
    "linear": lambda t: t,
    "none": lambda t: t,
    "sine.inOut": _sine_in_out,
    "back.out": _back_out,
}
for _power in (1, 2, 3, 4):
    EASES[f"power{_power}.in"] = _power_in(_power + 1)
    EASES[f"power{_power}.out"] = _power_out(_power + 1)
    EASES[f"power{_power}.inOut"] = _power_in_out(_power + 1)
    EASES[f"power{_power}"] = EASES[f"power{_power}.out"]


def _split_value(value: Any) -> Tuple[float, str] | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value), ""
    if isinstance(value, str):
        match = _NUMBER_RE.match(value)
        if match:
            return float(match.group(1)), match.group(2)
    return None


def _read(target: Any, key: str) -> Any:
    if isinstance(target, MutableMapping):
        return target.get(key)
    return getattr(target, key, None)


def _write(target: Any, key: str, value: Any) -> None:
    if isinstance(target, MutableMapping):
        target[key] = value
    else:
        setattr(target, key, value)


@dataclass
class _Property:
    key: str
    start: Optional[float]
    end: float
    unit: str
    final: Any
    snap: bool = False


@dataclass
class Tween:
    target: Any
    duration: float
    delay: float
    ease: Callable[[float], float]
    properties: List[_Property]
    on_complete: Optional[Callable[[], Any]] = None
    elapsed: float = 0.0
    finished: bool = False
    _started: bool = field(default=False, repr=False)

    def _start(self) -> None:
        for prop in self.properties:
            if prop.start is None and not prop.snap:
                current = _split_value(_read(self.target, prop.key))
                prop.start = current[0] if current else prop.end
                if current and not prop.unit:
                    prop.unit = current[1]
        self._started = True

    def advance(self, dt: float) -> None:
        if self.finished:
            return
        self.elapsed += dt
        active = self.elapsed - self.delay
        if active < 0:
            return
        if not self._started:
            self._start()
        progress = 1.0 if self.duration <= 0 else min(1.0, active / self.duration)
        eased = self.ease(progress)
        for prop in self.properties:
            if progress >= 1.0:
                _write(self.target, prop.key, prop.final)
                continue
            if prop.snap:
                continue
            start = prop.start if prop.start is not None else prop.end
            value = start + (prop.end - start) * eased
            _write(self.target, prop.key, f"{value:g}{prop.unit}" if prop.unit else value)
        if progress >= 1.0:
            self.finished = True
            if self.on_complete is not None:
                try:
                    self.on_complete()
                except Exception:
                    logger.exception("Tween on_complete callback failed")


class Tweener:
    """Global animation timeline with a playback-rate multiplier."""

    def __init__(self) -> None:
        self.time_scale = 1.0
        self._tweens: List[Tween] = []

    @property
    def active(self) -> int:
        return len(self._tweens)

    def to(
        self,
        target: Any,
        duration: float = 0.5,
        *,
        delay: float = 0.0,
        ease: str = "power1.out",
        on_complete: Optional[Callable[[], Any]] = None,
        **props: Any,
    ) -> Tween:
        """Animate ``target`` from its current values to ``props``."""
        properties = []
        for key, value in props.items():
            properties.append(self._property(target, key, None, value))
        return self._add(target, duration, delay, ease, properties, on_complete)

    def from_(
        self,
        target: Any,
        duration: float = 0.5,
        *,
        delay: float = 0.0,
        ease: str = "power1.out",
        on_complete: Optional[Callable[[], Any]] = None,
        **props: Any,
    ) -> Tween:
        """Jump ``target`` to ``props`` now and animate back to the current values."""
        properties = []
        for key, value in props.items():
            current = _read(target, key)
            prop = self._property(target, key, None, current if current is not None else value)
            start = _split_value(value)
            prop.start = start[0] if start else prop.end
            _write(target, key, value)
            properties.append(prop)
        return self._add(target, duration, delay, ease, properties, on_complete)

    def set(self, target: Any, **props: Any) -> None:
        for key, value in props.items():
            _write(target, key, value)

    def kill_tweens_of(self, target: Any) -> int:
        before = len(self._tweens)
        self._tweens = [tw for tw in self._tweens if tw.target is not target]
        return before - len(self._tweens)

    def clear(self) -> None:
        self._tweens.clear()

    def tick(self, dt: float) -> None:
        """Advance all tweens by ``dt`` real seconds times ``time_scale``."""
        scaled = max(0.0, dt) * self.time_scale
        for tween in list(self._tweens):
            tween.advance(scaled)
        self._tweens = [tw for tw in self._tweens if not tw.finished]

    # ------------------------------------------------------------------

    def _property(self, target: Any, key: str, start: Optional[float], value: Any) -> _Property:
        parsed = _split_value(value)
        if parsed is None:
            # Non-numeric values (colours, keywords) snap at the end.
            return _Property(key=key, start=None, end=0.0, unit="", final=value, snap=True)
        number, unit = parsed
        return _Property(key=key, start=start, end=number, unit=unit, final=value)

    def _add(
        self,
        target: Any,
        duration: float,
        delay: float,
        ease: str,
        properties: List[_Property],
        on_complete: Optional[Callable[[], Any]],
    ) -> Tween:
        easing = EASES.get(ease)
        if easing is None:
            logger.warning("Unknown ease '%s', falling back to linear", ease)
            easing = EASES["linear"]
        tween = Tween(
            target=target,
            duration=max(0.0, float(duration)),
            delay=max(0.0, float(delay)),
            ease=easing,
            properties=properties,
            on_complete=on_complete,
        )
        self._tweens.append(tween)
        return tween


class AnimationClock:
    """Drive a ``Tweener`` from wall-clock time at a fixed frame rate."""

    def __init__(
        self,
        tweener: Tweener,
        *,
        fps: float = 60.0,
        on_frame: Optional[Callable[[float], Any]] = None,
    ) -> None:
        self.tweener = tweener
        self.frame_interval = 1.0 / max(1.0, float(fps))
        self.on_frame = on_frame
        self.running = False
        self._last = time.monotonic()

    def step(self) -> float:
        now = time.monotonic()
        dt = now - self._last
        self._last = now
        self.tweener.tick(dt)
        if self.on_frame is not None:
            self.on_frame(dt)
        return dt

    async def run(self) -> None:
        """Tick forever; cancel the task to stop."""
        self.running = True
        self._last = time.monotonic()
        try:
            while True:
                await asyncio.sleep(self.frame_interval)
                self.step()
        finally:
            self.running = False

    async def settle(self, seconds: float, factor: float) -> None:
        """Multiply the playback rate by ``factor`` for ``seconds`` of real time."""
        previous = self.tweener.time_scale
        self.tweener.time_scale = previous * factor
        try:
            if self.running:
                await asyncio.sleep(seconds)
            else:
                deadline = time.monotonic() + seconds
                self._last = time.monotonic()
                while time.monotonic() < deadline:
                    await asyncio.sleep(min(self.frame_interval, max(0.0, deadline - time.monotonic())))
                    self.step()
                self.step()
        finally:
            self.tweener.time_scale = previous

    async def wait(self, seconds: float) -> None:
        """Let ``seconds`` of real time pass at the current playback rate."""
        if self.running or seconds <= 0:
            await asyncio.sleep(max(0.0, seconds))
            return
        await self.settle(seconds, 1.0)
