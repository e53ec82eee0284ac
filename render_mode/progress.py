from __future__ import annotations

import sys
import time
from dataclasses import dataclass
from typing import TextIO


def format_ms(seconds: float) -> str:
    seconds = int(round(max(seconds, 0)))
    m, s = divmod(seconds, 60)
    return f"{m:02d}:{s:02d}"


@dataclass
class ConsoleBar:
    """Single-line percentage bar for export progress."""

    label: str = "Export"
    width: int = 24
    stream: TextIO = sys.stderr

    def __post_init__(self) -> None:
        self.start_time = time.time()
        self.percent = 0
        self.message = ""
        self._draw()

    def update(self, percent: int, message: str = "") -> None:
        self.percent = min(max(int(percent), 0), 100)
        if message:
            self.message = message
        self._draw()

    def finish(self) -> None:
        self._draw()
        self.stream.write("\n")
        self.stream.flush()

    # ------------------------------------------------------------------
    def _draw(self) -> None:
        filled = int(round(self.width * self.percent / 100))
        bar = "█" * filled + "·" * (self.width - filled)
        elapsed = time.time() - self.start_time
        msg = f"[{bar}] {self.percent:3d}% | {format_ms(elapsed)} | {self.label}"
        if self.message:
            msg += f" | {self.message}"
        # Pad so a shorter message fully overwrites the previous line.
        self.stream.write("\r" + msg.ljust(100))
        self.stream.flush()
