"""
Off-screen slide render package.

This package hosts isolated render windows that run author slide scripts,
fast-forward each slide's enter transition and capture the stable frame as a
PNG, plus the batch export and live-show drivers built on top of them.
"""

from __future__ import annotations

__all__ = [
    "BatchExportJob",
    "CaptureService",
    "LiveShow",
    "MediaAsset",
    "MediaResolver",
    "RenderContext",
    "RenderWindowOrchestrator",
    "SlideExporter",
    "SlideScriptHost",
    "TransitionScheduler",
]

from .batch import BatchExportJob
from .capture import CaptureService
from .exporter import SlideExporter
from .live_show import LiveShow
from .media_resolver import MediaResolver
from .models import MediaAsset
from .orchestrator import RenderWindowOrchestrator
from .render_context import RenderContext
from .script_host import SlideScriptHost
from .transitions import TransitionScheduler
