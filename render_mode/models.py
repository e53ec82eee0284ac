from __future__ import annotations

import base64
import mimetypes
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from .errors import ScriptError

MEDIA_PREFIX = "media/"


@dataclass(frozen=True)
class MediaAsset:
    id: str
    mime_type: str
    data: str  # base64 payload

    @property
    def file_name(self) -> str:
        return self.id.rsplit("/", 1)[-1]

    def data_uri(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"

    @classmethod
    def from_path(cls, path: Path | str) -> "MediaAsset":
        """Read a media file into an inline asset addressed as ``media/<name>``."""
        file_path = Path(path).expanduser()
        payload = base64.b64encode(file_path.read_bytes()).decode("ascii")
        mime_type, _ = mimetypes.guess_type(file_path.name)
        return cls(
            id=f"{MEDIA_PREFIX}{file_path.name}",
            mime_type=mime_type or "application/octet-stream",
            data=payload,
        )


Hook = Callable[[Any], Any]


@dataclass(frozen=True)
class SlideDefinition:
    """Lifecycle hooks registered by an author script."""

    init: Hook
    transition_in: Optional[Hook] = None
    transition_out: Optional[Hook] = None
    name: Optional[str] = None

    @classmethod
    def coerce(cls, raw: Any, *, index: int) -> "SlideDefinition":
        if isinstance(raw, SlideDefinition):
            return raw
        if isinstance(raw, dict):
            getter = raw.get
        else:
            def getter(key: str, default: Any = None) -> Any:
                return getattr(raw, key, default)

        init = getter("init")
        if not callable(init):
            raise ScriptError(f"Slide {index} must define a callable 'init'")
        hooks: Dict[str, Optional[Hook]] = {}
        for key in ("transition_in", "transition_out"):
            hook = getter(key)
            if hook is not None and not callable(hook):
                raise ScriptError(f"Slide {index} '{key}' must be callable")
            hooks[key] = hook
        name = getter("name")
        return cls(
            init=init,
            transition_in=hooks["transition_in"],
            transition_out=hooks["transition_out"],
            name=str(name) if name is not None else None,
        )


@dataclass(frozen=True)
class CaptureResult:
    index: int
    success: bool
    image_data: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def failure(cls, index: int, error: str) -> "CaptureResult":
        return cls(index=index, success=False, error=error)


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class RenderJob:
    job_id: str
    target_width: int
    target_height: int
    script: str
    media_assets: Tuple[MediaAsset, ...] = ()
    slide_count: int = 0
    status: JobStatus = JobStatus.PENDING
    results: List[CaptureResult] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def succeeded(self) -> List[CaptureResult]:
        return [result for result in self.results if result.success]

    @property
    def failed(self) -> List[CaptureResult]:
        return [result for result in self.results if not result.success]


@dataclass(frozen=True)
class ProgressEvent:
    current: int
    total: int
    message: str
