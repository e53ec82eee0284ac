"""Error taxonomy for slide rendering and capture."""
from __future__ import annotations


class RenderModeError(RuntimeError):
    """Base class for every render-mode failure."""


class ScriptError(RenderModeError):
    """The author script raised or registered no slides."""


class ActivationError(RenderModeError):
    """A slide's ``init`` hook raised."""

    def __init__(self, message: str, *, index: int | None = None) -> None:
        super().__init__(message)
        self.index = index


class TransitionError(RenderModeError):
    """A ``transition_in`` / ``transition_out`` hook raised."""


class CaptureError(RenderModeError):
    """A single capture tier failed; the next tier is tried."""


class ContextError(RenderModeError):
    """The render window itself is unusable."""


class ContextLoadError(ContextError):
    """The sandbox reported a load failure or exited while loading."""


class ContextLoadTimeout(ContextLoadError):
    """The sandbox did not finish loading in time."""


class ContextClosedError(ContextError):
    """The render window was destroyed while a request was in flight."""


class ContextNotFoundError(ContextError):
    """No render window is registered under the given handle."""


class SandboxRequestError(RenderModeError):
    """The sandbox answered a request with an error."""
