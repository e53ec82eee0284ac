"""Pool of isolated render windows with a correlated async RPC surface."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from logging_utils import get_logger

from .errors import (
    ContextClosedError,
    ContextLoadError,
    ContextLoadTimeout,
    ContextNotFoundError,
    SandboxRequestError,
)
from .models import CaptureResult, MediaAsset
from .sandbox import SANDBOX_TYPES, Message, Sandbox
from .utils import generate_id

logger = get_logger(__name__)

SandboxFactory = Callable[[str, Dict[str, Any], Callable[[Message], None]], Sandbox]

CLOSED_MESSAGE = "Render window was closed"


@dataclass
class RenderContextHandle:
    id: str
    width: int
    height: int
    sandbox: Optional[Sandbox] = None
    pending: Dict[str, "asyncio.Future[Any]"] = field(default_factory=dict)
    loaded: Optional["asyncio.Future[bool]"] = None
    closing: bool = False


class RenderWindowOrchestrator:
    """Create, drive and destroy render windows addressed by handle id.

    Every request carries a fresh correlation id and owns one future in the
    handle's ``pending`` table. The entry is removed exactly once: when the
    response arrives, when the caller stops waiting, or when the window is
    destroyed (which rejects it with ``ContextClosedError``).
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None, *, sandbox_factory: Optional[SandboxFactory] = None) -> None:
        self.config: Dict[str, Any] = config or {}
        render_cfg = self.config.get("render", {})
        sandbox_cfg = self.config.get("sandbox", {})
        self.default_width = int(render_cfg.get("width", 1920))
        self.default_height = int(render_cfg.get("height", 1080))
        self.mode = str(sandbox_cfg.get("mode", "process"))
        self.load_timeout = float(sandbox_cfg.get("load_timeout_seconds", 15))
        self.close_timeout = float(sandbox_cfg.get("close_timeout_seconds", 5))
        self.log_level = str(self.config.get("logging", {}).get("level", "INFO"))
        if sandbox_factory is None:
            if self.mode not in SANDBOX_TYPES:
                raise ValueError(f"Unknown sandbox mode: {self.mode}")
            sandbox_factory = SANDBOX_TYPES[self.mode]
        self._sandbox_factory = sandbox_factory
        self._pool: Dict[str, RenderContextHandle] = {}

    @property
    def handles(self) -> List[str]:
        return list(self._pool)

    async def __aenter__(self) -> "RenderWindowOrchestrator":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close_all()

    # ------------------------------------------------------------------
    # lifecycle

    async def create_context(self, width: Optional[int] = None, height: Optional[int] = None) -> str:
        """Start a sandbox and return its handle id once it finished loading."""
        loop = asyncio.get_running_loop()
        handle = RenderContextHandle(
            id=generate_id("rw"),
            width=int(width or self.default_width),
            height=int(height or self.default_height),
            loaded=loop.create_future(),
        )
        options = {
            "width": handle.width,
            "height": handle.height,
            "config": self.config,
            "log_level": self.log_level,
            "close_timeout_seconds": self.close_timeout,
        }

        def deliver(message: Message) -> None:
            try:
                loop.call_soon_threadsafe(self._on_message, handle, message)
            except RuntimeError:
                # Loop already closed; nobody is left to notify.
                logger.debug("Dropped %s message from render window %s", message.get("type"), handle.id)

        logger.info("Creating render window %s (%dx%d, %s sandbox)", handle.id, handle.width, handle.height, self.mode)
        try:
            handle.sandbox = self._sandbox_factory(handle.id, options, deliver)
            handle.sandbox.start()
        except Exception as exc:
            await self._release_sandbox(handle)
            raise ContextLoadError(f"Render window {handle.id} failed to start: {exc}") from exc

        try:
            await asyncio.wait_for(handle.loaded, timeout=self.load_timeout)
        except asyncio.TimeoutError as exc:
            await self._release_sandbox(handle)
            raise ContextLoadTimeout(
                f"Render window {handle.id} did not finish loading within {self.load_timeout:g} seconds"
            ) from exc
        except ContextLoadError:
            await self._release_sandbox(handle)
            raise

        self._pool[handle.id] = handle
        logger.info("Render window %s ready", handle.id)
        return handle.id

    async def destroy_context(self, handle_id: str) -> bool:
        """Reject pending requests and release the sandbox; False for unknown ids."""
        handle = self._pool.pop(handle_id, None)
        if handle is None:
            logger.warning("Render window %s not found; nothing to destroy", handle_id)
            return False
        rejected = self._reject_pending(handle)
        logger.info("Destroying render window %s (%d pending requests rejected)", handle_id, rejected)
        await self._release_sandbox(handle)
        return True

    async def close_all(self) -> None:
        for handle_id in list(self._pool):
            await self.destroy_context(handle_id)

    # ------------------------------------------------------------------
    # RPC surface

    async def transfer_media(self, handle_id: str, assets: Sequence[MediaAsset]) -> bool:
        """Push the media table; acknowledged once the message is delivered."""
        handle = self._get(handle_id)
        payload = [asdict(asset) for asset in assets]
        self._send(handle, {"type": "transfer-media", "assets": payload})
        logger.info("Transferred %d media assets to render window %s", len(payload), handle_id)
        return True

    async def load_script(self, handle_id: str, script: str) -> int:
        result = await self._request(handle_id, {"type": "load-slides", "code": script})
        return int(result or 0)

    async def render_slide_at(self, handle_id: str, index: int) -> CaptureResult:
        result = await self._request(handle_id, {"type": "render-slide", "index": int(index)})
        if isinstance(result, CaptureResult):
            return result
        return CaptureResult(**result)

    # ------------------------------------------------------------------

    def _get(self, handle_id: str) -> RenderContextHandle:
        handle = self._pool.get(handle_id)
        if handle is None:
            raise ContextNotFoundError(f"Render window not found: {handle_id}")
        return handle

    def _send(self, handle: RenderContextHandle, message: Message) -> None:
        if handle.sandbox is None:
            raise ContextClosedError(f"{CLOSED_MESSAGE}: {handle.id}")
        try:
            handle.sandbox.send(message)
        except (OSError, ValueError) as exc:
            raise ContextClosedError(f"{CLOSED_MESSAGE}: {handle.id}") from exc

    async def _request(self, handle_id: str, message: Message) -> Any:
        handle = self._get(handle_id)
        request_id = generate_id("req")
        while request_id in handle.pending:
            request_id = generate_id("req")
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        handle.pending[request_id] = future
        try:
            self._send(handle, dict(message, id=request_id))
            return await future
        finally:
            handle.pending.pop(request_id, None)

    def _reject_pending(self, handle: RenderContextHandle) -> int:
        pending = list(handle.pending.values())
        handle.pending.clear()
        rejected = 0
        for future in pending:
            if not future.done():
                future.set_exception(ContextClosedError(CLOSED_MESSAGE))
                rejected += 1
        return rejected

    async def _release_sandbox(self, handle: RenderContextHandle) -> None:
        handle.closing = True
        if handle.sandbox is None:
            return
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, handle.sandbox.close)
        except (OSError, ValueError) as exc:
            logger.warning("Error while closing render window %s: %s", handle.id, exc)

    def _on_message(self, handle: RenderContextHandle, message: Message) -> None:
        kind = message.get("type")
        if kind == "response":
            self._on_response(handle, message)
        elif kind == "console":
            level = logging.getLevelName(str(message.get("level", "INFO")))
            if not isinstance(level, int):
                level = logging.INFO
            logger.log(level, "Render window %s console: %s", handle.id, message.get("message", ""))
        elif kind == "did-start-loading":
            logger.debug("Render window %s started loading", handle.id)
        elif kind == "did-finish-load":
            if handle.loaded is not None and not handle.loaded.done():
                handle.loaded.set_result(True)
        elif kind == "did-fail-load":
            error = message.get("error", "unknown error")
            logger.error("Render window %s failed to load: %s", handle.id, error)
            if handle.loaded is not None and not handle.loaded.done():
                handle.loaded.set_exception(ContextLoadError(f"Render window failed to load: {error}"))
        elif kind == "exited":
            self._on_exited(handle)
        else:
            logger.debug("Ignoring message of type %s from render window %s", kind, handle.id)

    def _on_response(self, handle: RenderContextHandle, message: Message) -> None:
        future = handle.pending.pop(str(message.get("id")), None)
        if future is None or future.done():
            logger.debug("Ignoring response for unknown request %s on %s", message.get("id"), handle.id)
            return
        if message.get("ok"):
            future.set_result(message.get("result"))
        else:
            future.set_exception(SandboxRequestError(str(message.get("error", "request failed"))))

    def _on_exited(self, handle: RenderContextHandle) -> None:
        if handle.loaded is not None and not handle.loaded.done():
            handle.loaded.set_exception(ContextLoadError("Render window exited while loading"))
        if handle.closing:
            logger.debug("Render window %s exited", handle.id)
            return
        logger.warning("Render window %s exited unexpectedly", handle.id)
        self._pool.pop(handle.id, None)
        self._reject_pending(handle)
        handle.closing = True
        # Reap the worker without blocking the loop.
        if handle.sandbox is not None:
            asyncio.get_running_loop().run_in_executor(None, handle.sandbox.close)
