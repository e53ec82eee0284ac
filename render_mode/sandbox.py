"""Isolated render windows and the host-side handles that talk to them.

A render window owns its own event loop, render context, tween timeline,
script host and media table. It talks to the host only through one end of a
``multiprocessing.Pipe``, so the same window code runs in a child process
(``ProcessSandbox``) or in a worker thread (``ThreadSandbox``).
"""
from __future__ import annotations

import asyncio
import multiprocessing
import threading
from typing import Any, Callable, Dict, List, Optional

from logging_utils import configure_sandbox_logging, get_logger

from .capture import CaptureService
from .errors import ActivationError
from .media_resolver import MediaResolver
from .models import CaptureResult, MediaAsset
from .render_context import RenderContext
from .script_host import SlideScriptHost
from .transitions import TransitionScheduler
from .tweens import AnimationClock, Tweener

logger = get_logger(__name__)

Message = Dict[str, Any]


class Channel:
    """Thread-safe sending wrapper around one pipe end."""

    def __init__(self, conn: Any) -> None:
        self.conn = conn
        self._lock = threading.Lock()

    def send(self, message: Message) -> None:
        with self._lock:
            self.conn.send(message)

    def recv(self) -> Message:
        return self.conn.recv()

    def close(self) -> None:
        with self._lock:
            self.conn.close()


class RenderWindow:
    """Sandbox-side request loop around one render context."""

    def __init__(self, channel: Channel, options: Dict[str, Any]) -> None:
        self.channel = channel
        self.options = options
        self.config: Dict[str, Any] = options.get("config") or {}
        self.width = int(options.get("width", 1920))
        self.height = int(options.get("height", 1080))
        self.resolver = MediaResolver()
        self.tweener = Tweener()
        self.context: Optional[RenderContext] = None
        self.clock: Optional[AnimationClock] = None
        self.scheduler: Optional[TransitionScheduler] = None
        self.capture = CaptureService(self.config)
        self.host: Optional[SlideScriptHost] = None

    def _initialize(self) -> None:
        self.context = RenderContext(self.width, self.height, self.config, tweener=self.tweener)
        fps = float(self.config.get("render", {}).get("fps", 60))
        self.clock = AnimationClock(self.tweener, fps=fps)
        self.scheduler = TransitionScheduler(self.context, self.clock, self.config)
        self.host = SlideScriptHost(resolver=self.resolver, tweener=self.tweener)

    async def serve(self) -> None:
        self.channel.send({"type": "did-start-loading"})
        try:
            self._initialize()
        except Exception as exc:
            logger.error("Render window failed to initialize: %s", exc, exc_info=True)
            self.channel.send({"type": "did-fail-load", "error": str(exc)})
            return

        assert self.clock is not None
        ticker = asyncio.create_task(self.clock.run())
        self.channel.send({"type": "did-finish-load"})
        logger.info("Render window ready at %dx%d", self.width, self.height)
        loop = asyncio.get_running_loop()
        try:
            while True:
                try:
                    message = await loop.run_in_executor(None, self.channel.recv)
                except (EOFError, OSError):
                    break
                if message.get("type") == "close":
                    break
                await self.dispatch(message)
        finally:
            ticker.cancel()
            try:
                await ticker
            except asyncio.CancelledError:
                pass
            if self.context is not None:
                self.context.dispose()

    async def dispatch(self, message: Message) -> None:
        kind = message.get("type")
        if kind == "transfer-media":
            try:
                self.transfer_media(message.get("assets") or [])
            except (TypeError, ValueError) as exc:
                logger.error("Rejected media transfer: %s", exc)
            return
        if kind not in ("load-slides", "render-slide"):
            logger.warning("Ignoring unknown message type: %s", kind)
            return
        request_id = message.get("id")
        try:
            if kind == "load-slides":
                result: Any = self.load_slides(str(message.get("code") or ""))
            else:
                result = await self.render_slide(int(message.get("index", -1)))
        except Exception as exc:
            logger.error("Request %s (%s) failed: %s", request_id, kind, exc, exc_info=True)
            self.channel.send({"type": "response", "id": request_id, "ok": False, "error": str(exc)})
            return
        self.channel.send({"type": "response", "id": request_id, "ok": True, "result": result})

    def transfer_media(self, assets: List[Any]) -> None:
        table = [asset if isinstance(asset, MediaAsset) else MediaAsset(**asset) for asset in assets]
        self.resolver = MediaResolver(table)
        if self.host is not None:
            self.host.resolver = self.resolver
        logger.info("Received %d media assets", len(table))

    def load_slides(self, code: str) -> int:
        assert self.host is not None
        return self.host.load(code)

    async def render_slide(self, index: int) -> CaptureResult:
        """Activate, stabilise and capture one slide, then tear it down."""
        assert self.host is not None and self.scheduler is not None and self.context is not None
        slides = self.host.slides
        if index < 0 or index >= len(slides):
            return CaptureResult.failure(index, f"Invalid slide index: {index}")

        logger.info("Rendering slide %d of %d", index + 1, len(slides))
        try:
            instance = await self.scheduler.enter(slides[index], self.resolver, index=index, stabilize=True)
        except ActivationError as exc:
            return CaptureResult.failure(index, str(exc))

        try:
            image_data = await self.capture.capture(self.context, self.width, self.height)
        finally:
            await self.scheduler.exit(overlap_seconds=0.0)
        if instance.errors:
            return CaptureResult(
                index=index,
                success=False,
                image_data=image_data,
                error="; ".join(str(error) for error in instance.errors),
            )
        return CaptureResult(index=index, success=True, image_data=image_data)


def run_sandbox(conn: Any, options: Dict[str, Any]) -> None:
    """Entry point of a render window process or thread."""
    channel = Channel(conn)
    if options.get("forward_console"):
        configure_sandbox_logging(str(options.get("log_level", "INFO")), channel.send)
    window = RenderWindow(channel, options)
    try:
        asyncio.run(window.serve())
    finally:
        channel.close()


# host side ------------------------------------------------------------


class Sandbox:
    """Host-side handle of one render window.

    ``deliver`` is called from a reader thread with every message the window
    sends, followed by a synthetic ``{"type": "exited"}`` once the pipe closes.
    """

    def __init__(self, handle_id: str, options: Dict[str, Any], deliver: Callable[[Message], None]) -> None:
        self.handle_id = handle_id
        self.options = options
        self.deliver = deliver
        self.close_timeout = float(options.get("close_timeout_seconds", 5))
        self._conn: Any = None
        self._reader: Optional[threading.Thread] = None

    def start(self) -> None:
        raise NotImplementedError

    def send(self, message: Message) -> None:
        if self._conn is None:
            raise OSError("Sandbox is not running")
        self._conn.send(message)

    def close(self) -> None:
        if self._conn is not None:
            try:
                self._conn.send({"type": "close"})
            except (OSError, ValueError):
                logger.debug("Render window %s pipe already closed", self.handle_id)
        self._join_worker()
        if self._reader is not None:
            self._reader.join(self.close_timeout)
        if self._conn is not None:
            self._conn.close()
            self._conn = None

    def _join_worker(self) -> None:
        raise NotImplementedError

    def _start_reader(self) -> None:
        self._reader = threading.Thread(
            target=self._read_loop,
            name=f"RenderWindowReader-{self.handle_id}",
            daemon=True,
        )
        self._reader.start()

    def _read_loop(self) -> None:
        conn = self._conn
        while True:
            try:
                message = conn.recv()
            except (EOFError, OSError):
                break
            self.deliver(message)
        self.deliver({"type": "exited"})


class ProcessSandbox(Sandbox):
    """Render window in its own OS process."""

    def __init__(self, handle_id: str, options: Dict[str, Any], deliver: Callable[[Message], None]) -> None:
        super().__init__(handle_id, options, deliver)
        self._process: Optional[multiprocessing.process.BaseProcess] = None

    def start(self) -> None:
        ctx = multiprocessing.get_context(self.options.get("start_method", "spawn"))
        parent_conn, child_conn = ctx.Pipe()
        options = dict(self.options, forward_console=True)
        self._process = ctx.Process(
            target=run_sandbox,
            args=(child_conn, options),
            name=f"RenderWindow-{self.handle_id}",
            daemon=True,
        )
        self._process.start()
        # Only the child may hold its end, or EOF is never seen here.
        child_conn.close()
        self._conn = parent_conn
        self._start_reader()

    def _join_worker(self) -> None:
        if self._process is None:
            return
        self._process.join(self.close_timeout)
        if self._process.is_alive():
            logger.warning("Render window %s did not exit; terminating", self.handle_id)
            self._process.terminate()
            self._process.join(self.close_timeout)


class ThreadSandbox(Sandbox):
    """Render window on a worker thread with its own event loop."""

    def __init__(self, handle_id: str, options: Dict[str, Any], deliver: Callable[[Message], None]) -> None:
        super().__init__(handle_id, options, deliver)
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        parent_conn, child_conn = multiprocessing.Pipe()
        options = dict(self.options, forward_console=False)
        self._thread = threading.Thread(
            target=run_sandbox,
            args=(child_conn, options),
            name=f"RenderWindow-{self.handle_id}",
            daemon=True,
        )
        self._thread.start()
        self._conn = parent_conn
        self._start_reader()

    def _join_worker(self) -> None:
        if self._thread is not None:
            self._thread.join(self.close_timeout)
            if self._thread.is_alive():
                logger.warning("Render window %s thread did not exit in time", self.handle_id)


SANDBOX_TYPES = {
    "process": ProcessSandbox,
    "thread": ThreadSandbox,
}
