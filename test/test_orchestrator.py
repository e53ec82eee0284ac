from __future__ import annotations

import asyncio
import base64
import io
import logging
import sys
from pathlib import Path
from typing import Any, Callable, Dict, List

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

import pytest
from PIL import Image

from render_mode.batch import BatchExportJob
from render_mode.capture import decode_png_data_uri
from render_mode.errors import (
    ContextClosedError,
    ContextLoadError,
    ContextLoadTimeout,
    ContextNotFoundError,
    SandboxRequestError,
)
from render_mode.models import CaptureResult, JobStatus, MediaAsset, RenderJob
from render_mode.orchestrator import RenderWindowOrchestrator

CONFIG: Dict[str, Any] = {
    "logging": {"level": "INFO"},
    "render": {"width": 64, "height": 36, "fps": 120},
    "sandbox": {"mode": "thread", "load_timeout_seconds": 10, "close_timeout_seconds": 5},
    "transitions": {"time_scale": 100, "settle_seconds": 0.05, "exit_overlap_seconds": 0.0},
    "capture": {"tiers": ["snapshot"]},
}

SCRIPT = '''
def title_init(ctx):
    ctx.container.create("img", src="media/logo.png", style={"width": "100%", "height": "100%"})
    return {}

def title_in(state):
    raise RuntimeError("fade target missing")

def broken_init(ctx):
    raise ValueError("cannot build slide")

play_slides([
    {"init": title_init, "transition_in": title_in},
    {"init": broken_init},
])
'''


def _logo() -> MediaAsset:
    buffer = io.BytesIO()
    Image.new("RGB", (8, 8), (255, 0, 0)).save(buffer, format="PNG")
    return MediaAsset(id="media/logo.png", mime_type="image/png", data=base64.b64encode(buffer.getvalue()).decode("ascii"))


class FakeSandbox:
    """Sandbox double whose load behaviour is chosen per test."""

    def __init__(self, handle_id: str, options: Dict[str, Any], deliver: Callable[[Dict[str, Any]], None], *, on_start: List[Dict[str, Any]]) -> None:
        self.handle_id = handle_id
        self.options = options
        self.deliver = deliver
        self.on_start = on_start
        self.sent: List[Dict[str, Any]] = []
        self.closed = False

    def start(self) -> None:
        for message in self.on_start:
            self.deliver(message)

    def send(self, message: Dict[str, Any]) -> None:
        self.sent.append(message)

    def close(self) -> None:
        self.closed = True


class EchoSandbox(FakeSandbox):
    def send(self, message: Dict[str, Any]) -> None:
        super().send(message)
        if message["type"] != "load-slides":
            return
        self.deliver({"type": "response", "id": "req_unknown", "ok": True, "result": 99})
        if "raise" in message["code"]:
            self.deliver({"type": "response", "id": message["id"], "ok": False, "error": "script exploded"})
            return
        self.deliver({"type": "response", "id": message["id"], "ok": True, "result": 3})
        self.deliver({"type": "response", "id": message["id"], "ok": True, "result": 7})


def _factory(cls: type, on_start: List[Dict[str, Any]], created: List[FakeSandbox]):
    def build(handle_id, options, deliver):
        sandbox = cls(handle_id, options, deliver, on_start=on_start)
        created.append(sandbox)
        return sandbox

    return build


LOADED = [{"type": "did-start-loading"}, {"type": "did-finish-load"}]


def test_thread_sandbox_round_trip() -> None:
    async def scenario():
        async with RenderWindowOrchestrator(CONFIG) as orchestrator:
            handle_id = await orchestrator.create_context(80, 45)
            assert orchestrator.handles == [handle_id]

            assert await orchestrator.transfer_media(handle_id, [_logo()]) is True
            count = await orchestrator.load_script(handle_id, SCRIPT)
            first = await orchestrator.render_slide_at(handle_id, 0)
            second = await orchestrator.render_slide_at(handle_id, 1)
            missing = await orchestrator.render_slide_at(handle_id, 5)

            assert await orchestrator.destroy_context(handle_id) is True
            assert await orchestrator.destroy_context(handle_id) is False
            return count, first, second, missing, orchestrator.handles

    count, first, second, missing, handles = asyncio.run(scenario())

    assert count == 2
    assert isinstance(first, CaptureResult)
    assert not first.success and first.index == 0
    assert "transition_in failed for slide 0: fade target missing" in first.error
    image = Image.open(io.BytesIO(decode_png_data_uri(first.image_data))).convert("RGBA")
    assert image.size == (80, 45)
    assert image.getpixel((40, 22))[0] > 200
    assert not second.success
    assert "cannot build slide" in second.error
    assert not missing.success
    assert "Invalid slide index" in missing.error
    assert handles == []


TWO_SLIDES = '''
def panel(color):
    def init(ctx):
        box = ctx.container.create(
            "div", style={"background-color": color, "width": "100%", "height": "100%", "opacity": 1}
        )
        return {"panel": box}
    return init

def fade_in(state):
    tween.from_(state["panel"].style, 0.5, opacity=0)

def fade_out(state):
    tween.to(state["panel"].style, 0.5, opacity=0)

play_slides([
    {"init": panel("#ff0000"), "transition_in": fade_in, "transition_out": fade_out},
    {"init": panel("#00ff00"), "transition_in": fade_in, "transition_out": fade_out},
])
'''


def test_batch_renders_every_slide_with_enter_and_exit_hooks() -> None:
    async def scenario():
        async with RenderWindowOrchestrator(CONFIG) as orchestrator:
            handle_id = await orchestrator.create_context(32, 18)
            count = await orchestrator.load_script(handle_id, TWO_SLIDES)
            job = RenderJob(job_id="job_two", target_width=32, target_height=18, script=TWO_SLIDES, slide_count=count)
            return await BatchExportJob(orchestrator, handle_id, job).run()

    job = asyncio.run(scenario())

    assert job.status is JobStatus.COMPLETED
    assert [result.success for result in job.results] == [True, True]
    for result, channel in zip(job.results, (0, 1)):
        assert result.image_data.startswith("data:image/png;base64,")
        image = Image.open(io.BytesIO(decode_png_data_uri(result.image_data))).convert("RGB")
        assert image.size == (32, 18)
        assert image.getpixel((16, 9))[channel] > 200


def test_failed_exit_hook_fails_slide_but_next_slide_renders() -> None:
    script = '''
def init(ctx):
    return {}

def bad_out(state):
    raise RuntimeError("exit tween lost")

play_slides([
    {"init": init, "transition_out": bad_out},
    {"init": init},
])
'''

    async def scenario():
        async with RenderWindowOrchestrator(CONFIG) as orchestrator:
            handle_id = await orchestrator.create_context(32, 18)
            await orchestrator.load_script(handle_id, script)
            first = await orchestrator.render_slide_at(handle_id, 0)
            second = await orchestrator.render_slide_at(handle_id, 1)
            return first, second

    first, second = asyncio.run(scenario())

    assert not first.success
    assert "transition_out failed for slide 0: exit tween lost" in first.error
    assert second.success
    assert second.error is None


def test_broken_script_reports_zero_slides() -> None:
    async def scenario():
        async with RenderWindowOrchestrator(CONFIG) as orchestrator:
            handle_id = await orchestrator.create_context()
            count = await orchestrator.load_script(handle_id, "play_slides(")
            result = await orchestrator.render_slide_at(handle_id, 0)
            return count, result

    count, result = asyncio.run(scenario())

    assert count == 0
    assert not result.success


def test_contexts_are_independent() -> None:
    async def scenario():
        async with RenderWindowOrchestrator(CONFIG) as orchestrator:
            first = await orchestrator.create_context()
            second = await orchestrator.create_context()
            await orchestrator.load_script(first, "play_slides([{'init': lambda ctx: {}}])")
            counts = await asyncio.gather(
                orchestrator.load_script(second, "play_slides([{'init': lambda ctx: {}}] * 3)"),
                orchestrator.render_slide_at(first, 0),
            )
            return first, second, counts, sorted(orchestrator.handles)

    first, second, counts, handles = asyncio.run(scenario())

    assert first != second
    assert counts[0] == 3
    assert counts[1].success
    assert handles == sorted([first, second])


def test_unknown_handle_raises_not_found() -> None:
    async def scenario():
        orchestrator = RenderWindowOrchestrator(CONFIG)
        with pytest.raises(ContextNotFoundError):
            await orchestrator.render_slide_at("rw_missing", 0)
        with pytest.raises(ContextNotFoundError):
            await orchestrator.transfer_media("rw_missing", [])
        assert await orchestrator.destroy_context("rw_missing") is False

    asyncio.run(scenario())


def test_stalled_sandbox_times_out_and_is_torn_down() -> None:
    created: List[FakeSandbox] = []
    config = dict(CONFIG, sandbox={"load_timeout_seconds": 0.1})
    orchestrator = RenderWindowOrchestrator(config, sandbox_factory=_factory(FakeSandbox, [{"type": "did-start-loading"}], created))

    with pytest.raises(ContextLoadTimeout):
        asyncio.run(orchestrator.create_context())

    assert created[0].closed
    assert orchestrator.handles == []


def test_load_failure_rejects_creation() -> None:
    created: List[FakeSandbox] = []
    failing = [{"type": "did-start-loading"}, {"type": "did-fail-load", "error": "surface unavailable"}]
    orchestrator = RenderWindowOrchestrator(CONFIG, sandbox_factory=_factory(FakeSandbox, failing, created))

    with pytest.raises(ContextLoadError) as excinfo:
        asyncio.run(orchestrator.create_context())

    assert not isinstance(excinfo.value, ContextLoadTimeout)
    assert "surface unavailable" in str(excinfo.value)
    assert created[0].closed
    assert orchestrator.handles == []


def test_sandbox_exiting_during_load_rejects_creation() -> None:
    created: List[FakeSandbox] = []
    orchestrator = RenderWindowOrchestrator(CONFIG, sandbox_factory=_factory(FakeSandbox, [{"type": "exited"}], created))

    with pytest.raises(ContextLoadError):
        asyncio.run(orchestrator.create_context())
    assert orchestrator.handles == []


def test_destroy_rejects_every_pending_request() -> None:
    created: List[FakeSandbox] = []
    orchestrator = RenderWindowOrchestrator(CONFIG, sandbox_factory=_factory(FakeSandbox, LOADED, created))

    async def scenario():
        handle_id = await orchestrator.create_context()
        tasks = [
            asyncio.create_task(orchestrator.load_script(handle_id, "play_slides([])")),
            asyncio.create_task(orchestrator.render_slide_at(handle_id, 0)),
            asyncio.create_task(orchestrator.render_slide_at(handle_id, 1)),
        ]
        await asyncio.sleep(0.01)
        pending_before = len(orchestrator._pool[handle_id].pending)
        handle = orchestrator._pool[handle_id]
        assert await orchestrator.destroy_context(handle_id) is True
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        return pending_before, handle, outcomes

    pending_before, handle, outcomes = asyncio.run(scenario())

    sent_ids = [message["id"] for message in created[0].sent]
    assert pending_before == 3
    assert len(set(sent_ids)) == 3
    assert all(isinstance(outcome, ContextClosedError) for outcome in outcomes)
    assert all(str(outcome) == "Render window was closed" for outcome in outcomes)
    assert handle.pending == {}
    assert created[0].closed


def test_handle_without_sandbox_raises_closed_error() -> None:
    created: List[FakeSandbox] = []
    orchestrator = RenderWindowOrchestrator(CONFIG, sandbox_factory=_factory(FakeSandbox, LOADED, created))

    async def scenario():
        handle_id = await orchestrator.create_context()
        handle = orchestrator._pool[handle_id]
        handle.sandbox = None
        with pytest.raises(ContextClosedError):
            await orchestrator.transfer_media(handle_id, [])
        with pytest.raises(ContextClosedError):
            await orchestrator.render_slide_at(handle_id, 0)
        return handle

    handle = asyncio.run(scenario())

    assert handle.pending == {}
    assert created[0].sent == []


def test_responses_are_correlated_by_id(caplog: pytest.LogCaptureFixture) -> None:
    created: List[FakeSandbox] = []
    orchestrator = RenderWindowOrchestrator(CONFIG, sandbox_factory=_factory(EchoSandbox, LOADED, created))
    caplog.set_level(logging.DEBUG, logger="render_mode.orchestrator")

    async def scenario():
        handle_id = await orchestrator.create_context()
        first, second = await asyncio.gather(
            orchestrator.load_script(handle_id, "a"),
            orchestrator.load_script(handle_id, "b"),
        )
        with pytest.raises(SandboxRequestError):
            await orchestrator.load_script(handle_id, "raise")
        pending = dict(orchestrator._pool[handle_id].pending)
        await orchestrator.close_all()
        return first, second, pending

    first, second, pending = asyncio.run(scenario())

    assert (first, second) == (3, 3)
    assert pending == {}
    assert "Ignoring response for unknown request req_unknown" in caplog.text


def test_unexpected_exit_rejects_pending_and_drops_handle() -> None:
    created: List[FakeSandbox] = []
    orchestrator = RenderWindowOrchestrator(CONFIG, sandbox_factory=_factory(FakeSandbox, LOADED, created))

    async def scenario():
        handle_id = await orchestrator.create_context()
        task = asyncio.create_task(orchestrator.render_slide_at(handle_id, 0))
        await asyncio.sleep(0.01)
        created[0].deliver({"type": "exited"})
        with pytest.raises(ContextClosedError):
            await task
        await asyncio.sleep(0.01)
        with pytest.raises(ContextNotFoundError):
            await orchestrator.render_slide_at(handle_id, 1)
        return orchestrator.handles

    assert asyncio.run(scenario()) == []
    assert created[0].closed


def test_console_messages_are_relogged(caplog: pytest.LogCaptureFixture) -> None:
    created: List[FakeSandbox] = []
    console = {"type": "console", "level": "WARNING", "logger": "render_mode.capture", "message": "tier failed"}
    orchestrator = RenderWindowOrchestrator(CONFIG, sandbox_factory=_factory(FakeSandbox, LOADED + [console], created))
    caplog.set_level(logging.INFO)

    async def scenario():
        handle_id = await orchestrator.create_context()
        await asyncio.sleep(0.01)
        await orchestrator.close_all()
        return handle_id

    handle_id = asyncio.run(scenario())

    records = [record for record in caplog.records if "console: tier failed" in record.getMessage()]
    assert records
    assert records[0].levelno == logging.WARNING
    assert records[0].getMessage() == f"Render window {handle_id} console: tier failed"


def test_unknown_sandbox_mode() -> None:
    with pytest.raises(ValueError):
        RenderWindowOrchestrator({"sandbox": {"mode": "browser"}})


def test_process_sandbox_round_trip() -> None:
    config = dict(CONFIG, sandbox={"mode": "process", "load_timeout_seconds": 60, "close_timeout_seconds": 10})

    async def scenario():
        async with RenderWindowOrchestrator(config) as orchestrator:
            handle_id = await orchestrator.create_context(48, 27)
            await orchestrator.transfer_media(handle_id, [_logo()])
            count = await orchestrator.load_script(handle_id, TWO_SLIDES)
            result = await orchestrator.render_slide_at(handle_id, 0)
        return count, result, orchestrator.handles

    count, result, handles = asyncio.run(scenario())

    assert count == 2
    assert result.success
    image = Image.open(io.BytesIO(decode_png_data_uri(result.image_data)))
    assert image.size == (48, 27)
    assert handles == []
