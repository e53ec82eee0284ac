from __future__ import annotations

import asyncio
import sys
from pathlib import Path
from typing import Dict, List

sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from render_mode.batch import BatchExportJob
from render_mode.errors import ContextClosedError, SandboxRequestError
from render_mode.models import CaptureResult, JobStatus, ProgressEvent, RenderJob


class ScriptedOrchestrator:
    """Answers render_slide_at from a per-index table of outcomes."""

    def __init__(self, outcomes: Dict[int, object]) -> None:
        self.outcomes = outcomes
        self.calls: List[int] = []

    async def render_slide_at(self, handle_id: str, index: int) -> CaptureResult:
        self.calls.append(index)
        await asyncio.sleep(0)
        outcome = self.outcomes.get(index)
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, CaptureResult):
            return outcome
        return CaptureResult(index=index, success=True, image_data=f"data:image/png;base64,{index}")


def _job(count: int) -> RenderJob:
    return RenderJob(job_id="job_test", target_width=320, target_height=180, script="", slide_count=count)


def test_all_slides_rendered_in_order_with_progress() -> None:
    orchestrator = ScriptedOrchestrator({})
    events: List[ProgressEvent] = []
    job = _job(4)

    asyncio.run(BatchExportJob(orchestrator, "rw_1", job, on_progress=events.append).run())

    assert orchestrator.calls == [0, 1, 2, 3]
    assert job.status is JobStatus.COMPLETED
    assert [result.index for result in job.results] == [0, 1, 2, 3]
    assert [(event.current, event.total) for event in events] == [(1, 4), (2, 4), (3, 4), (4, 4)]
    assert events[-1].message == "Rendered slide 4 of 4"


def test_slide_failures_do_not_stop_the_batch() -> None:
    orchestrator = ScriptedOrchestrator(
        {
            1: SandboxRequestError("render-slide crashed"),
            2: CaptureResult.failure(2, "Slide 2 init failed: boom"),
        }
    )
    events: List[ProgressEvent] = []
    job = _job(4)

    asyncio.run(BatchExportJob(orchestrator, "rw_1", job, on_progress=events.append).run())

    assert job.status is JobStatus.COMPLETED
    assert orchestrator.calls == [0, 1, 2, 3]
    assert [result.success for result in job.results] == [True, False, False, True]
    assert job.results[1].error == "render-slide crashed"
    assert len(job.succeeded) == 2
    assert len(job.failed) == 2
    assert events[1].message == "Slide 2 of 4 failed: render-slide crashed"


def test_context_loss_fails_job_but_fills_every_index() -> None:
    orchestrator = ScriptedOrchestrator({1: ContextClosedError("Render window was closed")})
    events: List[ProgressEvent] = []
    job = _job(5)

    asyncio.run(BatchExportJob(orchestrator, "rw_1", job, on_progress=events.append).run())

    assert job.status is JobStatus.FAILED
    assert job.error == "Render window was closed"
    assert orchestrator.calls == [0, 1]
    assert len(job.results) == 5
    assert [result.index for result in job.results] == [0, 1, 2, 3, 4]
    assert [result.success for result in job.results] == [True, False, False, False, False]
    assert len(events) == 5


def test_progress_callback_errors_are_contained() -> None:
    def explode(event: ProgressEvent) -> None:
        raise RuntimeError("ui gone")

    job = _job(2)
    asyncio.run(BatchExportJob(ScriptedOrchestrator({}), "rw_1", job, on_progress=explode).run())

    assert job.status is JobStatus.COMPLETED
    assert len(job.results) == 2


def test_empty_job_completes() -> None:
    job = _job(0)

    asyncio.run(BatchExportJob(ScriptedOrchestrator({}), "rw_1", job).run())

    assert job.status is JobStatus.COMPLETED
    assert job.results == []
