from __future__ import annotations

from typing import Any, Callable, Optional

from logging_utils import get_logger

from .errors import ContextError
from .models import CaptureResult, JobStatus, ProgressEvent, RenderJob
from .orchestrator import RenderWindowOrchestrator

logger = get_logger(__name__)

ProgressCallback = Callable[[ProgressEvent], Any]


class BatchExportJob:
    """Render every slide of ``job`` against one render window, in order.

    Per-slide failures end up in ``job.results`` and never stop the loop.
    Only a context failure marks the job FAILED; the remaining indices are
    still filled with failure results so ``len(job.results) == slide_count``.
    """

    def __init__(
        self,
        orchestrator: RenderWindowOrchestrator,
        handle_id: str,
        job: RenderJob,
        *,
        on_progress: Optional[ProgressCallback] = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.handle_id = handle_id
        self.job = job
        self.on_progress = on_progress

    async def run(self) -> RenderJob:
        job = self.job
        total = job.slide_count
        job.status = JobStatus.RUNNING
        job.results = []
        logger.info("Job %s: rendering %d slides at %dx%d", job.job_id, total, job.target_width, job.target_height)

        for index in range(total):
            if job.status is JobStatus.FAILED:
                result = CaptureResult.failure(index, job.error or "Render window unavailable")
            else:
                result = await self._render_one(index)
            job.results.append(result)
            if result.success:
                message = f"Rendered slide {index + 1} of {total}"
            else:
                message = f"Slide {index + 1} of {total} failed: {result.error}"
            self._emit(ProgressEvent(current=index + 1, total=total, message=message))

        if job.status is not JobStatus.FAILED:
            job.status = JobStatus.COMPLETED
        logger.info(
            "Job %s %s: %d succeeded, %d failed",
            job.job_id,
            job.status.value,
            len(job.succeeded),
            len(job.failed),
        )
        return job

    async def _render_one(self, index: int) -> CaptureResult:
        try:
            result = await self.orchestrator.render_slide_at(self.handle_id, index)
        except ContextError as exc:
            logger.error("Job %s: render window lost at slide %d: %s", self.job.job_id, index, exc)
            self.job.status = JobStatus.FAILED
            self.job.error = str(exc)
            return CaptureResult.failure(index, str(exc))
        except Exception as exc:
            logger.error("Job %s: slide %d failed: %s", self.job.job_id, index, exc)
            return CaptureResult.failure(index, str(exc))
        if not result.success:
            logger.warning("Slide %d failed: %s", index, result.error)
        return result

    def _emit(self, event: ProgressEvent) -> None:
        if self.on_progress is None:
            return
        try:
            self.on_progress(event)
        except Exception:
            logger.exception("Progress callback failed")
