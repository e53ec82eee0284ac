"""Export every slide of a script to numbered PNG files."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence

from logging_utils import get_logger

from .batch import BatchExportJob
from .capture import decode_png_data_uri
from .errors import ScriptError
from .models import CaptureResult, MediaAsset, ProgressEvent, RenderJob
from .orchestrator import RenderWindowOrchestrator
from .utils import generate_id

logger = get_logger(__name__)

PercentCallback = Callable[[int, str], Any]


@dataclass
class ExportSummary:
    output_dir: Path
    saved: List[Path] = field(default_factory=list)
    results: List[CaptureResult] = field(default_factory=list)
    job: Optional[RenderJob] = None

    @property
    def failed(self) -> List[CaptureResult]:
        return [result for result in self.results if not result.success]


class SlideExporter:
    def __init__(self, orchestrator: RenderWindowOrchestrator, config: Optional[Dict[str, Any]] = None) -> None:
        self.orchestrator = orchestrator
        self.config: Dict[str, Any] = config or {}
        render_cfg = self.config.get("render", {})
        self.width = int(render_cfg.get("width", 1920))
        self.height = int(render_cfg.get("height", 1080))
        self.filename_pattern = str(self.config.get("export", {}).get("filename_pattern", "slide_{number:02d}.png"))

    async def export_to_png(
        self,
        script: str,
        output_dir: Path | str,
        *,
        media: Sequence[MediaAsset] = (),
        width: Optional[int] = None,
        height: Optional[int] = None,
        on_progress: Optional[PercentCallback] = None,
    ) -> ExportSummary:
        """Create a render window, capture all slides and write them to ``output_dir``.

        The render window is destroyed on every path, including a script
        that registers no slides (``ScriptError``).
        """
        target_width = int(width or self.width)
        target_height = int(height or self.height)
        out_dir = Path(output_dir).expanduser()

        def report(percent: int, message: str) -> None:
            logger.info("[%3d%%] %s", percent, message)
            if on_progress is not None:
                on_progress(percent, message)

        report(5, "Creating render window...")
        handle_id = await self.orchestrator.create_context(target_width, target_height)
        try:
            report(10, "Transferring media...")
            await self.orchestrator.transfer_media(handle_id, media)

            report(15, "Loading slides...")
            slide_count = await self.orchestrator.load_script(handle_id, script)
            if slide_count == 0:
                raise ScriptError("No slides found in the presentation.")
            report(20, f"Found {slide_count} slides")

            job = RenderJob(
                job_id=generate_id("job"),
                target_width=target_width,
                target_height=target_height,
                script=script,
                media_assets=tuple(media),
                slide_count=slide_count,
            )

            def on_slide(event: ProgressEvent) -> None:
                report(20 + int(75 * event.current / max(1, event.total)), event.message)

            await BatchExportJob(self.orchestrator, handle_id, job, on_progress=on_slide).run()

            report(95, "Saving images...")
            saved = self.save_results(job.results, out_dir)
        finally:
            await self.orchestrator.destroy_context(handle_id)

        report(100, f"Exported {len(saved)} of {job.slide_count} slides to {out_dir}")
        return ExportSummary(output_dir=out_dir, saved=saved, results=list(job.results), job=job)

    def save_results(self, results: Sequence[CaptureResult], output_dir: Path) -> List[Path]:
        output_dir.mkdir(parents=True, exist_ok=True)
        saved: List[Path] = []
        for result in results:
            if not result.success or not result.image_data:
                continue
            path = output_dir / self.filename_pattern.format(number=result.index + 1)
            path.write_bytes(decode_png_data_uri(result.image_data))
            saved.append(path)
        return saved
