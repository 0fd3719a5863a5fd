"""
Bounded worker pool for asynchronous render jobs.

Submission records the job as ``queued`` and returns immediately; a fixed
number of worker tasks pull jobs off an asyncio queue, so at most
MAX_RUNNING_JOBS encodes run at once. Completion is only observable through
the job store.
"""
from __future__ import annotations

import asyncio
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel

from config import MAX_RUNNING_JOBS, VIDEO_OUTPUT_DIR
from pipeline.jobs.store import JobStore, transition
from pipeline.models import ImageRef, JobStatus, RenderJob
from utils.helpers import new_job_id, output_filename, public_video_url
from utils.logger import setup_logger

logger = setup_logger(__name__)

SHUTDOWN_MESSAGE = "server shutting down"


class RenderRequest(BaseModel):
    job_id: str
    image_urls: List[str]
    duration: Optional[float] = None
    loop_count: Optional[int] = None
    fit_mode: Optional[str] = None
    ken_burns: Optional[bool] = None
    placeholder_policy: Optional[str] = None
    license_key: Optional[str] = None


class RenderQueue:
    """Runs submitted jobs through a SlideshowRenderer with bounded concurrency."""

    def __init__(
        self,
        renderer,
        store: JobStore,
        workers: int = MAX_RUNNING_JOBS,
        output_dir=VIDEO_OUTPUT_DIR,
        base_url: Optional[str] = None,
    ):
        self.renderer = renderer
        self.store = store
        self.workers = max(1, workers)
        self.output_dir = Path(output_dir)
        self.base_url = base_url if base_url is not None else getattr(renderer, "base_url", None)
        self._queue: Optional[asyncio.Queue] = None
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    async def start(self) -> None:
        if self._tasks:
            return
        self._queue = asyncio.Queue()
        self._tasks = [
            asyncio.create_task(self._worker(i), name=f"render-worker-{i}")
            for i in range(self.workers)
        ]
        logger.info(f"[queue] Started {self.workers} render worker(s)")

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self._abandon_queued()
        self._queue = None
        logger.info("[queue] Render workers stopped")

    def _abandon_queued(self) -> None:
        """Move jobs still waiting in the queue to error; nothing will pick them up."""
        if self._queue is None:
            return
        while not self._queue.empty():
            request = self._queue.get_nowait()
            self._queue.task_done()
            job = self.store.get(request.job_id)
            if job is not None and job.status == JobStatus.QUEUED:
                self.store.set(request.job_id, transition(job, JobStatus.ERROR, error_message=SHUTDOWN_MESSAGE))
                logger.warning(f"[queue] Job {request.job_id} dropped at shutdown")

    async def join(self) -> None:
        """Wait until every submitted job has been processed."""
        if self._queue is not None:
            await self._queue.join()

    def submit(self, refs: List[ImageRef], job_id: Optional[str] = None, **options) -> str:
        """Record a queued job for already-normalized refs and hand it to the workers."""
        if self._queue is None:
            raise RuntimeError("RenderQueue.start() must be awaited before submitting jobs")
        job_id = job_id or new_job_id()
        request = RenderRequest(
            job_id=job_id,
            image_urls=[r.normalized_url for r in refs],
            **options,
        )
        self.store.set(job_id, RenderJob(job_id=job_id, count=len(refs)))
        self._queue.put_nowait(request)
        logger.info(f"[queue] Queued job {job_id} with {len(refs)} image(s)")
        return job_id

    async def _worker(self, worker_no: int) -> None:
        while True:
            request = await self._queue.get()
            try:
                await self._process(request)
            except Exception as e:
                logger.error(f"[queue] Worker {worker_no} crashed on job {request.job_id}: {e}")
            finally:
                self._queue.task_done()

    async def _process(self, request: RenderRequest) -> None:
        # Imported lazily: the orchestrator pulls in the whole render stack
        from pipeline.renderer.video_generator import RenderFailure

        job_id = request.job_id
        job = self.store.get(job_id) or RenderJob(job_id=job_id, count=len(request.image_urls))
        job = transition(job, JobStatus.RUNNING)
        self.store.set(job_id, job)

        try:
            result = await self.renderer.render(
                request.image_urls,
                job_id=job_id,
                duration=request.duration,
                loop_count=request.loop_count,
                fit_mode=request.fit_mode,
                ken_burns=request.ken_burns,
                placeholder_policy=request.placeholder_policy,
                license_key=request.license_key,
            )
        except asyncio.CancelledError:
            logger.warning(f"[queue] Job {job_id} interrupted by shutdown")
            self.store.set(job_id, transition(job, JobStatus.ERROR, error_message=SHUTDOWN_MESSAGE))
            raise
        except RenderFailure as e:
            logger.warning(f"[queue] Job {job_id} failed ({e.code}): {e.message}")
            self.store.set(job_id, transition(job, JobStatus.ERROR, error_message=e.message))
            return
        except Exception as e:
            logger.error(f"[queue] Job {job_id} crashed: {e}")
            self.store.set(job_id, transition(job, JobStatus.ERROR, error_message="Video generation failed"))
            return

        self.store.set(job_id, transition(job, JobStatus.DONE, result_url=result.video_url))
        logger.info(f"[queue] Job {job_id} done: {result.video_url}")

    def status(self, job_id: str) -> Optional[dict]:
        """Poll projection for ``job_id``.

        Falls back to the output directory when the in-memory record is gone
        (e.g. after a restart) but the finished video is on disk.
        """
        job = self.store.get(job_id)
        if job is not None:
            return job.projection()

        filename = output_filename(job_id)
        if (self.output_dir / filename).is_file():
            return {"ok": True, "status": JobStatus.DONE.value, "url": public_video_url(filename, self.base_url)}
        return None
