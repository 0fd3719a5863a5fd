"""
Slideshow render orchestrator.

Runs one job through the stage machine

    received -> normalizing -> resolving -> compositing -> sequencing -> encoding -> succeeded

with ``failed`` reachable from every non-terminal stage. Each job owns a
private work directory under RENDER_WORK_DIR that is removed on every exit
path, and the whole job runs under a wall-clock budget.
"""
import asyncio
import threading
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, List, Optional

import config as settings
from pipeline.images.normalizer import normalize_urls
from pipeline.images.resolver import HttpImageFetcher, ImageResolver, resolve_all
from pipeline.jobs.credits import CreditsLedger
from pipeline.models import (
    ImageRef,
    PlaceholderPolicy,
    RenderConfig,
    RenderResult,
    ResolvedImage,
    Slide,
)
from pipeline.renderer.compositor import composite, write_frame
from pipeline.renderer.effects.ken_burns import frames_for_duration, ken_burns_frames, pan_direction
from pipeline.renderer.encoder import EncodeError, VideoEncoder
from pipeline.renderer.sequencer import build_manifest, build_slides, clamp_duration, write_concat_manifest
from utils.helpers import (
    cleanup_work_dir,
    ensure_directory,
    new_job_id,
    output_filename,
    public_video_url,
    remove_file_quietly,
)
from utils.logger import setup_logger

logger = setup_logger(__name__)


class RenderStage(str, Enum):
    RECEIVED = "received"
    NORMALIZING = "normalizing"
    RESOLVING = "resolving"
    COMPOSITING = "compositing"
    SEQUENCING = "sequencing"
    ENCODING = "encoding"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_PIPELINE_ORDER = [
    RenderStage.RECEIVED,
    RenderStage.NORMALIZING,
    RenderStage.RESOLVING,
    RenderStage.COMPOSITING,
    RenderStage.SEQUENCING,
    RenderStage.ENCODING,
    RenderStage.SUCCEEDED,
]

# Failure codes
NO_VALID_URLS = "no_valid_urls"
ALL_IMAGES_FAILED = "all_images_failed"
INSUFFICIENT_CREDITS = "insufficient_credits"
CREDIT_CHECK_FAILED = "credit_check_failed"
ENCODER_FAILED = "encoder_failed"
TIMEOUT = "timeout"


class RenderFailure(Exception):
    """Job-level failure with a stable machine-readable ``code``."""

    def __init__(self, code: str, message: str):
        super().__init__(f"{code}: {message}")
        self.code = code
        self.message = message


class RenderRun:
    """Stage tracker for one job. Stages only move forward, one step at a time."""

    def __init__(self, job_id: str, on_stage: Optional[Callable[[str, RenderStage], None]] = None):
        self.job_id = job_id
        self.stage = RenderStage.RECEIVED
        self.history: List[RenderStage] = [RenderStage.RECEIVED]
        self.failure: Optional[RenderFailure] = None
        self._on_stage = on_stage

    @property
    def finished(self) -> bool:
        return self.stage in (RenderStage.SUCCEEDED, RenderStage.FAILED)

    def _enter(self, stage: RenderStage) -> None:
        self.stage = stage
        self.history.append(stage)
        logger.debug(f"[orchestrator] {self.job_id}: -> {stage.value}")
        if self._on_stage is not None:
            self._on_stage(self.job_id, stage)

    def advance(self, stage: RenderStage) -> None:
        if self.finished:
            raise RuntimeError(f"job {self.job_id} already {self.stage.value}")
        expected = _PIPELINE_ORDER[_PIPELINE_ORDER.index(self.stage) + 1]
        if stage != expected:
            raise RuntimeError(f"job {self.job_id}: {self.stage.value} -> {stage.value} skips {expected.value}")
        self._enter(stage)

    def fail(self, failure: RenderFailure) -> None:
        if self.stage == RenderStage.FAILED:
            return
        if self.stage == RenderStage.SUCCEEDED:
            raise RuntimeError(f"job {self.job_id} already succeeded")
        self.failure = failure
        self._enter(RenderStage.FAILED)


class SlideshowRenderer:
    """Turns a list of image URLs into one MP4 slideshow.

    Collaborators are injected so tests can swap the network (fetcher), the
    external encoder (encoder_factory) and the credits ledger.
    """

    def __init__(
        self,
        config: Optional[RenderConfig] = None,
        fetcher_factory: Callable = HttpImageFetcher,
        encoder_factory: Callable[[], VideoEncoder] = VideoEncoder,
        credits: Optional[CreditsLedger] = None,
        output_dir=settings.VIDEO_OUTPUT_DIR,
        work_root=settings.RENDER_WORK_DIR,
        timeout: float = settings.JOB_TIMEOUT_SECONDS,
        max_concurrent_fetches: int = settings.MAX_CONCURRENT_FETCHES,
        min_image_bytes: int = settings.MIN_IMAGE_BYTES,
        image_hosts: Iterable[str] = settings.IMAGE_CDN_HOSTS,
        max_images: int = settings.MAX_INPUT_IMAGES,
        base_url: Optional[str] = None,
        on_stage: Optional[Callable[[str, RenderStage], None]] = None,
    ):
        self.config = (config or RenderConfig()).validated()
        self.fetcher_factory = fetcher_factory
        self.encoder_factory = encoder_factory
        self.credits = credits
        self.output_dir = Path(output_dir)
        self.work_root = Path(work_root)
        self.timeout = timeout
        self.max_concurrent_fetches = max_concurrent_fetches
        self.min_image_bytes = min_image_bytes
        self.image_hosts = tuple(image_hosts)
        self.max_images = max_images
        self.base_url = base_url
        self.on_stage = on_stage

    def normalize(self, image_urls) -> List[ImageRef]:
        return normalize_urls(image_urls, max_images=self.max_images, hosts=self.image_hosts)

    async def render(
        self,
        image_urls,
        *,
        job_id: Optional[str] = None,
        duration: Optional[float] = None,
        loop_count: Optional[int] = None,
        fit_mode: Optional[str] = None,
        ken_burns: Optional[bool] = None,
        placeholder_policy: Optional[str] = None,
        license_key: Optional[str] = None,
    ) -> RenderResult:
        """Render ``image_urls`` into ``VIDEO_OUTPUT_DIR/video-<job_id>.mp4``.

        Raises:
            RenderFailure: on any job-level failure; ``code`` tells which
        """
        job_id = job_id or new_job_id()
        cfg = self.config.with_overrides(
            default_duration_seconds=duration,
            loop_count=loop_count,
            fit_mode=fit_mode,
            ken_burns=ken_burns,
            placeholder_policy=placeholder_policy,
        )
        run = RenderRun(job_id, self.on_stage)
        work_dir = self.work_root / job_id
        output_path = self.output_dir / output_filename(job_id)
        encoder = self.encoder_factory()
        cancel = threading.Event()
        start = time.time()

        logger.info(
            f"[orchestrator] Job {job_id}: {len(image_urls or [])} URL(s), "
            f"{cfg.slide_duration:.2f}s/slide, loop x{cfg.loop_count}, fit={cfg.fit_mode.value}, "
            f"ken_burns={cfg.ken_burns}, placeholders={cfg.placeholder_policy.value}"
        )
        try:
            result = await asyncio.wait_for(
                self._run(run, image_urls, cfg, work_dir, output_path, encoder, license_key, cancel),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            cancel.set()
            encoder.cancel()
            failure = RenderFailure(TIMEOUT, f"render exceeded {self.timeout:g}s")
            run.fail(failure)
            remove_file_quietly(output_path)
            logger.error(f"[orchestrator] Job {job_id} timed out after {time.time() - start:.1f}s")
            raise failure
        except EncodeError as e:
            failure = RenderFailure(ENCODER_FAILED, str(e))
            run.fail(failure)
            remove_file_quietly(output_path)
            logger.error(f"[orchestrator] Job {job_id} encoder failed: {e.diagnostic or e}")
            raise failure from e
        except RenderFailure as failure:
            run.fail(failure)
            remove_file_quietly(output_path)
            logger.warning(f"[orchestrator] Job {job_id} failed ({failure.code}): {failure.message}")
            raise
        finally:
            cancel.set()
            cleanup_work_dir(work_dir)

        run.advance(RenderStage.SUCCEEDED)
        logger.info(
            f"[orchestrator] Job {job_id} done in {time.time() - start:.1f}s: "
            f"{result.slide_count} slide(s), {result.duration_seconds:.2f}s -> {result.output_path}"
        )
        return result

    async def _run(
        self,
        run: RenderRun,
        image_urls,
        cfg: RenderConfig,
        work_dir: Path,
        output_path: Path,
        encoder: VideoEncoder,
        license_key: Optional[str],
        cancel: threading.Event,
    ) -> RenderResult:
        run.advance(RenderStage.NORMALIZING)
        refs = self.normalize(image_urls)
        if not refs:
            raise RenderFailure(NO_VALID_URLS, "no valid image URLs")

        run.advance(RenderStage.RESOLVING)
        async with self.fetcher_factory() as fetcher:
            resolver = ImageResolver(fetcher, min_bytes=self.min_image_bytes)
            outcomes = await resolve_all(refs, resolver, self.max_concurrent_fetches)

        resolved = [o for o in outcomes if isinstance(o, ResolvedImage)]
        skipped = [o.image_ref.raw_url for o in outcomes if not isinstance(o, ResolvedImage)]
        if not resolved:
            raise RenderFailure(ALL_IMAGES_FAILED, "all images failed to load")
        if skipped:
            logger.warning(f"[orchestrator] {len(skipped)}/{len(refs)} image(s) could not be resolved")

        if cfg.placeholder_policy == PlaceholderPolicy.PLACEHOLDER:
            slots = [o if isinstance(o, ResolvedImage) else None for o in outcomes]
        else:
            slots = list(resolved)

        run.advance(RenderStage.COMPOSITING)
        frames_dir = work_dir / "frames"
        ensure_directory(frames_dir)
        ensure_directory(self.output_dir)
        if cfg.ken_burns:
            slides = await self._composite_bursts(slots, cfg, frames_dir, cancel)
        else:
            slides = await self._composite_stills(slots, cfg, frames_dir)

        run.advance(RenderStage.SEQUENCING)
        manifest = build_manifest(slides, cfg)
        if cfg.ken_burns:
            source = str(frames_dir / "frame_%06d.jpg")
        else:
            source = await write_concat_manifest(slides, work_dir / "concat.txt")

        if self.credits is not None:
            await self._consume_credits(license_key, run.job_id)

        run.advance(RenderStage.ENCODING)
        if cfg.loop_count > 1:
            single_path = work_dir / "single.mp4"
            await encoder.encode(manifest, source, str(single_path), cfg)
            await encoder.loop(str(single_path), str(output_path), cfg.loop_count, work_dir)
        else:
            await encoder.encode(manifest, source, str(output_path), cfg)

        filename = output_path.name
        return RenderResult(
            job_id=run.job_id,
            output_path=str(output_path),
            video_url=public_video_url(filename, self.base_url),
            slide_count=len(slides),
            duration_seconds=manifest.total_duration * cfg.loop_count,
            skipped_urls=skipped,
        )

    async def _consume_credits(self, license_key: Optional[str], job_id: str) -> None:
        try:
            check = await self.credits.check_and_consume(license_key, settings.CREDIT_COST_VIDEO, job_id)
        except Exception as e:
            logger.error(f"[orchestrator] Credit check failed for job {job_id}: {e}")
            raise RenderFailure(CREDIT_CHECK_FAILED, "credit check failed") from e
        if not check.ok:
            raise RenderFailure(INSUFFICIENT_CREDITS, "Not enough credits")
        logger.info(f"[orchestrator] Consumed {settings.CREDIT_COST_VIDEO} credit(s), {check.remaining} left")

    async def _composite_stills(self, slots, cfg: RenderConfig, frames_dir: Path) -> List[Slide]:
        paths = []
        for i, item in enumerate(slots):
            frame = await asyncio.to_thread(composite, item, cfg)
            path = await asyncio.to_thread(write_frame, frame, frames_dir / f"frame_{i:03d}.png")
            paths.append(path)
        slides = build_slides(paths, cfg.slide_duration, cfg.min_duration_seconds)
        for slide, item in zip(slides, slots):
            slide.placeholder = item is None
        return slides

    async def _composite_bursts(
        self, slots, cfg: RenderConfig, frames_dir: Path, cancel: threading.Event
    ) -> List[Slide]:
        """Ken Burns: one continuously numbered JPEG burst per slide."""
        seconds = clamp_duration(cfg.slide_duration, cfg.min_duration_seconds)
        per_slide = frames_for_duration(seconds, cfg.fps)
        slides = []
        frame_no = 0
        for i, item in enumerate(slots):
            base = await asyncio.to_thread(composite, item, cfg)
            frame_paths = await asyncio.to_thread(
                self._write_burst, base, per_slide, cfg, pan_direction(i), frames_dir, frame_no, cancel
            )
            frame_no += len(frame_paths)
            slides.append(Slide(
                index=i,
                frame_path=frame_paths[0],
                duration_seconds=len(frame_paths) / cfg.fps,
                frame_paths=frame_paths,
                placeholder=item is None,
            ))
        logger.info(f"[orchestrator] Rendered {frame_no} Ken Burns frame(s) for {len(slides)} slide(s)")
        return slides

    @staticmethod
    def _write_burst(
        base,
        count,
        cfg: RenderConfig,
        direction,
        frames_dir: Path,
        first_no: int,
        cancel: Optional[threading.Event] = None,
    ) -> List[str]:
        """Write one slide's burst; stops between frames once ``cancel`` is set."""
        paths = []
        frames = ken_burns_frames(base, count, cfg.ken_burns_zoom_start, cfg.ken_burns_zoom_end, direction)
        for offset, frame in enumerate(frames):
            if cancel is not None and cancel.is_set():
                logger.debug(f"[orchestrator] Burst cancelled after {offset} frame(s)")
                break
            paths.append(write_frame(frame, frames_dir / f"frame_{first_no + offset:06d}.jpg"))
        return paths

