"""Data records shared by the slideshow pipeline stages."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field

import config


class FitMode(str, Enum):
    """How a source image is mapped onto the fixed-size canvas."""
    CONTAIN = "contain"
    COVER = "cover"
    BLURRED_BACKGROUND = "blurredBackground"


class PlaceholderPolicy(str, Enum):
    """What happens to an input slot whose image could not be resolved."""
    SKIP = "skip"
    PLACEHOLDER = "placeholder"


class ImageRef(BaseModel):
    """A normalized input URL.

    Fields:
        raw_url: URL exactly as submitted
        normalized_url: canonical high-resolution URL on the same CDN host family
        dedupe_key: lower-cased path without the resolution token
    """
    model_config = ConfigDict(frozen=True)

    raw_url: str
    normalized_url: str
    dedupe_key: str


class ResolvedImage(BaseModel):
    """Bytes that passed the size threshold and decode check, plus the URL that produced them."""
    image_ref: ImageRef
    buffer: bytes
    source_variant_url: str
    width: int
    height: int


class ResolveFailure(BaseModel):
    """Sentinel for an image whose whole ladder was exhausted."""
    image_ref: ImageRef
    reason: str
    attempted_urls: list[str] = Field(default_factory=list)


class Slide(BaseModel):
    """One rendered still (or Ken Burns burst) on disk and its screen time."""
    index: int
    frame_path: str
    duration_seconds: float
    frame_paths: list[str] = Field(default_factory=list)
    placeholder: bool = False


class ManifestMode(str, Enum):
    CONCAT = "concat"
    SEQUENCE = "sequence"


class SlideManifest(BaseModel):
    """Ordered slides ready for the encoder."""
    mode: ManifestMode
    slides: list[Slide]
    fps: int
    frames_per_slide: int = 1

    @property
    def entry_count(self) -> int:
        if self.mode == ManifestMode.SEQUENCE:
            return sum(len(s.frame_paths) for s in self.slides)
        return len(self.slides)

    @property
    def total_duration(self) -> float:
        if self.mode == ManifestMode.SEQUENCE:
            return self.entry_count / self.fps
        return sum(s.duration_seconds for s in self.slides)


class RenderConfig(BaseModel):
    """Per-job render parameters.

    Defaults come from config.py; use ``validated()`` before rendering so that
    durations, loop counts and canvas sizes are clamped into their legal ranges.
    """
    canvas_width: int = config.CANVAS_SIZE[0]
    canvas_height: int = config.CANVAS_SIZE[1]
    fps: int = config.FPS
    default_duration_seconds: float = config.DEFAULT_SLIDE_DURATION
    min_duration_seconds: float = config.MIN_SLIDE_DURATION
    loop_count: int = config.DEFAULT_LOOP_COUNT
    fit_mode: FitMode = FitMode(config.FIT_MODE)
    placeholder_policy: PlaceholderPolicy = PlaceholderPolicy(config.PLACEHOLDER_POLICY)
    ken_burns: bool = config.KEN_BURNS
    ken_burns_zoom_start: float = config.KEN_BURNS_ZOOM_START
    ken_burns_zoom_end: float = config.KEN_BURNS_ZOOM_END
    blur_radius: int = config.BLUR_RADIUS
    background_brightness: float = config.BACKGROUND_BRIGHTNESS
    allow_upscale: bool = config.ALLOW_UPSCALE

    @classmethod
    def from_defaults(cls) -> "RenderConfig":
        return cls().validated()

    @property
    def canvas_size(self) -> tuple[int, int]:
        return (self.canvas_width, self.canvas_height)

    @property
    def slide_duration(self) -> float:
        return max(self.min_duration_seconds, self.default_duration_seconds)

    def validated(self) -> "RenderConfig":
        """Return a copy with every field clamped to a value the encoder accepts."""
        width = max(2, self.canvas_width - self.canvas_width % 2)
        height = max(2, self.canvas_height - self.canvas_height % 2)
        min_duration = max(0.1, self.min_duration_seconds)
        duration = min(config.MAX_SLIDE_DURATION, max(min_duration, self.default_duration_seconds))
        loop_count = min(config.MAX_LOOP_COUNT, max(1, int(self.loop_count)))
        zoom_start = max(1.0, self.ken_burns_zoom_start)
        zoom_end = max(1.0, self.ken_burns_zoom_end)
        return self.model_copy(update={
            "canvas_width": width,
            "canvas_height": height,
            "fps": max(1, self.fps),
            "min_duration_seconds": min_duration,
            "default_duration_seconds": duration,
            "loop_count": loop_count,
            "ken_burns_zoom_start": zoom_start,
            "ken_burns_zoom_end": zoom_end,
            "background_brightness": min(1.0, max(0.0, self.background_brightness)),
        })

    def with_overrides(self, **overrides) -> "RenderConfig":
        """Apply request-level overrides (None values are ignored) and validate."""
        update = {k: v for k, v in overrides.items() if v is not None}
        if "fit_mode" in update:
            update["fit_mode"] = FitMode(update["fit_mode"])
        if "placeholder_policy" in update:
            update["placeholder_policy"] = PlaceholderPolicy(update["placeholder_policy"])
        return self.model_copy(update=update).validated()


class RenderResult(BaseModel):
    job_id: str
    output_path: str
    video_url: str
    slide_count: int
    duration_seconds: float
    skipped_urls: list[str] = Field(default_factory=list)

    @property
    def output_file(self) -> Path:
        return Path(self.output_path)


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    ERROR = "error"


TERMINAL_STATUSES = frozenset({JobStatus.DONE, JobStatus.ERROR})


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RenderJob(BaseModel):
    """Status record of an asynchronous render job."""
    job_id: str
    status: JobStatus = JobStatus.QUEUED
    result_url: str | None = None
    error_message: str | None = None
    count: int = 0
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def projection(self) -> dict:
        """Public view returned by the poll endpoint."""
        out = {"ok": True, "status": self.status.value}
        if self.result_url:
            out["url"] = self.result_url
        if self.error_message:
            out["error"] = self.error_message
        return out
