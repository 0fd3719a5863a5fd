"""
Sequencer: turns composited frames into an ordered, timed manifest.

Two manifest flavours are produced:
- concat: one still per slide with an explicit duration (hard cuts), serialized
  for ffmpeg's concat demuxer
- sequence: a continuous numbered frame burst per slide (Ken Burns), played at
  a fixed frame rate

Looping is done on the finished single-pass video with a stream-copy concat
list, so frames are never re-rendered or re-encoded per loop.
"""
from pathlib import Path
from typing import List, Sequence

import aiofiles

from pipeline.models import ManifestMode, RenderConfig, Slide, SlideManifest
from utils.logger import setup_logger

logger = setup_logger(__name__)


def clamp_duration(requested, min_duration: float) -> float:
    """Screen time for a slide: the request, floored at ``min_duration``."""
    try:
        requested = float(requested)
    except (TypeError, ValueError):
        requested = min_duration
    return max(min_duration, requested)


def build_slides(frame_paths: Sequence[str], duration: float, min_duration: float) -> List[Slide]:
    """One Slide per still frame, all with the same clamped duration."""
    seconds = clamp_duration(duration, min_duration)
    return [
        Slide(index=i, frame_path=str(path), duration_seconds=seconds)
        for i, path in enumerate(frame_paths)
    ]


def build_manifest(slides: List[Slide], config: RenderConfig) -> SlideManifest:
    """Wrap slides into a manifest, picking the mode from the slides' shape."""
    if any(s.frame_paths for s in slides):
        frames_per_slide = max(len(s.frame_paths) for s in slides)
        return SlideManifest(
            mode=ManifestMode.SEQUENCE,
            slides=slides,
            fps=config.fps,
            frames_per_slide=frames_per_slide,
        )
    return SlideManifest(mode=ManifestMode.CONCAT, slides=slides, fps=config.fps)


def _quote(path: str) -> str:
    # concat demuxer quoting: close quote, escaped quote, reopen
    return "'" + path.replace("'", "'\\''") + "'"


def _concat_path(path: str) -> str:
    return str(Path(path).absolute()).replace("\\", "/")


def render_concat_manifest(slides: List[Slide]) -> str:
    """Serialize slides for ffmpeg's concat demuxer.

    The concat demuxer ignores the duration of the final entry, so the last
    file is listed once more without a duration; without it the last slide is
    cut short.
    """
    if not slides:
        raise ValueError("Cannot build a concat manifest with no slides")

    lines = []
    for slide in slides:
        lines.append(f"file {_quote(_concat_path(slide.frame_path))}")
        lines.append(f"duration {slide.duration_seconds:.6g}")
    lines.append(f"file {_quote(_concat_path(slides[-1].frame_path))}")
    return "\n".join(lines) + "\n"


def render_loop_list(video_path: str, loop_count: int) -> str:
    """Concat list that plays ``video_path`` back to back ``loop_count`` times."""
    entry = f"file {_quote(_concat_path(video_path))}"
    return "\n".join([entry] * max(1, loop_count)) + "\n"


async def write_text(path, text: str) -> str:
    async with aiofiles.open(path, "w", encoding="utf-8") as f:
        await f.write(text)
    return str(path)


async def write_concat_manifest(slides: List[Slide], path) -> str:
    """Write the concat manifest for ``slides`` to ``path``."""
    text = render_concat_manifest(slides)
    logger.debug(f"[sequencer] Concat manifest with {len(slides)} slides -> {path}")
    return await write_text(path, text)


async def write_loop_list(video_path: str, loop_count: int, path) -> str:
    return await write_text(path, render_loop_list(video_path, loop_count))
