from __future__ import annotations

from typing import Iterator, Tuple

from PIL import Image

from utils.logger import setup_logger

logger = setup_logger(__name__)

# Cycled by slide index so consecutive slides move differently
PAN_DIRECTIONS = ("left_to_right", "top_to_bottom", "right_to_left", "bottom_to_top")


def ease_in_out_cubic(t: float) -> float:
    """Slow start, slow stop; maps [0, 1] onto [0, 1]."""
    t = max(0.0, min(1.0, t))
    if t < 0.5:
        return 4 * t ** 3
    return 1 - (2 - 2 * t) ** 3 / 2


def pan_direction(index: int) -> str:
    return PAN_DIRECTIONS[index % len(PAN_DIRECTIONS)]


def frames_for_duration(duration: float, fps: int) -> int:
    """Number of burst frames covering ``duration`` seconds at ``fps`` (at least 1)."""
    return max(1, round(duration * fps))


def crop_box(
    w: int,
    h: int,
    progress: float,
    zoom_start: float,
    zoom_end: float,
    direction: str,
) -> Tuple[float, float, float, float]:
    """Floating-point crop window for one point of the move.

    :param progress: Eased progress in [0, 1].
    :return: (left, top, right, bottom) inside a w x h frame.
    """
    zoom = zoom_start + (zoom_end - zoom_start) * progress
    new_w = w / zoom
    new_h = h / zoom
    slack_x = w - new_w
    slack_y = h - new_h

    # Centered on the cross axis, travelling along the pan axis
    left = slack_x / 2
    top = slack_y / 2
    if direction == "left_to_right":
        left = slack_x * progress
    elif direction == "right_to_left":
        left = slack_x * (1 - progress)
    elif direction == "top_to_bottom":
        top = slack_y * progress
    elif direction == "bottom_to_top":
        top = slack_y * (1 - progress)

    return (left, top, left + new_w, top + new_h)


def ken_burns_frames(
    base: Image.Image,
    frame_count: int,
    zoom_start: float = 1.05,
    zoom_end: float = 1.2,
    direction: str = "left_to_right",
) -> Iterator[Image.Image]:
    """Yield ``frame_count`` canvas-sized frames panning/zooming over ``base``.

    Crops use sub-pixel boxes so slow moves don't stutter.
    """
    w, h = base.size
    logger.debug(f"[ken_burns] {frame_count} frames, zoom {zoom_start:.2f}->{zoom_end:.2f}, {direction}")
    for i in range(frame_count):
        t = i / (frame_count - 1) if frame_count > 1 else 0.0
        box = crop_box(w, h, ease_in_out_cubic(t), zoom_start, zoom_end, direction)
        yield base.resize((w, h), Image.Resampling.LANCZOS, box=box)
