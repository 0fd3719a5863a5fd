"""Slide compositing: map a source image onto the fixed-size output canvas.

Provides functions for:
- contain-fit with letterboxing (no upscaling past native size by default)
- cover-fit with center cropping
- blurred-background composites (cover + blur + dim, contain foreground on top)
- the deterministic placeholder frame used for unresolved images
- atomic frame writes so the encoder never sees a half-written file
"""

import io
import os
from pathlib import Path
from typing import Optional, Tuple

import numpy as np
from PIL import Image, ImageDraw, ImageFilter, ImageFont, ImageOps

from config import FRAME_SEQUENCE_QUALITY, PLACEHOLDER_COLOR, PLACEHOLDER_LABEL
from pipeline.models import FitMode, RenderConfig, ResolvedImage
from utils.logger import setup_logger

logger = setup_logger(__name__)

BLACK = (0, 0, 0)


def _contain_size(img_w: int, img_h: int, target_w: int, target_h: int, allow_upscale: bool) -> Tuple[int, int]:
    scale = min(target_w / img_w, target_h / img_h)
    if not allow_upscale:
        scale = min(scale, 1.0)
    return max(1, round(img_w * scale)), max(1, round(img_h * scale))


def fit_contain(
    img: Image.Image,
    target_w: int,
    target_h: int,
    allow_upscale: bool = False,
    background: Tuple[int, int, int] = BLACK,
) -> Image.Image:
    """Scale image to fit inside the canvas and center it on a solid background.

    :param img: Input PIL Image (RGB).
    :param target_w: Canvas width in pixels.
    :param target_h: Canvas height in pixels.
    :param allow_upscale: When False, images smaller than the canvas keep their native size.
    :param background: Fill color for the letterbox area.
    :return: Canvas-sized RGB image.
    """
    new_w, new_h = _contain_size(img.width, img.height, target_w, target_h, allow_upscale)
    fitted = img if (new_w, new_h) == img.size else img.resize((new_w, new_h), Image.Resampling.LANCZOS)

    canvas = Image.new("RGB", (target_w, target_h), background)
    canvas.paste(fitted, ((target_w - new_w) // 2, (target_h - new_h) // 2))
    return canvas


def fit_cover(img: Image.Image, target_w: int, target_h: int) -> Image.Image:
    """Resize image to cover target dimensions and center-crop to exact size.

    Uses uniform scaling to preserve aspect ratio, then crops the overflow.
    """
    img_w, img_h = img.size

    # Uniform scale to COVER target (not fit)
    scale = max(target_w / img_w, target_h / img_h)
    new_w = max(target_w, round(img_w * scale))
    new_h = max(target_h, round(img_h * scale))

    img_scaled = img.resize((new_w, new_h), Image.Resampling.LANCZOS)

    left = (new_w - target_w) // 2
    top = (new_h - target_h) // 2
    return img_scaled.crop((left, top, left + target_w, top + target_h))


def dim(img: Image.Image, brightness: float) -> Image.Image:
    """Multiply every channel by ``brightness`` (0..1)."""
    arr = np.asarray(img, dtype=np.float32) * brightness
    return Image.fromarray(np.clip(arr, 0, 255).astype(np.uint8))


def blurred_background(
    img: Image.Image,
    target_w: int,
    target_h: int,
    blur_radius: int = 40,
    brightness: float = 0.8,
    allow_upscale: bool = False,
) -> Image.Image:
    """Cover-fit, blurred and dimmed copy as background; uncropped contain-fit copy on top."""
    background = fit_cover(img, target_w, target_h)
    # Blur at quarter resolution
    small = background.resize((max(1, target_w // 4), max(1, target_h // 4)), Image.Resampling.BILINEAR)
    small = small.filter(ImageFilter.GaussianBlur(radius=max(1, blur_radius // 4)))
    background = small.resize((target_w, target_h), Image.Resampling.BILINEAR)
    background = dim(background, brightness)

    new_w, new_h = _contain_size(img.width, img.height, target_w, target_h, allow_upscale)
    foreground = img if (new_w, new_h) == img.size else img.resize((new_w, new_h), Image.Resampling.LANCZOS)
    background.paste(foreground, ((target_w - new_w) // 2, (target_h - new_h) // 2))
    return background


def placeholder_frame(target_w: int, target_h: int, label: str = PLACEHOLDER_LABEL) -> Image.Image:
    """Dark frame with a centered warning label, same size as real slides."""
    canvas = Image.new("RGB", (target_w, target_h), PLACEHOLDER_COLOR)
    draw = ImageDraw.Draw(canvas)
    font = ImageFont.load_default(size=max(16, target_h // 22))
    left, top, right, bottom = draw.textbbox((0, 0), label, font=font)
    x = (target_w - (right - left)) // 2 - left
    y = (target_h - (bottom - top)) // 2 - top
    draw.text((x, y), label, fill=(255, 255, 255), font=font)
    return canvas


def decode_image(buffer: bytes) -> Optional[Image.Image]:
    """Fully decode a buffer into an upright RGB image, or None if it cannot be read."""
    try:
        with Image.open(io.BytesIO(buffer)) as img:
            img = ImageOps.exif_transpose(img)
            return img.convert("RGB")
    except (OSError, SyntaxError, ValueError, Image.DecompressionBombError) as e:
        logger.warning(f"[compositor] Could not decode image buffer: {e}")
        return None


def composite(resolved: Optional[ResolvedImage], config: RenderConfig) -> Image.Image:
    """Produce exactly one canvas-sized frame for a slide. Never raises for bad input.

    ``None`` (or an undecodable buffer) yields the placeholder frame.
    """
    w, h = config.canvas_size
    if resolved is None:
        return placeholder_frame(w, h)

    img = decode_image(resolved.buffer)
    if img is None:
        logger.warning(f"[compositor] Using placeholder for {resolved.source_variant_url}")
        return placeholder_frame(w, h)

    if config.fit_mode == FitMode.COVER:
        return fit_cover(img, w, h)
    if config.fit_mode == FitMode.BLURRED_BACKGROUND:
        return blurred_background(
            img, w, h,
            blur_radius=config.blur_radius,
            brightness=config.background_brightness,
            allow_upscale=config.allow_upscale,
        )
    return fit_contain(img, w, h, allow_upscale=config.allow_upscale)


def write_frame(img: Image.Image, path) -> str:
    """Save a frame atomically (temp file + rename) and return its path.

    Format follows the suffix: .png for stills, .jpg for Ken Burns bursts.
    """
    path = Path(path)
    tmp_path = path.with_name(f".{path.name}.tmp")
    if path.suffix.lower() in (".jpg", ".jpeg"):
        img.save(tmp_path, format="JPEG", quality=FRAME_SEQUENCE_QUALITY)
    else:
        img.save(tmp_path, format="PNG")
    os.replace(tmp_path, path)
    return str(path)
