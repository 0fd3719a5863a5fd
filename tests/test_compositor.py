"""Tests for slide compositing onto the fixed canvas."""

import os

import pytest
from PIL import Image

from conftest import make_jpeg
from pipeline.images.normalizer import make_image_ref
from pipeline.models import FitMode, RenderConfig, ResolvedImage
from pipeline.renderer.compositor import (
    blurred_background,
    composite,
    decode_image,
    fit_contain,
    fit_cover,
    placeholder_frame,
    write_frame,
)

W, H = 320, 180


def _close(pixel, expected, tol=4):
    return all(abs(a - b) <= tol for a, b in zip(pixel, expected))


def _resolved(buffer, w=400, h=300):
    ref = make_image_ref("https://cdn.example/images/a_s-l64.jpg", ("cdn.example",))
    return ResolvedImage(image_ref=ref, buffer=buffer, source_variant_url=ref.normalized_url, width=w, height=h)


@pytest.fixture
def config():
    return RenderConfig(canvas_width=W, canvas_height=H).validated()


def test_contain_letterboxes_without_upscaling():
    """Small images stay native size, centered on black."""
    img = Image.new("RGB", (100, 50), (255, 0, 0))
    out = fit_contain(img, W, H)
    assert out.size == (W, H)
    # native 100x50 centered: corners stay black, center is red
    assert out.getpixel((0, 0)) == (0, 0, 0)
    assert out.getpixel((W // 2, H // 2)) == (255, 0, 0)
    assert out.getpixel((W // 2 - 55, H // 2)) == (0, 0, 0)


def test_contain_upscales_when_allowed():
    """With upscaling on, small images grow to fit."""
    img = Image.new("RGB", (100, 50), (255, 0, 0))
    out = fit_contain(img, W, H, allow_upscale=True)
    # 100x50 -> 320x160, only top/bottom bars remain
    assert _close(out.getpixel((5, H // 2)), (255, 0, 0))
    assert out.getpixel((W // 2, 2)) == (0, 0, 0)


def test_contain_downscales_large_images():
    """Large images shrink to fit inside the canvas."""
    img = Image.new("RGB", (1000, 1000), (0, 255, 0))
    out = fit_contain(img, W, H)
    assert _close(out.getpixel((W // 2, H // 2)), (0, 255, 0))
    assert out.getpixel((5, H // 2)) == (0, 0, 0)


def test_cover_fills_canvas():
    """Cover mode leaves no bars."""
    img = Image.new("RGB", (100, 100), (0, 0, 255))
    out = fit_cover(img, W, H)
    assert out.size == (W, H)
    assert _close(out.getpixel((0, 0)), (0, 0, 255))
    assert _close(out.getpixel((W - 1, H - 1)), (0, 0, 255))


def test_blurred_background_has_no_black_bars():
    """Bars are filled with a dimmed blur of the image itself."""
    img = Image.new("RGB", (100, 100), (200, 200, 200))
    out = blurred_background(img, W, H, blur_radius=8, brightness=0.5)
    assert out.size == (W, H)
    r, g, b = out.getpixel((2, H // 2))
    assert 80 <= r <= 120
    assert out.getpixel((W // 2, H // 2)) == (200, 200, 200)


def test_placeholder_frame_is_canvas_sized():
    """The placeholder is a labelled canvas-sized RGB frame."""
    frame = placeholder_frame(W, H)
    assert frame.size == (W, H)
    assert frame.mode == "RGB"
    colors = frame.getcolors(maxcolors=W * H)
    assert len(colors) > 1  # label was drawn


@pytest.mark.parametrize("fit_mode", list(FitMode))
def test_composite_always_returns_canvas_sized_frame(config, fit_mode):
    """Every fit mode yields exactly the canvas size."""
    cfg = config.with_overrides(fit_mode=fit_mode.value)
    out = composite(_resolved(make_jpeg()), cfg)
    assert out.size == (W, H)


def test_composite_without_image_gives_placeholder(config):
    """A missing slot composites to the placeholder."""
    assert composite(None, config).size == (W, H)


def test_composite_with_corrupt_buffer_gives_placeholder(config):
    """Bytes that fail to decode composite to the placeholder."""
    out = composite(_resolved(b"\xff\xd8\xff" + b"\x00" * 6000), config)
    assert out.size == (W, H)
    assert out.getpixel((0, 0)) == placeholder_frame(W, H).getpixel((0, 0))


def test_decode_image_rejects_garbage():
    """decode_image returns None for garbage and the image otherwise."""
    assert decode_image(b"nope") is None
    assert decode_image(make_jpeg(50, 40)).size == (50, 40)


def test_write_frame_is_atomic(tmp_path):
    """Frames land under their final name with no temp files left."""
    target = tmp_path / "frame_000.png"
    path = write_frame(Image.new("RGB", (W, H)), target)
    assert path == str(target)
    assert target.exists()
    assert not any(name.endswith(".tmp") for name in os.listdir(tmp_path))

    jpg = write_frame(Image.new("RGB", (W, H)), tmp_path / "frame_000001.jpg")
    with Image.open(jpg) as img:
        assert img.format == "JPEG"
