"""Shared fixtures: synthetic images, a fake CDN fetcher and a fake ffmpeg runner."""

import io
import struct
import zlib
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from pipeline.renderer.encoder import ProcessResult, VideoEncoder

CDN = "cdn.example"


def make_jpeg(width=400, height=300, seed=0, quality=95) -> bytes:
    """Noisy JPEG; noise keeps it well above the placeholder byte threshold."""
    rng = np.random.default_rng(seed)
    pixels = rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8)
    buf = io.BytesIO()
    Image.fromarray(pixels, "RGB").save(buf, format="JPEG", quality=quality)
    return buf.getvalue()


def make_tiny_jpeg() -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), (200, 200, 200)).save(buf, format="JPEG")
    return buf.getvalue()


def _png_chunk(kind: bytes, data: bytes) -> bytes:
    return struct.pack(">I", len(data)) + kind + data + struct.pack(">I", zlib.crc32(kind + data))


def make_oversized_png(width=20000, height=10000, padding=8000) -> bytes:
    """PNG whose header declares a huge canvas; the pixel data is never materialized."""
    header = struct.pack(">IIBBBBB", width, height, 8, 0, 0, 0, 0)
    return (
        b"\x89PNG\r\n\x1a\n"
        + _png_chunk(b"IHDR", header)
        + _png_chunk(b"IDAT", zlib.compress(b"\x00" * padding, 0))
        + _png_chunk(b"IEND", b"")
    )


class FakeFetcher:
    """Serves bytes from a dict; usable as a fetcher_factory (async context manager)."""

    def __init__(self, responses=None, raise_for=()):
        self.responses = dict(responses or {})
        self.raise_for = set(raise_for)
        self.calls = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return None

    async def __call__(self, url):
        self.calls.append(url)
        if url in self.raise_for:
            raise ConnectionError(f"boom: {url}")
        return self.responses.get(url)

    def factory(self):
        return lambda: self


class FakeRunner:
    """Stands in for FFmpegRunner: records args and writes the output file."""

    instances = []

    def __init__(self, returncode=0, output="", delay=0.0):
        self.returncode = returncode
        self.output = output
        self.delay = delay
        self.args = None
        self.cancelled = False

    async def run(self, args):
        import asyncio

        self.args = list(args)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.returncode == 0:
            Path(args[-1]).write_bytes(b"\x00\x00\x00\x18ftypmp42")
        return ProcessResult(returncode=self.returncode, output=self.output)

    def cancel(self):
        self.cancelled = True


class RecordingEncoderFactory:
    """encoder_factory that hands out VideoEncoders backed by FakeRunners."""

    def __init__(self, **runner_kwargs):
        self.runner_kwargs = runner_kwargs
        self.runners = []
        self.encoders = []

    def _runner(self):
        runner = FakeRunner(**self.runner_kwargs)
        self.runners.append(runner)
        return runner

    def __call__(self):
        encoder = VideoEncoder(runner_factory=self._runner, ffmpeg_exe="ffmpeg")
        self.encoders.append(encoder)
        return encoder

    @property
    def call_count(self):
        return len(self.runners)


def sized_url(name, token=64, host=CDN):
    return f"https://{host}/images/{name}_s-l{token}.jpg"


@pytest.fixture
def image_bytes():
    return make_jpeg()


@pytest.fixture
def fake_fetcher():
    return FakeFetcher()


@pytest.fixture
def encoder_factory():
    return RecordingEncoderFactory()


@pytest.fixture
def dirs(tmp_path):
    out = tmp_path / "videos"
    work = tmp_path / "work"
    out.mkdir()
    work.mkdir()
    return {"output_dir": out, "work_root": work}
