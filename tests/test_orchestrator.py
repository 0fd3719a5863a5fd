"""Tests for the slideshow render orchestrator (network and ffmpeg faked)."""

import asyncio
import threading
import time
from pathlib import Path
from unittest.mock import patch

import pytest
from PIL import Image

from conftest import CDN, FakeFetcher, RecordingEncoderFactory, make_jpeg, make_oversized_png, sized_url
from pipeline.jobs.credits import InMemoryCreditsLedger
from pipeline.models import RenderConfig, RenderResult
from pipeline.renderer.video_generator import (
    ALL_IMAGES_FAILED,
    ENCODER_FAILED,
    INSUFFICIENT_CREDITS,
    NO_VALID_URLS,
    TIMEOUT,
    RenderFailure,
    RenderRun,
    RenderStage,
    SlideshowRenderer,
)


def _renderer(dirs, fetcher, encoder_factory, **kwargs):
    kwargs.setdefault("config", RenderConfig(canvas_width=320, canvas_height=180, fps=10))
    return SlideshowRenderer(
        fetcher_factory=fetcher.factory(),
        encoder_factory=encoder_factory,
        image_hosts=(CDN,),
        base_url="",
        **dirs,
        **kwargs,
    )


def _fetcher_for(*names):
    return FakeFetcher({sized_url(name, 1600): make_jpeg(seed=i) for i, name in enumerate(names)})


def test_renders_and_cleans_up(dirs, encoder_factory):
    """Happy path: one MP4 with a public URL and no leftover work dir."""
    fetcher = _fetcher_for("a", "b")
    renderer = _renderer(dirs, fetcher, encoder_factory)

    result = asyncio.run(renderer.render([sized_url("a"), sized_url("b")], job_id="job1", duration=2))

    assert result.video_url == "/videos/video-job1.mp4"
    assert Path(result.output_path).exists()
    assert result.slide_count == 2
    assert result.duration_seconds == pytest.approx(4.0)
    assert encoder_factory.call_count == 1
    assert not (dirs["work_root"] / "job1").exists()


def test_encode_command_gets_concat_manifest(dirs, encoder_factory):
    """Still slides are fed to ffmpeg through the concat demuxer."""
    renderer = _renderer(dirs, _fetcher_for("a"), encoder_factory)
    asyncio.run(renderer.render([sized_url("a")], job_id="job2"))

    args = encoder_factory.runners[0].args
    assert args[args.index("-f") + 1] == "concat"
    assert args[args.index("-i") + 1].endswith("concat.txt")


def test_no_valid_urls_fails_before_fetching(dirs, encoder_factory):
    """Off-CDN input fails with no_valid_urls and never hits the network."""
    fetcher = FakeFetcher()
    renderer = _renderer(dirs, fetcher, encoder_factory)

    with pytest.raises(RenderFailure) as exc_info:
        asyncio.run(renderer.render(["https://elsewhere.example/x.jpg"], job_id="job3"))

    assert exc_info.value.code == NO_VALID_URLS
    assert fetcher.calls == []


def test_all_images_failing_never_calls_encoder(dirs, encoder_factory):
    """Zero resolved images fail the job before ffmpeg runs."""
    renderer = _renderer(dirs, FakeFetcher(), encoder_factory)

    with pytest.raises(RenderFailure) as exc_info:
        asyncio.run(renderer.render([sized_url("a"), sized_url("b")], job_id="job4"))

    assert exc_info.value.code == ALL_IMAGES_FAILED
    assert exc_info.value.message == "all images failed to load"
    assert encoder_factory.call_count == 0
    assert not (dirs["work_root"] / "job4").exists()
    assert not (dirs["output_dir"] / "video-job4.mp4").exists()


def test_skip_policy_drops_unresolved_images(dirs, encoder_factory):
    """The skip policy drops misses and reports them in skipped_urls."""
    renderer = _renderer(dirs, _fetcher_for("a", "c"), encoder_factory)
    result = asyncio.run(renderer.render([sized_url("a"), sized_url("b"), sized_url("c")], job_id="job5"))

    assert result.slide_count == 2
    assert result.skipped_urls == [sized_url("b")]


def test_placeholder_policy_keeps_a_slide_per_input(dirs, encoder_factory):
    """The placeholder policy keeps one slide per input URL."""
    renderer = _renderer(dirs, _fetcher_for("a", "c"), encoder_factory)
    result = asyncio.run(renderer.render(
        [sized_url("a"), sized_url("b"), sized_url("c")],
        job_id="job6",
        placeholder_policy="placeholder",
    ))

    assert result.slide_count == 3
    assert result.skipped_urls == [sized_url("b")]


def test_ken_burns_renders_frame_sequence(dirs, encoder_factory):
    """Ken Burns renders a numbered JPEG sequence capped with -t."""
    renderer = _renderer(dirs, _fetcher_for("a", "b"), encoder_factory)
    result = asyncio.run(renderer.render([sized_url("a"), sized_url("b")], job_id="job7", duration=1, ken_burns=True))

    args = encoder_factory.runners[0].args
    assert args[args.index("-i") + 1].endswith("frame_%06d.jpg")
    assert args[args.index("-t") + 1] == "2.000"
    assert result.duration_seconds == pytest.approx(2.0)


def test_loop_count_encodes_once_then_stream_copies(dirs, encoder_factory):
    """Loops encode one pass and stream-copy it loop_count times."""
    renderer = _renderer(dirs, _fetcher_for("a", "b", "c"), encoder_factory)
    result = asyncio.run(renderer.render(
        [sized_url("a"), sized_url("b"), sized_url("c")], job_id="job8", duration=1, loop_count=3
    ))

    assert encoder_factory.call_count == 2
    encode_args, loop_args = (r.args for r in encoder_factory.runners)
    assert encode_args[-1].endswith("single.mp4")
    assert loop_args[loop_args.index("-c") + 1] == "copy"
    assert result.duration_seconds == pytest.approx(9.0)
    assert not (dirs["work_root"] / "job8").exists()


def test_encoder_failure_is_wrapped(dirs):
    """A non-zero ffmpeg exit becomes encoder_failed carrying its output."""
    factory = RecordingEncoderFactory(returncode=1, output="Conversion failed!")
    renderer = _renderer(dirs, _fetcher_for("a"), factory)

    with pytest.raises(RenderFailure) as exc_info:
        asyncio.run(renderer.render([sized_url("a")], job_id="job9"))

    assert exc_info.value.code == ENCODER_FAILED
    assert "Conversion failed!" in exc_info.value.message
    assert not (dirs["work_root"] / "job9").exists()


def test_timeout_kills_encoder_and_cleans_up(dirs):
    """Blowing the wall-clock budget fails with timeout and leaves nothing behind."""
    factory = RecordingEncoderFactory(delay=10)
    renderer = _renderer(dirs, _fetcher_for("a"), factory, timeout=1.5)

    with pytest.raises(RenderFailure) as exc_info:
        asyncio.run(renderer.render([sized_url("a")], job_id="job10"))

    assert exc_info.value.code == TIMEOUT
    assert not (dirs["work_root"] / "job10").exists()
    assert not (dirs["output_dir"] / "video-job10.mp4").exists()


def test_insufficient_credits_stops_before_encoding(dirs, encoder_factory):
    """An empty balance stops the job before any encode."""
    credits = InMemoryCreditsLedger({"key-1": 0})
    renderer = _renderer(dirs, _fetcher_for("a"), encoder_factory, credits=credits)

    with pytest.raises(RenderFailure) as exc_info:
        asyncio.run(renderer.render([sized_url("a")], job_id="job11", license_key="key-1"))

    assert exc_info.value.code == INSUFFICIENT_CREDITS
    assert encoder_factory.call_count == 0


def test_credits_are_consumed_once_per_video(dirs, encoder_factory):
    """One successful render consumes exactly one credit tagged with the job id."""
    credits = InMemoryCreditsLedger({"key-1": 2})
    renderer = _renderer(dirs, _fetcher_for("a"), encoder_factory, credits=credits)

    asyncio.run(renderer.render([sized_url("a")], job_id="job12", license_key="key-1"))

    assert credits.remaining("key-1") == 1
    assert credits.transactions[-1].ref == "job12"


def test_stages_run_in_order(dirs, encoder_factory):
    """Stage callbacks fire in pipeline order ending in succeeded."""
    seen = []
    renderer = _renderer(
        dirs, _fetcher_for("a"), encoder_factory, on_stage=lambda job_id, stage: seen.append(stage)
    )
    asyncio.run(renderer.render([sized_url("a")], job_id="job13"))

    assert seen == [
        RenderStage.NORMALIZING,
        RenderStage.RESOLVING,
        RenderStage.COMPOSITING,
        RenderStage.SEQUENCING,
        RenderStage.ENCODING,
        RenderStage.SUCCEEDED,
    ]


def test_failed_run_records_failure_stage(dirs, encoder_factory):
    """A failing run ends in the failed stage without reaching compositing."""
    seen = []
    renderer = _renderer(dirs, FakeFetcher(), encoder_factory, on_stage=lambda job_id, stage: seen.append(stage))
    with pytest.raises(RenderFailure):
        asyncio.run(renderer.render([sized_url("a")], job_id="job14"))
    assert seen[-1] == RenderStage.FAILED
    assert RenderStage.COMPOSITING not in seen


def test_render_run_rejects_skipped_stages():
    """RenderRun refuses out-of-order stages and records failure once."""
    run = RenderRun("j")
    run.advance(RenderStage.NORMALIZING)
    with pytest.raises(RuntimeError):
        run.advance(RenderStage.ENCODING)

    run.fail(RenderFailure(TIMEOUT, "late"))
    run.fail(RenderFailure(TIMEOUT, "again"))
    assert run.history.count(RenderStage.FAILED) == 1
    with pytest.raises(RuntimeError):
        run.advance(RenderStage.RESOLVING)


def test_oversized_image_is_skipped_not_fatal(dirs, encoder_factory):
    """An image past the pixel limit is dropped and the rest still renders."""
    fetcher = FakeFetcher({
        sized_url("big", 1600): make_oversized_png(),
        sized_url("ok", 1600): make_jpeg(seed=1),
    })
    renderer = _renderer(dirs, fetcher, encoder_factory)

    result = asyncio.run(renderer.render([sized_url("big"), sized_url("ok")], job_id="job15"))

    assert result.slide_count == 1
    assert result.skipped_urls == [sized_url("big")]


@patch("utils.helpers.shutil.rmtree", side_effect=OSError("directory busy"))
def test_cleanup_failure_does_not_fail_the_render(mock_rmtree, dirs, encoder_factory):
    """A work dir that cannot be removed is logged; the render still succeeds."""
    renderer = _renderer(dirs, _fetcher_for("a"), encoder_factory)

    result = asyncio.run(renderer.render([sized_url("a")], job_id="job16"))

    assert isinstance(result, RenderResult)
    assert Path(result.output_path).exists()
    mock_rmtree.assert_called_once_with(dirs["work_root"] / "job16")


def test_timeout_stops_ken_burns_frame_writes(dirs, encoder_factory):
    """Frame writes in the worker thread stop soon after the budget runs out."""
    written = []

    def slow_write(frame, path):
        time.sleep(0.02)
        written.append(path)
        return str(path)

    renderer = _renderer(dirs, _fetcher_for("a"), encoder_factory, timeout=1.0)
    with patch("pipeline.renderer.video_generator.write_frame", side_effect=slow_write):
        with pytest.raises(RenderFailure) as exc_info:
            asyncio.run(renderer.render([sized_url("a")], job_id="job17", duration=30, ken_burns=True))
        count = len(written)
        time.sleep(0.2)

    assert exc_info.value.code == TIMEOUT
    assert 0 < count < 300
    assert len(written) == count
    assert encoder_factory.call_count == 0


def test_write_burst_honours_a_set_cancel_event(tmp_path):
    """A pre-set cancel event writes no frames at all."""
    cancel = threading.Event()
    cancel.set()
    base = Image.new("RGB", (320, 180), (40, 40, 40))
    cfg = RenderConfig(canvas_width=320, canvas_height=180, fps=10)

    paths = SlideshowRenderer._write_burst(base, 5, cfg, "left_to_right", tmp_path, 0, cancel)

    assert paths == []
    assert list(tmp_path.iterdir()) == []
