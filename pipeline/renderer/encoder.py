"""
FFMPEG invocation for slideshow encoding.

Wraps the external encoder behind a small capability interface
(``run(args)`` / ``cancel()``) so the orchestrator can be exercised against a
fake, and so a job that blows its time budget can kill the process instead of
leaving it running.
"""
import asyncio
import time
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import imageio_ffmpeg
from pydantic import BaseModel

import config as settings
from pipeline.models import ManifestMode, RenderConfig, SlideManifest
from pipeline.renderer.sequencer import write_loop_list
from utils.logger import setup_logger

logger = setup_logger(__name__)

DIAGNOSTIC_LINES = 5


class EncodeError(RuntimeError):
    """FFMPEG exited non-zero. ``diagnostic`` holds its last stderr lines."""

    def __init__(self, message: str, diagnostic: str = "", returncode: Optional[int] = None):
        super().__init__(f"{message}: {diagnostic}" if diagnostic else message)
        self.diagnostic = diagnostic
        self.returncode = returncode


class ProcessResult(BaseModel):
    returncode: int
    output: str = ""

    @property
    def diagnostic(self) -> str:
        lines = [line.strip() for line in self.output.splitlines() if line.strip()]
        return "\n".join(lines[-DIAGNOSTIC_LINES:])


def get_ffmpeg_exe() -> str:
    """FFMPEG binary bundled with imageio-ffmpeg, falling back to the one on PATH."""
    try:
        return imageio_ffmpeg.get_ffmpeg_exe()
    except RuntimeError:
        return "ffmpeg"


class FFmpegRunner:
    """Runs one external process and keeps a handle so it can be killed."""

    def __init__(self):
        self._proc: Optional[asyncio.subprocess.Process] = None

    async def run(self, args: Sequence[str]) -> ProcessResult:
        self._proc = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.DEVNULL,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            _, stderr = await self._proc.communicate()
        except asyncio.CancelledError:
            # Budget exceeded or caller gave up: never leave the encoder running
            self.cancel()
            await self._proc.wait()
            raise
        return ProcessResult(
            returncode=self._proc.returncode,
            output=(stderr or b"").decode("utf-8", errors="replace"),
        )

    def cancel(self) -> None:
        proc = self._proc
        if proc is not None and proc.returncode is None:
            logger.warning(f"[encoder] Killing ffmpeg (pid {proc.pid})")
            try:
                proc.kill()
            except ProcessLookupError:
                pass


class EncodeProfile(BaseModel):
    """Fixed output contract: H.264 4:2:0, fast start, bounded bitrate."""
    codec: str = settings.VIDEO_CODEC
    preset: str = settings.PRESET
    profile: str = settings.H264_PROFILE
    level: str = settings.H264_LEVEL
    pix_fmt: str = settings.PIX_FMT
    crf: int = settings.CRF
    maxrate: str = settings.MAXRATE
    bufsize: str = settings.BUFSIZE
    b_frames: int = settings.B_FRAMES
    silent_audio: bool = settings.ADD_SILENT_AUDIO
    audio_codec: str = settings.AUDIO_CODEC
    audio_bitrate: str = settings.AUDIO_BITRATE
    audio_sample_rate: int = settings.AUDIO_SAMPLE_RATE


def _input_args(manifest: SlideManifest, source: str) -> List[str]:
    if manifest.mode == ManifestMode.SEQUENCE:
        return ["-framerate", str(manifest.fps), "-start_number", "0", "-i", str(source)]
    return ["-f", "concat", "-safe", "0", "-i", str(source)]


def build_encode_command(
    ffmpeg_exe: str,
    manifest: SlideManifest,
    source: str,
    output_path: str,
    config: RenderConfig,
    profile: EncodeProfile,
) -> List[str]:
    """Full ffmpeg argument list for one single-pass encode.

    :param source: concat manifest path (concat mode) or printf-style frame
                   pattern such as ``frames/frame_%06d.jpg`` (sequence mode).
    """
    w, h = config.canvas_size
    fps = manifest.fps
    duration = manifest.total_duration

    cmd = [ffmpeg_exe, "-y", "-hide_banner", "-loglevel", "warning"]
    cmd += _input_args(manifest, source)
    if profile.silent_audio:
        cmd += [
            "-f", "lavfi",
            "-i", f"anullsrc=channel_layout=stereo:sample_rate={profile.audio_sample_rate}",
        ]
        cmd += ["-map", "0:v:0", "-map", "1:a:0"]

    # Frames are already canvas-sized; the filter only guarantees even dims and 4:2:0
    vf = (
        f"scale={w}:{h}:force_original_aspect_ratio=decrease,"
        f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2,setsar=1,format={profile.pix_fmt}"
    )
    cmd += [
        "-vf", vf,
        "-r", str(fps),
        "-c:v", profile.codec,
        "-preset", profile.preset,
        "-profile:v", profile.profile,
        "-level", profile.level,
        "-pix_fmt", profile.pix_fmt,
        "-crf", str(profile.crf),
        "-maxrate", profile.maxrate,
        "-bufsize", profile.bufsize,
        "-g", str(fps * 2),
        "-bf", str(profile.b_frames),
        "-colorspace", "bt709",
        "-color_primaries", "bt709",
        "-color_trc", "bt709",
    ]
    if profile.silent_audio:
        cmd += [
            "-c:a", profile.audio_codec,
            "-b:a", profile.audio_bitrate,
            "-ac", "2",
            "-shortest",
        ]
    cmd += ["-t", f"{duration:.3f}", "-movflags", "+faststart", str(output_path)]
    return cmd


def build_loop_command(ffmpeg_exe: str, list_path: str, output_path: str) -> List[str]:
    """Stream-copy concat: repeats the single-pass file without re-encoding."""
    return [
        ffmpeg_exe, "-y", "-hide_banner", "-loglevel", "warning",
        "-f", "concat", "-safe", "0", "-i", str(list_path),
        "-c", "copy",
        "-movflags", "+faststart",
        str(output_path),
    ]


class VideoEncoder:
    """Encodes a SlideManifest to MP4 and loops finished videos by stream copy.

    Failures raise EncodeError and are never retried here; re-encoding is
    expensive and the caller decides whether the whole job is retried.
    """

    def __init__(
        self,
        profile: Optional[EncodeProfile] = None,
        runner_factory: Callable[[], FFmpegRunner] = FFmpegRunner,
        ffmpeg_exe: Optional[str] = None,
    ):
        self.profile = profile or EncodeProfile()
        self.runner_factory = runner_factory
        self._ffmpeg_exe = ffmpeg_exe
        self._runners = set()

    @property
    def ffmpeg_exe(self) -> str:
        if self._ffmpeg_exe is None:
            self._ffmpeg_exe = get_ffmpeg_exe()
        return self._ffmpeg_exe

    async def _run(self, args: List[str], label: str) -> ProcessResult:
        logger.debug(f"[encoder] Command: {' '.join(args)}")
        runner = self.runner_factory()
        self._runners.add(runner)
        start = time.time()
        try:
            result = await runner.run(args)
        finally:
            self._runners.discard(runner)
        elapsed = time.time() - start

        if result.returncode != 0:
            logger.error(f"[encoder] {label} failed after {elapsed:.2f}s (exit {result.returncode})")
            logger.error(f"[encoder] stderr: {result.diagnostic}")
            raise EncodeError(f"FFMPEG {label} failed", result.diagnostic, result.returncode)

        logger.info(f"[encoder] {label} completed in {elapsed:.2f}s")
        return result

    async def encode(
        self,
        manifest: SlideManifest,
        source: str,
        output_path: str,
        config: RenderConfig,
    ) -> str:
        """Single-pass encode of ``manifest`` into ``output_path``."""
        cmd = build_encode_command(self.ffmpeg_exe, manifest, source, output_path, config, self.profile)
        logger.info(
            f"[encoder] Encoding {manifest.entry_count} {manifest.mode.value} entries "
            f"({manifest.total_duration:.2f}s) -> {output_path}"
        )
        await self._run(cmd, "encode")
        return str(output_path)

    async def loop(self, single_path: str, output_path: str, loop_count: int, work_dir) -> str:
        """Concatenate ``single_path`` with itself ``loop_count`` times (stream copy)."""
        list_path = Path(work_dir) / "loop_list.txt"
        await write_loop_list(single_path, loop_count, list_path)
        cmd = build_loop_command(self.ffmpeg_exe, str(list_path), output_path)
        logger.info(f"[encoder] Looping {single_path} x{loop_count} (stream copy)")
        await self._run(cmd, "loop concat")
        return str(output_path)

    def cancel(self) -> None:
        """Kill every ffmpeg process this encoder currently has running."""
        for runner in list(self._runners):
            runner.cancel()


def probe_video(path) -> dict:
    """Read container metadata (size, fps, duration) of an encoded file."""
    reader = imageio_ffmpeg.read_frames(str(path))
    try:
        meta = next(reader)
    finally:
        reader.close()
    return {
        "size": tuple(meta.get("size") or ()),
        "fps": meta.get("fps"),
        "duration": meta.get("duration"),
    }
