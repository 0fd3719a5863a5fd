"""
Main module for the SlideMint renderer.
Renders a slideshow from image URLs on the command line, or serves the HTTP API.

Usage:
    python main.py render URL [URL ...] [--duration S] [--loop N] [--fit MODE] [--ken-burns] [--placeholders]
    python main.py serve [--host HOST] [--port PORT]
"""

import sys
import asyncio
import argparse

from utils.logger import setup_logger
from utils.helpers import ensure_directory
from pipeline.models import FitMode, PlaceholderPolicy
from pipeline.renderer import RenderFailure, SlideshowRenderer
from pipeline.renderer.encoder import probe_video

from config import HOST, PORT, VIDEO_OUTPUT_DIR, RENDER_WORK_DIR

logger = setup_logger(__name__)


async def async_render(args) -> str:
    """
    Render one slideshow with the options parsed from the command line.

    Returns:
        Path to the rendered video
    """
    ensure_directory(VIDEO_OUTPUT_DIR)
    ensure_directory(RENDER_WORK_DIR)

    renderer = SlideshowRenderer()
    result = await renderer.render(
        args.urls,
        duration=args.duration,
        loop_count=args.loop,
        fit_mode=args.fit,
        ken_burns=True if args.ken_burns else None,
        placeholder_policy=PlaceholderPolicy.PLACEHOLDER.value if args.placeholders else None,
    )

    if result.skipped_urls:
        logger.warning(f"Skipped {len(result.skipped_urls)} image(s) that could not be loaded")
        for url in result.skipped_urls:
            logger.warning(f"  - {url}")

    try:
        meta = probe_video(result.output_path)
        logger.info(f"Output: {meta['size'][0]}x{meta['size'][1]} @ {meta['fps']} fps, {meta['duration']:.2f}s")
    except (OSError, RuntimeError, StopIteration) as e:
        logger.warning(f"Could not probe output video: {e}")

    return result.output_path


def serve(args) -> None:
    """Run the HTTP API under uvicorn."""
    import uvicorn

    logger.info(f"Starting API on {args.host}:{args.port}")
    uvicorn.run("api:app", host=args.host, port=args.port)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="SlideMint slideshow renderer")
    sub = parser.add_subparsers(dest="command", required=True)

    render = sub.add_parser("render", help="Render a slideshow from image URLs")
    render.add_argument("urls", nargs="+", help="Image URLs on the accepted CDN")
    render.add_argument("--duration", type=float, default=None, help="Seconds per slide")
    render.add_argument("--loop", type=int, default=None, help="Play the slideshow N times")
    render.add_argument(
        "--fit",
        choices=[m.value for m in FitMode],
        default=None,
        help="How images are fitted to the canvas",
    )
    render.add_argument("--ken-burns", action="store_true", help="Animate slides with pan and zoom")
    render.add_argument(
        "--placeholders",
        action="store_true",
        help="Keep a placeholder slide for images that fail to load instead of dropping them",
    )

    srv = sub.add_parser("serve", help="Run the HTTP API")
    srv.add_argument("--host", default=HOST)
    srv.add_argument("--port", type=int, default=PORT)
    return parser


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)

    if args.command == "serve":
        serve(args)
        return 0

    try:
        output = asyncio.run(async_render(args))
    except RenderFailure as e:
        logger.error(f"Render failed ({e.code}): {e.message}")
        return 1

    logger.info(f"Video rendered successfully: {output}")
    print(output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
