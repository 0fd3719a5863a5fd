"""
Configuration settings for the SlideMint slideshow renderer.
Contains paths, image source rules, render defaults and encoder parameters.

Every value can be overridden through the environment or a local .env file
(loaded below). Per-request overrides go through pipeline.models.RenderConfig,
which validates and clamps them against the limits defined here.
"""

import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() in ("true", "1", "yes")


# ------------------------------------------------------------
# File paths (directories, not individual files)
# ------------------------------------------------------------
VIDEO_OUTPUT_DIR = os.getenv("VIDEO_OUTPUT_DIR", "public/videos")
RENDER_WORK_DIR = os.getenv("RENDER_WORK_DIR", "data/render_tmp")
LOG_DIR = os.getenv("LOG_DIR", "data/logs")

# Base URL prepended to /videos/<file> in responses. Empty = relative URLs.
PUBLIC_BASE_URL = os.getenv("PUBLIC_BASE_URL", "")

# ------------------------------------------------------------
# Image source settings
# ------------------------------------------------------------
# Accepted CDN host family. A host matches when it equals an entry or is a subdomain of one.
IMAGE_CDN_HOSTS = tuple(
    h.strip().lower()
    for h in os.getenv("IMAGE_CDN_HOSTS", "ebayimg.com").split(",")
    if h.strip()
)
MAX_INPUT_IMAGES = int(os.getenv("MAX_INPUT_IMAGES", "12"))

FETCH_TIMEOUT = float(os.getenv("FETCH_TIMEOUT", "8"))  # seconds per ladder attempt
MAX_CONCURRENT_FETCHES = int(os.getenv("MAX_CONCURRENT_FETCHES", "4"))
# Marketplace CDNs answer missing photos with tiny placeholder images.
# Anything smaller than this is treated as "not a real photo". Recalibrate if the CDN changes.
MIN_IMAGE_BYTES = int(os.getenv("MIN_IMAGE_BYTES", "5000"))
FETCH_USER_AGENT = os.getenv("FETCH_USER_AGENT", "SlideMint-API/1.0")

# ------------------------------------------------------------
# Render defaults
# ------------------------------------------------------------
CANVAS_SIZE = (
    int(os.getenv("CANVAS_WIDTH", "1920")),
    int(os.getenv("CANVAS_HEIGHT", "1080")),
)
FPS = int(os.getenv("FPS", "30"))
DEFAULT_SLIDE_DURATION = float(os.getenv("DEFAULT_SLIDE_DURATION", "2.0"))
MIN_SLIDE_DURATION = float(os.getenv("MIN_SLIDE_DURATION", "0.5"))
MAX_SLIDE_DURATION = 30.0
DEFAULT_LOOP_COUNT = 1
MAX_LOOP_COUNT = 10

# Fit policy: "contain" | "cover" | "blurredBackground"
FIT_MODE = os.getenv("FIT_MODE", "contain")
ALLOW_UPSCALE = False  # contain-fit never scales past the source's native size
BLUR_RADIUS = 40
BACKGROUND_BRIGHTNESS = 0.8  # multiplier applied to the blurred background

# Unresolvable images: "skip" drops them, "placeholder" keeps a warning slide in their place
PLACEHOLDER_POLICY = os.getenv("PLACEHOLDER_POLICY", "skip")
PLACEHOLDER_LABEL = "Image failed to load"
PLACEHOLDER_COLOR = (17, 17, 17)

# Ken Burns (pan/zoom) mode renders a burst of frames per slide instead of one still
KEN_BURNS = _env_bool("KEN_BURNS", False)
KEN_BURNS_ZOOM_START = 1.05
KEN_BURNS_ZOOM_END = 1.20
FRAME_SEQUENCE_QUALITY = 95  # JPEG quality for Ken Burns frame bursts

# ------------------------------------------------------------
# Encoder settings (tuned for marketplace players that re-transcode uploads)
# ------------------------------------------------------------
VIDEO_CODEC = "libx264"
PIX_FMT = "yuv420p"
PRESET = os.getenv("ENCODER_PRESET", "slow")
H264_PROFILE = "high"
H264_LEVEL = "4.1"
CRF = 18
MAXRATE = "8M"
BUFSIZE = "16M"
B_FRAMES = 2
ADD_SILENT_AUDIO = _env_bool("ADD_SILENT_AUDIO", True)
AUDIO_CODEC = "aac"
AUDIO_BITRATE = "128k"
AUDIO_SAMPLE_RATE = 44100

# ------------------------------------------------------------
# Jobs and credits
# ------------------------------------------------------------
JOB_TIMEOUT_SECONDS = float(os.getenv("JOB_TIMEOUT_SECONDS", "180"))
MAX_RUNNING_JOBS = int(os.getenv("MAX_RUNNING_JOBS", "2"))
CREDIT_COST_VIDEO = 1
REQUIRE_LICENSE = _env_bool("REQUIRE_LICENSE", False)

# ------------------------------------------------------------
# HTTP server
# ------------------------------------------------------------
HOST = os.getenv("HOST", "0.0.0.0")
PORT = int(os.getenv("PORT", "3000"))
# Reported by /health; rendering works without them
REQUIRED_ENV = ("PUBLIC_BASE_URL", "LEMON_API_KEY", "DATABASE_URL")

# ------------------------------------------------------------
# Logging
# ------------------------------------------------------------
LOG_LEVEL = os.getenv("LOG_LEVEL", "DEBUG")
