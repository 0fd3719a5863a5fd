"""URL normalization for marketplace gallery images.

Turns raw listing-photo URLs (often thumbnails) into canonical high-resolution
URLs and deduplication keys, and drops anything that is not a gallery image on
the expected CDN.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence
from urllib.parse import urlsplit, urlunsplit

from config import IMAGE_CDN_HOSTS, MAX_INPUT_IMAGES
from pipeline.models import ImageRef
from utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass(frozen=True)
class PathShape:
    """A recognized gallery-image path layout and its resolution tokens.

    ``pattern`` must capture three groups: the path prefix, the numeric
    resolution token and the file extension.
    """
    name: str
    pattern: re.Pattern
    token_format: str
    known_tokens: frozenset
    ladder: tuple

    @property
    def highest(self) -> int:
        return self.ladder[0]

    def format_token(self, value) -> str:
        return self.token_format.format(value)


# /images/g/<id>/s-l225.jpg, /thumbs/images/g/<id>/s-l140.jpg, /images/abc_s-l64.jpg
SIZED_SHAPE = PathShape(
    name="sized",
    pattern=re.compile(r"^(/(?:thumbs/)?images/.*?)s-l(\d+)(\.(?:jpe?g|png|webp))$", re.IGNORECASE),
    token_format="s-l{}",
    known_tokens=frozenset({64, 96, 140, 225, 300, 400, 500, 640, 800, 960, 1200, 1600}),
    ladder=(1600, 1200, 960, 800, 640, 500),
)

# /00/s/<key>/z/<key>/$_12.JPG
LEGACY_SHAPE = PathShape(
    name="legacy",
    pattern=re.compile(r"^(/\d+/s/[^/]+/z/[^/]+/)\$_(\d+)(\.(?:jpe?g|png))$", re.IGNORECASE),
    token_format="$_{}",
    known_tokens=frozenset({1, 10, 12, 14, 35, 57}),
    ladder=(57, 10, 12, 1),
)

PATH_SHAPES: Sequence[PathShape] = (SIZED_SHAPE, LEGACY_SHAPE)


def host_in_family(host: str, hosts: Iterable[str] = IMAGE_CDN_HOSTS) -> bool:
    """True when ``host`` equals one of ``hosts`` or is a subdomain of one."""
    host = (host or "").lower().rstrip(".")
    if not host:
        return False
    return any(host == h or host.endswith("." + h) for h in hosts)


def match_shape(path: str) -> Optional[tuple]:
    """Return ``(shape, match)`` for the first shape whose pattern fits ``path``."""
    for shape in PATH_SHAPES:
        m = shape.pattern.match(path)
        if m:
            return shape, m
    return None


def with_token(url: str, token) -> Optional[str]:
    """Rewrite the resolution token of an already-normalized URL.

    Returns None when the URL path is not a recognized shape.
    """
    parts = urlsplit(url)
    found = match_shape(parts.path)
    if not found:
        return None
    shape, m = found
    path = f"{m.group(1)}{shape.format_token(token)}{m.group(3)}"
    return urlunsplit((parts.scheme, parts.netloc, path, "", ""))


def _split(raw_url) -> Optional[tuple]:
    if not isinstance(raw_url, str):
        return None
    raw_url = raw_url.strip()
    if not raw_url:
        return None
    try:
        parts = urlsplit(raw_url)
    except ValueError:
        return None
    if parts.scheme.lower() not in ("http", "https") or not parts.hostname:
        return None
    return parts


def make_image_ref(raw_url, hosts: Iterable[str] = IMAGE_CDN_HOSTS) -> Optional[ImageRef]:
    """Normalize one URL into an ImageRef, or None if it is rejected.

    Rejection is not an error: anything that is not an absolute http(s) URL on
    the CDN host family with a recognized gallery path simply yields None.
    """
    parts = _split(raw_url)
    if parts is None:
        return None
    if not host_in_family(parts.hostname, hosts):
        return None

    found = match_shape(parts.path)
    if not found:
        return None
    shape, m = found

    prefix, token, ext = m.group(1), int(m.group(2)), m.group(3)
    if token in shape.known_tokens:
        token = shape.highest
    path = f"{prefix}{shape.format_token(token)}{ext}"

    # Query and fragment carry tracking/session state only
    normalized = urlunsplit((parts.scheme.lower(), parts.netloc.lower(), path, "", ""))
    dedupe_key = f"{prefix}{ext}".lower()

    return ImageRef(raw_url=raw_url.strip(), normalized_url=normalized, dedupe_key=dedupe_key)


def normalize_url(raw_url, hosts: Iterable[str] = IMAGE_CDN_HOSTS) -> Optional[str]:
    """Canonical high-resolution URL for ``raw_url``, or None when rejected."""
    ref = make_image_ref(raw_url, hosts)
    return ref.normalized_url if ref else None


def normalize_urls(
    raw_urls: Iterable,
    max_images: int = MAX_INPUT_IMAGES,
    hosts: Iterable[str] = IMAGE_CDN_HOSTS,
) -> List[ImageRef]:
    """Normalize, deduplicate and cap a list of raw URLs.

    First-seen order is preserved; duplicates (same path modulo resolution
    token and query) and anything past ``max_images`` are dropped silently.
    """
    hosts = tuple(hosts)
    seen = set()
    refs: List[ImageRef] = []
    rejected = 0
    for raw in raw_urls or []:
        ref = make_image_ref(raw, hosts)
        if ref is None:
            rejected += 1
            continue
        if ref.dedupe_key in seen:
            continue
        seen.add(ref.dedupe_key)
        refs.append(ref)

    if rejected:
        logger.info(f"[normalizer] Rejected {rejected} URL(s) outside the accepted CDN/path shapes")
    if len(refs) > max_images:
        logger.info(f"[normalizer] Capping {len(refs)} images to {max_images}")
        refs = refs[:max_images]
    return refs
