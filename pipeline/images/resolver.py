"""Image resolution: fetch the best available variant of each normalized URL.

Marketplace CDNs answer missing or restricted photos with tiny placeholder
images rather than errors, so a candidate only wins when it is both larger
than MIN_IMAGE_BYTES and decodes as an image.
"""
from __future__ import annotations

import asyncio
import io
from typing import Awaitable, Callable, List, Optional, Union
from urllib.parse import urlsplit

import aiohttp
from aiohttp import ClientTimeout
from PIL import Image, UnidentifiedImageError

from config import FETCH_TIMEOUT, FETCH_USER_AGENT, MAX_CONCURRENT_FETCHES, MIN_IMAGE_BYTES
from pipeline.images.normalizer import match_shape, with_token
from pipeline.models import ImageRef, ResolvedImage, ResolveFailure
from utils.logger import setup_logger

logger = setup_logger(__name__)

# A fetcher returns the body of a 2xx response, or None for any failure
Fetcher = Callable[[str], Awaitable[Optional[bytes]]]

ResolveOutcome = Union[ResolvedImage, ResolveFailure]


def build_ladder(normalized_url: str, original_url: Optional[str] = None) -> List[str]:
    """Candidate URLs from largest to smallest resolution, original URL last.

    The ladder depends on the detected path shape; unknown shapes fall back to
    the normalized URL alone. Duplicates are removed, order is kept.
    """
    candidates: List[str] = []
    found = match_shape(urlsplit(normalized_url).path)
    if found:
        shape, _ = found
        for token in shape.ladder:
            variant = with_token(normalized_url, token)
            if variant:
                candidates.append(variant)
    candidates.append(normalized_url)
    if original_url:
        candidates.append(original_url)

    ladder: List[str] = []
    for url in candidates:
        if url not in ladder:
            ladder.append(url)
    return ladder


def probe_image(buffer: bytes) -> Optional[tuple]:
    """Return (width, height) if ``buffer`` decodes as an image, else None."""
    try:
        with Image.open(io.BytesIO(buffer)) as img:
            size = img.size
            img.verify()
        return size
    except (UnidentifiedImageError, Image.DecompressionBombError, OSError, SyntaxError, ValueError) as e:
        logger.debug(f"[resolver] Decode check failed: {e}")
        return None


class HttpImageFetcher:
    """aiohttp-backed fetcher with a per-attempt timeout.

    Use as an async context manager so the session is closed after the job:

        async with HttpImageFetcher() as fetch:
            data = await fetch(url)
    """

    def __init__(self, timeout: float = FETCH_TIMEOUT, user_agent: str = FETCH_USER_AGENT):
        self.timeout = ClientTimeout(total=timeout, connect=min(timeout, 5))
        self.headers = {
            "User-Agent": user_agent,
            "Accept": "image/avif,image/webp,image/apng,image/*,*/*;q=0.8",
            "Accept-Language": "en-US,en;q=0.9",
        }
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "HttpImageFetcher":
        self._session = aiohttp.ClientSession(headers=self.headers, timeout=self.timeout)
        return self

    async def __aexit__(self, *exc) -> None:
        if self._session is not None:
            await self._session.close()
            self._session = None

    async def __call__(self, url: str) -> Optional[bytes]:
        if self._session is None:
            raise RuntimeError("HttpImageFetcher used outside of 'async with'")
        try:
            async with self._session.get(url, allow_redirects=True) as resp:
                if not 200 <= resp.status < 300:
                    logger.debug(f"[resolver] Bad status {resp.status} for {url}")
                    return None
                return await resp.read()
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.debug(f"[resolver] Fetch failed for {url}: {e!r}")
            return None


class ImageResolver:
    """Walks the resolution ladder of an ImageRef until one candidate passes."""

    def __init__(self, fetcher: Fetcher, min_bytes: int = MIN_IMAGE_BYTES):
        self.fetcher = fetcher
        self.min_bytes = min_bytes

    async def _fetch(self, url: str) -> Optional[bytes]:
        try:
            return await self.fetcher(url)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"[resolver] Fetcher raised for {url}: {e}")
            return None

    async def resolve(self, ref: ImageRef) -> ResolveOutcome:
        ladder = build_ladder(ref.normalized_url, ref.raw_url)
        attempted: List[str] = []
        last_reason = "no candidates"

        for url in ladder:
            attempted.append(url)
            data = await self._fetch(url)
            if data is None:
                last_reason = "fetch failed"
                continue
            if len(data) < self.min_bytes:
                logger.debug(f"[resolver] {url} too small ({len(data)} < {self.min_bytes} bytes)")
                last_reason = "below size threshold"
                continue
            size = probe_image(data)
            if size is None:
                last_reason = "not decodable"
                continue

            logger.info(f"[resolver] Resolved {ref.raw_url} via {url} ({size[0]}x{size[1]}, {len(data)} bytes)")
            return ResolvedImage(
                image_ref=ref,
                buffer=data,
                source_variant_url=url,
                width=size[0],
                height=size[1],
            )

        logger.warning(f"[resolver] All {len(attempted)} candidates failed for {ref.raw_url} ({last_reason})")
        return ResolveFailure(image_ref=ref, reason=last_reason, attempted_urls=attempted)


async def resolve_all(
    refs: List[ImageRef],
    resolver: ImageResolver,
    max_concurrent: int = MAX_CONCURRENT_FETCHES,
) -> List[ResolveOutcome]:
    """Resolve every ref concurrently (bounded), returning outcomes in input order."""
    semaphore = asyncio.Semaphore(max(1, max_concurrent))

    async def resolve_one(ref: ImageRef) -> ResolveOutcome:
        async with semaphore:
            return await resolver.resolve(ref)

    return list(await asyncio.gather(*(resolve_one(r) for r in refs)))
