"""
Image source subpackage.
URL normalization and ladder-based image resolution.
"""
from .normalizer import normalize_url, normalize_urls, make_image_ref
from .resolver import HttpImageFetcher, ImageResolver, build_ladder, resolve_all

__all__ = [
    "normalize_url",
    "normalize_urls",
    "make_image_ref",
    "HttpImageFetcher",
    "ImageResolver",
    "build_ladder",
    "resolve_all",
]
