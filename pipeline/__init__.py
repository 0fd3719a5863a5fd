"""
Pipeline package for the SlideMint renderer.
Groups image normalization/resolution, rendering and job handling stages.
"""
from .images import normalize_urls
from .renderer import SlideshowRenderer, RenderFailure
from .jobs import RenderQueue, InMemoryJobStore

__all__ = [
    "normalize_urls",
    "SlideshowRenderer",
    "RenderFailure",
    "RenderQueue",
    "InMemoryJobStore",
]
