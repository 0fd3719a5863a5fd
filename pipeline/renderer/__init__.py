"""
Renderer subpackage init.
Expose the slideshow render entrypoint and the encoder.
"""
from .video_generator import RenderFailure, RenderStage, SlideshowRenderer
from .encoder import EncodeError, VideoEncoder

__all__ = ["RenderFailure", "RenderStage", "SlideshowRenderer", "EncodeError", "VideoEncoder"]
