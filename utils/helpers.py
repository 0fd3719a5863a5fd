"""
Helper functions for the SlideMint renderer.
Contains filesystem and naming utilities used across different modules.
"""

import os
import shutil
import uuid
from pathlib import Path
from config import PUBLIC_BASE_URL
from utils.logger import setup_logger

logger = setup_logger(__name__)

def ensure_directory(path) -> None:
    """
    Ensure a directory exists, create if it doesn't.

    Args:
        path: Path to the directory
    """
    os.makedirs(path, exist_ok=True)

def new_job_id() -> str:
    """Return a fresh identifier for a render job (used in work dir and output names)."""
    return uuid.uuid4().hex

def output_filename(job_id: str) -> str:
    """Deterministic public filename for a job's final video."""
    return f"video-{job_id}.mp4"

def public_video_url(filename: str, base_url: str | None = None) -> str:
    """
    Build the URL a client uses to download a finished video.

    Args:
        filename (str): File name inside the public video directory
        base_url (str): Optional base URL; defaults to PUBLIC_BASE_URL

    Returns:
        str: Absolute URL when a base is configured, otherwise a /videos/ path
    """
    base = PUBLIC_BASE_URL if base_url is None else base_url
    path = f"/videos/{filename}"
    if not base:
        return path
    return base.rstrip("/") + path

def cleanup_work_dir(path) -> bool:
    """
    Remove a job's temporary working directory.

    Failures are logged and never raised; a leftover temp dir must not
    turn a finished render into a failed one.

    Returns:
        bool: True when the directory no longer exists
    """
    work_path = Path(path)
    if not work_path.exists():
        return True
    try:
        shutil.rmtree(work_path)
        logger.debug(f"Deleted work dir: {work_path}")
        return True
    except OSError as e:
        logger.warning(f"Could not delete work dir {work_path}: {e}")
        return False

def remove_file_quietly(path) -> None:
    """Delete a (possibly partial) file, logging instead of raising."""
    try:
        Path(path).unlink(missing_ok=True)
    except OSError as e:
        logger.warning(f"Could not delete {path}: {e}")
