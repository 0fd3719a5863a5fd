"""
Logging utility for the SlideMint renderer.

Every module calls ``setup_logger(__name__)`` once at import. Records go to the
console (INFO and up), to a per-stage log file picked from the module name, and
to a combined all.log, so one failed job can be followed either stage by stage
or end to end.
"""

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path
from config import LOG_DIR, LOG_LEVEL

# Module prefix -> stage log file. Longer prefixes must come before shorter ones.
MODULE_LOG_MAPPING = {
    "__main__": "main.log",
    "main": "main.log",
    "api": "api.log",
    "pipeline.images.normalizer": "normalizer.log",
    "pipeline.images.resolver": "resolver.log",
    "pipeline.renderer.encoder": "encoder.log",
    "pipeline.renderer": "renderer.log",
    "pipeline.jobs": "jobs.log",
}

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
MAX_LOG_BYTES = 10 * 1024 * 1024
LOG_BACKUPS = 5

_configured_loggers = set()


def log_file_for(module_name: str) -> str:
    """
    Pick the stage log file for a module.

    Args:
        module_name: The module's __name__ value

    Returns:
        Log filename (not full path); main.log when nothing matches
    """
    if module_name in MODULE_LOG_MAPPING:
        return MODULE_LOG_MAPPING[module_name]
    for prefix, log_file in MODULE_LOG_MAPPING.items():
        if module_name.startswith(prefix + "."):
            return log_file
    return "main.log"


def _file_handler(filename: str, level: int, formatter: logging.Formatter) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        os.path.join(LOG_DIR, filename),
        maxBytes=MAX_LOG_BYTES,
        backupCount=LOG_BACKUPS,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logger(name: str) -> logging.Logger:
    """
    Return the logger for ``name``, attaching handlers on first use only.

    File handlers honour LOG_LEVEL (DEBUG by default) and rotate at 10MB,
    keeping 5 backups; the console only shows INFO and above.
    """
    logger = logging.getLogger(name)
    if name in _configured_loggers:
        return logger
    _configured_loggers.add(name)

    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    Path(LOG_DIR).mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    file_level = getattr(logging, str(LOG_LEVEL).upper(), logging.DEBUG)

    console = logging.StreamHandler()
    console.setLevel(logging.INFO)
    console.setFormatter(formatter)
    logger.addHandler(console)

    logger.addHandler(_file_handler(log_file_for(name), file_level, formatter))
    logger.addHandler(_file_handler("all.log", file_level, formatter))
    return logger
