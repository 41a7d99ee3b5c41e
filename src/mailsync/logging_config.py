# =============================================================================
# Logging Setup
# =============================================================================
# One dictConfig for the whole process:
#
#   - stderr stream handler (stdout is reserved for CLI output)
#   - optional file handler in the XDG state directory
#   - noisy third-party loggers (aioimaplib, asyncio) clamped to WARNING
#
# Modules never configure logging themselves; they only do
#   logger = logging.getLogger(__name__)
# =============================================================================

import logging
import logging.config
from pathlib import Path
from typing import Any

STANDARD_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"

# Third-party loggers that are too chatty at DEBUG
QUIET_LOGGERS = ("aioimaplib", "asyncio")


def build_logging_config(level: str = "INFO", log_file: Path | None = None) -> dict[str, Any]:
    """
    Build the dictConfig mapping.

    Args:
        level: Level name for the root logger.
        log_file: If set, also log to this file.
    """
    handlers: dict[str, Any] = {
        "default": {
            "formatter": "standard",
            "class": "logging.StreamHandler",
            "stream": "ext://sys.stderr",
        },
    }
    if log_file is not None:
        handlers["file"] = {
            "formatter": "standard",
            "class": "logging.FileHandler",
            "filename": str(log_file),
            "encoding": "utf-8",
        }

    handler_names = list(handlers)
    loggers: dict[str, Any] = {
        "": {"handlers": handler_names, "level": level.upper(), "propagate": False},
    }
    for name in QUIET_LOGGERS:
        loggers[name] = {"handlers": handler_names, "level": logging.WARNING, "propagate": False}

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "standard": {"format": STANDARD_FORMAT},
        },
        "handlers": handlers,
        "loggers": loggers,
    }


def setup_logging(level: str = "INFO", log_file: Path | None = None) -> None:
    """Configure the root logger for the process."""
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
    logging.config.dictConfig(build_logging_config(level, log_file))
    logging.captureWarnings(True)
