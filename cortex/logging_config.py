"""
Logging setup for cortex.

Library noise (HuggingFace progress bars, HTTP client chatter) is off
unless CORTEX_VERBOSE is set; each store keeps its own rotating
operations log.
"""

import logging
import os
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

OPS_LOG_NAME = "cortex-ops.log"

# Read by transformers / huggingface_hub at import time, so set them
# before any embedding provider is loaded.
_QUIET_ENV = {
    "HF_HUB_DISABLE_PROGRESS_BARS": "1",
    "HF_HUB_DISABLE_TELEMETRY": "1",
    "TRANSFORMERS_VERBOSITY": "error",
    "TOKENIZERS_PARALLELISM": "false",
}
if not os.environ.get("CORTEX_VERBOSE"):
    for _key, _value in _QUIET_ENV.items():
        os.environ.setdefault(_key, _value)

_NOISY_LOGGERS = ("urllib3", "httpx", "openai", "sentence_transformers", "transformers")


def configure_quiet_mode(quiet: bool = True):
    """Silence (or restore) third-party loggers and warnings."""
    if not quiet:
        warnings.filterwarnings("default")
        level = logging.NOTSET
    else:
        os.environ.update(_QUIET_ENV)
        warnings.filterwarnings("ignore")
        level = logging.ERROR
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(level)


def _has_stderr_handler(logger: logging.Logger) -> bool:
    return any(
        isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr
        for h in logger.handlers
    )


def enable_debug_mode():
    """Send DEBUG from everything, cortex included, to stderr."""
    warnings.filterwarnings("default")
    for key in ("HF_HUB_DISABLE_PROGRESS_BARS", "TRANSFORMERS_VERBOSITY"):
        os.environ.pop(key, None)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    if not _has_stderr_handler(root):
        console = logging.StreamHandler(sys.stderr)
        console.setLevel(logging.DEBUG)
        console.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S",
        ))
        root.addHandler(console)

    logging.getLogger("cortex").setLevel(logging.DEBUG)


def configure_ops_log(store_path) -> RotatingFileHandler:
    """Attach {store_path}/cortex-ops.log to the cortex logger.

    INFO and above, rotated at 1MB with 3 backups, written whatever the
    console verbosity. The caller removes it with remove_ops_log().
    """
    store_path = Path(store_path)
    store_path.mkdir(parents=True, exist_ok=True)

    handler = RotatingFileHandler(str(store_path / OPS_LOG_NAME), maxBytes=1_000_000, backupCount=3)
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s", datefmt="%Y-%m-%d %H:%M:%S",
    ))

    cortex_logger = logging.getLogger("cortex")
    cortex_logger.addHandler(handler)
    if not logging.NOTSET < cortex_logger.level <= logging.INFO:
        cortex_logger.setLevel(logging.INFO)
    return handler


def remove_ops_log(handler: RotatingFileHandler) -> None:
    """Detach and close a handler returned by configure_ops_log()."""
    logging.getLogger("cortex").removeHandler(handler)
    handler.close()
