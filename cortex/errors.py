"""
Error kinds and error logging for cortex.

Every failure the core reports is one of the kinds below. Front ends turn
them into structured ``(kind, message)`` pairs with :func:`error_payload`;
full tracebacks go to an error log file, never to the caller.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


class CortexError(Exception):
    """Base class for all errors raised by the core."""

    kind = "CortexError"

    def to_dict(self) -> dict[str, str]:
        """Structured form for front ends: ``{"kind": ..., "message": ...}``."""
        return {"kind": self.kind, "message": str(self)}


class ValidationError(CortexError, ValueError):
    """Malformed input: empty content, unknown type, bad option value."""

    kind = "ValidationError"


class NotFound(CortexError, KeyError):
    """An operation referenced a record id that does not exist."""

    kind = "NotFound"

    def __str__(self) -> str:
        # KeyError quotes its argument; keep the plain message
        return self.args[0] if self.args else "Not found"


class CapabilityUnavailable(CortexError):
    """Semantic search or semantic dedup requested without an embedding provider."""

    kind = "CapabilityUnavailable"


class SourceUnavailable(CortexError, OSError):
    """An embedding call or a source fetch failed."""

    kind = "SourceUnavailable"


class ProviderTimeout(SourceUnavailable, TimeoutError):
    """An embedding call or a source fetch exceeded its deadline."""

    kind = "ProviderTimeout"


class StorageFailure(CortexError):
    """The durable store could not complete a read or write."""

    kind = "StorageFailure"


INTERNAL_ERROR_KIND = "InternalError"


def error_payload(exc: BaseException) -> dict[str, str]:
    """
    Convert an exception into a structured ``(kind, message)`` pair.

    Core errors keep their message. Anything else is reported with a
    generic message so internal details don't leak to remote callers.
    """
    if isinstance(exc, CortexError):
        return exc.to_dict()
    return {
        "kind": INTERNAL_ERROR_KIND,
        "message": f"Internal error ({type(exc).__name__})",
    }


def _error_log_path(store_path: Optional[Path] = None) -> Path:
    """Resolve error log path, respecting CORTEX_STORE_PATH."""
    if store_path is not None:
        return Path(store_path) / "cortex-errors.log"
    store = os.environ.get("CORTEX_STORE_PATH")
    if store:
        return Path(store) / "cortex-errors.log"
    return Path.home() / ".cortex" / "cortex-errors.log"


def log_exception(
    exc: BaseException,
    context: str = "",
    store_path: Optional[Path] = None,
) -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., operation name)
        store_path: Store directory; defaults to the well-known location

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path(store_path)
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}] {type(exc).__name__}")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # Can't write error log, don't crash over it
    return log_path
