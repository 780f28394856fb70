"""
Well-known local locations for cortex state.

All persisted state is per machine/user. The store directory holds the
database, the TOML config, and the log files.
"""

import os
from pathlib import Path
from typing import Optional

DEFAULT_DIRNAME = ".cortex"
DATABASE_FILENAME = "memories.db"


def get_default_store_path() -> Path:
    """Store directory: CORTEX_STORE_PATH if set, else ~/.cortex."""
    override = os.environ.get("CORTEX_STORE_PATH")
    if override:
        return Path(override).expanduser().resolve()
    return Path.home() / DEFAULT_DIRNAME


def resolve_store_path(store_path: Optional[str | Path] = None) -> Path:
    """Explicit path wins; otherwise the default location."""
    if store_path is not None:
        return Path(store_path).expanduser().resolve()
    return get_default_store_path()


def get_database_path(store_path: Path) -> Path:
    """Path of the records database inside a store directory."""
    return store_path / DATABASE_FILENAME
