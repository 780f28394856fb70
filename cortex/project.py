"""
Project identity.

A project id is a short stable hash of the project root, found by walking
up from a working directory: a version-control root wins, then the nearest
directory holding a project manifest, then the directory itself.
"""

import hashlib
import json
import logging
import re
import threading
import tomllib
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

VCS_MARKERS = (".git", ".hg", ".svn")

# Manifest files that mark a project root, in preference order for naming
MANIFEST_FILES = (
    "pyproject.toml",
    "package.json",
    "setup.cfg",
    "setup.py",
    "Cargo.toml",
    "go.mod",
)

PROJECT_ID_LENGTH = 16


def _walk_up(start: Path):
    yield start
    yield from start.parents


def find_project_root(cwd: str | Path) -> Path:
    """Locate the project root for a working directory."""
    start = Path(cwd).expanduser().resolve()
    for directory in _walk_up(start):
        if any((directory / marker).exists() for marker in VCS_MARKERS):
            return directory
    for directory in _walk_up(start):
        if any((directory / name).is_file() for name in MANIFEST_FILES):
            return directory
    return start


def compute_project_id(cwd: str | Path) -> str:
    """Derive the project id: sha256 of the root path, first 16 hex chars."""
    root = find_project_root(cwd)
    digest = hashlib.sha256(str(root).encode("utf-8")).hexdigest()
    return digest[:PROJECT_ID_LENGTH]


def _manifest_name(root: Path) -> Optional[str]:
    """Read a project name from the first manifest that declares one."""
    pyproject = root / "pyproject.toml"
    if pyproject.is_file():
        try:
            with open(pyproject, "rb") as f:
                data = tomllib.load(f)
            name = data.get("project", {}).get("name")
            if name:
                return str(name)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.debug("Unreadable %s: %s", pyproject, e)

    package_json = root / "package.json"
    if package_json.is_file():
        try:
            name = json.loads(package_json.read_text(encoding="utf-8")).get("name")
            if name:
                return str(name)
        except (OSError, ValueError, AttributeError) as e:
            logger.debug("Unreadable %s: %s", package_json, e)

    cargo = root / "Cargo.toml"
    if cargo.is_file():
        try:
            with open(cargo, "rb") as f:
                name = tomllib.load(f).get("package", {}).get("name")
            if name:
                return str(name)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.debug("Unreadable %s: %s", cargo, e)

    go_mod = root / "go.mod"
    if go_mod.is_file():
        try:
            m = re.search(r"^module\s+(\S+)", go_mod.read_text(encoding="utf-8"), re.M)
            if m:
                return m.group(1).rsplit("/", 1)[-1]
        except OSError as e:
            logger.debug("Unreadable %s: %s", go_mod, e)

    return None


def project_name(cwd: str | Path) -> str:
    """Human-readable project name: manifest name, else the root directory name."""
    root = find_project_root(cwd)
    return _manifest_name(root) or root.name or str(root)


class ProjectIdentityCache:
    """
    Per-working-directory cache of project ids.

    Identity is deterministic, so caching only saves filesystem walks.
    Pass an instance wherever identity is needed; call clear() to reset.
    """

    def __init__(self):
        self._ids: dict[str, str] = {}
        self._lock = threading.Lock()

    def resolve(self, cwd: str | Path) -> str:
        key = str(Path(cwd).expanduser().resolve())
        with self._lock:
            cached = self._ids.get(key)
        if cached is not None:
            return cached
        project_id = compute_project_id(key)
        with self._lock:
            self._ids[key] = project_id
        return project_id

    def clear(self) -> None:
        """Forget all cached identities."""
        with self._lock:
            self._ids.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._ids)
