"""
cortex: a local-first context engine.

Stores short notes about a software project and selects the ones relevant
to a task, guarding sensitive data and fusing in files, urls and inline
text under a token budget.
"""

__version__ = "0.3.0"

from .api import Cortex
from .errors import (
    CapabilityUnavailable,
    CortexError,
    NotFound,
    ProviderTimeout,
    SourceUnavailable,
    StorageFailure,
    ValidationError,
)
from .fuser import ContextFuser
from .guard import ContextGuard, list_available_filters
from .project import ProjectIdentityCache, compute_project_id
from .record_store import RecordStore
from .router import ContextRouter
from .types import (
    RECORD_TYPES,
    FusedOutput,
    FusionSource,
    GuardFinding,
    GuardResult,
    Record,
    ScoredCandidate,
    StoreStats,
)

__all__ = [
    "__version__",
    "Cortex",
    "ContextFuser",
    "ContextGuard",
    "ContextRouter",
    "RecordStore",
    "ProjectIdentityCache",
    "compute_project_id",
    "list_available_filters",
    "RECORD_TYPES",
    "Record",
    "StoreStats",
    "ScoredCandidate",
    "GuardFinding",
    "GuardResult",
    "FusionSource",
    "FusedOutput",
    "CortexError",
    "ValidationError",
    "NotFound",
    "CapabilityUnavailable",
    "SourceUnavailable",
    "ProviderTimeout",
    "StorageFailure",
]
