"""
Protocol definitions for the engine's internal seams.

Defines the narrow contracts components depend on, so each can be tested
against a fake:
- RecordStoreProtocol: what the Router and Fuser need from the store
- RouterProtocol: what the Fuser needs from the Router
"""

from __future__ import annotations

from typing import Optional, Protocol, runtime_checkable

from .providers.base import EmbeddingProvider
from .types import Record, ScoredCandidate


@runtime_checkable
class RecordStoreProtocol(Protocol):
    """
    Read side of the Record Store, scoped to one project.

    Implemented by:
    - RecordStore (SQLite)
    """

    @property
    def project_id(self) -> str: ...

    @property
    def embedding_provider(self) -> Optional[EmbeddingProvider]: ...

    def get(self, id: int) -> Optional[Record]: ...

    def search(
        self,
        text: str,
        *,
        type: Optional[str] = None,
        tags: Optional[list[str]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Record]: ...

    def list(
        self,
        *,
        type: Optional[str] = None,
        tags: Optional[list[str]] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> list[Record]: ...

    def embeddings_for(self, ids: list[int]) -> dict[int, list[float]]: ...


@runtime_checkable
class RouterProtocol(Protocol):
    """
    Task-to-records ranking.

    Implemented by:
    - ContextRouter
    """

    def route(
        self,
        task: str,
        *,
        current_file: Optional[str] = None,
        tags: Optional[list[str]] = None,
        type: Optional[str] = None,
        limit: Optional[int] = None,
        max_tokens: Optional[int] = None,
    ) -> list[Record]: ...

    def route_with_scores(
        self,
        task: str,
        *,
        current_file: Optional[str] = None,
        tags: Optional[list[str]] = None,
        type: Optional[str] = None,
        limit: Optional[int] = None,
        max_tokens: Optional[int] = None,
    ) -> list[ScoredCandidate]: ...
