from __future__ import annotations

from typing import Any, Literal, Protocol, Sequence

from ..models import (
    Document,
    DocumentWrite,
    Entity,
    EntityWrite,
    Relationship,
    RelationshipWrite,
    SearchFilters,
)

VectorTarget = Literal["entity", "document"]

CONTAINS_ENTITY = "CONTAINS_ENTITY"


class GraphStore(Protocol):
    """Abstraction for the backing graph database.

    Every method takes the scope id explicitly and never returns data from
    another scope. Each call acquires and releases its own session; no
    session outlives a call.

    Upserts return ``(item, created)`` so callers can tell a new node or edge
    from a merge.
    """

    async def connect(self) -> None: ...

    async def close(self) -> None: ...

    async def ping(self) -> None:
        """Raise ProviderError when the store is unreachable."""

    # --- vector index ---

    async def vector_index_dimensions(self, target: VectorTarget) -> int | None:
        """Dimensionality of the existing index, or None when there is none."""

    async def create_vector_index(self, target: VectorTarget, dimensions: int) -> None: ...

    async def find_by_vector(
        self,
        vector: Sequence[float],
        scope_id: str,
        *,
        top_k: int,
        filters: SearchFilters,
        target: VectorTarget = "entity",
    ) -> list[tuple[Any, float]]:
        """Native nearest-neighbour search; ``(item, cosine)`` pairs, best first.

        Filters apply before top-K selection. Raises VectorIndexUnavailable
        when no usable index exists.
        """

    async def scan_embeddings(
        self, scope_id: str, *, filters: SearchFilters, target: VectorTarget = "entity"
    ) -> list[tuple[str, list[float], Any]]:
        """All filtered in-scope ``(id, embedding, item)`` triples, for brute-force ranking."""

    # --- entities ---

    async def find_entity_by_name(self, scope_id: str, name: str) -> Entity | None: ...

    async def upsert_entity(self, write: EntityWrite) -> tuple[Entity, bool]: ...

    async def get_entity(self, scope_id: str, entity_id: str) -> Entity | None: ...

    async def update_entity(
        self,
        scope_id: str,
        entity_id: str,
        properties: dict[str, Any],
        *,
        embedding: list[float] | None = None,
    ) -> Entity | None:
        """Replace the domain properties; None when the entity does not exist."""

    async def delete_entity(self, scope_id: str, entity_id: str) -> int | None:
        """Delete the entity and its relationships; returns how many relationships went with it."""

    async def list_entities(
        self, scope_id: str, *, label: str | None = None, limit: int = 100, offset: int = 0
    ) -> list[Entity]: ...

    # --- relationships ---

    async def upsert_relationship(self, write: RelationshipWrite) -> tuple[Relationship, bool]: ...

    async def get_relationship(self, scope_id: str, relationship_id: str) -> Relationship | None: ...

    async def update_relationship(
        self, scope_id: str, relationship_id: str, properties: dict[str, Any]
    ) -> Relationship | None: ...

    async def delete_relationship(self, scope_id: str, relationship_id: str) -> bool: ...

    async def list_relationships(
        self,
        scope_id: str,
        *,
        type: str | None = None,
        from_id: str | None = None,
        to_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Relationship]: ...

    # --- documents ---

    async def find_document_by_hash(self, scope_id: str, content_hash: str) -> Document | None: ...

    async def upsert_document(self, write: DocumentWrite) -> tuple[Document, bool]: ...

    async def get_document(self, scope_id: str, document_id: str) -> Document | None: ...

    async def update_document(
        self, scope_id: str, document_id: str, metadata: dict[str, Any]
    ) -> Document | None: ...

    async def delete_document(self, scope_id: str, document_id: str) -> bool: ...

    async def list_documents(self, scope_id: str, *, limit: int = 100, offset: int = 0) -> list[Document]: ...

    # --- links and traversal ---

    async def link_document_entities(self, scope_id: str, document_id: str, entity_ids: Sequence[str]) -> None: ...

    async def neighbors(
        self, scope_id: str, entity_ids: Sequence[str], *, valid_at: str | None = None
    ) -> tuple[list[Relationship], list[Entity]]:
        """Relationships touching ``entity_ids`` and the entities at their far ends.

        Only in-scope items valid at ``valid_at`` (when given) are returned.
        """

    async def entities_for_documents(
        self, scope_id: str, document_ids: Sequence[str], *, filters: SearchFilters
    ) -> list[Entity]:
        """Entities linked from the given documents via CONTAINS_ENTITY."""
