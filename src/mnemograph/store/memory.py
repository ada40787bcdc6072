from __future__ import annotations

import copy
import itertools
import logging
from typing import Any, Sequence

import networkx as nx

from ..errors import NotFoundError, VectorIndexUnavailable
from ..models import (
    Document,
    DocumentWrite,
    Entity,
    EntityWrite,
    Relationship,
    RelationshipWrite,
    SearchFilters,
    name_of,
)
from ..similarity import rank_by_cosine
from ..text import identity_key
from .base import CONTAINS_ENTITY, VectorTarget

logger = logging.getLogger(__name__)

_RELATIONSHIP = "relationship"


def _add_context(context_ids: list[str], context_id: str | None) -> None:
    if context_id and context_id not in context_ids:
        context_ids.append(context_id)


def _page(items: list, limit: int, offset: int) -> list:
    return items[max(0, offset) : max(0, offset) + max(0, limit)]


class InMemoryGraphStore:
    """Process-local graph store on a networkx MultiDiGraph.

    Nodes carry the Entity/Document value under ``item``; relationship edges
    are keyed by relationship id. With ``vector_index=False`` the store
    behaves like a database without a native vector index, so callers take
    the brute-force path.

    Ids are zero-padded counters, so sorting by id matches creation order.
    """

    def __init__(self, *, vector_index: bool = True):
        self.supports_vector_index = vector_index
        self._g = nx.MultiDiGraph()
        self._entity_keys: dict[tuple[str, str], str] = {}
        self._doc_hashes: dict[tuple[str, str], str] = {}
        self._rel_keys: dict[tuple[str, str, str, str], str] = {}
        self._index_dims: dict[str, int] = {}
        self._counter = itertools.count(1)
        self.connected = False

    def _new_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._counter):06d}"

    async def connect(self) -> None:
        self.connected = True

    async def close(self) -> None:
        self.connected = False

    async def ping(self) -> None:
        return None

    # --- internal lookups ---

    def _node(self, node_id: str, kind: str, scope_id: str) -> Any | None:
        data = self._g.nodes.get(node_id)
        if data is None or data["kind"] != kind or data["item"].scope_id != scope_id:
            return None
        return data["item"]

    def _nodes(self, kind: str, scope_id: str) -> list[Any]:
        items = [d["item"] for _, d in self._g.nodes(data=True) if d["kind"] == kind]
        return sorted((i for i in items if i.scope_id == scope_id), key=lambda i: i.id)

    def _relationship_edges(self):
        for u, v, key, data in self._g.edges(keys=True, data=True):
            if data["kind"] == _RELATIONSHIP:
                yield u, v, key, data["item"]

    def _find_relationship(self, scope_id: str, relationship_id: str) -> tuple[str, str, Relationship] | None:
        for u, v, key, rel in self._relationship_edges():
            if key == relationship_id and rel.scope_id == scope_id:
                return u, v, rel
        return None

    # --- vector index ---

    async def vector_index_dimensions(self, target: VectorTarget) -> int | None:
        return self._index_dims.get(target)

    async def create_vector_index(self, target: VectorTarget, dimensions: int) -> None:
        if not self.supports_vector_index:
            logger.info("In-memory store configured without a vector index; %s search will scan", target)
            return
        self._index_dims.setdefault(target, dimensions)

    async def find_by_vector(
        self,
        vector: Sequence[float],
        scope_id: str,
        *,
        top_k: int,
        filters: SearchFilters,
        target: VectorTarget = "entity",
    ) -> list[tuple[Any, float]]:
        dims = self._index_dims.get(target)
        if dims is None:
            raise VectorIndexUnavailable(f"No {target} vector index")
        if len(vector) != dims:
            raise VectorIndexUnavailable(f"Query has {len(vector)} dimensions; {target} index has {dims}")
        candidates = await self.scan_embeddings(scope_id, filters=filters, target=target)
        ranked = rank_by_cosine(vector, candidates, top_k=top_k)
        return [(copy.deepcopy(item), score) for item, score in ranked]

    async def scan_embeddings(
        self, scope_id: str, *, filters: SearchFilters, target: VectorTarget = "entity"
    ) -> list[tuple[str, list[float], Any]]:
        out = []
        for item in self._nodes(target, scope_id):
            if item.embedding is None:
                continue
            if not filters.admits(
                valid_from=item.valid_from, valid_to=item.valid_to, context_ids=item.context_ids
            ):
                continue
            out.append((item.id, list(item.embedding), copy.deepcopy(item)))
        return out

    # --- entities ---

    async def find_entity_by_name(self, scope_id: str, name: str) -> Entity | None:
        entity_id = self._entity_keys.get((scope_id, identity_key(name)))
        if entity_id is None:
            return None
        return copy.deepcopy(self._g.nodes[entity_id]["item"])

    async def upsert_entity(self, write: EntityWrite) -> tuple[Entity, bool]:
        key = (write.scope_id, identity_key(name_of(write.properties) or ""))
        entity_id = self._entity_keys.get(key)
        if entity_id is not None:
            entity: Entity = self._g.nodes[entity_id]["item"]
            entity.properties.update(write.properties)
            if write.embedding is not None:
                entity.embedding = list(write.embedding)
            if write.valid_to is not None:
                entity.valid_to = write.valid_to
            _add_context(entity.context_ids, write.context_id)
            return copy.deepcopy(entity), False

        entity = Entity(
            id=self._new_id("ent"),
            label=write.label,
            properties=dict(write.properties),
            scope_id=write.scope_id,
            embedding=list(write.embedding) if write.embedding is not None else None,
            valid_from=write.valid_from,
            valid_to=write.valid_to,
            recorded_at=write.recorded_at,
        )
        _add_context(entity.context_ids, write.context_id)
        self._g.add_node(entity.id, kind="entity", item=entity)
        self._entity_keys[key] = entity.id
        return copy.deepcopy(entity), True

    async def get_entity(self, scope_id: str, entity_id: str) -> Entity | None:
        entity = self._node(entity_id, "entity", scope_id)
        return copy.deepcopy(entity) if entity is not None else None

    async def update_entity(
        self,
        scope_id: str,
        entity_id: str,
        properties: dict[str, Any],
        *,
        embedding: list[float] | None = None,
    ) -> Entity | None:
        entity: Entity | None = self._node(entity_id, "entity", scope_id)
        if entity is None:
            return None
        old_key = (scope_id, identity_key(entity.name or ""))
        entity.properties = dict(properties)
        if embedding is not None:
            entity.embedding = list(embedding)
        new_key = (scope_id, identity_key(entity.name or ""))
        if new_key != old_key:
            self._entity_keys.pop(old_key, None)
            self._entity_keys[new_key] = entity_id
        return copy.deepcopy(entity)

    async def delete_entity(self, scope_id: str, entity_id: str) -> int | None:
        entity: Entity | None = self._node(entity_id, "entity", scope_id)
        if entity is None:
            return None
        removed = 0
        edges = list(self._g.in_edges(entity_id, keys=True, data=True)) + list(
            self._g.out_edges(entity_id, keys=True, data=True)
        )
        for u, v, _key, data in edges:
            if data["kind"] == _RELATIONSHIP:
                rel: Relationship = data["item"]
                self._rel_keys.pop((rel.scope_id, rel.from_id, rel.to_id, rel.type), None)
                removed += 1
            else:
                doc: Document = self._g.nodes[u]["item"]
                if entity_id in doc.entity_ids:
                    doc.entity_ids.remove(entity_id)
        self._entity_keys.pop((scope_id, identity_key(entity.name or "")), None)
        self._g.remove_node(entity_id)
        return removed

    async def list_entities(
        self, scope_id: str, *, label: str | None = None, limit: int = 100, offset: int = 0
    ) -> list[Entity]:
        items = [e for e in self._nodes("entity", scope_id) if label is None or e.label == label]
        return [copy.deepcopy(e) for e in _page(items, limit, offset)]

    # --- relationships ---

    async def upsert_relationship(self, write: RelationshipWrite) -> tuple[Relationship, bool]:
        key = (write.scope_id, write.from_id, write.to_id, write.type)
        rel_id = self._rel_keys.get(key)
        if rel_id is not None:
            rel: Relationship = self._g.edges[write.from_id, write.to_id, rel_id]["item"]
            rel.properties.update(write.properties)
            if write.valid_to is not None:
                rel.valid_to = write.valid_to
            _add_context(rel.context_ids, write.context_id)
            return copy.deepcopy(rel), False

        for endpoint in (write.from_id, write.to_id):
            if self._node(endpoint, "entity", write.scope_id) is None:
                raise NotFoundError(f"Relationship endpoint {endpoint} not found in scope {write.scope_id}")

        rel = Relationship(
            id=self._new_id("rel"),
            type=write.type,
            from_id=write.from_id,
            to_id=write.to_id,
            properties=dict(write.properties),
            scope_id=write.scope_id,
            valid_from=write.valid_from,
            valid_to=write.valid_to,
            recorded_at=write.recorded_at,
        )
        _add_context(rel.context_ids, write.context_id)
        self._g.add_edge(rel.from_id, rel.to_id, key=rel.id, kind=_RELATIONSHIP, item=rel)
        self._rel_keys[key] = rel.id
        return copy.deepcopy(rel), True

    async def get_relationship(self, scope_id: str, relationship_id: str) -> Relationship | None:
        found = self._find_relationship(scope_id, relationship_id)
        return copy.deepcopy(found[2]) if found else None

    async def update_relationship(
        self, scope_id: str, relationship_id: str, properties: dict[str, Any]
    ) -> Relationship | None:
        found = self._find_relationship(scope_id, relationship_id)
        if found is None:
            return None
        rel = found[2]
        rel.properties = dict(properties)
        return copy.deepcopy(rel)

    async def delete_relationship(self, scope_id: str, relationship_id: str) -> bool:
        found = self._find_relationship(scope_id, relationship_id)
        if found is None:
            return False
        u, v, rel = found
        self._g.remove_edge(u, v, key=relationship_id)
        self._rel_keys.pop((rel.scope_id, rel.from_id, rel.to_id, rel.type), None)
        return True

    async def list_relationships(
        self,
        scope_id: str,
        *,
        type: str | None = None,
        from_id: str | None = None,
        to_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Relationship]:
        rels = sorted(
            (
                r
                for _, _, _, r in self._relationship_edges()
                if r.scope_id == scope_id
                and (type is None or r.type == type)
                and (from_id is None or r.from_id == from_id)
                and (to_id is None or r.to_id == to_id)
            ),
            key=lambda r: r.id,
        )
        return [copy.deepcopy(r) for r in _page(rels, limit, offset)]

    # --- documents ---

    async def find_document_by_hash(self, scope_id: str, content_hash: str) -> Document | None:
        doc_id = self._doc_hashes.get((scope_id, content_hash))
        if doc_id is None:
            return None
        return copy.deepcopy(self._g.nodes[doc_id]["item"])

    async def upsert_document(self, write: DocumentWrite) -> tuple[Document, bool]:
        key = (write.scope_id, write.content_hash)
        doc_id = self._doc_hashes.get(key)
        if doc_id is not None:
            doc: Document = self._g.nodes[doc_id]["item"]
            doc.metadata.update(write.metadata)
            if doc.embedding is None and write.embedding is not None:
                doc.embedding = list(write.embedding)
            _add_context(doc.context_ids, write.context_id)
            return copy.deepcopy(doc), False

        doc = Document(
            id=self._new_id("doc"),
            text=write.text,
            content_hash=write.content_hash,
            scope_id=write.scope_id,
            metadata=dict(write.metadata),
            embedding=list(write.embedding) if write.embedding is not None else None,
            valid_from=write.valid_from,
            valid_to=write.valid_to,
            recorded_at=write.recorded_at,
        )
        _add_context(doc.context_ids, write.context_id)
        self._g.add_node(doc.id, kind="document", item=doc)
        self._doc_hashes[key] = doc.id
        return copy.deepcopy(doc), True

    async def get_document(self, scope_id: str, document_id: str) -> Document | None:
        doc = self._node(document_id, "document", scope_id)
        return copy.deepcopy(doc) if doc is not None else None

    async def update_document(
        self, scope_id: str, document_id: str, metadata: dict[str, Any]
    ) -> Document | None:
        doc: Document | None = self._node(document_id, "document", scope_id)
        if doc is None:
            return None
        doc.metadata = dict(metadata)
        return copy.deepcopy(doc)

    async def delete_document(self, scope_id: str, document_id: str) -> bool:
        doc: Document | None = self._node(document_id, "document", scope_id)
        if doc is None:
            return False
        self._doc_hashes.pop((scope_id, doc.content_hash), None)
        self._g.remove_node(document_id)
        return True

    async def list_documents(self, scope_id: str, *, limit: int = 100, offset: int = 0) -> list[Document]:
        return [copy.deepcopy(d) for d in _page(self._nodes("document", scope_id), limit, offset)]

    # --- links and traversal ---

    async def link_document_entities(self, scope_id: str, document_id: str, entity_ids: Sequence[str]) -> None:
        doc: Document | None = self._node(document_id, "document", scope_id)
        if doc is None:
            raise NotFoundError(f"Document {document_id} not found in scope {scope_id}")
        for entity_id in entity_ids:
            if self._node(entity_id, "entity", scope_id) is None or entity_id in doc.entity_ids:
                continue
            self._g.add_edge(document_id, entity_id, key=f"{CONTAINS_ENTITY}:{entity_id}", kind=CONTAINS_ENTITY)
            doc.entity_ids.append(entity_id)

    async def neighbors(
        self, scope_id: str, entity_ids: Sequence[str], *, valid_at: str | None = None
    ) -> tuple[list[Relationship], list[Entity]]:
        rels: dict[str, Relationship] = {}
        ents: dict[str, Entity] = {}
        for entity_id in entity_ids:
            if self._node(entity_id, "entity", scope_id) is None:
                continue
            edges = itertools.chain(
                self._g.out_edges(entity_id, keys=True, data=True),
                self._g.in_edges(entity_id, keys=True, data=True),
            )
            for u, v, key, data in edges:
                if data["kind"] != _RELATIONSHIP or key in rels:
                    continue
                rel: Relationship = data["item"]
                if rel.scope_id != scope_id or not rel.is_valid_at(valid_at):
                    continue
                other: Entity | None = self._node(v if u == entity_id else u, "entity", scope_id)
                if other is None or not other.is_valid_at(valid_at):
                    continue
                rels[key] = rel
                ents[other.id] = other
        return (
            [copy.deepcopy(r) for r in sorted(rels.values(), key=lambda r: r.id)],
            [copy.deepcopy(e) for e in sorted(ents.values(), key=lambda e: e.id)],
        )

    async def entities_for_documents(
        self, scope_id: str, document_ids: Sequence[str], *, filters: SearchFilters
    ) -> list[Entity]:
        out: dict[str, Entity] = {}
        for document_id in document_ids:
            doc: Document | None = self._node(document_id, "document", scope_id)
            if doc is None:
                continue
            for entity_id in doc.entity_ids:
                entity: Entity | None = self._node(entity_id, "entity", scope_id)
                if entity is not None and filters.admits(
                    valid_from=entity.valid_from, valid_to=entity.valid_to, context_ids=entity.context_ids
                ):
                    out[entity.id] = entity
        return [copy.deepcopy(e) for e in sorted(out.values(), key=lambda e: e.id)]
