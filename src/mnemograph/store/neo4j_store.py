from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Sequence

from ..errors import NotFoundError, ProviderError, ValidationError, VectorIndexUnavailable
from ..models import (
    SYSTEM_KEYS,
    Document,
    DocumentWrite,
    Entity,
    EntityWrite,
    Relationship,
    RelationshipWrite,
    SearchFilters,
    name_of,
)
from ..ontology import LABEL_RE, REL_TYPE_RE
from ..text import identity_key
from .base import CONTAINS_ENTITY, VectorTarget

logger = logging.getLogger(__name__)

_REL_SYSTEM_KEYS = ("id", "scope_id", "context_ids", "valid_from", "valid_to", "recorded_at")

_INDEX_LABELS = {"entity": "Entity", "document": "Document"}


@dataclass(slots=True)
class Neo4jConfig:
    uri: str
    user: str
    password: str
    database: str = "neo4j"
    max_pool_size: int = 50
    entity_index: str = "entity_embedding"
    document_index: str = "document_embedding"


def _safe_label(label: str) -> str:
    # Labels and relationship types cannot be parameterized in Cypher.
    if not LABEL_RE.match(label):
        raise ValidationError(f"Invalid entity label: {label!r}")
    return label


def _safe_rel_type(rel_type: str) -> str:
    if not REL_TYPE_RE.match(rel_type) or rel_type == CONTAINS_ENTITY:
        raise ValidationError(f"Invalid relationship type: {rel_type!r}")
    return rel_type


def _domain(props: dict[str, Any], system: Sequence[str] | frozenset[str] = SYSTEM_KEYS) -> dict[str, Any]:
    return {k: v for k, v in props.items() if k not in system}


def _entity(node: dict[str, Any], score: float | None = None) -> Entity:
    return Entity(
        id=node["id"],
        label=node.get("label", ""),
        properties=_domain(node),
        scope_id=node.get("scope_id"),
        embedding=list(node["embedding"]) if node.get("embedding") is not None else None,
        context_ids=list(node.get("context_ids") or []),
        valid_from=node.get("valid_from"),
        valid_to=node.get("valid_to"),
        recorded_at=node.get("recorded_at"),
        similarity=score,
    )


def _relationship(props: dict[str, Any], rel_type: str, from_id: str, to_id: str) -> Relationship:
    return Relationship(
        id=props["id"],
        type=rel_type,
        from_id=from_id,
        to_id=to_id,
        properties=_domain(props, _REL_SYSTEM_KEYS),
        scope_id=props.get("scope_id"),
        context_ids=list(props.get("context_ids") or []),
        valid_from=props.get("valid_from"),
        valid_to=props.get("valid_to"),
        recorded_at=props.get("recorded_at"),
    )


def _document(node: dict[str, Any], entity_ids: list[str] | None = None, score: float | None = None) -> Document:
    return Document(
        id=node["id"],
        text=node.get("text", ""),
        content_hash=node.get("content_hash", ""),
        scope_id=node.get("scope_id"),
        context_ids=list(node.get("context_ids") or []),
        metadata=json.loads(node.get("metadata") or "{}"),
        embedding=list(node["embedding"]) if node.get("embedding") is not None else None,
        entity_ids=sorted(entity_ids or []),
        valid_from=node.get("valid_from"),
        valid_to=node.get("valid_to"),
        recorded_at=node.get("recorded_at"),
        similarity=score,
    )


_REL_RETURN = "properties(r) AS props, type(r) AS type, startNode(r).id AS from_id, endNode(r).id AS to_id"


class Neo4jGraphStore:
    """Neo4j-backed graph store.

    Entities are ``:Entity:<Label>`` nodes keyed by ``(scope_id, name_key)``;
    documents are ``:Document`` nodes keyed by ``(scope_id, content_hash)``
    and link to entities via ``CONTAINS_ENTITY``. Domain properties live
    directly on nodes and relationships next to the system fields.

    Every call runs in its own session from the driver's pool.

    Dependency: neo4j>=5.13 (vector indexes).
    """

    def __init__(self, cfg: Neo4jConfig):
        self.cfg = cfg
        self._driver = None

    async def connect(self) -> None:
        from neo4j import AsyncGraphDatabase
        from neo4j.exceptions import Neo4jError, ServiceUnavailable

        if self._driver is not None:
            return
        self._driver = AsyncGraphDatabase.driver(
            self.cfg.uri,
            auth=(self.cfg.user, self.cfg.password),
            max_connection_pool_size=self.cfg.max_pool_size,
        )
        try:
            await self._driver.verify_connectivity()
        except (Neo4jError, ServiceUnavailable, OSError) as e:
            await self.close()
            raise ProviderError(f"Failed to connect to Neo4j at {self.cfg.uri}: {e}") from e
        logger.info("Connected to Neo4j at %s", self.cfg.uri)
        await self.ensure_schema()

    async def close(self) -> None:
        if self._driver is not None:
            await self._driver.close()
            self._driver = None

    async def ping(self) -> None:
        await self._read("RETURN 1 AS ok")

    async def ensure_schema(self) -> None:
        stmts = [
            "CREATE CONSTRAINT entity_id IF NOT EXISTS FOR (n:Entity) REQUIRE n.id IS UNIQUE",
            "CREATE CONSTRAINT entity_identity IF NOT EXISTS FOR (n:Entity) REQUIRE (n.scope_id, n.name_key) IS UNIQUE",
            "CREATE CONSTRAINT document_id IF NOT EXISTS FOR (n:Document) REQUIRE n.id IS UNIQUE",
            "CREATE CONSTRAINT document_identity IF NOT EXISTS FOR (n:Document) REQUIRE (n.scope_id, n.content_hash) IS UNIQUE",
            "CREATE INDEX entity_scope IF NOT EXISTS FOR (n:Entity) ON (n.scope_id)",
        ]
        for q in stmts:
            await self._write(q)

    # --- sessions ---

    def _session(self):
        if self._driver is None:
            raise ProviderError("Neo4j store is not connected; call connect() first")
        return self._driver.session(database=self.cfg.database)

    async def _run(self, cypher: str, params: dict[str, Any], *, write: bool) -> list[dict[str, Any]]:
        from neo4j.exceptions import Neo4jError, ServiceUnavailable, SessionExpired

        async def work(tx):
            res = await tx.run(cypher, params)
            return await res.data()

        try:
            async with self._session() as s:
                if write:
                    return await s.execute_write(work)
                return await s.execute_read(work)
        except (Neo4jError, ServiceUnavailable, SessionExpired) as e:
            raise ProviderError(f"Neo4j query failed: {e}") from e

    async def _read(self, cypher: str, **params: Any) -> list[dict[str, Any]]:
        return await self._run(cypher, params, write=False)

    async def _write(self, cypher: str, **params: Any) -> list[dict[str, Any]]:
        return await self._run(cypher, params, write=True)

    # --- vector index ---

    def _index_name(self, target: VectorTarget) -> str:
        return self.cfg.entity_index if target == "entity" else self.cfg.document_index

    async def vector_index_dimensions(self, target: VectorTarget) -> int | None:
        rows = await self._read(
            "SHOW INDEXES YIELD name, type, options WHERE name = $name AND type = 'VECTOR' RETURN options",
            name=self._index_name(target),
        )
        if not rows:
            return None
        config = (rows[0]["options"] or {}).get("indexConfig") or {}
        dims = config.get("vector.dimensions")
        return int(dims) if dims is not None else None

    async def create_vector_index(self, target: VectorTarget, dimensions: int) -> None:
        if not isinstance(dimensions, int) or dimensions <= 0:
            raise ValidationError(f"Invalid vector index dimensions: {dimensions}")
        # Index options are not parameterizable.
        q = (
            f"CREATE VECTOR INDEX {self._index_name(target)} IF NOT EXISTS "
            f"FOR (n:{_INDEX_LABELS[target]}) ON (n.embedding) "
            f"OPTIONS {{indexConfig: {{`vector.dimensions`: {dimensions}, "
            f"`vector.similarity_function`: 'cosine'}}}}"
        )
        await self._write(q)
        logger.info("Ensured %s vector index (%d dimensions)", target, dimensions)

    async def find_by_vector(
        self,
        vector: Sequence[float],
        scope_id: str,
        *,
        top_k: int,
        filters: SearchFilters,
        target: VectorTarget = "entity",
    ) -> list[tuple[Any, float]]:
        from neo4j.exceptions import ClientError

        if top_k <= 0:
            return []
        # The index ranks the whole database; oversample until enough
        # in-scope hits survive filtering or the index is exhausted.
        k = max(top_k * 10, 50)
        while True:
            try:
                rows = await self._query_index(vector, scope_id, k, filters, target)
            except ProviderError as e:
                if isinstance(e.__cause__, ClientError):
                    raise VectorIndexUnavailable(f"{target} vector index unavailable: {e.__cause__}") from e
                raise
            hits, exhausted = rows
            if len(hits) >= top_k or exhausted:
                return hits[:top_k]
            k *= 2

    async def _query_index(
        self, vector: Sequence[float], scope_id: str, k: int, filters: SearchFilters, target: VectorTarget
    ) -> tuple[list[tuple[Any, float]], bool]:
        # Always one row: the unfiltered window size next to the in-scope hits,
        # so a window holding only other scopes still asks for a wider one.
        q = """
        CALL db.index.vector.queryNodes($index, $k, $vector) YIELD node, score
        WITH collect({node: node, score: score}) AS raw
        RETURN size(raw) AS raw_count, [hit IN raw
            WHERE hit.node.scope_id = $scope_id
              AND ($valid_at IS NULL OR ((hit.node.valid_from IS NULL OR hit.node.valid_from <= $valid_at)
                   AND (hit.node.valid_to IS NULL OR hit.node.valid_to > $valid_at)))
              AND ($contexts IS NULL OR size(coalesce(hit.node.context_ids, [])) = 0
                   OR any(c IN hit.node.context_ids WHERE c IN $contexts))
            | {node: properties(hit.node), score: hit.score,
               entity_ids: [(hit.node)-[:CONTAINS_ENTITY]->(e:Entity) | e.id]}] AS hits
        """
        rows = await self._read(
            q,
            index=self._index_name(target),
            k=k,
            vector=list(vector),
            scope_id=scope_id,
            valid_at=filters.valid_at,
            contexts=list(filters.contexts) if filters.contexts else None,
        )
        if not rows:
            return [], True
        exhausted = rows[0]["raw_count"] < k
        ranked = sorted(rows[0]["hits"] or [], key=lambda h: (-float(h["score"]), h["node"]["id"]))
        hits: list[tuple[Any, float]] = []
        for hit in ranked:
            # queryNodes reports cosine as (1 + cos) / 2.
            cosine = 2.0 * float(hit["score"]) - 1.0
            if target == "entity":
                hits.append((_entity(hit["node"], cosine), cosine))
            else:
                hits.append((_document(hit["node"], hit["entity_ids"], cosine), cosine))
        return hits, exhausted

    async def scan_embeddings(
        self, scope_id: str, *, filters: SearchFilters, target: VectorTarget = "entity"
    ) -> list[tuple[str, list[float], Any]]:
        label = _INDEX_LABELS[target]
        rows = await self._read(
            f"""
            MATCH (n:{label} {{scope_id: $scope_id}})
            WHERE n.embedding IS NOT NULL
            OPTIONAL MATCH (n)-[:CONTAINS_ENTITY]->(e:Entity)
            RETURN properties(n) AS node, collect(e.id) AS entity_ids
            ORDER BY node.id
            """,
            scope_id=scope_id,
        )
        out = []
        for row in rows:
            item = _entity(row["node"]) if target == "entity" else _document(row["node"], row["entity_ids"])
            if filters.admits(valid_from=item.valid_from, valid_to=item.valid_to, context_ids=item.context_ids):
                out.append((item.id, list(item.embedding or []), item))
        return out

    # --- entities ---

    async def find_entity_by_name(self, scope_id: str, name: str) -> Entity | None:
        rows = await self._read(
            "MATCH (n:Entity {scope_id: $scope_id, name_key: $key}) RETURN properties(n) AS node",
            scope_id=scope_id,
            key=identity_key(name),
        )
        return _entity(rows[0]["node"]) if rows else None

    async def upsert_entity(self, write: EntityWrite) -> tuple[Entity, bool]:
        label = _safe_label(write.label)
        q = f"""
        MERGE (n:Entity {{scope_id: $scope_id, name_key: $name_key}})
        ON CREATE SET n.id = randomUUID(), n.label = $label, n._new = true,
                      n.valid_from = $valid_from, n.recorded_at = $recorded_at,
                      n.context_ids = []
        FOREACH (_ IN CASE WHEN n._new THEN [1] ELSE [] END | SET n:`{label}`)
        SET n += $props
        SET n.embedding = coalesce($embedding, n.embedding),
            n.valid_to = coalesce($valid_to, n.valid_to),
            n.context_ids = CASE
                WHEN $context_id IS NULL OR $context_id IN n.context_ids THEN n.context_ids
                ELSE n.context_ids + $context_id END
        WITH n, coalesce(n._new, false) AS created
        REMOVE n._new
        RETURN properties(n) AS node, created
        """
        rows = await self._write(
            q,
            scope_id=write.scope_id,
            name_key=identity_key(name_of(write.properties) or ""),
            label=label,
            props=_domain(write.properties),
            embedding=write.embedding,
            context_id=write.context_id,
            valid_from=write.valid_from,
            valid_to=write.valid_to,
            recorded_at=write.recorded_at,
        )
        return _entity(rows[0]["node"]), bool(rows[0]["created"])

    async def get_entity(self, scope_id: str, entity_id: str) -> Entity | None:
        rows = await self._read(
            "MATCH (n:Entity {id: $id, scope_id: $scope_id}) RETURN properties(n) AS node",
            id=entity_id,
            scope_id=scope_id,
        )
        return _entity(rows[0]["node"]) if rows else None

    async def update_entity(
        self,
        scope_id: str,
        entity_id: str,
        properties: dict[str, Any],
        *,
        embedding: list[float] | None = None,
    ) -> Entity | None:
        current = await self.get_entity(scope_id, entity_id)
        if current is None:
            return None
        new = _domain(properties)
        new.update(
            id=current.id,
            label=current.label,
            scope_id=scope_id,
            name_key=identity_key(name_of(properties) or ""),
            embedding=embedding if embedding is not None else current.embedding,
            context_ids=current.context_ids,
            valid_from=current.valid_from,
            valid_to=current.valid_to,
            recorded_at=current.recorded_at,
        )
        rows = await self._write(
            "MATCH (n:Entity {id: $id, scope_id: $scope_id}) SET n = $all RETURN properties(n) AS node",
            id=entity_id,
            scope_id=scope_id,
            all={k: v for k, v in new.items() if v is not None},
        )
        return _entity(rows[0]["node"]) if rows else None

    async def delete_entity(self, scope_id: str, entity_id: str) -> int | None:
        q = """
        MATCH (n:Entity {id: $id, scope_id: $scope_id})
        OPTIONAL MATCH (n)-[r]-(:Entity)
        WITH n, count(DISTINCT r) AS rels
        DETACH DELETE n
        RETURN rels
        """
        rows = await self._write(q, id=entity_id, scope_id=scope_id)
        return int(rows[0]["rels"]) if rows else None

    async def list_entities(
        self, scope_id: str, *, label: str | None = None, limit: int = 100, offset: int = 0
    ) -> list[Entity]:
        rows = await self._read(
            """
            MATCH (n:Entity {scope_id: $scope_id})
            WHERE $label IS NULL OR n.label = $label
            RETURN properties(n) AS node ORDER BY n.id SKIP $offset LIMIT $limit
            """,
            scope_id=scope_id,
            label=label,
            offset=max(0, offset),
            limit=max(0, limit),
        )
        return [_entity(r["node"]) for r in rows]

    # --- relationships ---

    async def upsert_relationship(self, write: RelationshipWrite) -> tuple[Relationship, bool]:
        rel_type = _safe_rel_type(write.type)
        q = f"""
        MATCH (a:Entity {{id: $from_id, scope_id: $scope_id}})
        MATCH (b:Entity {{id: $to_id, scope_id: $scope_id}})
        MERGE (a)-[r:{rel_type} {{scope_id: $scope_id}}]->(b)
        ON CREATE SET r.id = randomUUID(), r._new = true, r.context_ids = [],
                      r.valid_from = $valid_from, r.recorded_at = $recorded_at
        SET r += $props
        SET r.valid_to = coalesce($valid_to, r.valid_to),
            r.context_ids = CASE
                WHEN $context_id IS NULL OR $context_id IN r.context_ids THEN r.context_ids
                ELSE r.context_ids + $context_id END
        WITH r, coalesce(r._new, false) AS created
        REMOVE r._new
        RETURN {_REL_RETURN}, created
        """
        rows = await self._write(
            q,
            from_id=write.from_id,
            to_id=write.to_id,
            scope_id=write.scope_id,
            props=_domain(write.properties, _REL_SYSTEM_KEYS),
            context_id=write.context_id,
            valid_from=write.valid_from,
            valid_to=write.valid_to,
            recorded_at=write.recorded_at,
        )
        if not rows:
            raise NotFoundError(
                f"Relationship endpoints {write.from_id} -> {write.to_id} not found in scope {write.scope_id}"
            )
        row = rows[0]
        return _relationship(row["props"], row["type"], row["from_id"], row["to_id"]), bool(row["created"])

    async def get_relationship(self, scope_id: str, relationship_id: str) -> Relationship | None:
        rows = await self._read(
            f"MATCH (:Entity)-[r {{id: $id, scope_id: $scope_id}}]->(:Entity) RETURN {_REL_RETURN}",
            id=relationship_id,
            scope_id=scope_id,
        )
        if not rows:
            return None
        row = rows[0]
        return _relationship(row["props"], row["type"], row["from_id"], row["to_id"])

    async def update_relationship(
        self, scope_id: str, relationship_id: str, properties: dict[str, Any]
    ) -> Relationship | None:
        current = await self.get_relationship(scope_id, relationship_id)
        if current is None:
            return None
        new = _domain(properties, _REL_SYSTEM_KEYS)
        new.update(
            id=current.id,
            scope_id=scope_id,
            context_ids=current.context_ids,
            valid_from=current.valid_from,
            valid_to=current.valid_to,
            recorded_at=current.recorded_at,
        )
        rows = await self._write(
            f"MATCH (:Entity)-[r {{id: $id, scope_id: $scope_id}}]->(:Entity) SET r = $all RETURN {_REL_RETURN}",
            id=relationship_id,
            scope_id=scope_id,
            all={k: v for k, v in new.items() if v is not None},
        )
        if not rows:
            return None
        row = rows[0]
        return _relationship(row["props"], row["type"], row["from_id"], row["to_id"])

    async def delete_relationship(self, scope_id: str, relationship_id: str) -> bool:
        rows = await self._write(
            """
            MATCH (:Entity)-[r {id: $id, scope_id: $scope_id}]->(:Entity)
            DELETE r
            RETURN count(*) AS n
            """,
            id=relationship_id,
            scope_id=scope_id,
        )
        return bool(rows and rows[0]["n"])

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
        q = f"""
        MATCH (a:Entity)-[r]->(b:Entity)
        WHERE r.scope_id = $scope_id
          AND ($type IS NULL OR type(r) = $type)
          AND ($from_id IS NULL OR a.id = $from_id)
          AND ($to_id IS NULL OR b.id = $to_id)
        RETURN {_REL_RETURN} ORDER BY r.id SKIP $offset LIMIT $limit
        """
        rows = await self._read(
            q,
            scope_id=scope_id,
            type=type,
            from_id=from_id,
            to_id=to_id,
            offset=max(0, offset),
            limit=max(0, limit),
        )
        return [_relationship(r["props"], r["type"], r["from_id"], r["to_id"]) for r in rows]

    # --- documents ---

    _DOC_RETURN = """
    OPTIONAL MATCH (d)-[:CONTAINS_ENTITY]->(e:Entity)
    RETURN properties(d) AS node, collect(e.id) AS entity_ids
    """

    async def find_document_by_hash(self, scope_id: str, content_hash: str) -> Document | None:
        rows = await self._read(
            "MATCH (d:Document {scope_id: $scope_id, content_hash: $hash})" + self._DOC_RETURN,
            scope_id=scope_id,
            hash=content_hash,
        )
        return _document(rows[0]["node"], rows[0]["entity_ids"]) if rows else None

    async def upsert_document(self, write: DocumentWrite) -> tuple[Document, bool]:
        q = """
        MERGE (d:Document {scope_id: $scope_id, content_hash: $content_hash})
        ON CREATE SET d.id = randomUUID(), d._new = true, d.text = $text, d.metadata = $metadata,
                      d.embedding = $embedding, d.context_ids = [],
                      d.valid_from = $valid_from, d.valid_to = $valid_to, d.recorded_at = $recorded_at
        SET d.embedding = coalesce(d.embedding, $embedding),
            d.context_ids = CASE
                WHEN $context_id IS NULL OR $context_id IN d.context_ids THEN d.context_ids
                ELSE d.context_ids + $context_id END
        WITH d, coalesce(d._new, false) AS created
        REMOVE d._new
        WITH d, created
        OPTIONAL MATCH (d)-[:CONTAINS_ENTITY]->(e:Entity)
        RETURN properties(d) AS node, collect(e.id) AS entity_ids, created
        """
        rows = await self._write(
            q,
            scope_id=write.scope_id,
            content_hash=write.content_hash,
            text=write.text,
            metadata=json.dumps(write.metadata, sort_keys=True),
            embedding=write.embedding,
            context_id=write.context_id,
            valid_from=write.valid_from,
            valid_to=write.valid_to,
            recorded_at=write.recorded_at,
        )
        row = rows[0]
        doc = _document(row["node"], row["entity_ids"])
        created = bool(row["created"])
        if not created and write.metadata:
            merged = {**doc.metadata, **write.metadata}
            if merged != doc.metadata:
                doc = await self.update_document(write.scope_id, doc.id, merged) or doc
        return doc, created

    async def get_document(self, scope_id: str, document_id: str) -> Document | None:
        rows = await self._read(
            "MATCH (d:Document {id: $id, scope_id: $scope_id})" + self._DOC_RETURN,
            id=document_id,
            scope_id=scope_id,
        )
        return _document(rows[0]["node"], rows[0]["entity_ids"]) if rows else None

    async def update_document(
        self, scope_id: str, document_id: str, metadata: dict[str, Any]
    ) -> Document | None:
        rows = await self._write(
            "MATCH (d:Document {id: $id, scope_id: $scope_id}) SET d.metadata = $metadata WITH d"
            + self._DOC_RETURN,
            id=document_id,
            scope_id=scope_id,
            metadata=json.dumps(metadata, sort_keys=True),
        )
        return _document(rows[0]["node"], rows[0]["entity_ids"]) if rows else None

    async def delete_document(self, scope_id: str, document_id: str) -> bool:
        rows = await self._write(
            """
            MATCH (d:Document {id: $id, scope_id: $scope_id})
            DETACH DELETE d
            RETURN count(*) AS n
            """,
            id=document_id,
            scope_id=scope_id,
        )
        return bool(rows and rows[0]["n"])

    async def list_documents(self, scope_id: str, *, limit: int = 100, offset: int = 0) -> list[Document]:
        rows = await self._read(
            """
            MATCH (d:Document {scope_id: $scope_id})
            WITH d ORDER BY d.id SKIP $offset LIMIT $limit
            OPTIONAL MATCH (d)-[:CONTAINS_ENTITY]->(e:Entity)
            RETURN properties(d) AS node, collect(e.id) AS entity_ids
            ORDER BY node.id
            """,
            scope_id=scope_id,
            offset=max(0, offset),
            limit=max(0, limit),
        )
        return [_document(r["node"], r["entity_ids"]) for r in rows]

    # --- links and traversal ---

    async def link_document_entities(self, scope_id: str, document_id: str, entity_ids: Sequence[str]) -> None:
        if not entity_ids:
            return
        rows = await self._write(
            """
            MATCH (d:Document {id: $document_id, scope_id: $scope_id})
            UNWIND $entity_ids AS eid
            MATCH (e:Entity {id: eid, scope_id: $scope_id})
            MERGE (d)-[:CONTAINS_ENTITY]->(e)
            RETURN count(*) AS n
            """,
            document_id=document_id,
            scope_id=scope_id,
            entity_ids=list(entity_ids),
        )
        if not rows or not rows[0]["n"]:
            if await self.get_document(scope_id, document_id) is None:
                raise NotFoundError(f"Document {document_id} not found in scope {scope_id}")

    async def neighbors(
        self, scope_id: str, entity_ids: Sequence[str], *, valid_at: str | None = None
    ) -> tuple[list[Relationship], list[Entity]]:
        if not entity_ids:
            return [], []
        q = f"""
        MATCH (a:Entity)-[r]-(b:Entity)
        WHERE a.id IN $ids AND a.scope_id = $scope_id
          AND r.scope_id = $scope_id AND b.scope_id = $scope_id
        WITH DISTINCT r, b
        RETURN {_REL_RETURN}, properties(b) AS other
        """
        rows = await self._read(q, ids=list(entity_ids), scope_id=scope_id)
        rels: dict[str, Relationship] = {}
        ents: dict[str, Entity] = {}
        for row in rows:
            rel = _relationship(row["props"], row["type"], row["from_id"], row["to_id"])
            other = _entity(row["other"])
            if not rel.is_valid_at(valid_at) or not other.is_valid_at(valid_at):
                continue
            rels[rel.id] = rel
            if other.id not in entity_ids:
                ents[other.id] = other
        return (
            sorted(rels.values(), key=lambda r: r.id),
            sorted(ents.values(), key=lambda e: e.id),
        )

    async def entities_for_documents(
        self, scope_id: str, document_ids: Sequence[str], *, filters: SearchFilters
    ) -> list[Entity]:
        if not document_ids:
            return []
        rows = await self._read(
            """
            MATCH (d:Document)-[:CONTAINS_ENTITY]->(e:Entity)
            WHERE d.id IN $ids AND d.scope_id = $scope_id AND e.scope_id = $scope_id
            RETURN DISTINCT properties(e) AS node
            ORDER BY node.id
            """,
            ids=list(document_ids),
            scope_id=scope_id,
        )
        out = [_entity(r["node"]) for r in rows]
        return [
            e for e in out if filters.admits(valid_from=e.valid_from, valid_to=e.valid_to, context_ids=e.context_ids)
        ]
