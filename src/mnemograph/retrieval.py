from __future__ import annotations

import logging
from typing import Any, Sequence

from .errors import ProviderError, VectorIndexUnavailable
from .models import SYSTEM_KEYS, Document, Entity, Relationship, SearchFilters, Subgraph
from .similarity import rank_by_cosine
from .store.base import GraphStore, VectorTarget
from .text import truncate

logger = logging.getLogger(__name__)

DEFAULT_CHAR_BUDGET = 200_000
DOCUMENT_SHARE = 0.6
MAX_CONTEXT_DOCUMENTS = 10
MAX_FORMATTED_PROPERTIES = 10
MAX_FORMATTED_VALUE_CHARS = 200


def _format_value(value: Any) -> str:
    if isinstance(value, list):
        value = ", ".join(str(v) for v in value)
    return truncate(str(value), MAX_FORMATTED_VALUE_CHARS)


def format_entity(entity: Entity) -> str:
    props = [
        f"{k}: {_format_value(v)}"
        for k, v in sorted(entity.properties.items())
        if k not in SYSTEM_KEYS and k not in ("name", "title") and not k.startswith("_")
    ][:MAX_FORMATTED_PROPERTIES]
    line = f"- {entity.label}: {entity.display_name}"
    return f"{line} ({'; '.join(props)})" if props else line


def format_relationship(rel: Relationship, names: dict[str, str]) -> str:
    return f"- {names.get(rel.from_id, rel.from_id)} --[{rel.type}]--> {names.get(rel.to_id, rel.to_id)}"


def _section(title: str, lines: list[str], total: int, sep: str = "\n") -> str:
    counted = f"{len(lines)} of {total} total" if total > len(lines) else str(len(lines))
    header = f"{title} ({counted}):"
    return header + ("\n\n" if sep != "\n" else "\n") + sep.join(lines)


class RetrievalEngine:
    """Seed search, bounded subgraph expansion and deterministic context formatting."""

    def __init__(self, store: GraphStore, *, char_budget: int = DEFAULT_CHAR_BUDGET):
        self.store = store
        self.char_budget = char_budget

    async def find_seeds(
        self,
        vector: Sequence[float],
        scope_id: str,
        *,
        top_k: int,
        filters: SearchFilters,
        threshold: float = 0.0,
        target: VectorTarget = "entity",
    ) -> list[Any]:
        """Nearest in-scope entities (or documents), best first, with ``similarity`` set.

        Uses the store's vector index when it has one and falls back to
        brute-force cosine ranking over scanned embeddings otherwise. Both
        paths filter before ranking. Hits below ``threshold`` are dropped.
        """
        if top_k <= 0:
            return []
        try:
            hits = await self.store.find_by_vector(vector, scope_id, top_k=top_k, filters=filters, target=target)
            hits = [(item, score) for item, score in hits if score >= threshold]
        except VectorIndexUnavailable as e:
            logger.info("Vector index unavailable for %s search (%s); falling back to brute-force scan", target, e)
            try:
                candidates = await self.store.scan_embeddings(scope_id, filters=filters, target=target)
            except ProviderError as scan_error:
                raise ProviderError(
                    f"{target} vector search failed: index unavailable ({e}) and scan failed ({scan_error})"
                ) from scan_error
            hits = rank_by_cosine(vector, candidates, top_k=top_k, threshold=threshold)

        out = []
        for item, score in hits:
            item.similarity = score
            out.append(item)
        return out

    async def expand(
        self,
        seeds: Sequence[Entity],
        scope_id: str,
        *,
        max_depth: int,
        max_nodes: int,
        valid_at: str | None = None,
    ) -> Subgraph:
        """Breadth-first expansion from ``seeds``.

        Seeds count toward ``max_nodes``. Only relationships whose both ends
        made it into the subgraph are kept.
        """
        entities: dict[str, Entity] = {}
        for seed in seeds:
            if len(entities) >= max_nodes:
                break
            if seed.scope_id == scope_id and seed.id not in entities:
                entities[seed.id] = seed
        seed_ids = list(entities)
        relationships: dict[str, Relationship] = {}

        frontier = list(seed_ids)
        for depth in range(max_depth):
            if not frontier:
                break
            found_rels, found_ents = await self.store.neighbors(scope_id, frontier, valid_at=valid_at)
            next_frontier: list[str] = []
            for ent in found_ents:
                if ent.id in entities or len(entities) >= max_nodes:
                    continue
                entities[ent.id] = ent
                next_frontier.append(ent.id)
            for rel in found_rels:
                if rel.from_id in entities and rel.to_id in entities:
                    relationships[rel.id] = rel
            logger.debug("Expansion hop %d: +%d entities", depth + 1, len(next_frontier))
            frontier = next_frontier

        return Subgraph(
            entities=sorted(entities.values(), key=lambda e: e.id),
            relationships=sorted(relationships.values(), key=lambda r: r.id),
            seed_ids=seed_ids,
        )

    def format(
        self,
        subgraph: Subgraph,
        documents: Sequence[Document] = (),
        *,
        char_budget: int | None = None,
    ) -> str:
        """Render documents, entities and relationships as grounding text.

        Entities and relationships are ordered by id, so equal subgraphs
        always render identically. Documents come first and may use
        ``DOCUMENT_SHARE`` of the budget; the whole text never exceeds it.
        """
        budget = char_budget or self.char_budget
        parts: list[str] = []

        doc_reserve = int(budget * DOCUMENT_SHARE) if documents else 0
        if documents:
            doc_texts: list[str] = []
            used = 0
            for i, doc in enumerate(documents[:MAX_CONTEXT_DOCUMENTS]):
                remaining = doc_reserve - used
                if remaining <= 0:
                    break
                text = doc.text if len(doc.text) <= remaining else truncate(doc.text, remaining)
                doc_texts.append(f"Document {i + 1}:\n{text}")
                used += len(text)
            if doc_texts:
                parts.append(_section("Source Documents", doc_texts, len(documents), sep="\n\n---\n\n"))

        graph_budget = budget - doc_reserve
        graph_used = 0
        entity_lines: list[str] = []
        for ent in sorted(subgraph.entities, key=lambda e: e.id):
            line = format_entity(ent)
            if graph_used + len(line) > graph_budget:
                break
            entity_lines.append(line)
            graph_used += len(line)

        names = {e.id: e.display_name for e in subgraph.entities}
        rel_lines: list[str] = []
        for rel in sorted(subgraph.relationships, key=lambda r: r.id):
            line = format_relationship(rel, names)
            if graph_used + len(line) > graph_budget:
                break
            rel_lines.append(line)
            graph_used += len(line)

        if entity_lines:
            parts.append(_section("Entities", entity_lines, len(subgraph.entities)))
        if rel_lines:
            parts.append(_section("Relationships", rel_lines, len(subgraph.relationships)))
        if not parts:
            return ""
        return truncate("Knowledge Graph Context:\n\n" + "\n\n".join(parts), budget)
