"""Orchestrates learning from text and answering questions over the graph.

``KnowledgeGraph`` is bound to one scope at construction; every read and
write it performs is filtered by that scope.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from enum import Enum
from typing import Any, Awaitable, Sequence, TypeVar

from .embedding import EmbeddingManager, entity_text
from .errors import NotFoundError, ValidationError
from .events import (
    BatchEvent,
    DocumentEvent,
    EntityEvent,
    EventBus,
    EventType,
    LearnEvent,
    QueryEvent,
    RelationshipEvent,
)
from .extraction import ExtractionEngine
from .models import (
    SYSTEM_KEYS,
    AskOptions,
    AskResult,
    BatchError,
    BatchItem,
    BatchOptions,
    BatchProgress,
    BatchResult,
    BatchSummary,
    Context,
    CreatedCounts,
    DeleteResult,
    Document,
    DocumentWrite,
    Entity,
    EntityWrite,
    HealthStatus,
    LearnOptions,
    LearnResult,
    QueryStatistics,
    Relationship,
    RelationshipWrite,
    Scope,
    SearchFilters,
    format_instant,
    name_of,
    utc_now,
)
from .ontology import DEFAULT_ONTOLOGY, ExtractionPromptTemplate, Ontology
from .prompts import ANSWER_SYSTEM_MESSAGE, NO_RESULTS_ANSWER
from .providers.base import EmbeddingProvider, LLMProvider, with_timeout
from .retrieval import DEFAULT_CHAR_BUDGET, RetrievalEngine
from .store.base import GraphStore
from .text import content_hash, identity_key, truncate

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_SIMILARITY_THRESHOLD = 0.7
STRATEGIES = ("entities", "documents", "both")
PROGRESS_TEXT_CHARS = 200


class LearnStage(str, Enum):
    STARTED = "started"
    EXTRACTING = "extracting"
    VALIDATING = "validating"
    EMBEDDING = "embedding"
    WRITING = "writing"
    COMPLETED = "completed"
    FAILED = "failed"


class _LearnRun:
    """Stage bookkeeping for one learn call; Completed and Failed are terminal."""

    def __init__(self, run_id: str):
        self.run_id = run_id
        self.stage = LearnStage.STARTED
        self.t0 = time.perf_counter()

    def advance(self, stage: LearnStage) -> None:
        if self.stage in (LearnStage.COMPLETED, LearnStage.FAILED):
            raise RuntimeError(f"learn run {self.run_id} already {self.stage.value}")
        logger.debug(
            "learn %s: %s -> %s (%.1f ms)",
            self.run_id,
            self.stage.value,
            stage.value,
            (time.perf_counter() - self.t0) * 1000.0,
        )
        self.stage = stage


def _ms(t0: float) -> float:
    return (time.perf_counter() - t0) * 1000.0


class KnowledgeGraph:
    """Learn/ask pipeline over a graph store, an embedding provider and an LLM."""

    def __init__(
        self,
        *,
        scope: Scope,
        store: GraphStore,
        embedder: EmbeddingProvider,
        llm: LLMProvider,
        ontology: Ontology | None = None,
        prompt_template: ExtractionPromptTemplate | None = None,
        events: EventBus | None = None,
        provider_timeout: float | None = None,
        batch_concurrency: int = 1,
        similarity_threshold: float = DEFAULT_SIMILARITY_THRESHOLD,
        context_char_budget: int = DEFAULT_CHAR_BUDGET,
    ):
        if not isinstance(scope, Scope):
            raise ValidationError("A Scope is required to construct KnowledgeGraph")
        if batch_concurrency < 1:
            raise ValidationError(f"batch_concurrency must be >= 1, got {batch_concurrency}")
        if provider_timeout is not None and provider_timeout <= 0:
            raise ValidationError(f"provider_timeout must be positive, got {provider_timeout}")

        self.scope = scope
        self.store = store
        self.llm = llm
        self.ontology = ontology or DEFAULT_ONTOLOGY
        self.events = events or EventBus()
        self.provider_timeout = provider_timeout
        self.batch_concurrency = batch_concurrency
        self.similarity_threshold = similarity_threshold

        self.embeddings = EmbeddingManager(embedder, store, timeout=provider_timeout)
        self.extractor = ExtractionEngine(llm, self.ontology, template=prompt_template, events=self.events)
        self.retrieval = RetrievalEngine(store, char_budget=context_char_budget)

    @classmethod
    def from_settings(cls, settings=None, *, scope: Scope | None = None, events: EventBus | None = None) -> KnowledgeGraph:
        """Wire store, providers and ontology from ``MnemographSettings``."""
        from .providers.factory import build_embedding_provider, build_graph_store, build_llm_provider
        from .settings import load_ontology, load_settings

        settings = settings or load_settings()
        return cls(
            scope=scope or settings.scope(),
            store=build_graph_store(settings),
            embedder=build_embedding_provider(settings),
            llm=build_llm_provider(settings),
            ontology=load_ontology(settings),
            events=events,
            provider_timeout=settings.provider_timeout_s,
            batch_concurrency=settings.batch_concurrency,
            similarity_threshold=settings.similarity_threshold,
            context_char_budget=settings.context_char_budget,
        )

    # --- lifecycle ---

    async def initialize(self) -> None:
        await self.store.connect()
        await self.embeddings.ensure_index()

    async def close(self) -> None:
        await self.events.drain()
        self.events.close()
        await self.store.close()
        await self.embeddings.provider.aclose()
        await self.llm.aclose()

    async def __aenter__(self) -> KnowledgeGraph:
        await self.initialize()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.close()

    # --- event subscription ---

    def on(self, event_type, handler) -> None:
        self.events.on(event_type, handler)

    def once(self, event_type, handler) -> None:
        self.events.once(event_type, handler)

    def off(self, event_type, handler) -> None:
        self.events.off(event_type, handler)

    # --- helpers ---

    @property
    def scope_id(self) -> str:
        return self.scope.id

    def _timeout(self, override: float | None) -> float | None:
        return override if override is not None else self.provider_timeout

    async def _io(self, awaitable: Awaitable[T], timeout: float | None, what: str) -> T:
        return await with_timeout(awaitable, timeout, what=what)

    def _emit_entity(self, event_type: EventType, entity: Entity) -> None:
        self.events.emit(EntityEvent(type=event_type, scope_id=self.scope_id, entity=entity.scrubbed()))

    def _emit_relationship(self, event_type: EventType, rel: Relationship) -> None:
        self.events.emit(RelationshipEvent(type=event_type, scope_id=self.scope_id, relationship=rel))

    def _emit_document(self, event_type: EventType, doc: Document) -> None:
        self.events.emit(DocumentEvent(type=event_type, scope_id=self.scope_id, document=doc.scrubbed()))

    # --- learn ---

    async def learn(self, text: str, options: LearnOptions | None = None) -> LearnResult:
        """Extract entities and relationships from ``text`` and merge them into the graph.

        Emits ``learn.started`` and then exactly one of ``learn.completed`` or
        ``learn.failed``. Writes already made when a later step fails are kept.
        """
        opts = options or LearnOptions()
        run = _LearnRun(uuid.uuid4().hex[:8])
        self.events.emit(LearnEvent(type=EventType.LEARN_STARTED, scope_id=self.scope_id, text=text))
        try:
            result = await self._learn(text, opts, run)
        except (Exception, asyncio.CancelledError) as e:
            run.advance(LearnStage.FAILED)
            logger.debug("learn %s failed: %s", run.run_id, e)
            self.events.emit(LearnEvent(type=EventType.LEARN_FAILED, scope_id=self.scope_id, text=text, error=e))
            raise
        run.advance(LearnStage.COMPLETED)
        self.events.emit(LearnEvent(type=EventType.LEARN_COMPLETED, scope_id=self.scope_id, text=text, result=result))
        return result

    async def _learn(self, text: str, opts: LearnOptions, run: _LearnRun) -> LearnResult:
        scope_id = self.scope_id
        timeout = self._timeout(opts.timeout)
        if not isinstance(text, str) or not text.strip():
            raise ValidationError("Text to learn must be a non-empty string")

        context_id = opts.context_id or str(uuid.uuid4())
        recorded_at = utc_now()
        valid_from = format_instant(opts.valid_from) or recorded_at
        valid_to = format_instant(opts.valid_to)
        if valid_to is not None and valid_to <= valid_from:
            raise ValidationError("valid_to must be later than valid_from")

        async def resolve_existing(name: str) -> Entity | None:
            return await self._io(self.store.find_entity_by_name(scope_id, name), timeout, "Entity lookup")

        run.advance(LearnStage.EXTRACTING)
        extraction = await self.extractor.extract(
            text,
            scope_id=scope_id,
            resolve_existing=resolve_existing,
            timeout=timeout,
            on_validate=lambda: run.advance(LearnStage.VALIDATING),
        )

        run.advance(LearnStage.EMBEDDING)
        # Embed the merged view of each entity so re-learning refines its vector.
        merged: list[tuple[str, dict[str, Any]]] = []
        for cand in extraction.entities:
            stored = await resolve_existing(cand.name)
            if stored is None:
                merged.append((cand.label, cand.properties))
            else:
                merged.append((stored.label, {**stored.properties, **cand.properties}))

        digest = content_hash(text)
        existing_doc = await self._io(self.store.find_document_by_hash(scope_id, digest), timeout, "Document lookup")
        texts = [entity_text(label, props) for label, props in merged]
        if existing_doc is None:
            texts.append(text)
        vectors = await self.embeddings.embed_batch(texts, timeout=timeout)
        doc_vector = vectors.pop() if existing_doc is None else None

        run.advance(LearnStage.WRITING)
        doc, doc_created = await self._io(
            self.store.upsert_document(
                DocumentWrite(
                    text=text,
                    content_hash=digest,
                    scope_id=scope_id,
                    embedding=doc_vector,
                    context_id=context_id,
                    valid_from=valid_from,
                    valid_to=valid_to,
                    recorded_at=recorded_at,
                )
            ),
            timeout,
            "Document write",
        )

        entities: list[Entity] = []
        ids_by_key: dict[str, str] = {k: e.id for k, e in extraction.existing.items()}
        names_by_id: dict[str, str] = {e.id: e.display_name for e in extraction.existing.values()}
        entities_created = entities_updated = 0
        for cand, vector in zip(extraction.entities, vectors):
            entity, created = await self._io(
                self.store.upsert_entity(
                    EntityWrite(
                        label=cand.label,
                        properties=cand.properties,
                        scope_id=scope_id,
                        embedding=vector,
                        context_id=context_id,
                        valid_from=valid_from,
                        valid_to=valid_to,
                        recorded_at=recorded_at,
                    )
                ),
                timeout,
                "Entity write",
            )
            entities.append(entity)
            ids_by_key[identity_key(cand.name)] = entity.id
            names_by_id[entity.id] = entity.display_name
            if created:
                entities_created += 1
                self._emit_entity(EventType.ENTITY_CREATED, entity)
            else:
                entities_updated += 1
                self._emit_entity(EventType.ENTITY_UPDATED, entity)

        relationships: list[Relationship] = []
        rels_created = rels_updated = 0
        for cand in extraction.relationships:
            from_id = ids_by_key[identity_key(cand.from_name)]
            to_id = ids_by_key[identity_key(cand.to_name)]
            if from_id == to_id:
                # Distinct names can still land on one stored node.
                logger.warning("Skipping self-referential %s on %s", cand.type, from_id)
                continue
            rel, created = await self._io(
                self.store.upsert_relationship(
                    RelationshipWrite(
                        from_id=from_id,
                        to_id=to_id,
                        type=cand.type,
                        scope_id=scope_id,
                        properties=cand.properties,
                        context_id=context_id,
                        valid_from=valid_from,
                        valid_to=valid_to,
                        recorded_at=recorded_at,
                    )
                ),
                timeout,
                "Relationship write",
            )
            relationships.append(rel)
            if created:
                rels_created += 1
                self._emit_relationship(EventType.RELATIONSHIP_CREATED, rel)
            else:
                rels_updated += 1
                self._emit_relationship(EventType.RELATIONSHIP_UPDATED, rel)

        entity_ids = [e.id for e in entities]
        await self._io(self.store.link_document_entities(scope_id, doc.id, entity_ids), timeout, "Document link")
        doc.entity_ids = sorted(set(doc.entity_ids) | set(entity_ids))
        self._emit_document(EventType.DOCUMENT_CREATED if doc_created else EventType.DOCUMENT_UPDATED, doc)

        entity_names = ", ".join(f"{e.label}: {e.display_name}" for e in entities)
        rel_lines = ", ".join(
            f"{names_by_id.get(r.from_id, r.from_id)} --[{r.type}]--> {names_by_id.get(r.to_id, r.to_id)}"
            for r in relationships
        )
        summary = (
            f"Extracted and created {len(entities)} entities and {len(relationships)} relationships from text."
            f"\n\nEntities: {entity_names}\n\nRelationships: {rel_lines}"
        )

        if not opts.include_embeddings:
            doc = doc.scrubbed()
            entities = [e.scrubbed() for e in entities]

        return LearnResult(
            context=Context(
                id=context_id, scope_id=scope_id, name=opts.context_name or "Untitled Context", source=text
            ),
            document=doc,
            entities=entities,
            relationships=relationships,
            summary=summary,
            created=CreatedCounts(document=int(doc_created), entities=entities_created, relationships=rels_created),
            updated=CreatedCounts(
                document=int(not doc_created), entities=entities_updated, relationships=rels_updated
            ),
        )

    async def learn_batch(
        self, items: Sequence[str | BatchItem], options: BatchOptions | None = None
    ) -> BatchResult:
        """Learn several texts; one item's failure never aborts the others.

        Emits ``batch.progress`` after every item and a single
        ``batch.completed`` at the end.
        """
        opts = options or BatchOptions()
        concurrency = opts.concurrency or self.batch_concurrency
        if concurrency < 1:
            raise ValidationError(f"concurrency must be >= 1, got {concurrency}")

        normalized: list[BatchItem] = []
        for item in items:
            if isinstance(item, str):
                item = BatchItem(text=item)
            normalized.append(
                BatchItem(
                    text=item.text,
                    context_id=item.context_id,
                    context_name=item.context_name or opts.context_name,
                    valid_from=item.valid_from if item.valid_from is not None else opts.valid_from,
                    valid_to=item.valid_to if item.valid_to is not None else opts.valid_to,
                )
            )

        total = len(normalized)
        results: dict[int, LearnResult] = {}
        errors: dict[int, BatchError] = {}
        sem = asyncio.Semaphore(concurrency)
        progress_lock = asyncio.Lock()
        t0 = time.perf_counter()

        async def run_one(index: int, item: BatchItem) -> None:
            async with sem:
                try:
                    results[index] = await self.learn(
                        item.text,
                        LearnOptions(
                            context_id=item.context_id,
                            context_name=item.context_name,
                            valid_from=item.valid_from,
                            valid_to=item.valid_to,
                            include_embeddings=opts.include_embeddings,
                            timeout=opts.timeout,
                        ),
                    )
                except Exception as e:
                    logger.warning("Batch item %d failed: %s", index, e)
                    errors[index] = BatchError(index=index, text=item.text, error=str(e) or type(e).__name__)

            async with progress_lock:
                done = len(results) + len(errors)
                remaining = total - done
                eta = int(round((time.perf_counter() - t0) * 1000.0 / done * remaining)) if done else None
                progress = BatchProgress(
                    current=index,
                    total=total,
                    completed=len(results),
                    failed=len(errors),
                    current_text=truncate(item.text, PROGRESS_TEXT_CHARS),
                    estimated_time_remaining_ms=eta,
                )
                self.events.emit(BatchEvent(type=EventType.BATCH_PROGRESS, scope_id=self.scope_id, progress=progress))
                await self._notify_progress(opts, progress)

        await asyncio.gather(*(run_one(i, item) for i, item in enumerate(normalized)))

        ordered = [results[i] for i in sorted(results)]
        summary = BatchSummary(
            total=total,
            succeeded=len(results),
            failed=len(errors),
            documents_created=sum(r.created.document for r in ordered),
            documents_reused=sum(1 for r in ordered if r.created.document == 0),
            entities_created=sum(r.created.entities for r in ordered),
            relationships_created=sum(r.created.relationships for r in ordered),
        )
        self.events.emit(BatchEvent(type=EventType.BATCH_COMPLETED, scope_id=self.scope_id, summary=summary))
        return BatchResult(results=ordered, summary=summary, errors=[errors[i] for i in sorted(errors)])

    @staticmethod
    async def _notify_progress(opts: BatchOptions, progress: BatchProgress) -> None:
        if opts.on_progress is None:
            return
        try:
            out = opts.on_progress(progress)
            if inspect.isawaitable(out):
                await out
        except Exception:
            logger.exception("Batch progress callback failed")

    # --- ask ---

    @staticmethod
    def _check_ask_options(opts: AskOptions, threshold: float) -> None:
        if opts.strategy not in STRATEGIES:
            raise ValidationError(f"Unknown query strategy {opts.strategy!r}; expected one of {', '.join(STRATEGIES)}")
        if opts.top_k < 1 or opts.max_nodes < 1:
            raise ValidationError("top_k and max_nodes must be >= 1")
        if opts.max_depth < 0:
            raise ValidationError("max_depth must be >= 0")
        if not 0.0 <= threshold <= 1.0:
            raise ValidationError(f"similarity_threshold must be within [0, 1], got {threshold}")

    async def ask(self, query: str, options: AskOptions | None = None) -> AskResult:
        """Answer ``query`` from the scope's graph.

        Returns the answer together with the context text, entities,
        relationships and documents it was grounded in. When nothing clears
        the similarity threshold the LLM is not called.
        """
        opts = options or AskOptions()
        threshold = opts.similarity_threshold if opts.similarity_threshold is not None else self.similarity_threshold
        self._check_ask_options(opts, threshold)
        if not isinstance(query, str) or not query.strip():
            raise ValidationError("Query must be a non-empty string")

        scope_id = self.scope_id
        timeout = self._timeout(opts.timeout)
        self.events.emit(QueryEvent(type=EventType.QUERY_STARTED, scope_id=scope_id, query=query))

        t_total = time.perf_counter()
        t_search = time.perf_counter()
        vector = await self.embeddings.embed_text(query, timeout=timeout)
        filters = SearchFilters(
            valid_at=format_instant(opts.valid_at),
            contexts=tuple(opts.contexts) if opts.contexts else None,
        )

        documents: list[Document] = []
        seeds: list[Entity] = []
        if opts.strategy in ("documents", "both"):
            documents = await self._io(
                self.retrieval.find_seeds(
                    vector, scope_id, top_k=opts.top_k, filters=filters, threshold=threshold, target="document"
                ),
                timeout,
                "Document search",
            )
        if opts.strategy in ("entities", "both"):
            seeds = await self._io(
                self.retrieval.find_seeds(
                    vector, scope_id, top_k=opts.top_k, filters=filters, threshold=threshold, target="entity"
                ),
                timeout,
                "Entity search",
            )
        if documents:
            linked = await self._io(
                self.store.entities_for_documents(scope_id, [d.id for d in documents], filters=filters),
                timeout,
                "Document entities",
            )
            seen = {s.id for s in seeds}
            seeds.extend(e for e in linked if e.id not in seen)
        search_ms = _ms(t_search)

        if not seeds and not documents:
            result = AskResult(answer=NO_RESULTS_ANSWER, context="", entities=[], relationships=[], documents=[])
            if opts.include_stats:
                result.statistics = QueryStatistics(
                    search_ms=search_ms,
                    subgraph_ms=0.0,
                    llm_ms=0.0,
                    total_ms=_ms(t_total),
                    documents_found=0,
                    entities_found=0,
                    relationships_found=0,
                    strategy=opts.strategy,
                )
            self.events.emit(QueryEvent(type=EventType.QUERY_COMPLETED, scope_id=scope_id, query=query, result=result))
            return result

        t_subgraph = time.perf_counter()
        subgraph = await self._io(
            self.retrieval.expand(
                seeds, scope_id, max_depth=opts.max_depth, max_nodes=opts.max_nodes, valid_at=filters.valid_at
            ),
            timeout,
            "Subgraph expansion",
        )
        context = self.retrieval.format(subgraph, documents)
        subgraph_ms = _ms(t_subgraph)

        t_llm = time.perf_counter()
        answer = await with_timeout(
            self.llm.generate(query, context, system_message=ANSWER_SYSTEM_MESSAGE),
            timeout,
            what="LLM answer",
        )
        llm_ms = _ms(t_llm)

        entities = subgraph.entities
        if not opts.include_embeddings:
            entities = [e.scrubbed() for e in entities]
            documents = [d.scrubbed() for d in documents]
        result = AskResult(
            answer=answer,
            context=context,
            entities=entities,
            relationships=subgraph.relationships,
            documents=documents,
        )
        if opts.include_stats:
            result.statistics = QueryStatistics(
                search_ms=search_ms,
                subgraph_ms=subgraph_ms,
                llm_ms=llm_ms,
                total_ms=_ms(t_total),
                documents_found=len(documents),
                entities_found=len(entities),
                relationships_found=len(subgraph.relationships),
                strategy=opts.strategy,
            )
        self.events.emit(QueryEvent(type=EventType.QUERY_COMPLETED, scope_id=scope_id, query=query, result=result))
        return result

    # --- health ---

    async def health_check(self) -> HealthStatus:
        store_result, embed_result = await asyncio.gather(
            self._io(self.store.ping(), self.provider_timeout, "Store ping"),
            self.embeddings.embed_text("health check"),
            return_exceptions=True,
        )
        store_ok = not isinstance(store_result, BaseException)
        embed_ok = not isinstance(embed_result, BaseException)
        if store_ok and embed_ok:
            status = "healthy"
        elif store_ok or embed_ok:
            status = "degraded"
        else:
            status = "unhealthy"
        return HealthStatus(
            status=status,
            store_connected=store_ok,
            embedding_available=embed_ok,
            timestamp=utc_now(),
            store_error=None if store_ok else str(store_result) or type(store_result).__name__,
            embedding_error=None if embed_ok else str(embed_result) or type(embed_result).__name__,
        )

    # --- graph management ---

    async def _store_call(self, awaitable: Awaitable[T], timeout: float | None, what: str) -> T:
        return await self._io(awaitable, self._timeout(timeout), what)

    async def find_entity(
        self, entity_id: str, *, include_embeddings: bool = False, timeout: float | None = None
    ) -> Entity | None:
        entity = await self._store_call(self.store.get_entity(self.scope_id, entity_id), timeout, "Entity lookup")
        if entity is None or include_embeddings:
            return entity
        return entity.scrubbed()

    async def find_relationship(self, relationship_id: str, *, timeout: float | None = None) -> Relationship | None:
        return await self._store_call(
            self.store.get_relationship(self.scope_id, relationship_id), timeout, "Relationship lookup"
        )

    async def find_document(
        self, document_id: str, *, include_embeddings: bool = False, timeout: float | None = None
    ) -> Document | None:
        doc = await self._store_call(self.store.get_document(self.scope_id, document_id), timeout, "Document lookup")
        if doc is None or include_embeddings:
            return doc
        return doc.scrubbed()

    @staticmethod
    def _merge_update(current: dict[str, Any], changes: dict[str, Any], what: str) -> dict[str, Any]:
        reserved = sorted(k for k in changes if k in SYSTEM_KEYS or k.startswith("_"))
        if reserved:
            raise ValidationError(f"Cannot update reserved {what} fields: {', '.join(reserved)}")
        merged = dict(current)
        for key, value in changes.items():
            if value is None:
                merged.pop(key, None)
            else:
                merged[key] = value
        return merged

    async def update_entity(
        self, entity_id: str, properties: dict[str, Any], *, timeout: float | None = None
    ) -> Entity:
        """Merge ``properties`` into the entity; a None value removes that key.

        The label cannot change. Removing a required property raises SchemaError.
        """
        current = await self._store_call(self.store.get_entity(self.scope_id, entity_id), timeout, "Entity lookup")
        if current is None:
            raise NotFoundError(f"Entity {entity_id} not found in scope {self.scope_id}")
        merged = self._merge_update(current.properties, properties, "entity")
        self.ontology.check_entity(current.label, merged)

        name = name_of(merged)
        clash = None
        if name:
            clash = await self._store_call(
                self.store.find_entity_by_name(self.scope_id, name), timeout, "Entity lookup"
            )
        if clash is not None and clash.id != entity_id:
            raise ValidationError(f"Another entity in scope {self.scope_id} is already named {clash.display_name!r}")

        vector = await self.embeddings.embed_text(entity_text(current.label, merged), timeout=self._timeout(timeout))
        entity = await self._store_call(
            self.store.update_entity(self.scope_id, entity_id, merged, embedding=vector), timeout, "Entity write"
        )
        if entity is None:
            raise NotFoundError(f"Entity {entity_id} not found in scope {self.scope_id}")
        self._emit_entity(EventType.ENTITY_UPDATED, entity)
        return entity.scrubbed()

    async def update_relationship(
        self, relationship_id: str, properties: dict[str, Any], *, timeout: float | None = None
    ) -> Relationship:
        """Merge ``properties`` into the relationship; type and endpoints cannot change."""
        current = await self._store_call(
            self.store.get_relationship(self.scope_id, relationship_id), timeout, "Relationship lookup"
        )
        if current is None:
            raise NotFoundError(f"Relationship {relationship_id} not found in scope {self.scope_id}")
        reserved = {"type", "from", "to", "from_id", "to_id"} & set(properties)
        if reserved:
            raise ValidationError(f"Cannot update relationship identity fields: {', '.join(sorted(reserved))}")
        merged = self._merge_update(current.properties, properties, "relationship")
        rel = await self._store_call(
            self.store.update_relationship(self.scope_id, relationship_id, merged), timeout, "Relationship write"
        )
        if rel is None:
            raise NotFoundError(f"Relationship {relationship_id} not found in scope {self.scope_id}")
        self._emit_relationship(EventType.RELATIONSHIP_UPDATED, rel)
        return rel

    async def update_document(
        self, document_id: str, metadata: dict[str, Any], *, timeout: float | None = None
    ) -> Document:
        """Merge ``metadata`` into the document; its text cannot change."""
        current = await self._store_call(
            self.store.get_document(self.scope_id, document_id), timeout, "Document lookup"
        )
        if current is None:
            raise NotFoundError(f"Document {document_id} not found in scope {self.scope_id}")
        if "text" in metadata or "content_hash" in metadata:
            raise ValidationError("Document text cannot be updated; learn the new text instead")
        merged = dict(current.metadata)
        for key, value in metadata.items():
            if value is None:
                merged.pop(key, None)
            else:
                merged[key] = value
        doc = await self._store_call(
            self.store.update_document(self.scope_id, document_id, merged), timeout, "Document write"
        )
        if doc is None:
            raise NotFoundError(f"Document {document_id} not found in scope {self.scope_id}")
        self._emit_document(EventType.DOCUMENT_UPDATED, doc)
        return doc.scrubbed()

    async def delete_entity(self, entity_id: str, *, timeout: float | None = None) -> DeleteResult:
        entity = await self._store_call(self.store.get_entity(self.scope_id, entity_id), timeout, "Entity lookup")
        if entity is None:
            return DeleteResult(deleted=False, message=f"Entity {entity_id} not found")
        removed = await self._store_call(self.store.delete_entity(self.scope_id, entity_id), timeout, "Entity delete")
        if removed is None:
            return DeleteResult(deleted=False, message=f"Entity {entity_id} not found")
        self._emit_entity(EventType.ENTITY_DELETED, entity)
        return DeleteResult(
            deleted=True,
            message=f"Entity {entity_id} deleted with {removed} relationships",
            related_relationships_deleted=removed,
        )

    async def delete_relationship(self, relationship_id: str, *, timeout: float | None = None) -> DeleteResult:
        rel = await self._store_call(
            self.store.get_relationship(self.scope_id, relationship_id), timeout, "Relationship lookup"
        )
        if rel is None or not await self._store_call(
            self.store.delete_relationship(self.scope_id, relationship_id), timeout, "Relationship delete"
        ):
            return DeleteResult(deleted=False, message=f"Relationship {relationship_id} not found")
        self._emit_relationship(EventType.RELATIONSHIP_DELETED, rel)
        return DeleteResult(deleted=True, message=f"Relationship {relationship_id} deleted")

    async def delete_document(self, document_id: str, *, timeout: float | None = None) -> DeleteResult:
        """Delete a document and its CONTAINS_ENTITY links; the entities stay."""
        doc = await self._store_call(self.store.get_document(self.scope_id, document_id), timeout, "Document lookup")
        if doc is None or not await self._store_call(
            self.store.delete_document(self.scope_id, document_id), timeout, "Document delete"
        ):
            return DeleteResult(deleted=False, message=f"Document {document_id} not found")
        self._emit_document(EventType.DOCUMENT_DELETED, doc)
        return DeleteResult(deleted=True, message=f"Document {document_id} deleted")

    async def list_entities(
        self, *, label: str | None = None, limit: int = 100, offset: int = 0, timeout: float | None = None
    ) -> list[Entity]:
        items = await self._store_call(
            self.store.list_entities(self.scope_id, label=label, limit=limit, offset=offset), timeout, "Entity list"
        )
        return [e.scrubbed() for e in items]

    async def list_relationships(
        self,
        *,
        type: str | None = None,
        from_id: str | None = None,
        to_id: str | None = None,
        limit: int = 100,
        offset: int = 0,
        timeout: float | None = None,
    ) -> list[Relationship]:
        return await self._store_call(
            self.store.list_relationships(
                self.scope_id, type=type, from_id=from_id, to_id=to_id, limit=limit, offset=offset
            ),
            timeout,
            "Relationship list",
        )

    async def list_documents(
        self, *, limit: int = 100, offset: int = 0, timeout: float | None = None
    ) -> list[Document]:
        items = await self._store_call(
            self.store.list_documents(self.scope_id, limit=limit, offset=offset), timeout, "Document list"
        )
        return [d.scrubbed() for d in items]


__all__ = ["KnowledgeGraph", "LearnStage"]
