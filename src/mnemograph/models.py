"""Graph data model plus the option and result values of the public API."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Literal

from .errors import ValidationError

NAME_KEYS = ("name", "title")

# Keys the store manages itself; never treated as domain properties.
SYSTEM_KEYS = frozenset(
    {
        "id",
        "label",
        "embedding",
        "scope_id",
        "name_key",
        "content_hash",
        "context_ids",
        "valid_from",
        "valid_to",
        "recorded_at",
        "created_at",
        "updated_at",
        "text",
        "metadata",
    }
)

QueryStrategy = Literal["entities", "documents", "both"]

_INSTANT_FMT = "%Y-%m-%dT%H:%M:%S.%fZ"


def format_instant(value: datetime | str | None) -> str | None:
    """Fixed-width UTC timestamp so stored instants compare lexicographically."""
    if value is None:
        return None
    if isinstance(value, str):
        s = value.strip()
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            value = datetime.fromisoformat(s)
        except ValueError as e:
            raise ValidationError(f"Invalid timestamp: {value!r}") from e
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(_INSTANT_FMT)


def utc_now() -> str:
    return datetime.now(timezone.utc).strftime(_INSTANT_FMT)


def valid_at(valid_from: str | None, valid_to: str | None, instant: str | None) -> bool:
    if instant is None:
        return True
    if valid_from is not None and valid_from > instant:
        return False
    if valid_to is not None and valid_to <= instant:
        return False
    return True


def name_of(properties: dict[str, Any]) -> str | None:
    for key in NAME_KEYS:
        value = properties.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


@dataclass(frozen=True, slots=True)
class Scope:
    """Tenant isolation boundary."""

    id: str
    type: str
    name: str
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for attr in ("id", "type", "name"):
            value = getattr(self, attr)
            if not isinstance(value, str) or not value.strip():
                raise ValidationError(f"scope.{attr} is required and must be a non-empty string")


@dataclass(frozen=True, slots=True)
class Context:
    """A knowledge space within a scope, created per learn call."""

    id: str
    scope_id: str
    name: str
    source: str


@dataclass(slots=True)
class Entity:
    id: str
    label: str
    properties: dict[str, Any] = field(default_factory=dict)
    scope_id: str | None = None
    embedding: list[float] | None = None
    context_ids: list[str] = field(default_factory=list)
    valid_from: str | None = None
    valid_to: str | None = None
    recorded_at: str | None = None
    # Set by vector search only.
    similarity: float | None = None

    @property
    def name(self) -> str | None:
        return name_of(self.properties)

    @property
    def display_name(self) -> str:
        return self.name or self.label or self.id

    def is_valid_at(self, instant: str | None) -> bool:
        return valid_at(self.valid_from, self.valid_to, instant)

    def scrubbed(self) -> Entity:
        return Entity(
            id=self.id,
            label=self.label,
            properties=dict(self.properties),
            scope_id=self.scope_id,
            embedding=None,
            context_ids=list(self.context_ids),
            valid_from=self.valid_from,
            valid_to=self.valid_to,
            recorded_at=self.recorded_at,
            similarity=self.similarity,
        )


@dataclass(slots=True)
class Relationship:
    id: str
    type: str
    from_id: str
    to_id: str
    properties: dict[str, Any] = field(default_factory=dict)
    scope_id: str | None = None
    context_ids: list[str] = field(default_factory=list)
    valid_from: str | None = None
    valid_to: str | None = None
    recorded_at: str | None = None

    def is_valid_at(self, instant: str | None) -> bool:
        return valid_at(self.valid_from, self.valid_to, instant)


@dataclass(slots=True)
class Document:
    id: str
    text: str
    content_hash: str
    scope_id: str | None = None
    context_ids: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    embedding: list[float] | None = None
    entity_ids: list[str] = field(default_factory=list)
    valid_from: str | None = None
    valid_to: str | None = None
    recorded_at: str | None = None
    similarity: float | None = None

    def is_valid_at(self, instant: str | None) -> bool:
        return valid_at(self.valid_from, self.valid_to, instant)

    def scrubbed(self) -> Document:
        return Document(
            id=self.id,
            text=self.text,
            content_hash=self.content_hash,
            scope_id=self.scope_id,
            context_ids=list(self.context_ids),
            metadata=dict(self.metadata),
            embedding=None,
            entity_ids=list(self.entity_ids),
            valid_from=self.valid_from,
            valid_to=self.valid_to,
            recorded_at=self.recorded_at,
            similarity=self.similarity,
        )


# --- store writes ---


@dataclass(slots=True)
class EntityWrite:
    """Upsert payload; identity is (scope_id, case-insensitive name)."""

    label: str
    properties: dict[str, Any]
    scope_id: str
    embedding: list[float] | None = None
    context_id: str | None = None
    valid_from: str | None = None
    valid_to: str | None = None
    recorded_at: str | None = None


@dataclass(slots=True)
class RelationshipWrite:
    """Upsert payload; identity is (from_id, to_id, type, scope_id)."""

    from_id: str
    to_id: str
    type: str
    scope_id: str
    properties: dict[str, Any] = field(default_factory=dict)
    context_id: str | None = None
    valid_from: str | None = None
    valid_to: str | None = None
    recorded_at: str | None = None


@dataclass(slots=True)
class DocumentWrite:
    """Upsert payload; identity is (scope_id, content_hash)."""

    text: str
    content_hash: str
    scope_id: str
    embedding: list[float] | None = None
    context_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    valid_from: str | None = None
    valid_to: str | None = None
    recorded_at: str | None = None


@dataclass(frozen=True, slots=True)
class SearchFilters:
    valid_at: str | None = None
    contexts: tuple[str, ...] | None = None

    def admits(self, *, valid_from: str | None, valid_to: str | None, context_ids: list[str]) -> bool:
        if not valid_at(valid_from, valid_to, self.valid_at):
            return False
        if self.contexts and context_ids and not set(context_ids) & set(self.contexts):
            return False
        return True


# --- extraction ---


@dataclass(slots=True)
class EntityCandidate:
    label: str
    properties: dict[str, Any]

    @property
    def name(self) -> str:
        return name_of(self.properties) or ""


@dataclass(slots=True)
class RelationshipCandidate:
    from_name: str
    to_name: str
    type: str
    properties: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ExtractionResult:
    """Validated candidates from one text; consumed by the write step."""

    entities: list[EntityCandidate]
    relationships: list[RelationshipCandidate]
    summary: str
    # identity key -> already stored entity referenced by a relationship
    existing: dict[str, Entity] = field(default_factory=dict)
    rejected: list[str] = field(default_factory=list)


# --- learn ---


@dataclass(slots=True)
class LearnOptions:
    context_id: str | None = None
    context_name: str | None = None
    valid_from: datetime | str | None = None
    valid_to: datetime | str | None = None
    include_embeddings: bool = False
    timeout: float | None = None


@dataclass(frozen=True, slots=True)
class CreatedCounts:
    document: int = 0
    entities: int = 0
    relationships: int = 0


@dataclass(slots=True)
class LearnResult:
    context: Context
    document: Document
    entities: list[Entity]
    relationships: list[Relationship]
    summary: str
    created: CreatedCounts
    updated: CreatedCounts = field(default_factory=CreatedCounts)


@dataclass(slots=True)
class BatchItem:
    text: str
    context_id: str | None = None
    context_name: str | None = None
    valid_from: datetime | str | None = None
    valid_to: datetime | str | None = None


@dataclass(frozen=True, slots=True)
class BatchProgress:
    current: int
    total: int
    completed: int
    failed: int
    current_text: str | None = None
    estimated_time_remaining_ms: int | None = None


BatchProgressCallback = Callable[[BatchProgress], "Awaitable[None] | None"]


@dataclass(slots=True)
class BatchOptions:
    context_name: str | None = None
    valid_from: datetime | str | None = None
    valid_to: datetime | str | None = None
    include_embeddings: bool = False
    timeout: float | None = None
    concurrency: int | None = None
    on_progress: BatchProgressCallback | None = None


@dataclass(frozen=True, slots=True)
class BatchSummary:
    total: int
    succeeded: int
    failed: int
    documents_created: int
    documents_reused: int
    entities_created: int
    relationships_created: int


@dataclass(frozen=True, slots=True)
class BatchError:
    index: int
    text: str
    error: str


@dataclass(slots=True)
class BatchResult:
    results: list[LearnResult]
    summary: BatchSummary
    errors: list[BatchError] = field(default_factory=list)


# --- ask ---


@dataclass(slots=True)
class AskOptions:
    max_depth: int = 2
    max_nodes: int = 50
    top_k: int = 10
    contexts: list[str] | None = None
    valid_at: datetime | str | None = None
    strategy: QueryStrategy = "both"
    similarity_threshold: float | None = None
    include_embeddings: bool = False
    include_stats: bool = False
    timeout: float | None = None


@dataclass(slots=True)
class Subgraph:
    entities: list[Entity] = field(default_factory=list)
    relationships: list[Relationship] = field(default_factory=list)
    seed_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class QueryStatistics:
    search_ms: float
    subgraph_ms: float
    llm_ms: float
    total_ms: float
    documents_found: int
    entities_found: int
    relationships_found: int
    strategy: QueryStrategy


@dataclass(slots=True)
class AskResult:
    answer: str
    context: str
    entities: list[Entity]
    relationships: list[Relationship]
    documents: list[Document] = field(default_factory=list)
    statistics: QueryStatistics | None = None


# --- management ---


@dataclass(frozen=True, slots=True)
class DeleteResult:
    deleted: bool
    message: str
    related_relationships_deleted: int = 0


@dataclass(frozen=True, slots=True)
class HealthStatus:
    status: Literal["healthy", "degraded", "unhealthy"]
    store_connected: bool
    embedding_available: bool
    timestamp: str
    store_error: str | None = None
    embedding_error: str | None = None
