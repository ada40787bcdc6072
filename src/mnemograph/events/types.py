"""Typed event payloads.

Each event type maps to exactly one payload class (``EVENT_CLASSES``); the
bus checks that mapping on emit so handlers registered for a type can rely
on the payload shape.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Union

from ..models import BatchProgress, BatchSummary, Document, Entity, Relationship, utc_now

if TYPE_CHECKING:
    from ..models import AskResult, ExtractionResult, LearnResult


class EventType(str, Enum):
    ENTITY_CREATED = "entity.created"
    ENTITY_UPDATED = "entity.updated"
    ENTITY_DELETED = "entity.deleted"
    RELATIONSHIP_CREATED = "relationship.created"
    RELATIONSHIP_UPDATED = "relationship.updated"
    RELATIONSHIP_DELETED = "relationship.deleted"
    DOCUMENT_CREATED = "document.created"
    DOCUMENT_UPDATED = "document.updated"
    DOCUMENT_DELETED = "document.deleted"
    LEARN_STARTED = "learn.started"
    LEARN_COMPLETED = "learn.completed"
    LEARN_FAILED = "learn.failed"
    EXTRACTION_STARTED = "extraction.started"
    EXTRACTION_COMPLETED = "extraction.completed"
    QUERY_STARTED = "query.started"
    QUERY_COMPLETED = "query.completed"
    BATCH_PROGRESS = "batch.progress"
    BATCH_COMPLETED = "batch.completed"


@dataclass(frozen=True, slots=True, kw_only=True)
class BaseEvent:
    type: EventType
    scope_id: str | None = None
    timestamp: str = field(default_factory=utc_now)


@dataclass(frozen=True, slots=True, kw_only=True)
class EntityEvent(BaseEvent):
    entity: Entity


@dataclass(frozen=True, slots=True, kw_only=True)
class RelationshipEvent(BaseEvent):
    relationship: Relationship


@dataclass(frozen=True, slots=True, kw_only=True)
class DocumentEvent(BaseEvent):
    document: Document


@dataclass(frozen=True, slots=True, kw_only=True)
class LearnEvent(BaseEvent):
    text: str | None = None
    result: LearnResult | None = None
    error: BaseException | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class ExtractionEvent(BaseEvent):
    text: str | None = None
    result: ExtractionResult | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class QueryEvent(BaseEvent):
    query: str
    result: AskResult | None = None


@dataclass(frozen=True, slots=True, kw_only=True)
class BatchEvent(BaseEvent):
    progress: BatchProgress | None = None
    summary: BatchSummary | None = None


Event = Union[
    EntityEvent,
    RelationshipEvent,
    DocumentEvent,
    LearnEvent,
    ExtractionEvent,
    QueryEvent,
    BatchEvent,
]

EVENT_CLASSES: dict[EventType, type[BaseEvent]] = {
    EventType.ENTITY_CREATED: EntityEvent,
    EventType.ENTITY_UPDATED: EntityEvent,
    EventType.ENTITY_DELETED: EntityEvent,
    EventType.RELATIONSHIP_CREATED: RelationshipEvent,
    EventType.RELATIONSHIP_UPDATED: RelationshipEvent,
    EventType.RELATIONSHIP_DELETED: RelationshipEvent,
    EventType.DOCUMENT_CREATED: DocumentEvent,
    EventType.DOCUMENT_UPDATED: DocumentEvent,
    EventType.DOCUMENT_DELETED: DocumentEvent,
    EventType.LEARN_STARTED: LearnEvent,
    EventType.LEARN_COMPLETED: LearnEvent,
    EventType.LEARN_FAILED: LearnEvent,
    EventType.EXTRACTION_STARTED: ExtractionEvent,
    EventType.EXTRACTION_COMPLETED: ExtractionEvent,
    EventType.QUERY_STARTED: QueryEvent,
    EventType.QUERY_COMPLETED: QueryEvent,
    EventType.BATCH_PROGRESS: BatchEvent,
    EventType.BATCH_COMPLETED: BatchEvent,
}
