"""Event subscription surface."""

from .bus import EventBus, Handler
from .types import (
    EVENT_CLASSES,
    BaseEvent,
    BatchEvent,
    DocumentEvent,
    EntityEvent,
    Event,
    EventType,
    ExtractionEvent,
    LearnEvent,
    QueryEvent,
    RelationshipEvent,
)

__all__ = [
    "EventBus",
    "Handler",
    "EVENT_CLASSES",
    "BaseEvent",
    "BatchEvent",
    "DocumentEvent",
    "EntityEvent",
    "Event",
    "EventType",
    "ExtractionEvent",
    "LearnEvent",
    "QueryEvent",
    "RelationshipEvent",
]
