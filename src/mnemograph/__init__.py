"""mnemograph: scoped knowledge graph memory.

This package provides:
- LLM extraction of entities and relationships, validated against an ontology
- A graph store abstraction with Neo4j and in-memory implementations
- Embedding-seeded subgraph retrieval for grounded question answering
"""

from .errors import (
    DimensionMismatchError,
    ExtractionError,
    MnemographError,
    NotFoundError,
    ProviderError,
    ProviderTimeout,
    SchemaError,
    ValidationError,
    VectorIndexUnavailable,
)
from .events import EventBus, EventType
from .models import (
    AskOptions,
    AskResult,
    BatchItem,
    BatchOptions,
    BatchResult,
    Document,
    Entity,
    LearnOptions,
    LearnResult,
    Relationship,
    Scope,
)
from .ontology import DEFAULT_ONTOLOGY, ExtractionPromptTemplate, Ontology
from .pipeline import KnowledgeGraph
from .settings import MnemographSettings, configure_logging, load_settings

__version__ = "0.1.0"

__all__ = [
    "KnowledgeGraph",
    "Scope",
    "Entity",
    "Relationship",
    "Document",
    "LearnOptions",
    "LearnResult",
    "BatchItem",
    "BatchOptions",
    "BatchResult",
    "AskOptions",
    "AskResult",
    "EventBus",
    "EventType",
    "Ontology",
    "ExtractionPromptTemplate",
    "DEFAULT_ONTOLOGY",
    "MnemographSettings",
    "load_settings",
    "configure_logging",
    "MnemographError",
    "ProviderError",
    "ProviderTimeout",
    "VectorIndexUnavailable",
    "ValidationError",
    "DimensionMismatchError",
    "ExtractionError",
    "SchemaError",
    "NotFoundError",
]
