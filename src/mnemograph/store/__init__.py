from .base import CONTAINS_ENTITY, GraphStore, VectorTarget
from .memory import InMemoryGraphStore
from .neo4j_store import Neo4jConfig, Neo4jGraphStore

__all__ = [
    "CONTAINS_ENTITY",
    "GraphStore",
    "VectorTarget",
    "InMemoryGraphStore",
    "Neo4jConfig",
    "Neo4jGraphStore",
]
