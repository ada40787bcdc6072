"""Build providers and stores from settings."""

from __future__ import annotations

from ..errors import ValidationError
from .base import EmbeddingProvider, LLMProvider
from .embedding import HashingEmbeddingProvider

DEFAULT_HASHING_DIMENSIONS = 384


def build_embedding_provider(settings) -> EmbeddingProvider:
    kind = settings.embedding_provider
    if kind == "hashing":
        return HashingEmbeddingProvider(settings.embedding_dimensions or DEFAULT_HASHING_DIMENSIONS)
    if kind == "sentence-transformers":
        from .embedding import SentenceTransformersEmbeddingProvider

        return SentenceTransformersEmbeddingProvider(settings.embedding_model)
    if kind == "openai":
        from .embedding import OpenAIEmbeddingProvider

        return OpenAIEmbeddingProvider(
            api_key=settings.openai_api_key,
            model=settings.embedding_model,
            dimensions=settings.embedding_dimensions,
            timeout=settings.provider_timeout_s or 60.0,
        )
    raise ValidationError(f"Unknown embedding provider: {kind}")


def build_llm_provider(settings) -> LLMProvider:
    from .llm import AnthropicLLMProvider, DeepSeekLLMProvider, OpenAILLMProvider

    kind = settings.llm_provider
    timeout = settings.provider_timeout_s or 60.0
    if kind == "openai":
        return OpenAILLMProvider(
            api_key=settings.openai_api_key,
            model=settings.llm_model or "gpt-4o-mini",
            temperature=settings.llm_temperature,
            base_url=settings.llm_base_url,
            timeout=timeout,
        )
    if kind == "anthropic":
        return AnthropicLLMProvider(
            api_key=settings.anthropic_api_key,
            model=settings.llm_model or "claude-3-5-sonnet-20241022",
            temperature=settings.llm_temperature,
            timeout=timeout,
        )
    if kind == "deepseek":
        kwargs = {"base_url": settings.llm_base_url} if settings.llm_base_url else {}
        return DeepSeekLLMProvider(
            api_key=settings.deepseek_api_key,
            model=settings.llm_model or "deepseek-chat",
            temperature=settings.llm_temperature,
            timeout=timeout,
            **kwargs,
        )
    raise ValidationError(f"Unknown LLM provider: {kind}")


def build_graph_store(settings):
    from ..store import InMemoryGraphStore, Neo4jConfig, Neo4jGraphStore

    if settings.graph_store == "memory":
        return InMemoryGraphStore()
    if settings.graph_store == "neo4j":
        if not settings.neo4j_password:
            raise ValidationError("neo4j_password is required for the neo4j graph store")
        return Neo4jGraphStore(
            Neo4jConfig(
                uri=settings.neo4j_uri,
                user=settings.neo4j_user,
                password=settings.neo4j_password,
                database=settings.neo4j_database,
                max_pool_size=settings.neo4j_max_pool_size,
            )
        )
    raise ValidationError(f"Unknown graph store: {settings.graph_store}")
