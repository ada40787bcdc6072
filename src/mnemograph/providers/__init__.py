from .base import EmbeddingProvider, LLMProvider, with_timeout
from .embedding import HashingEmbeddingProvider, OpenAIEmbeddingProvider, SentenceTransformersEmbeddingProvider
from .factory import build_embedding_provider, build_graph_store, build_llm_provider
from .llm import AnthropicLLMProvider, DeepSeekLLMProvider, OpenAILLMProvider

__all__ = [
    "EmbeddingProvider",
    "LLMProvider",
    "with_timeout",
    "HashingEmbeddingProvider",
    "OpenAIEmbeddingProvider",
    "SentenceTransformersEmbeddingProvider",
    "AnthropicLLMProvider",
    "DeepSeekLLMProvider",
    "OpenAILLMProvider",
    "build_embedding_provider",
    "build_graph_store",
    "build_llm_provider",
]
