from __future__ import annotations

import asyncio
import hashlib
import logging
import re

from ..errors import ProviderError, ValidationError
from .base import EmbeddingProvider, require_key

logger = logging.getLogger(__name__)

OPENAI_EMBEDDING_DIMENSIONS = {
    "text-embedding-3-small": 1536,
    "text-embedding-3-large": 3072,
    "text-embedding-ada-002": 1536,
}

_TOKEN_RE = re.compile(r"\w+", re.UNICODE)


def _check_texts(texts: list[str]) -> None:
    if not texts:
        raise ProviderError("Texts cannot be empty for batch embedding generation")
    empty = [i for i, t in enumerate(texts) if not t or not t.strip()]
    if empty:
        raise ProviderError(f"Empty texts found at indices: {', '.join(map(str, empty))}")


def _check_dimensions(dimensions: int) -> int:
    if not isinstance(dimensions, int) or dimensions <= 0:
        raise ValidationError(f"Invalid embedding dimensions: {dimensions}. Must be a positive integer.")
    return dimensions


def _token_bucket(token: str, dim: int) -> int:
    h = hashlib.md5(token.encode("utf-8")).digest()  # stable across runs
    return int.from_bytes(h[:8], "big", signed=False) % dim


class HashingEmbeddingProvider(EmbeddingProvider):
    """Deterministic bag-of-words embedding; no model, no network.

    Texts sharing tokens get positive cosine similarity. Useful offline and
    in tests; not a semantic model.
    """

    provider = "hashing"
    model = "token-hash"

    def __init__(self, dimensions: int = 384):
        self.dimensions = _check_dimensions(dimensions)

    def _vector(self, text: str) -> list[float]:
        tokens = _TOKEN_RE.findall(text.casefold())
        if not tokens:
            raise ProviderError(f"Text has no embeddable tokens: {text[:50]!r}")
        v = [0.0] * self.dimensions
        for tok in tokens:
            v[_token_bucket(tok, self.dimensions)] += 1.0
        norm = sum(x * x for x in v) ** 0.5
        return [x / norm for x in v]

    async def embed(self, text: str) -> list[float]:
        _check_texts([text])
        return self._vector(text)

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        _check_texts(texts)
        return [self._vector(t) for t in texts]


class SentenceTransformersEmbeddingProvider(EmbeddingProvider):
    provider = "sentence-transformers"

    def __init__(self, model_name: str):
        try:
            from sentence_transformers import SentenceTransformer
        except ImportError as e:  # pragma: no cover
            raise ValidationError(
                "sentence-transformers is not installed. Install with: pip install 'mnemograph[local]'"
            ) from e

        self.model = model_name
        try:
            self._m = SentenceTransformer(model_name)
        except OSError as e:
            raise ValidationError(f"Unknown sentence-transformers model: {model_name}") from e
        dim = self._m.get_sentence_embedding_dimension()
        self.dimensions = _check_dimensions(int(dim) if dim else 0)

    def _encode(self, texts: list[str]) -> list[list[float]]:
        vecs = self._m.encode(texts, normalize_embeddings=True)
        return [v.tolist() for v in vecs]

    async def embed(self, text: str) -> list[float]:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        _check_texts(texts)
        try:
            return await asyncio.to_thread(self._encode, texts)
        except Exception as e:
            raise ProviderError(f"Failed to generate sentence-transformers embeddings: {e}") from e


class OpenAIEmbeddingProvider(EmbeddingProvider):
    provider = "openai"

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str = "text-embedding-3-small",
        dimensions: int | None = None,
        base_url: str | None = None,
        timeout: float = 60.0,
    ):
        from openai import AsyncOpenAI

        require_key(api_key, "OpenAI")
        if not model or not model.strip():
            raise ValidationError("OpenAI embedding model is required")
        self.model = model
        self.dimensions = self._resolve_dimensions(model, dimensions)
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    @staticmethod
    def _resolve_dimensions(model: str, override: int | None) -> int:
        if override is not None:
            return _check_dimensions(override)
        dims = OPENAI_EMBEDDING_DIMENSIONS.get(model)
        if dims is None:
            raise ValidationError(
                f"Unknown OpenAI embedding model: {model}. "
                f"Known models: {', '.join(OPENAI_EMBEDDING_DIMENSIONS)}. "
                "If using a custom model, specify dimensions explicitly."
            )
        return dims

    def _request_kwargs(self) -> dict:
        # Only text-embedding-3 models accept a dimensions override.
        if self.model.startswith("text-embedding-3"):
            return {"dimensions": self.dimensions}
        return {}

    async def embed(self, text: str) -> list[float]:
        return (await self.embed_batch([text]))[0]

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        from openai import OpenAIError

        _check_texts(texts)
        try:
            resp = await self._client.embeddings.create(model=self.model, input=texts, **self._request_kwargs())
        except OpenAIError as e:
            raise ProviderError(f"Failed to generate OpenAI embeddings: {e}") from e

        data = sorted(resp.data, key=lambda d: d.index)
        if len(data) != len(texts):
            raise ProviderError(f"OpenAI returned {len(data)} embeddings for {len(texts)} texts")
        return [list(d.embedding) for d in data]

    async def aclose(self) -> None:
        await self._client.close()
