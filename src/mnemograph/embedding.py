from __future__ import annotations

import logging
from typing import Any

from .errors import DimensionMismatchError, ProviderError
from .models import SYSTEM_KEYS, name_of
from .providers.base import EmbeddingProvider, with_timeout
from .store.base import GraphStore, VectorTarget

logger = logging.getLogger(__name__)

MAX_EMBEDDED_PROPERTIES = 5
MAX_PROPERTY_CHARS = 256


def entity_text(
    label: str,
    properties: dict[str, Any],
    *,
    max_properties: int = MAX_EMBEDDED_PROPERTIES,
    max_chars: int = MAX_PROPERTY_CHARS,
) -> str:
    """Synthesize the text embedded for an entity.

    Label, name/title and description come first, then up to
    ``max_properties`` short domain properties. Long values and values that
    repeat the name or description are skipped so one field cannot dominate
    the vector.
    """
    name = name_of(properties) or ""
    description = properties.get("description")
    description = description.strip() if isinstance(description, str) else ""

    parts = [label, name]
    if description and description.casefold() != name.casefold():
        parts.append(description)

    seen = {name.casefold(), description.casefold()}
    added = 0
    for key in sorted(properties):
        if added >= max_properties:
            break
        if key in SYSTEM_KEYS or key.startswith("_") or key in ("name", "title", "description"):
            continue
        value = properties[key]
        if isinstance(value, list):
            value = ", ".join(str(v) for v in value)
        value = str(value).strip()
        if not value or len(value) > max_chars or value.casefold() in seen:
            continue
        parts.append(f"{key}: {value}")
        seen.add(value.casefold())
        added += 1
    return " ".join(p for p in parts if p)


class EmbeddingManager:
    """Embeds texts and keeps the store's vector indexes in step with the provider."""

    def __init__(self, provider: EmbeddingProvider, store: GraphStore, *, timeout: float | None = None):
        self.provider = provider
        self.store = store
        self.timeout = timeout

    @property
    def dimensions(self) -> int:
        return self.provider.dimensions

    def _check(self, vectors: list[list[float]], expected: int) -> list[list[float]]:
        if len(vectors) != expected:
            raise ProviderError(f"Embedding provider returned {len(vectors)} vectors for {expected} texts")
        for v in vectors:
            if len(v) != self.provider.dimensions:
                raise ProviderError(
                    f"Embedding provider returned a {len(v)}-dimensional vector; "
                    f"declared {self.provider.dimensions}"
                )
        return vectors

    async def embed_text(self, text: str, *, timeout: float | None = None) -> list[float]:
        if not text or not text.strip():
            raise ProviderError("Text cannot be empty for embedding generation")
        vec = await with_timeout(
            self.provider.embed(text), timeout if timeout is not None else self.timeout, what="Embedding"
        )
        return self._check([vec], 1)[0]

    async def embed_batch(self, texts: list[str], *, timeout: float | None = None) -> list[list[float]]:
        if not texts:
            return []
        vecs = await with_timeout(
            self.provider.embed_batch(list(texts)),
            timeout if timeout is not None else self.timeout,
            what="Batch embedding",
        )
        return self._check(vecs, len(texts))

    async def embed_entities(self, entities: list[tuple[str, dict[str, Any]]], *, timeout: float | None = None):
        """Embed ``(label, properties)`` pairs in one provider call."""
        return await self.embed_batch([entity_text(label, props) for label, props in entities], timeout=timeout)

    async def ensure_index(self, targets: tuple[VectorTarget, ...] = ("entity", "document")) -> None:
        """Create missing vector indexes; fail on a dimensionality mismatch."""
        for target in targets:
            existing = await self.store.vector_index_dimensions(target)
            if existing is None:
                await self.store.create_vector_index(target, self.provider.dimensions)
                continue
            if existing != self.provider.dimensions:
                raise DimensionMismatchError(
                    target=target, provider_dims=self.provider.dimensions, index_dims=existing
                )
            logger.debug("%s vector index present (%d dimensions)", target, existing)
