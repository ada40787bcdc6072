"""Error taxonomy.

Configuration problems surface as :class:`ValidationError` at construction
time. Upstream failures (embedding, LLM, graph store) surface as
:class:`ProviderError`, with timeouts as the :class:`ProviderTimeout`
subclass.
"""

from __future__ import annotations


class MnemographError(RuntimeError):
    """Base class for all mnemograph errors."""


class ProviderError(MnemographError):
    """Upstream embedding, LLM or graph store failure."""


class ProviderTimeout(ProviderError):
    """A provider call exceeded its caller-supplied timeout."""


class VectorIndexUnavailable(ProviderError):
    """The store has no usable native vector index for the requested target."""


class ValidationError(MnemographError, ValueError):
    """Malformed configuration (missing key, unknown model, bad ranges)."""


class DimensionMismatchError(ValidationError):
    """Provider dimensionality differs from an existing vector index."""

    def __init__(self, *, target: str, provider_dims: int, index_dims: int):
        super().__init__(
            f"{target} vector index has {index_dims} dimensions but the embedding "
            f"provider produces {provider_dims}; recreate the index or change provider"
        )
        self.target = target
        self.provider_dims = provider_dims
        self.index_dims = index_dims


class ExtractionError(MnemographError):
    """Model output could not be parsed into the extraction schema."""


class SchemaError(MnemographError):
    """An entity or relationship violates ontology constraints."""


class NotFoundError(MnemographError, LookupError):
    """A referenced node or edge does not exist in the current scope."""


__all__ = [
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
