from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from typing import Awaitable, TypeVar

from ..errors import ProviderTimeout, ValidationError

T = TypeVar("T")

TEMPERATURE_RANGE = (0.0, 2.0)


async def with_timeout(awaitable: Awaitable[T], timeout: float | None, *, what: str) -> T:
    """Await a provider call, mapping expiry to ProviderTimeout."""
    if timeout is None:
        return await awaitable
    try:
        return await asyncio.wait_for(awaitable, timeout=timeout)
    except asyncio.TimeoutError as e:
        raise ProviderTimeout(f"{what} timed out after {timeout:.1f}s") from e


def check_temperature(value: float, *, low: float = TEMPERATURE_RANGE[0], high: float = TEMPERATURE_RANGE[1]) -> float:
    if not low <= value <= high:
        raise ValidationError(f"Invalid temperature: {value}. Must be between {low} and {high}.")
    return value


def require_key(api_key: str | None, what: str) -> str:
    if not api_key or not api_key.strip():
        raise ValidationError(f"{what} API key is required")
    return api_key


class EmbeddingProvider(ABC):
    """Turns text into fixed-size vectors.

    Implementations raise ProviderError on empty input or upstream failure;
    they never return a zero vector in place of a failure.
    """

    provider: str
    model: str
    dimensions: int

    @abstractmethod
    async def embed(self, text: str) -> list[float]: ...

    @abstractmethod
    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Order-preserving; one vector per input text."""

    async def aclose(self) -> None:
        return None


class LLMProvider(ABC):
    """Black-box text completion."""

    provider: str
    model: str
    temperature: float

    @abstractmethod
    async def generate(
        self,
        prompt: str,
        context: str = "",
        system_message: str | None = None,
        temperature: float | None = None,
    ) -> str: ...

    async def aclose(self) -> None:
        return None


def format_user_message(prompt: str, context: str) -> str:
    if not context:
        return prompt
    return f"Context:\n{context}\n\nQuestion: {prompt}\n\nAnswer based on the context above:"
