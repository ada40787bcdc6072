from __future__ import annotations

import logging

import httpx

from ..errors import ProviderError, ValidationError
from .base import LLMProvider, check_temperature, format_user_message, require_key
from .http import provider_client, transient_retry

logger = logging.getLogger(__name__)

DEFAULT_SYSTEM_MESSAGE = "You are a helpful assistant that answers questions based on the provided context."

OPENAI_CHAT_MODELS = (
    "gpt-4o",
    "gpt-4o-mini",
    "gpt-4.1",
    "gpt-4.1-mini",
    "gpt-4-turbo",
    "gpt-3.5-turbo",
)

ANTHROPIC_MODELS = (
    "claude-3-5-sonnet-20241022",
    "claude-3-5-haiku-20241022",
    "claude-3-opus-20240229",
    "claude-3-sonnet-20240229",
    "claude-3-haiku-20240307",
)
ANTHROPIC_MAX_TOKENS = 4096

DEEPSEEK_MODELS = ("deepseek-chat", "deepseek-reasoner")


def _check_prompt(prompt: str) -> None:
    if not prompt or not prompt.strip():
        raise ProviderError("Prompt cannot be empty for LLM generation")


def _messages(prompt: str, context: str, system_message: str | None) -> list[dict[str, str]]:
    return [
        {"role": "system", "content": system_message or DEFAULT_SYSTEM_MESSAGE},
        {"role": "user", "content": format_user_message(prompt, context)},
    ]


class OpenAILLMProvider(LLMProvider):
    provider = "openai"

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str = "gpt-4o-mini",
        temperature: float = 0.7,
        base_url: str | None = None,
        timeout: float = 60.0,
    ):
        from openai import AsyncOpenAI

        require_key(api_key, "OpenAI")
        if not model or not model.strip():
            raise ValidationError("OpenAI LLM model is required")
        self.model = model
        self.temperature = check_temperature(temperature)
        if base_url is None and model not in OPENAI_CHAT_MODELS:
            logger.warning(
                "Unknown OpenAI model %r (known: %s); continuing in case it is newer",
                model,
                ", ".join(OPENAI_CHAT_MODELS),
            )
        self._client = AsyncOpenAI(api_key=api_key, base_url=base_url, timeout=timeout)

    async def generate(
        self,
        prompt: str,
        context: str = "",
        system_message: str | None = None,
        temperature: float | None = None,
    ) -> str:
        from openai import OpenAIError

        _check_prompt(prompt)
        temp = check_temperature(self.temperature if temperature is None else temperature)
        try:
            resp = await self._client.chat.completions.create(
                model=self.model,
                messages=_messages(prompt, context, system_message),
                temperature=temp,
            )
        except OpenAIError as e:
            raise ProviderError(f"Failed to generate OpenAI response: {e}") from e

        content = resp.choices[0].message.content if resp.choices else None
        if not content or not content.strip():
            raise ProviderError("OpenAI returned an empty response")
        return content

    async def aclose(self) -> None:
        await self._client.close()


class AnthropicLLMProvider(LLMProvider):
    """Claude models through the Messages API.

    Anthropic accepts temperatures in [0, 1] only. There are no Anthropic
    embedding models; pair this with another embedding provider.
    """

    provider = "anthropic"

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str = "claude-3-5-sonnet-20241022",
        temperature: float = 0.7,
        max_tokens: int = ANTHROPIC_MAX_TOKENS,
        timeout: float = 60.0,
    ):
        from anthropic import AsyncAnthropic

        require_key(api_key, "Anthropic")
        if not model or not model.strip():
            raise ValidationError("Anthropic LLM model is required")
        self.model = model
        self.temperature = check_temperature(temperature, high=1.0)
        self.max_tokens = max_tokens
        if model not in ANTHROPIC_MODELS:
            logger.warning(
                "Unknown Anthropic model %r (known: %s); continuing in case it is newer",
                model,
                ", ".join(ANTHROPIC_MODELS),
            )
        self._client = AsyncAnthropic(api_key=api_key, timeout=timeout)

    async def generate(
        self,
        prompt: str,
        context: str = "",
        system_message: str | None = None,
        temperature: float | None = None,
    ) -> str:
        from anthropic import AnthropicError

        _check_prompt(prompt)
        temp = check_temperature(self.temperature if temperature is None else temperature, high=1.0)
        try:
            resp = await self._client.messages.create(
                model=self.model,
                max_tokens=self.max_tokens,
                system=system_message or DEFAULT_SYSTEM_MESSAGE,
                temperature=temp,
                messages=[{"role": "user", "content": format_user_message(prompt, context)}],
            )
        except AnthropicError as e:
            raise ProviderError(f"Failed to generate Anthropic response: {e}") from e

        text = next((block.text for block in resp.content if block.type == "text"), None)
        if not text or not text.strip():
            raise ProviderError("Anthropic returned no text content")
        return text

    async def aclose(self) -> None:
        await self._client.close()


class DeepSeekLLMProvider(LLMProvider):
    """DeepSeek chat completions over its OpenAI-compatible HTTP API."""

    provider = "deepseek"

    def __init__(
        self,
        *,
        api_key: str | None,
        model: str = "deepseek-chat",
        temperature: float = 0.7,
        base_url: str = "https://api.deepseek.com",
        timeout: float = 60.0,
        max_attempts: int = 3,
        retry_wait: float = 0.5,
    ):
        key = require_key(api_key, "DeepSeek")
        if model not in DEEPSEEK_MODELS:
            raise ValidationError(f"Unknown DeepSeek model: {model}. Known models: {', '.join(DEEPSEEK_MODELS)}")
        self.model = model
        self.temperature = check_temperature(temperature)
        self._http = provider_client(base_url, api_key=key, read_timeout=timeout)
        self._post = transient_retry(max_attempts, initial_wait=retry_wait)(self._post_once)

    async def _post_once(self, payload: dict) -> dict:
        r = await self._http.post("/chat/completions", json=payload)
        r.raise_for_status()
        return r.json()

    async def generate(
        self,
        prompt: str,
        context: str = "",
        system_message: str | None = None,
        temperature: float | None = None,
    ) -> str:
        _check_prompt(prompt)
        temp = check_temperature(self.temperature if temperature is None else temperature)
        payload = {
            "model": self.model,
            "messages": _messages(prompt, context, system_message),
            "temperature": temp,
        }
        try:
            data = await self._post(payload)
        except httpx.HTTPError as e:
            raise ProviderError(f"Failed to generate DeepSeek response: {e}") from e

        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError) as e:
            raise ProviderError(f"Unexpected DeepSeek response shape: {str(data)[:200]}") from e
        if not content or not str(content).strip():
            raise ProviderError("DeepSeek returned an empty response")
        return str(content)

    async def aclose(self) -> None:
        await self._http.aclose()
