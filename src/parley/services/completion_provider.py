"""Completion provider interface and OpenRouter implementation.

The negotiation engine only depends on ``CompletionProvider``; the
OpenRouter adapter streams chat completions over httpx and retries
connection failures with tenacity.
"""

import inspect
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import httpx
import tenacity
from pydantic import BaseModel, Field

from parley.exceptions import ProviderError
from parley.lib.config import OPENROUTER_BASE_URL, ProviderConfig
from parley.lib.sse import DONE_SENTINEL, LINE_DELIMITER, data_payload, iter_records


logger = logging.getLogger(__name__)

Message = Dict[str, str]
DeltaSink = Callable[[str], Union[None, Awaitable[None]]]

# Failures that happen before any byte of the stream is received
_RETRYABLE_EXCEPTIONS = (httpx.ConnectError, httpx.ConnectTimeout)


class ModelInfo(BaseModel):
    """A model offered by the provider."""

    id: str
    name: str
    description: Optional[str] = None
    context_length: int = Field(default=0, ge=0)
    pricing: Dict[str, str] = Field(default_factory=dict)

    @property
    def provider(self) -> str:
        return self.id.split("/")[0] or "other"


class CompletionProvider(ABC):
    """Interface to a chat completion backend."""

    @abstractmethod
    async def stream_completion(
        self,
        api_key: str,
        model: str,
        messages: List[Message],
        on_delta: DeltaSink
    ) -> str:
        """Stream a completion, forwarding each text fragment to ``on_delta``.

        Args:
            api_key: Provider credential
            model: Model identifier
            messages: Ordered ``{role, content}`` messages
            on_delta: Sink called with each fragment in generation order;
                may be a coroutine function

        Returns:
            The concatenation of all fragments

        Raises:
            ProviderError: On a non-success response or transport failure
        """

    async def list_models(self, api_key: str) -> List[ModelInfo]:
        """List models offered by the provider."""
        raise ProviderError("Model listing is not supported by this provider")

    async def aclose(self) -> None:
        """Release provider resources."""


def extract_delta_content(line: str) -> Optional[str]:
    """Return the text fragment carried by one provider stream line.

    Non-data lines, the ``[DONE]`` sentinel and unparseable records yield
    None rather than an error.
    """
    payload = data_payload(line)
    if payload is None:
        return None
    payload = payload.strip()
    if payload == DONE_SENTINEL:
        return None
    try:
        record = json.loads(payload)
        content = record["choices"][0]["delta"].get("content")
    except (json.JSONDecodeError, KeyError, IndexError, TypeError, AttributeError):
        logger.debug(f"Skipping unparseable stream record: {payload[:200]!r}")
        return None
    return content if isinstance(content, str) and content else None


async def _emit(sink: DeltaSink, fragment: str) -> None:
    result = sink(fragment)
    if inspect.isawaitable(result):
        await result


class OpenRouterProvider(CompletionProvider):
    """Streams chat completions from an OpenRouter-compatible API.

    Usage::

        async with OpenRouterProvider() as provider:
            text = await provider.stream_completion(key, "openai/gpt-4o", messages, print)
    """

    def __init__(
        self,
        base_url: str = OPENROUTER_BASE_URL,
        referer: str = "https://parley.coey.dev",
        title: str = "Parley",
        temperature: float = 0.7,
        max_tokens: int = 4096,
        timeout: float = 120.0,
        max_retries: int = 3,
        min_context_length: int = 4096,
        client: Optional[httpx.AsyncClient] = None
    ):
        self.base_url = base_url.rstrip("/")
        self.referer = referer
        self.title = title
        self.temperature = temperature
        self.max_tokens = max_tokens
        self.max_retries = max_retries
        self.min_context_length = min_context_length
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout)

    @classmethod
    def from_config(cls, config: ProviderConfig, client: Optional[httpx.AsyncClient] = None) -> "OpenRouterProvider":
        """Build a provider from a ``ProviderConfig``."""
        return cls(
            base_url=config.base_url,
            referer=config.referer,
            title=config.title,
            temperature=config.temperature,
            max_tokens=config.max_tokens,
            timeout=config.timeout,
            max_retries=config.max_retries,
            min_context_length=config.min_context_length,
            client=client,
        )

    def _headers(self, api_key: str) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {api_key}",
            "Content-Type": "application/json",
            "HTTP-Referer": self.referer,
            "X-Title": self.title,
        }

    def _payload(self, model: str, messages: List[Message], stream: bool) -> Dict[str, Any]:
        return {
            "model": model,
            "messages": messages,
            "stream": stream,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }

    def _retryer(self) -> tenacity.AsyncRetrying:
        return tenacity.AsyncRetrying(
            retry=tenacity.retry_if_exception_type(_RETRYABLE_EXCEPTIONS),
            wait=(
                tenacity.wait_exponential(multiplier=1, min=1, max=30)
                + tenacity.wait_random(0, 2)
            ),
            stop=tenacity.stop_after_attempt(self.max_retries),
            before_sleep=tenacity.before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    async def stream_completion(
        self,
        api_key: str,
        model: str,
        messages: List[Message],
        on_delta: DeltaSink
    ) -> str:
        """Stream a chat completion; see ``CompletionProvider.stream_completion``."""
        try:
            async for attempt in self._retryer():
                with attempt:
                    return await self._stream_once(api_key, model, messages, on_delta)
        except httpx.HTTPError as e:
            raise ProviderError(f"OpenRouter request failed: {e}", detail=str(e)) from e
        raise ProviderError("OpenRouter request was not attempted")

    async def _stream_once(
        self,
        api_key: str,
        model: str,
        messages: List[Message],
        on_delta: DeltaSink
    ) -> str:
        fragments: List[str] = []
        async with self._client.stream(
            "POST",
            f"{self.base_url}/chat/completions",
            json=self._payload(model, messages, stream=True),
            headers=self._headers(api_key),
        ) as response:
            if not response.is_success:
                body = (await response.aread()).decode("utf-8", errors="replace")
                raise ProviderError(
                    f"OpenRouter API error: {body}",
                    status_code=response.status_code,
                    detail=body,
                )

            async for line in iter_records(response.aiter_bytes(), LINE_DELIMITER):
                fragment = extract_delta_content(line)
                if fragment:
                    fragments.append(fragment)
                    await _emit(on_delta, fragment)

        return "".join(fragments)

    async def complete(self, api_key: str, model: str, messages: List[Message]) -> str:
        """Request a non-streaming completion and return its text."""
        try:
            response = await self._client.post(
                f"{self.base_url}/chat/completions",
                json=self._payload(model, messages, stream=False),
                headers=self._headers(api_key),
            )
        except httpx.HTTPError as e:
            raise ProviderError(f"OpenRouter request failed: {e}", detail=str(e)) from e

        if not response.is_success:
            raise ProviderError(
                f"OpenRouter API error: {response.text}",
                status_code=response.status_code,
                detail=response.text,
            )

        data = response.json()
        try:
            return data["choices"][0]["message"].get("content") or ""
        except (KeyError, IndexError, TypeError, AttributeError):
            return ""

    async def list_models(self, api_key: str) -> List[ModelInfo]:
        """Fetch chat-capable models with a usable context window, sorted by name."""
        try:
            response = await self._client.get(
                f"{self.base_url}/models",
                headers=self._headers(api_key),
            )
        except httpx.HTTPError as e:
            raise ProviderError(f"Failed to fetch models: {e}", detail=str(e)) from e

        if not response.is_success:
            raise ProviderError(
                f"Failed to fetch models: {response.reason_phrase}",
                status_code=response.status_code,
                detail=response.text,
            )

        models = [ModelInfo.model_validate(item) for item in response.json().get("data", [])]
        return sorted(
            (m for m in models if m.context_length >= self.min_context_length),
            key=lambda m: m.name,
        )

    async def aclose(self) -> None:
        """Close the underlying httpx client if this provider created it."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> "OpenRouterProvider":
        return self

    async def __aexit__(self, *args: object) -> None:
        await self.aclose()


def group_models_by_provider(models: List[ModelInfo]) -> Dict[str, List[ModelInfo]]:
    """Group models by the provider prefix of their identifier."""
    grouped: Dict[str, List[ModelInfo]] = {}
    for model in models:
        grouped.setdefault(model.provider, []).append(model)
    return grouped
