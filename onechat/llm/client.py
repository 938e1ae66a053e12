import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Optional

import httpx
from pydantic import BaseModel

from ..errors import MissingCredentialError, RemoteError, TransportError
from .registry import ModelRegistry, get_registry
from .sse import SSEDecoder
from .tokens import estimate_messages_tokens, truncate_messages

logger = logging.getLogger(__name__)


class Credentials(BaseModel):
    """User-entered API keys and base URLs, keyed by provider key-name."""

    api_keys: dict[str, str] = {}
    base_urls: dict[str, str] = {}


class ResolvedCredentials(BaseModel):
    key_name: Optional[str] = None
    api_key: Optional[str] = None
    base_url: Optional[str] = None


class CompletionOptions(BaseModel):
    temperature: float = 0.7
    max_tokens: Optional[int] = None  # None = provider default
    stream: bool = False


class CompletionResult(BaseModel):
    content: str = ""
    raw: Any = None


def _extract_content(data: Any) -> str:
    if not isinstance(data, dict):
        return ""
    content = data.get("content")
    if isinstance(content, str):
        return content
    choices = data.get("choices")
    if isinstance(choices, list) and choices:
        message = choices[0].get("message") if isinstance(choices[0], dict) else None
        if isinstance(message, dict) and isinstance(message.get("content"), str):
            return message["content"]
    return ""


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return f"HTTP {response.status_code}"
    if isinstance(data, dict):
        error = data.get("error") or data.get("message")
        if isinstance(error, dict):
            error = error.get("message")
        if error:
            return str(error)
    return f"HTTP {response.status_code}"


def _transport_message(exc: httpx.HTTPError) -> str:
    return str(exc) or exc.__class__.__name__


class CompletionClient:
    """Chat completions against the OneLLM gateway, batch or streamed.

    Credentials are passed in per call rather than read from global state,
    so API keys only travel with the outbound provider request.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        registry: Optional[ModelRegistry] = None,
        http: Optional[httpx.AsyncClient] = None,
        timeout: float = 120.0,
    ) -> None:
        self.registry = registry or get_registry()
        self.base_url = (base_url or self.registry.base_url).rstrip("/")
        self._http = http
        self._timeout = timeout

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._http is not None:
            yield self._http
        else:
            async with httpx.AsyncClient(timeout=self._timeout) as client:
                yield client

    def resolve_credentials(self, model: str, credentials: Credentials) -> ResolvedCredentials:
        """Pick the key and base URL for *model*.

        User values win over provider defaults.  Raises
        :class:`MissingCredentialError` when the provider (or an unknown
        provider) needs a key and none is available.
        """
        provider = self.registry.resolve_provider(model)
        key_name = provider.key_name if provider else None

        api_key = credentials.api_keys.get(key_name) if key_name else None
        api_key = api_key or (provider.default_api_key if provider else None)

        base_url = credentials.base_urls.get(key_name) if key_name else None
        base_url = base_url or (provider.default_base_url if provider else None)

        if self.registry.requires_key(model) and not api_key:
            raise MissingCredentialError(key_name, model)
        return ResolvedCredentials(key_name=key_name, api_key=api_key, base_url=base_url)

    def build_payload(
        self,
        messages: list[dict],
        model: str,
        resolved: ResolvedCredentials,
        options: CompletionOptions,
    ) -> dict:
        max_tokens = options.max_tokens or self.registry.max_output_tokens(model)
        window = self.registry.context_window(model)
        wire_messages = [{"role": m["role"], "content": m["content"]} for m in messages]
        fitted = truncate_messages(wire_messages, window, min(max_tokens, window // 2))
        if len(fitted) < len(wire_messages):
            logger.info(
                "Truncated history for %s: %d -> %d messages (~%d tokens)",
                model,
                len(wire_messages),
                len(fitted),
                estimate_messages_tokens(fitted),
            )

        payload: dict[str, Any] = {}
        if resolved.api_key:
            payload["apiKey"] = resolved.api_key
        payload.update(
            model=model,
            messages=fitted,
            temperature=options.temperature,
            maxTokens=max_tokens,
        )
        if resolved.base_url:
            payload["baseUrl"] = resolved.base_url
        return payload

    async def complete(
        self,
        messages: list[dict],
        model: str,
        credentials: Credentials,
        options: Optional[CompletionOptions] = None,
    ) -> CompletionResult:
        options = options or CompletionOptions()
        resolved = self.resolve_credentials(model, credentials)
        payload = self.build_payload(messages, model, resolved, options)

        try:
            async with self._client() as client:
                response = await client.post(f"{self.base_url}/chat/completions", json=payload)
        except httpx.HTTPError as e:
            raise TransportError(_transport_message(e)) from e

        if not response.is_success:
            raise RemoteError(_error_message(response), response.status_code)
        try:
            data = response.json()
        except ValueError:
            data = response.text
        return CompletionResult(content=_extract_content(data), raw=data)

    async def stream_chat_completion(
        self,
        messages: list[dict],
        model: str,
        credentials: Credentials,
        options: Optional[CompletionOptions] = None,
    ) -> AsyncIterator[str]:
        """Yield content deltas in arrival order; exhaustion means the stream ended."""
        options = options or CompletionOptions(stream=True)
        resolved = self.resolve_credentials(model, credentials)
        payload = self.build_payload(messages, model, resolved, options)
        decoder = SSEDecoder()

        try:
            async with self._client() as client:
                async with client.stream(
                    "POST",
                    f"{self.base_url}/chat/completions/stream",
                    json=payload,
                    headers={"Accept": "text/event-stream"},
                ) as response:
                    if not response.is_success:
                        await response.aread()
                        raise RemoteError(_error_message(response), response.status_code)
                    async for text in response.aiter_text():
                        for chunk in decoder.feed(text):
                            yield chunk
                    for chunk in decoder.flush():
                        yield chunk
        except httpx.HTTPError as e:
            raise TransportError(_transport_message(e)) from e

    async def send_chat_completion(
        self,
        messages: list[dict],
        model: str,
        credentials: Credentials,
        options: Optional[CompletionOptions] = None,
        on_chunk: Optional[Callable[[str], None]] = None,
    ) -> CompletionResult:
        """Callback-style entry point.

        In streaming mode every delta goes to *on_chunk* and the returned
        result has empty content.
        """
        options = options or CompletionOptions()
        if not options.stream:
            return await self.complete(messages, model, credentials, options)

        async for chunk in self.stream_chat_completion(messages, model, credentials, options):
            if on_chunk is not None:
                on_chunk(chunk)
        return CompletionResult(content="")
