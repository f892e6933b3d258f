"""
Provider dispatch.

Each provider knows its endpoint, credential, request body shape and wire
format. The dispatcher validates configuration before any network call,
opens the upstream stream and wraps it in a StreamNormalizer.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, AsyncIterable, Awaitable, Callable, Dict, Optional, Tuple

import httpx
from litellm import acompletion

import prompts
from config import Settings
from decoders import WireFormat, build_decoder, iter_increments
from errors import ConfigurationError, UpstreamError
from normalizer import StreamNormalizer
from proxy import create_async_client, open_upstream_stream
from schemas import ProviderId, TranslationRequest

logger = logging.getLogger("translator.gateway.providers")


Release = Callable[[], Awaitable[None]]

_EXHAUSTED = object()


async def _close_stream(stream: Any) -> None:
    close = getattr(stream, "aclose", None)
    if close is not None:
        await close()


# =========================
# Provider variants
# =========================

class Provider(ABC):
    provider_id: ProviderId
    display_name: str
    uses_http = True

    def __init__(self, settings: Settings):
        self.settings = settings

    @property
    @abstractmethod
    def wire_format(self) -> WireFormat:
        ...

    @abstractmethod
    def configuration_problem(self) -> Optional[str]:
        """Reason this provider cannot serve requests, or None."""

    @abstractmethod
    async def open(
        self,
        request: TranslationRequest,
        client: Optional[httpx.AsyncClient],
    ) -> Tuple[AsyncIterable[Any], Release]:
        """Start the upstream call; return its frame source and a release hook."""


class HTTPStreamProvider(Provider):
    """Providers reached with a plain streaming POST."""

    local = False

    @abstractmethod
    def endpoint(self) -> str:
        ...

    @abstractmethod
    def build_payload(self, request: TranslationRequest) -> Dict[str, Any]:
        ...

    def build_headers(self) -> Dict[str, str]:
        return {}

    async def open(self, request, client):
        response = await open_upstream_stream(
            client,
            provider=self.display_name,
            url=self.endpoint(),
            payload=self.build_payload(request),
            headers=self.build_headers(),
            local=self.local,
        )
        return response.aiter_bytes(), response.aclose


class LocalModelProvider(HTTPStreamProvider):
    """
    Self-hosted model. Ollama streams NDJSON from /api/generate,
    text-generation-inference streams token events from /generate_stream.
    """

    provider_id = ProviderId.LOCAL
    display_name = "Local model"
    local = True

    BACKENDS = {
        "ollama": WireFormat.GENERATE_NDJSON,
        "tgi": WireFormat.TOKEN_SSE,
    }

    @property
    def backend(self) -> str:
        return self.settings.LOCAL_MODEL_BACKEND.strip().lower()

    @property
    def wire_format(self) -> WireFormat:
        return self.BACKENDS.get(self.backend, WireFormat.GENERATE_NDJSON)

    def configuration_problem(self) -> Optional[str]:
        if self.settings.is_production:
            return "Local model is disabled in production environment."
        if not self.settings.LOCAL_MODEL_URL:
            return "Local model endpoint is not configured on the server."
        if self.backend not in self.BACKENDS:
            return f"Unsupported local model backend: {self.settings.LOCAL_MODEL_BACKEND}"
        return None

    def endpoint(self) -> str:
        base = self.settings.LOCAL_MODEL_URL.rstrip("/")
        if self.backend == "tgi":
            return f"{base}/generate_stream"
        return f"{base}/api/generate"

    def build_payload(self, request):
        prompt = prompts.completion_prompt(request)
        if self.backend == "tgi":
            return {
                "inputs": prompt,
                "parameters": {"max_new_tokens": self.settings.LOCAL_MODEL_MAX_NEW_TOKENS},
            }
        return {
            "model": self.settings.LOCAL_MODEL_NAME,
            "prompt": prompt,
            "stream": True,
        }


class ChatCompletionProvider(HTTPStreamProvider):
    """OpenAI-compatible /chat/completions with `stream: true`."""

    wire_format = WireFormat.CHAT_SSE

    def __init__(self, settings: Settings, *, api_key: Optional[str], url: str, model: str):
        super().__init__(settings)
        self.api_key = api_key
        self.url = url
        self.model = model

    def configuration_problem(self) -> Optional[str]:
        if not self.api_key:
            return f"{self.display_name} API key not configured on the server."
        return None

    def endpoint(self) -> str:
        return self.url

    def build_headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {self.api_key}"}

    def build_payload(self, request):
        return {
            "model": self.model,
            "messages": prompts.chat_messages(request),
            "stream": True,
        }


class OpenAIProvider(ChatCompletionProvider):
    provider_id = ProviderId.OPENAI
    display_name = "OpenAI"

    def __init__(self, settings: Settings):
        super().__init__(
            settings,
            api_key=settings.OPENAI_API_KEY,
            url=settings.OPENAI_API_URL,
            model=settings.OPENAI_MODEL,
        )


class DeepSeekProvider(ChatCompletionProvider):
    provider_id = ProviderId.DEEPSEEK
    display_name = "DeepSeek"

    def __init__(self, settings: Settings):
        super().__init__(
            settings,
            api_key=settings.DEEPSEEK_API_KEY,
            url=settings.DEEPSEEK_API_URL,
            model=settings.DEEPSEEK_MODEL,
        )


class GeminiProvider(Provider):
    """Gemini through LiteLLM's async streaming iterator."""

    provider_id = ProviderId.GEMINI
    display_name = "Gemini"
    wire_format = WireFormat.GENERATOR
    uses_http = False

    def __init__(self, settings: Settings, completion: Callable[..., Awaitable[Any]] = acompletion):
        super().__init__(settings)
        self._completion = completion

    def configuration_problem(self) -> Optional[str]:
        if not self.settings.GEMINI_API_KEY:
            return "Gemini API Key is not configured on the server."
        return None

    async def open(self, request, client):
        stream = None
        try:
            stream = await self._completion(
                model=f"gemini/{self.settings.GEMINI_MODEL}",
                messages=[{"role": "user", "content": prompts.greek_prompt(request)}],
                api_key=self.settings.GEMINI_API_KEY,
                stream=True,
            )
            # LiteLLM sends the HTTP request on the first read, so pull one
            # chunk while errors can still become a status code
            chunks = stream.__aiter__()
            try:
                first = await chunks.__anext__()
            except StopAsyncIteration:
                first = _EXHAUSTED
        except Exception as e:
            if stream is not None:
                await _close_stream(stream)
            status_code = getattr(e, "status_code", None)
            if not isinstance(status_code, int) or status_code < 400:
                status_code = 502
            logger.error(f"Gemini stream failed to start: {type(e).__name__}: {e}")
            raise UpstreamError(
                f"Error from Gemini API: {e}",
                status_code=status_code,
                provider=self.display_name,
            ) from e

        async def frames():
            if first is _EXHAUSTED:
                return
            yield first
            async for chunk in chunks:
                yield chunk

        async def release() -> None:
            if chunks is not stream:
                await _close_stream(chunks)
            await _close_stream(stream)

        return frames(), release


# =========================
# Dispatcher
# =========================

class ProviderDispatcher:
    def __init__(
        self,
        settings: Settings,
        *,
        client: Optional[httpx.AsyncClient] = None,
        completion: Optional[Callable[..., Awaitable[Any]]] = None,
    ):
        self._settings = settings
        self._client = client
        self._owns_client = client is None
        self._client_lock = asyncio.Lock()

        providers = (
            LocalModelProvider(settings),
            OpenAIProvider(settings),
            DeepSeekProvider(settings),
            GeminiProvider(settings, completion or acompletion),
        )
        self._providers: Dict[ProviderId, Provider] = {p.provider_id: p for p in providers}

    def provider(self, provider_id: ProviderId) -> Provider:
        return self._providers[provider_id]

    def check_configured(self, provider_id: ProviderId) -> Provider:
        provider = self.provider(provider_id)
        problem = provider.configuration_problem()
        if problem:
            logger.error(f"Provider {provider_id.value} unavailable: {problem}")
            raise ConfigurationError(problem)
        return provider

    def configured(self) -> Dict[str, bool]:
        return {
            provider_id.value: provider.configuration_problem() is None
            for provider_id, provider in self._providers.items()
        }

    async def ensure_client(self) -> httpx.AsyncClient:
        async with self._client_lock:
            if self._client is None:
                self._client = create_async_client(self._settings.UPSTREAM_TIMEOUT_SECONDS)
            return self._client

    async def close(self) -> None:
        async with self._client_lock:
            if self._client is not None and self._owns_client:
                await self._client.aclose()
                self._client = None

    async def open_stream(self, request: TranslationRequest) -> StreamNormalizer:
        """
        Fail fast on configuration, start the upstream call, and return a
        normalizer ready to be iterated. Nothing has been sent to the
        caller yet, so every error raised here still maps to a status code.
        """
        provider = self.check_configured(request.provider)
        client = await self.ensure_client() if provider.uses_http else None

        logger.info(
            f"Dispatching {request.direction.value} ({request.style.value}) "
            f"to {provider.display_name} [{provider.wire_format.value}]"
        )

        frames, release = await provider.open(request, client)
        decoder = build_decoder(provider.wire_format, label=provider.provider_id.value)

        return StreamNormalizer(
            iter_increments(decoder, frames),
            on_close=release,
            label=provider.provider_id.value,
        )
