import json
import logging
from typing import Dict, Optional

import httpx

from errors import ConfigurationError, UpstreamError

logger = logging.getLogger("translator.gateway.upstream")


ERROR_PREVIEW_CHARS = 200


def stream_timeout(seconds: float) -> httpx.Timeout:
    """
    Bounded connect/write/pool, unbounded read.
    Streams can legitimately stay open for as long as the model generates.
    """
    return httpx.Timeout(connect=seconds, read=None, write=seconds, pool=seconds)


def create_async_client(timeout: float) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=stream_timeout(timeout), follow_redirects=True)


def _error_message(provider: str, status_code: int, body: bytes) -> str:
    """
    Prefer the provider's own `error.message`; fall back to a truncated
    body preview.
    """
    text = body.decode("utf-8", "ignore")
    try:
        payload = json.loads(text)
    except json.JSONDecodeError:
        payload = None

    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return f"{provider} API error: {error['message']}"
        if isinstance(error, str):
            return f"{provider} API error: {error}"

    preview = text[:ERROR_PREVIEW_CHARS]
    if len(text) > ERROR_PREVIEW_CHARS:
        preview += "..."
    return f"{provider} API returned status {status_code}: {preview}"


async def open_upstream_stream(
    client: httpx.AsyncClient,
    *,
    provider: str,
    url: str,
    payload: Dict,
    headers: Optional[Dict[str, str]] = None,
    local: bool = False,
) -> httpx.Response:
    """
    POST to a provider and return the response with its body still unread.

    Raises before any byte is streamed:
    - ConfigurationError if a local endpoint is unreachable
    - UpstreamError(502) if a cloud provider is unreachable
    - UpstreamError(<provider status>) on a non-success status
    """
    request = client.build_request(
        "POST",
        url,
        headers={"Content-Type": "application/json", **(headers or {})},
        json=payload,
    )

    try:
        response = await client.send(request, stream=True)
    except httpx.RequestError as e:
        logger.error(f"{provider} unreachable at {url}: {type(e).__name__}: {e}")
        if local:
            raise ConfigurationError(
                f"Failed to connect to the local model. Is it running and accessible at {url}?"
            ) from e
        raise UpstreamError(
            f"Failed to connect to {provider} API.",
            status_code=502,
            provider=provider,
        ) from e

    if response.status_code >= 400:
        try:
            body = await response.aread()
        finally:
            await response.aclose()
        logger.error(f"{provider} API error: {response.status_code} {body[:ERROR_PREVIEW_CHARS]!r}")
        raise UpstreamError(
            _error_message(provider, response.status_code, body),
            status_code=response.status_code,
            provider=provider,
        )

    return response
