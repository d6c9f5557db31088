from __future__ import annotations

import json
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Sequence

import httpx

from chatrelay.logging import get_logger
from chatrelay.service.errors import UpstreamError
from chatrelay.service.history import HistoryEntry

logger = get_logger(__name__)

IMAGE_DATA_PREFIX = "data:image/jpeg;base64,"
STREAM_DATA_PREFIX = "data:"
STREAM_DONE_SENTINEL = "[DONE]"


@dataclass(frozen=True)
class ModelInfo:
    id: str
    name: str
    free: bool = False
    supports_vision: bool = False


def to_data_uri(image: str) -> str:
    """Return ``image`` as a data URI, prefixing raw base64 as JPEG."""
    image = image.strip()
    if image.startswith("data:"):
        return image
    return f"{IMAGE_DATA_PREFIX}{image}"


def build_chat_request(
    message: str,
    model: str,
    history: Sequence[HistoryEntry],
    image: Optional[str] = None,
    *,
    stream: bool = False,
) -> dict[str, Any]:
    """Build the ``/chat/completions`` payload: prior turns plus the current one."""
    messages: list[dict[str, Any]] = [entry.as_message() for entry in history]
    if image:
        content: Any = [
            {"type": "text", "text": message},
            {"type": "image_url", "image_url": {"url": to_data_uri(image)}},
        ]
    else:
        content = message
    messages.append({"role": "user", "content": content})
    body: dict[str, Any] = {"model": model, "messages": messages}
    if stream:
        body["stream"] = True
    return body


def parse_stream_line(line: str) -> Optional[dict[str, Any]]:
    """Decode one event-stream line into its JSON chunk.

    Blank lines, ``:`` comments, the ``[DONE]`` sentinel and undecodable
    payloads yield ``None``.
    """
    line = line.strip()
    if not line or line.startswith(":"):
        return None
    if line.startswith(STREAM_DATA_PREFIX):
        line = line[len(STREAM_DATA_PREFIX):].strip()
    if not line or line == STREAM_DONE_SENTINEL:
        return None
    try:
        chunk = json.loads(line)
    except ValueError:
        logger.debug("completion_stream_line_undecodable", line=line[:200])
        return None
    return chunk if isinstance(chunk, dict) else None


def extract_delta(chunk: dict[str, Any]) -> Optional[str]:
    try:
        content = chunk["choices"][0]["delta"].get("content")
    except (KeyError, IndexError, TypeError, AttributeError):
        return None
    return content or None


def _upstream_message(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        text = response.text.strip()
        return text[:200] or None
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
    return None


class CompletionClient:
    """HTTP client for an OpenRouter-compatible chat completion API."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str,
        http_referer: Optional[str] = None,
        app_title: Optional[str] = None,
        timeout: float = 60.0,
        connect_timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.http_referer = http_referer
        self.app_title = app_title
        self.timeout = timeout
        self.connect_timeout = connect_timeout
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        if not api_key:
            logger.warning("completion_api_key_missing", base_url=self.base_url)

    @property
    def endpoint(self) -> str:
        return f"{self.base_url}/chat/completions"

    def _headers(self) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        if self.http_referer:
            headers["HTTP-Referer"] = self.http_referer
        if self.app_title:
            headers["X-Title"] = self.app_title
        return headers

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the shared HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=self.connect_timeout),
                headers=self._headers(),
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _status_error(self, response: httpx.Response, url: str) -> UpstreamError:
        upstream_message = _upstream_message(response)
        message = f"Upstream API error: {response.status_code} {response.reason_phrase}"
        if upstream_message:
            message += f" - {upstream_message}"
        message += f" from POST {url}"
        logger.error(
            "completion_api_error",
            status_code=response.status_code,
            upstream_message=upstream_message,
            endpoint=url,
        )
        return UpstreamError(
            message,
            upstream_status=response.status_code,
            upstream_message=upstream_message,
            endpoint=url,
        )

    async def complete(
        self,
        message: str,
        model: str,
        history: Sequence[HistoryEntry],
        image: Optional[str] = None,
    ) -> str:
        """Request a full response and return the assistant text."""
        body = build_chat_request(message, model, history, image)
        client = await self._get_client()
        try:
            response = await client.post(self.endpoint, json=body)
        except httpx.TimeoutException as e:
            logger.error("completion_timeout", model=model, endpoint=self.endpoint, error=str(e))
            raise UpstreamError(
                "Failed to communicate with upstream API: request timed out",
                endpoint=self.endpoint,
            ) from e
        except httpx.HTTPError as e:
            logger.error(
                "completion_transport_error",
                model=model,
                endpoint=self.endpoint,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise UpstreamError(
                f"Failed to communicate with upstream API: {e}", endpoint=self.endpoint
            ) from e

        if response.is_error:
            raise self._status_error(response, self.endpoint)
        try:
            content = response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            logger.error("completion_invalid_response", model=model, endpoint=self.endpoint)
            raise UpstreamError(
                "Failed to get response from upstream API: Invalid response format",
                endpoint=self.endpoint,
            ) from e
        return content or ""

    async def stream(
        self,
        message: str,
        model: str,
        history: Sequence[HistoryEntry],
        image: Optional[str] = None,
    ) -> AsyncIterator[str]:
        """Yield response text fragments as the upstream produces them.

        The HTTP response is closed when the generator finishes or is closed
        early by the consumer.
        """
        body = build_chat_request(message, model, history, image, stream=True)
        client = await self._get_client()
        try:
            async with client.stream(
                "POST",
                self.endpoint,
                json=body,
                headers={"Accept": "text/event-stream"},
            ) as response:
                if response.is_error:
                    await response.aread()
                    raise self._status_error(response, self.endpoint)
                async for line in response.aiter_lines():
                    chunk = parse_stream_line(line)
                    if chunk is None:
                        continue
                    error = chunk.get("error")
                    if error:
                        upstream_message = (
                            error.get("message") if isinstance(error, dict) else str(error)
                        )
                        upstream_status = error.get("code") if isinstance(error, dict) else None
                        logger.error(
                            "completion_stream_error_chunk",
                            model=model,
                            upstream_status=upstream_status,
                            upstream_message=upstream_message,
                        )
                        detail = (
                            f"{upstream_status} {upstream_message}"
                            if upstream_status
                            else str(upstream_message)
                        )
                        raise UpstreamError(
                            f"Streaming failed: {detail}",
                            upstream_status=upstream_status if isinstance(upstream_status, int) else None,
                            upstream_message=upstream_message,
                            endpoint=self.endpoint,
                        )
                    fragment = extract_delta(chunk)
                    if fragment:
                        yield fragment
        except UpstreamError:
            raise
        except httpx.TimeoutException as e:
            logger.error("completion_stream_timeout", model=model, endpoint=self.endpoint, error=str(e))
            raise UpstreamError(
                "Streaming failed: upstream timed out", endpoint=self.endpoint
            ) from e
        except httpx.HTTPError as e:
            logger.error(
                "completion_stream_transport_error",
                model=model,
                endpoint=self.endpoint,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise UpstreamError(f"Streaming failed: {e}", endpoint=self.endpoint) from e

    async def fetch_models(self) -> list[ModelInfo]:
        """List models advertised by the upstream ``/models`` endpoint."""
        client = await self._get_client()
        url = f"{self.base_url}/models"
        try:
            response = await client.get(url)
            response.raise_for_status()
            entries = response.json().get("data") or []
        except httpx.HTTPStatusError as e:
            logger.error("completion_models_api_error", status_code=e.response.status_code, endpoint=url)
            raise UpstreamError(
                f"Upstream API error: {e.response.status_code} from GET {url}",
                upstream_status=e.response.status_code,
                endpoint=url,
            ) from e
        except (httpx.HTTPError, ValueError, AttributeError) as e:
            logger.error("completion_models_fetch_failed", endpoint=url, error_type=type(e).__name__, error=str(e))
            raise UpstreamError(
                f"Failed to communicate with upstream API: {e}", endpoint=url
            ) from e

        models: list[ModelInfo] = []
        for entry in entries:
            if not isinstance(entry, dict) or not entry.get("id"):
                continue
            pricing = entry.get("pricing") or {}
            modalities = (entry.get("architecture") or {}).get("input_modalities") or []
            models.append(
                ModelInfo(
                    id=entry["id"],
                    name=entry.get("name") or entry["id"],
                    free=pricing.get("prompt") == "0" and pricing.get("completion") == "0",
                    supports_vision="image" in modalities,
                )
            )
        return models
