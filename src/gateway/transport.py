from __future__ import annotations

import logging
from typing import Any
from urllib.parse import urlparse, urlunparse

import httpx

from .errors import (
    AttemptTimeoutError,
    ConfigurationError,
    ProtocolError,
    TransportError,
    http_status_error_details,
)
from .types import ChatPayload, RequestAttempt

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_S = 10.0
WRITE_TIMEOUT_S = 30.0
POOL_TIMEOUT_S = 30.0


def build_endpoint(base_url: str) -> str:
    raw_base = base_url.strip()
    if not raw_base:
        raise ConfigurationError("upstream base_url is empty")
    parsed = urlparse(raw_base)
    if not parsed.scheme or not parsed.netloc:
        raise ConfigurationError(f"upstream base_url is not absolute: {raw_base!r}")
    path_segments = [segment for segment in (parsed.path or "").split("/") if segment]
    lowered_segments = [segment.lower() for segment in path_segments]
    if lowered_segments[-2:] == ["chat", "completions"]:
        suffix_segments: list[str] = []
    elif lowered_segments[-1:] == ["chat"]:
        suffix_segments = ["completions"]
    else:
        suffix_segments = ["chat", "completions"]
    new_path = "/" + "/".join(path_segments + suffix_segments)
    return urlunparse(parsed._replace(path=new_path))


def _headers(attempt: RequestAttempt) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "Authorization": attempt.authorization,
    }


async def _raise_for_status(response: httpx.Response) -> None:
    if response.is_success:
        return
    if not response.is_closed:
        await response.aread()
    status, message = http_status_error_details(response)
    logger.debug(f"transport.status_error status={status} url={response.request.url}")
    raise TransportError(f"status {status}: {message}", status=status)


def _map_http_error(exc: httpx.HTTPError, *, what: str) -> Exception:
    if isinstance(exc, httpx.TimeoutException):
        return AttemptTimeoutError(f"{what} timed out: {exc}", timeout_s=0.0)
    return TransportError(f"{what} failed: {exc.__class__.__name__}: {exc}".rstrip(": "))


class StreamHandle:
    def __init__(self, response: httpx.Response) -> None:
        self.response = response
        self._chunks = response.aiter_bytes()

    @property
    def status_code(self) -> int:
        return self.response.status_code

    async def next_chunk(self) -> bytes | None:
        try:
            return await self._chunks.__anext__()
        except StopAsyncIteration:
            return None
        except httpx.HTTPError as exc:
            raise _map_http_error(exc, what="stream read") from exc

    async def aclose(self) -> None:
        await self.response.aclose()


class HttpTransport:
    """Chat-completions transport with a buffered and a streamed mode.

    Deadlines and cancellation are applied by the caller; this class only maps
    httpx failures onto the gateway error taxonomy.
    """

    def __init__(self, base_url: str, *, client: httpx.AsyncClient | None = None) -> None:
        self.endpoint = build_endpoint(base_url)
        self._client = client
        self._owns_client = client is None

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    None,
                    connect=CONNECT_TIMEOUT_S,
                    write=WRITE_TIMEOUT_S,
                    pool=POOL_TIMEOUT_S,
                )
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def __aenter__(self) -> "HttpTransport":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.aclose()

    async def request_json(self, attempt: RequestAttempt, payload: ChatPayload) -> Any:
        client = self._get_client()
        try:
            response = await client.post(
                self.endpoint,
                headers=_headers(attempt),
                json=payload.model_dump(mode="json"),
            )
        except httpx.HTTPError as exc:
            raise _map_http_error(exc, what="request") from exc
        await _raise_for_status(response)
        try:
            return response.json()
        except ValueError as exc:
            raise ProtocolError(f"response body is not valid JSON: {exc}") from exc

    async def open_stream(self, attempt: RequestAttempt, payload: ChatPayload) -> StreamHandle:
        client = self._get_client()
        request = client.build_request(
            "POST",
            self.endpoint,
            headers={**_headers(attempt), "Accept": "text/event-stream"},
            json=payload.model_dump(mode="json"),
        )
        try:
            response = await client.send(request, stream=True)
        except httpx.HTTPError as exc:
            raise _map_http_error(exc, what="stream connect") from exc
        try:
            await _raise_for_status(response)
        except BaseException:
            await response.aclose()
            raise
        return StreamHandle(response)
