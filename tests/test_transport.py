import json
from typing import Any

import httpx
import pytest

from src.gateway.cancellation import CancellationToken
from src.gateway.credentials import CredentialEntry
from src.gateway.errors import (
    AttemptTimeoutError,
    ConfigurationError,
    ProtocolError,
    TransportError,
)
from src.gateway.transport import HttpTransport, build_endpoint
from src.gateway.types import ChatPayload, RequestAttempt

BASE_URL = "https://llm.example.test/compatible-mode/v1"


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


def make_attempt(mode: str = "buffered") -> RequestAttempt:
    return RequestAttempt(
        entry=CredentialEntry("sk-test-1234", 0),
        attempt_index=0,
        deadline_s=1.0,
        mode=mode,  # type: ignore[arg-type]
        token=CancellationToken(),
    )


def make_payload(*, stream: bool) -> ChatPayload:
    return ChatPayload.for_prompt("ping", model="qwen3-max", temperature=0.6, max_tokens=64, stream=stream)


def make_transport(handler: Any) -> HttpTransport:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpTransport(BASE_URL, client=client)


@pytest.mark.parametrize(
    ("base_url", "expected"),
    [
        ("https://api.example.com/v1", "https://api.example.com/v1/chat/completions"),
        ("https://api.example.com/v1/", "https://api.example.com/v1/chat/completions"),
        ("https://api.example.com/v1/chat", "https://api.example.com/v1/chat/completions"),
        (
            "https://api.example.com/v1/chat/completions",
            "https://api.example.com/v1/chat/completions",
        ),
        ("http://localhost:8080", "http://localhost:8080/chat/completions"),
    ],
)
def test_build_endpoint(base_url: str, expected: str) -> None:
    assert build_endpoint(base_url) == expected


@pytest.mark.parametrize("base_url", ["", "   ", "api.example.com/v1"])
def test_build_endpoint_rejects_invalid_base_url(base_url: str) -> None:
    with pytest.raises(ConfigurationError):
        build_endpoint(base_url)


@pytest.mark.anyio
async def test_request_json_sends_bearer_and_payload() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"choices": [{"message": {"content": "pong"}}]})

    transport = make_transport(handler)
    body = await transport.request_json(make_attempt(), make_payload(stream=False))

    assert body["choices"][0]["message"]["content"] == "pong"
    request = seen[0]
    assert str(request.url) == f"{BASE_URL}/chat/completions"
    assert request.headers["Authorization"] == "Bearer sk-test-1234"
    sent = json.loads(request.content)
    assert sent == {
        "model": "qwen3-max",
        "messages": [{"role": "user", "content": "ping"}],
        "temperature": 0.6,
        "max_tokens": 64,
        "stream": False,
    }


@pytest.mark.anyio
async def test_request_json_maps_status_error_message() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "Invalid API key"}})

    transport = make_transport(handler)
    with pytest.raises(TransportError) as excinfo:
        await transport.request_json(make_attempt(), make_payload(stream=False))
    assert excinfo.value.status == 401
    assert "Invalid API key" in str(excinfo.value)


@pytest.mark.anyio
async def test_request_json_rejects_non_json_body() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<html>gateway</html>")

    transport = make_transport(handler)
    with pytest.raises(ProtocolError):
        await transport.request_json(make_attempt(), make_payload(stream=False))


@pytest.mark.anyio
async def test_connection_failure_is_transport_error() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    transport = make_transport(handler)
    with pytest.raises(TransportError, match="connection refused"):
        await transport.request_json(make_attempt(), make_payload(stream=False))


@pytest.mark.anyio
async def test_httpx_timeout_is_attempt_timeout() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectTimeout("too slow", request=request)

    transport = make_transport(handler)
    with pytest.raises(AttemptTimeoutError):
        await transport.request_json(make_attempt(), make_payload(stream=False))


@pytest.mark.anyio
async def test_open_stream_yields_raw_chunks_until_eof() -> None:
    async def body():
        yield b"data: {\"choices\":[{\"delta\":{\"content\":\"a\"}}]}\n\n"
        yield b"data: [DONE]\n\n"

    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=body(), headers={"content-type": "text/event-stream"})

    transport = make_transport(handler)
    handle = await transport.open_stream(make_attempt("stream"), make_payload(stream=True))
    chunks = []
    while True:
        chunk = await handle.next_chunk()
        if chunk is None:
            break
        chunks.append(chunk)
    await handle.aclose()

    assert b"".join(chunks).endswith(b"data: [DONE]\n\n")
    assert seen[0].headers["Accept"] == "text/event-stream"
    assert json.loads(seen[0].content)["stream"] is True


@pytest.mark.anyio
async def test_open_stream_raises_on_error_status() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"message": "rate limited"})

    transport = make_transport(handler)
    with pytest.raises(TransportError) as excinfo:
        await transport.open_stream(make_attempt("stream"), make_payload(stream=True))
    assert excinfo.value.status == 429
    assert "rate limited" in str(excinfo.value)


@pytest.mark.anyio
async def test_transport_closes_only_owned_client() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(204)))
    async with HttpTransport(BASE_URL, client=client):
        pass
    assert not client.is_closed
    await client.aclose()
