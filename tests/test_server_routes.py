from __future__ import annotations

import importlib
import json
import sys
from pathlib import Path
from types import ModuleType
from typing import Any

import httpx
import pytest
from fastapi.testclient import TestClient

MODULE_NAME = "src.gateway.server"
KEYS = ("sk-route-aaaa", "sk-route-bbbb")


def load_server(config_dir: Path, monkeypatch: pytest.MonkeyPatch, *, keys: tuple[str, ...] = KEYS) -> ModuleType:
    monkeypatch.setenv("GATEWAY_CONFIG_DIR", str(config_dir))
    monkeypatch.setenv("GATEWAY_METRICS_DIR", str(config_dir / "metrics"))
    monkeypatch.delenv("GATEWAY_METRICS_EXPORT_MODE", raising=False)
    monkeypatch.delenv("GATEWAY_OTEL_METRICS_EXPORT", raising=False)
    if keys:
        monkeypatch.setenv("GATEWAY_API_KEYS", ",".join(keys))
    else:
        monkeypatch.delenv("GATEWAY_API_KEYS", raising=False)
    project_root = Path(__file__).resolve().parents[1]
    if str(project_root) not in sys.path:
        sys.path.insert(0, str(project_root))
    sys.modules.pop(MODULE_NAME, None)
    importlib.invalidate_caches()
    return importlib.import_module(MODULE_NAME)


def install_upstream(module: ModuleType, handler: Any) -> None:
    from src.gateway.dispatcher import RequestDispatcher

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    module.dispatcher = RequestDispatcher.from_config(module.cfg, client=client, metrics=module.metrics)


def sse_body(*texts: str) -> bytes:
    frames = [
        "data: " + json.dumps({"choices": [{"index": 0, "delta": {"content": text}}]}) + "\n\n"
        for text in texts
    ]
    frames.append("data: [DONE]\n\n")
    return "".join(frames).encode("utf-8")


def parse_events(body: str) -> list[tuple[str | None, str]]:
    events: list[tuple[str | None, str]] = []
    for block in body.strip().split("\n\n"):
        name: str | None = None
        data = ""
        for line in block.splitlines():
            if line.startswith("event: "):
                name = line[len("event: "):]
            elif line.startswith("data: "):
                data = line[len("data: "):]
        events.append((name, data))
    return events


@pytest.fixture(name="config_dir")
def fixture_config_dir(tmp_path: Path) -> Path:
    (tmp_path / "upstream.toml").write_text(
        """
[upstream]
base_url = "https://llm.example.test/v1"
model = "route-model"
""".strip()
    )
    (tmp_path / "policy.yaml").write_text(
        """
timeouts:
  base_s: 2
  backoff_step_s: 1
  max_attempts: 1
  idle_s: 1
""".strip()
    )
    return tmp_path


def test_healthz_reports_upstream(config_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    module = load_server(config_dir, monkeypatch)
    client = TestClient(module.app)

    response = client.get("/healthz")

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "ok"
    assert payload["model"] == "route-model"
    assert payload["endpoint"] == "https://llm.example.test/v1/chat/completions"
    assert payload["credentials"] == 2
    assert len(payload["config_sources"]) == 2


def test_generate_streams_fragments_and_result(config_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    module = load_server(config_dir, monkeypatch)

    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content)["stream"] is True
        return httpx.Response(200, content=sse_body("Hel", "lo"))

    install_upstream(module, handler)
    client = TestClient(module.app)

    response = client.post("/v1/generate", json={"prompt": "hi"}, headers={"x-gateway-session": "chat-1"})

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["x-gateway-session"] == "chat-1"
    events = parse_events(response.text)
    assert events[0] == ("fragment", json.dumps({"text": "Hel"}))
    assert events[1] == ("fragment", json.dumps({"text": "lo"}))
    name, data = events[2]
    assert name == "result"
    result = json.loads(data)
    assert result["status"] == "succeeded"
    assert result["text"] == "Hello"
    assert events[-1] == (None, "[DONE]")
    assert "chat-1" not in module.slots


def test_generate_signals_reset_before_retrying_on_next_credential(
    config_dir: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    module = load_server(config_dir, monkeypatch)

    async def cut_short() -> Any:
        yield b"data: " + json.dumps({"choices": [{"index": 0, "delta": {"content": "draft"}}]}).encode() + b"\n\n"
        raise httpx.ReadError("connection reset")

    def handler(request: httpx.Request) -> httpx.Response:
        if request.headers["Authorization"] == f"Bearer {KEYS[0]}":
            return httpx.Response(200, content=cut_short())
        return httpx.Response(200, content=sse_body("final"))

    install_upstream(module, handler)
    client = TestClient(module.app)

    response = client.post("/v1/generate", json={"prompt": "hi"})

    events = parse_events(response.text)
    assert [name for name, _ in events] == ["fragment", "reset", "fragment", "result", None]
    assert json.loads(events[0][1]) == {"text": "draft"}
    assert json.loads(events[2][1]) == {"text": "final"}
    result = json.loads(events[3][1])
    assert result["text"] == "final"
    assert result["restarts"] == 1


def test_stream_starts_nothing_until_the_body_is_read(config_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    module = load_server(config_dir, monkeypatch)
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, content=sse_body("unused"))

    install_upstream(module, handler)

    response = module._stream_generation("hi", req_id="req-idle", session="chat-idle")

    assert response.headers["x-gateway-session"] == "chat-idle"
    assert "chat-idle" not in module.slots
    assert seen == []


def test_generate_buffered_returns_json(config_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    module = load_server(config_dir, monkeypatch)

    def handler(request: httpx.Request) -> httpx.Response:
        assert json.loads(request.content)["stream"] is False
        return httpx.Response(200, json={"choices": [{"message": {"content": "whole"}, "finish_reason": "stop"}]})

    install_upstream(module, handler)
    client = TestClient(module.app)

    response = client.post("/v1/generate", json={"prompt": "hi", "stream": False})

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "succeeded"
    assert payload["text"] == "whole"
    assert payload["finish_reason"] == "stop"
    assert response.headers["x-gateway-calls"] == "1"


def test_generate_exhausted_returns_bad_gateway(config_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    module = load_server(config_dir, monkeypatch)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "invalid key"}})

    install_upstream(module, handler)
    client = TestClient(module.app)

    response = client.post("/v1/generate", json={"prompt": "hi", "stream": False})

    assert response.status_code == 502
    error = response.json()["error"]
    assert error["type"] == "exhausted"
    assert [failure["credential"] for failure in error["failures"]] == ["****aaaa", "****bbbb"]
    assert "sk-route" not in response.text


def test_generate_without_credentials_is_unavailable(config_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    module = load_server(config_dir, monkeypatch, keys=())
    client = TestClient(module.app)

    response = client.post("/v1/generate", json={"prompt": "hi"})

    assert response.status_code == 503
    assert response.json()["error"]["type"] == "configuration_error"


def test_generate_rejects_empty_prompt(config_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    module = load_server(config_dir, monkeypatch)
    client = TestClient(module.app)

    response = client.post("/v1/generate", json={"prompt": ""})

    assert response.status_code == 422


def test_cancel_session_raises_live_token(config_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    module = load_server(config_dir, monkeypatch)
    client = TestClient(module.app)
    token = module.slots.begin("chat-9")

    response = client.post("/v1/sessions/chat-9/cancel")

    assert response.status_code == 200
    assert response.json() == {"session": "chat-9", "cancelled": True}
    assert token.cancelled
    missing = client.post("/v1/sessions/chat-9/cancel")
    assert missing.json() == {"session": "chat-9", "cancelled": False}


def test_metrics_endpoint_exposes_prometheus_text(config_dir: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    module = load_server(config_dir, monkeypatch)

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"choices": [{"message": {"content": "ok"}}]})

    install_upstream(module, handler)
    client = TestClient(module.app)
    client.post("/v1/generate", json={"prompt": "hi", "stream": False})

    response = client.get("/metrics")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert 'gateway_requests_total{status="succeeded",credential="****aaaa"} 1' in response.text
