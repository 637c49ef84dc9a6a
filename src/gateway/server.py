import asyncio
import json
import logging
import os
import uuid
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.responses import JSONResponse, StreamingResponse

from .cancellation import CancellationToken, GenerationSlots
from .config import load_config
from .dispatcher import RequestDispatcher
from .errors import ConfigurationError
from .metrics import PROM_CONTENT_TYPE, MetricsLogger
from .types import GenerateRequest, GenerationResult, GenerationStatus

logger = logging.getLogger(__name__)

app = FastAPI(title="llm-gateway")

CONFIG_DIR = os.environ.get(
    "GATEWAY_CONFIG_DIR",
    os.path.join(os.path.dirname(os.path.dirname(__file__)), "..", "config"),
)
METRICS_DIR = os.environ.get("GATEWAY_METRICS_DIR", "metrics")
SESSION_HEADER = "x-gateway-session"
BAD_GATEWAY_STATUS = 502
SERVICE_UNAVAILABLE_STATUS = 503
DONE_FRAME = b"data: [DONE]\n\n"

cfg = load_config(CONFIG_DIR)
metrics = MetricsLogger(METRICS_DIR)
dispatcher = RequestDispatcher.from_config(cfg, metrics=metrics)
slots = GenerationSlots()


@app.on_event("shutdown")
async def _close_dispatcher() -> None:
    await dispatcher.aclose()
    await metrics.flush()


def _make_response_headers(*, req_id: str, session: str, result: GenerationResult | None = None) -> dict[str, str]:
    headers = {
        "x-gateway-request-id": req_id,
        "x-gateway-session": session,
    }
    if result is not None:
        headers["x-gateway-calls"] = str(result.calls)
    return headers


def _make_error_body(*, message: str, error_type: str) -> dict[str, Any]:
    return {"error": {"message": message, "type": error_type}}


def _encode_event(event: str, payload: Any) -> bytes:
    data_text = json.dumps(payload, ensure_ascii=False)
    return f"event: {event}\ndata: {data_text}\n\n".encode("utf-8")


def _status_code_for(result: GenerationResult) -> int:
    if result.status is GenerationStatus.EXHAUSTED:
        return BAD_GATEWAY_STATUS
    return 200


@app.get("/healthz")
async def healthz() -> dict[str, Any]:
    return {
        "status": "ok",
        "model": dispatcher.model,
        "endpoint": dispatcher.transport.endpoint,
        "credentials": len(dispatcher.pool),
        "active_sessions": len(slots),
        "config_sources": list(cfg.sources),
    }


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    return Response(metrics.render_prometheus(), media_type=PROM_CONTENT_TYPE)


@app.post("/v1/sessions/{session}/cancel")
async def cancel_session(session: str) -> dict[str, Any]:
    cancelled = slots.cancel(session)
    if cancelled:
        logger.info(f"session.cancel session={session}")
    return {"session": session, "cancelled": cancelled}


@app.post("/v1/generate")
async def generate(req: Request, body: GenerateRequest):
    req_id = str(uuid.uuid4())
    session = req.headers.get(SESSION_HEADER) or req_id
    if not len(dispatcher.pool):
        error = ConfigurationError("no API credentials configured")
        return JSONResponse(
            _make_error_body(message=str(error), error_type=error.kind.value),
            status_code=SERVICE_UNAVAILABLE_STATUS,
            headers=_make_response_headers(req_id=req_id, session=session),
        )
    if not body.stream:
        token = slots.begin(session)
        try:
            result = await dispatcher.generate(
                body.prompt, None, token, mode="buffered", req_id=req_id
            )
        finally:
            slots.release(session, token)
        return JSONResponse(
            result.to_payload(),
            status_code=_status_code_for(result),
            headers=_make_response_headers(req_id=req_id, session=session, result=result),
        )

    return _stream_generation(body.prompt, req_id=req_id, session=session)


def _stream_generation(prompt: str, *, req_id: str, session: str) -> StreamingResponse:
    queue: asyncio.Queue[tuple[str, Any]] = asyncio.Queue()

    async def on_fragment(text: str) -> None:
        await queue.put(("fragment", {"text": text}))

    async def on_restart() -> None:
        await queue.put(("reset", {"reason": "attempt restarted"}))

    async def producer(token: CancellationToken) -> None:
        try:
            result = await dispatcher.generate(
                prompt, on_fragment, token, req_id=req_id, on_restart=on_restart
            )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception(f"generate.failed req_id={req_id}")
            await queue.put(
                ("error", _make_error_body(message=str(exc) or "gateway error", error_type="gateway_error"))
            )
        else:
            await queue.put(("result", result.to_payload()))
        finally:
            await queue.put(("done", None))

    async def event_source() -> Any:
        token = slots.begin(session)
        producer_task = asyncio.create_task(producer(token))
        try:
            while True:
                kind, payload = await queue.get()
                if kind == "done":
                    yield DONE_FRAME
                    break
                yield _encode_event(kind, payload)
        finally:
            if not producer_task.done():
                token.cancel("client disconnected")
            try:
                await producer_task
            except asyncio.CancelledError:
                pass
            slots.release(session, token)

    response = StreamingResponse(event_source(), media_type="text/event-stream")
    response.headers.update(_make_response_headers(req_id=req_id, session=session))
    return response
