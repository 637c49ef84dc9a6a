from __future__ import annotations

import asyncio
import inspect
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, Union

import httpx

from .cancellation import CancellationToken, await_cancellable
from .config import DEFAULT_MODEL, DEFAULT_TEMPERATURE, MAX_SAFE_OUTPUT_TOKENS, GatewayConfig
from .credentials import CredentialEntry, CredentialPool
from .decoder import (
    ChunkedEventDecoder,
    FinishReason,
    TextFragment,
    classify_finish_reason,
    extract_message_text,
)
from .errors import (
    AttemptTimeoutError,
    CancelledByCaller,
    CredentialFailure,
    ExhaustedError,
    GatewayError,
    ProtocolError,
)
from .fallback import FallbackInvoker
from .metrics import MetricsLogger
from .timeouts import TimeoutPolicy
from .transport import HttpTransport
from .types import (
    AttemptMode,
    AttemptOutcome,
    ChatPayload,
    GenerationResult,
    GenerationStatus,
    RequestAttempt,
)

logger = logging.getLogger(__name__)

FragmentCallback = Callable[[str], Union[None, Awaitable[None]]]
RestartCallback = Callable[[], Union[None, Awaitable[None]]]

TRUNCATION_WARNING = "output truncated by the upstream (finish_reason=length)"


def _log_request_event(
    level: int,
    *,
    event: str,
    req_id: str,
    credential: str | None,
    calls: int,
    detail: str | None = None,
) -> None:
    credential_value = credential or "none"
    message = f"{event} req_id={req_id} credential={credential_value} calls={calls}"
    if detail:
        message = f"{message} detail={detail}"
    logger.log(level, message)


class _FragmentSink:
    """Hands decoded text to the caller until the token is raised.

    ``pending`` counts fragments of the current attempt; a new attempt after
    delivered fragments tells the caller to discard them via ``on_restart``.
    """

    def __init__(
        self,
        callback: FragmentCallback | None,
        token: CancellationToken,
        restart_callback: RestartCallback | None = None,
    ) -> None:
        self._callback = callback
        self._restart_callback = restart_callback
        self._token = token
        self.delivered = 0
        self.pending = 0
        self.restarts = 0

    async def deliver(self, text: str) -> None:
        self._token.raise_if_cancelled()
        if not text:
            return
        self.delivered += 1
        self.pending += 1
        if self._callback is None:
            return
        result = self._callback(text)
        if inspect.isawaitable(result):
            await result

    async def begin_attempt(self) -> bool:
        if not self.pending:
            return False
        self._token.raise_if_cancelled()
        self.pending = 0
        self.restarts += 1
        if self._restart_callback is not None:
            result = self._restart_callback()
            if inspect.isawaitable(result):
                await result
        return True


@dataclass
class _RequestContext:
    req_id: str
    prompt: str
    mode: AttemptMode
    token: CancellationToken
    sink: _FragmentSink
    started: float = field(default_factory=time.perf_counter)
    calls: int = 0
    failures: list[CredentialFailure] = field(default_factory=list)

    @property
    def latency_ms(self) -> int:
        return int((time.perf_counter() - self.started) * 1000)


class RequestDispatcher:
    """Turns one logical generation request into sequential upstream attempts.

    Credentials are tried in rotation order. A timeout retries the same
    credential with a longer deadline until the policy bound; any other
    failure moves on to the next credential. Only when every credential has
    failed does the caller see an error, as a single ``ExhaustedError``.
    """

    def __init__(
        self,
        pool: CredentialPool,
        transport: HttpTransport,
        *,
        policy: TimeoutPolicy | None = None,
        model: str = DEFAULT_MODEL,
        temperature: float = DEFAULT_TEMPERATURE,
        max_output_tokens: int = MAX_SAFE_OUTPUT_TOKENS,
        metrics: MetricsLogger | None = None,
    ) -> None:
        self.pool = pool
        self.transport = transport
        self.policy = policy or TimeoutPolicy()
        self.model = model
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.metrics = metrics
        self.fallback = FallbackInvoker(self._run_buffered)

    @classmethod
    def from_config(
        cls,
        cfg: GatewayConfig,
        *,
        client: httpx.AsyncClient | None = None,
        metrics: MetricsLogger | None = None,
    ) -> "RequestDispatcher":
        return cls(
            cfg.credential_pool(),
            HttpTransport(cfg.upstream.base_url, client=client),
            policy=cfg.timeouts,
            model=cfg.upstream.model,
            temperature=cfg.defaults.temperature,
            max_output_tokens=cfg.defaults.max_output_tokens,
            metrics=metrics,
        )

    async def aclose(self) -> None:
        await self.transport.aclose()

    async def __aenter__(self) -> "RequestDispatcher":
        return self

    async def __aexit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        await self.aclose()

    def _payload(self, prompt: str, *, stream: bool) -> ChatPayload:
        return ChatPayload.for_prompt(
            prompt,
            model=self.model,
            temperature=self.temperature,
            max_tokens=self.max_output_tokens,
            stream=stream,
        )

    async def generate(
        self,
        prompt: str,
        on_fragment: FragmentCallback | None = None,
        cancel_token: CancellationToken | None = None,
        *,
        mode: AttemptMode = "stream",
        req_id: str | None = None,
        on_restart: RestartCallback | None = None,
    ) -> GenerationResult:
        entries = self.pool.entries()
        token = cancel_token or CancellationToken()
        ctx = _RequestContext(
            req_id=req_id or str(uuid.uuid4()),
            prompt=prompt,
            mode=mode,
            token=token,
            sink=_FragmentSink(on_fragment, token, on_restart),
        )
        try:
            for entry in entries:
                result = await self._dispatch_credential(ctx, entry)
                if result is not None:
                    return result
        except CancelledByCaller as exc:
            return await self._cancelled(ctx, str(exc))
        return await self._exhausted(ctx)

    async def _dispatch_credential(
        self, ctx: _RequestContext, entry: CredentialEntry
    ) -> Optional[GenerationResult]:
        attempt_index = 0
        while True:
            ctx.token.raise_if_cancelled()
            attempt = RequestAttempt(
                entry=entry,
                attempt_index=attempt_index,
                deadline_s=self.policy.deadline(attempt_index),
                mode=ctx.mode,
                token=ctx.token,
            )
            try:
                outcome, used_fallback = await self._run_attempt(ctx, attempt)
            except AttemptTimeoutError as exc:
                if self.policy.should_retry(attempt_index):
                    _log_request_event(
                        logging.WARNING,
                        event="generate.retry",
                        req_id=ctx.req_id,
                        credential=entry.redacted,
                        calls=ctx.calls,
                        detail=f"attempt={attempt_index} {exc}",
                    )
                    attempt_index += 1
                    continue
                self._record_failure(ctx, entry, exc)
                return None
            except GatewayError as exc:
                self._record_failure(ctx, entry, exc)
                return None
            ctx.token.raise_if_cancelled()
            return await self._succeeded(ctx, entry, outcome, used_fallback)

    async def _run_attempt(
        self, ctx: _RequestContext, attempt: RequestAttempt
    ) -> tuple[AttemptOutcome, bool]:
        if await ctx.sink.begin_attempt():
            _log_request_event(
                logging.WARNING,
                event="generate.restart",
                req_id=ctx.req_id,
                credential=attempt.entry.redacted,
                calls=ctx.calls,
                detail=f"restarts={ctx.sink.restarts}",
            )
        ctx.calls += 1
        if attempt.mode == "buffered":
            outcome = await self._run_buffered(ctx.prompt, attempt)
            await ctx.sink.deliver(outcome.text)
            return outcome, False
        outcome = await self._run_stream(ctx, attempt)
        if not self.fallback.should_invoke(outcome):
            return outcome, False
        ctx.token.raise_if_cancelled()
        ctx.calls += 1
        outcome = await self.fallback.invoke(ctx.prompt, attempt)
        await ctx.sink.deliver(outcome.text)
        return outcome, True

    async def _run_stream(self, ctx: _RequestContext, attempt: RequestAttempt) -> AttemptOutcome:
        loop = asyncio.get_running_loop()
        started = loop.time()
        deadline_at = started + attempt.deadline_s
        handle = await await_cancellable(
            self.transport.open_stream(attempt, self._payload(ctx.prompt, stream=True)),
            attempt.token,
            attempt.deadline_s,
            what="stream connect",
        )
        decoder = ChunkedEventDecoder()
        last_fragment_at = started
        try:
            while not decoder.done:
                now = loop.time()
                budget, idle = self.policy.next_wait(
                    remaining_s=deadline_at - now,
                    idle_remaining_s=last_fragment_at + self.policy.idle_timeout_s - now,
                )
                chunk = await await_cancellable(
                    handle.next_chunk(),
                    attempt.token,
                    budget,
                    idle=idle,
                    what="stream read",
                )
                events = decoder.close() if chunk is None else decoder.feed(chunk)
                for event in events:
                    if isinstance(event, TextFragment):
                        await ctx.sink.deliver(event.text)
                        last_fragment_at = loop.time()
                if chunk is None:
                    break
        finally:
            await handle.aclose()
        finish = decoder.finish
        return AttemptOutcome(
            text=decoder.text,
            fragments=decoder.fragments,
            finish_reason=finish.raw if finish is not None else None,
            truncated=decoder.truncated,
        )

    async def _run_buffered(self, prompt: str, attempt: RequestAttempt) -> AttemptOutcome:
        body = await await_cancellable(
            self.transport.request_json(attempt, self._payload(prompt, stream=False)),
            attempt.token,
            attempt.deadline_s,
            what="request",
        )
        text, finish = extract_message_text(body)
        if not text:
            raise ProtocolError("response body contained no text")
        truncated = finish is not None and classify_finish_reason(finish) is FinishReason.LENGTH
        if truncated:
            logger.warning("generate.truncated finish_reason=length mode=buffered")
        return AttemptOutcome(text=text, fragments=1, finish_reason=finish, truncated=truncated)

    def _record_failure(
        self, ctx: _RequestContext, entry: CredentialEntry, exc: GatewayError
    ) -> None:
        failure = CredentialFailure(
            index=entry.index,
            credential=entry.redacted,
            kind=exc.kind,
            message=str(exc) or exc.__class__.__name__,
        )
        ctx.failures.append(failure)
        _log_request_event(
            logging.WARNING,
            event="generate.credential_failed",
            req_id=ctx.req_id,
            credential=entry.redacted,
            calls=ctx.calls,
            detail=f"{failure.kind.value}: {failure.message}",
        )

    async def _succeeded(
        self,
        ctx: _RequestContext,
        entry: CredentialEntry,
        outcome: AttemptOutcome,
        used_fallback: bool,
    ) -> GenerationResult:
        self.pool.advance(entry.index)
        result = GenerationResult(
            status=GenerationStatus.SUCCEEDED,
            text=outcome.text,
            finish_reason=outcome.finish_reason,
            truncated=outcome.truncated,
            credential_index=entry.index,
            calls=ctx.calls,
            fragments=ctx.sink.delivered,
            restarts=ctx.sink.restarts,
            used_fallback=used_fallback,
        )
        if outcome.truncated:
            result.warnings.append(TRUNCATION_WARNING)
        _log_request_event(
            logging.WARNING if ctx.calls > 1 else logging.INFO,
            event="generate.success",
            req_id=ctx.req_id,
            credential=entry.redacted,
            calls=ctx.calls,
            detail="fallback" if used_fallback else None,
        )
        await self._write_metrics(ctx, result, credential=entry.redacted)
        return result

    async def _cancelled(self, ctx: _RequestContext, reason: str) -> GenerationResult:
        result = GenerationResult(
            status=GenerationStatus.CANCELLED,
            calls=ctx.calls,
            fragments=ctx.sink.delivered,
            restarts=ctx.sink.restarts,
        )
        _log_request_event(
            logging.INFO,
            event="generate.cancelled",
            req_id=ctx.req_id,
            credential=None,
            calls=ctx.calls,
            detail=reason,
        )
        await self._write_metrics(ctx, result, credential=None)
        return result

    async def _exhausted(self, ctx: _RequestContext) -> GenerationResult:
        error = ExhaustedError(ctx.failures)
        result = GenerationResult(
            status=GenerationStatus.EXHAUSTED,
            calls=ctx.calls,
            fragments=ctx.sink.delivered,
            restarts=ctx.sink.restarts,
            error=error,
        )
        _log_request_event(
            logging.ERROR,
            event="generate.exhausted",
            req_id=ctx.req_id,
            credential=None,
            calls=ctx.calls,
            detail=str(error),
        )
        await self._write_metrics(ctx, result, credential=None)
        return result

    async def _write_metrics(
        self, ctx: _RequestContext, result: GenerationResult, *, credential: str | None
    ) -> None:
        if self.metrics is None:
            return
        record: dict[str, Any] = {
            "req_id": ctx.req_id,
            "ts": time.time(),
            "mode": ctx.mode,
            "status": result.status.value,
            "credential": credential,
            "calls": result.calls,
            "fragments": result.fragments,
            "finish_reason": result.finish_reason,
            "truncated": result.truncated,
            "used_fallback": result.used_fallback,
            "restarts": result.restarts,
            "latency_ms": ctx.latency_ms,
            "error": str(result.error) if result.error is not None else None,
        }
        await self.metrics.write(record)
