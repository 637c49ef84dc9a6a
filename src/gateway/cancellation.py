from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Awaitable, TypeVar

from .errors import AttemptTimeoutError, CancelledByCaller

logger = logging.getLogger(__name__)

T = TypeVar("T")


class CancellationToken:
    """One-shot cancellation signal shared by every attempt of a logical request."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise CancelledByCaller(self.reason or "cancelled")


def _close_unstarted(awaitable: Awaitable[Any]) -> None:
    if inspect.iscoroutine(awaitable):
        awaitable.close()


async def _discard(task: asyncio.Future[Any]) -> None:
    if not task.done():
        task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass
    except Exception as exc:
        logger.debug(f"cancellation.discard detail={exc}")


async def await_cancellable(
    awaitable: Awaitable[T],
    token: CancellationToken | None,
    timeout: float | None,
    *,
    idle: bool = False,
    what: str = "operation",
) -> T:
    if token is not None and token.cancelled:
        _close_unstarted(awaitable)
        raise CancelledByCaller(token.reason or "cancelled")
    operation: asyncio.Future[T] = asyncio.ensure_future(awaitable)
    waiters: set[asyncio.Future[Any]] = {operation}
    cancel_waiter: asyncio.Future[None] | None = None
    if token is not None:
        cancel_waiter = asyncio.ensure_future(token.wait())
        waiters.add(cancel_waiter)
    try:
        done, _ = await asyncio.wait(
            waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
        )
    except asyncio.CancelledError:
        operation.cancel()
        raise
    finally:
        if cancel_waiter is not None and not cancel_waiter.done():
            cancel_waiter.cancel()
    if operation in done:
        return operation.result()
    await _discard(operation)
    if token is not None and token.cancelled:
        raise CancelledByCaller(token.reason or "cancelled")
    label = "idle timeout" if idle else "timeout"
    raise AttemptTimeoutError(
        f"{what} {label} after {timeout:.1f}s" if timeout is not None else f"{what} {label}",
        timeout_s=timeout or 0.0,
        idle=idle,
    )


class GenerationSlots:
    """Tracks the live token per conversational slot.

    Starting a new generation in a slot cancels the one it replaces so the old
    transport read unblocks instead of leaking.
    """

    def __init__(self) -> None:
        self._tokens: dict[str, CancellationToken] = {}

    def begin(self, slot: str) -> CancellationToken:
        previous = self._tokens.get(slot)
        if previous is not None:
            previous.cancel("superseded")
            logger.info(f"slots.superseded slot={slot}")
        token = CancellationToken()
        self._tokens[slot] = token
        return token

    def release(self, slot: str, token: CancellationToken) -> None:
        if self._tokens.get(slot) is token:
            self._tokens.pop(slot, None)

    def cancel(self, slot: str) -> bool:
        token = self._tokens.pop(slot, None)
        if token is None:
            return False
        token.cancel("cancelled by caller")
        return True

    def __contains__(self, slot: object) -> bool:
        return slot in self._tokens

    def __len__(self) -> int:
        return len(self._tokens)
