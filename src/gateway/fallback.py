from __future__ import annotations

import logging
from dataclasses import replace
from typing import Awaitable, Callable

from .types import AttemptOutcome, RequestAttempt

logger = logging.getLogger(__name__)

BufferedRunner = Callable[[str, RequestAttempt], Awaitable[AttemptOutcome]]


class FallbackInvoker:
    """Re-issues a prompt as one buffered request when a stream produced no text.

    Only a completely empty stream qualifies; a truncated stream already carries
    partial output that a second request would duplicate.
    """

    def __init__(self, run_buffered: BufferedRunner) -> None:
        self._run_buffered = run_buffered

    @staticmethod
    def should_invoke(outcome: AttemptOutcome) -> bool:
        return outcome.fragments == 0 and not outcome.text

    async def invoke(self, prompt: str, attempt: RequestAttempt) -> AttemptOutcome:
        logger.info(
            f"generate.fallback credential={attempt.entry.redacted} attempt={attempt.attempt_index}"
        )
        return await self._run_buffered(prompt, replace(attempt, mode="buffered"))
