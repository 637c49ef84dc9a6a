import asyncio

from src.gateway.cancellation import CancellationToken
from src.gateway.credentials import CredentialEntry
from src.gateway.fallback import FallbackInvoker
from src.gateway.types import AttemptOutcome, RequestAttempt


def test_should_invoke_only_for_completely_empty_streams() -> None:
    assert FallbackInvoker.should_invoke(AttemptOutcome(text="", fragments=0))
    assert not FallbackInvoker.should_invoke(AttemptOutcome(text="partial", fragments=1))
    assert not FallbackInvoker.should_invoke(
        AttemptOutcome(text="cut", fragments=1, finish_reason="length", truncated=True)
    )


def test_invoke_reissues_prompt_as_buffered_attempt() -> None:
    seen: list[tuple[str, RequestAttempt]] = []

    async def run_buffered(prompt: str, attempt: RequestAttempt) -> AttemptOutcome:
        seen.append((prompt, attempt))
        return AttemptOutcome(text="full answer", fragments=1)

    attempt = RequestAttempt(
        entry=CredentialEntry("sk-abcd1234", 2),
        attempt_index=1,
        deadline_s=40.0,
        mode="stream",
        token=CancellationToken(),
    )
    outcome = asyncio.run(FallbackInvoker(run_buffered).invoke("hello", attempt))

    assert outcome.text == "full answer"
    assert len(seen) == 1
    prompt, buffered = seen[0]
    assert prompt == "hello"
    assert buffered.mode == "buffered"
    assert buffered.entry == attempt.entry
    assert buffered.deadline_s == 40.0
    assert attempt.mode == "stream"
