from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .cancellation import CancellationToken
from .credentials import CredentialEntry
from .errors import ExhaustedError

AttemptMode = Literal["stream", "buffered"]


class ChatMessage(BaseModel):
    model_config = ConfigDict(extra="forbid")

    role: Literal["system", "user", "assistant"] = "user"
    content: str


class ChatPayload(BaseModel):
    model_config = ConfigDict(extra="forbid")

    model: str
    messages: list[ChatMessage]
    temperature: float
    max_tokens: int
    stream: bool = False

    @classmethod
    def for_prompt(
        cls,
        prompt: str,
        *,
        model: str,
        temperature: float,
        max_tokens: int,
        stream: bool,
    ) -> "ChatPayload":
        return cls(
            model=model,
            messages=[ChatMessage(role="user", content=prompt)],
            temperature=temperature,
            max_tokens=max_tokens,
            stream=stream,
        )


class GenerateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    prompt: str = Field(min_length=1)
    stream: bool = True


@dataclass
class RequestAttempt:
    entry: CredentialEntry
    attempt_index: int
    deadline_s: float
    mode: AttemptMode
    token: CancellationToken

    @property
    def authorization(self) -> str:
        return f"Bearer {self.entry.credential}"


@dataclass
class AttemptOutcome:
    text: str
    fragments: int
    finish_reason: str | None = None
    truncated: bool = False


class GenerationStatus(str, Enum):
    SUCCEEDED = "succeeded"
    CANCELLED = "cancelled"
    EXHAUSTED = "exhausted"


@dataclass
class GenerationResult:
    status: GenerationStatus
    text: str = ""
    finish_reason: str | None = None
    truncated: bool = False
    credential_index: int | None = None
    calls: int = 0
    fragments: int = 0
    used_fallback: bool = False
    restarts: int = 0
    error: Optional[ExhaustedError] = None
    warnings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.status is GenerationStatus.SUCCEEDED

    @property
    def cancelled(self) -> bool:
        return self.status is GenerationStatus.CANCELLED

    def raise_for_error(self) -> None:
        if self.error is not None:
            raise self.error

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "status": self.status.value,
            "text": self.text,
            "finish_reason": self.finish_reason,
            "truncated": self.truncated,
            "calls": self.calls,
            "fragments": self.fragments,
            "used_fallback": self.used_fallback,
            "restarts": self.restarts,
        }
        if self.warnings:
            payload["warnings"] = list(self.warnings)
        if self.error is not None:
            payload["error"] = {
                "message": str(self.error),
                "type": "exhausted",
                "failures": [
                    {
                        "credential": failure.credential,
                        "kind": failure.kind.value,
                        "message": failure.message,
                    }
                    for failure in self.error.failures
                ],
            }
        return payload
