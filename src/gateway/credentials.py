from __future__ import annotations

import threading
from dataclasses import dataclass
from typing import Iterable, Sequence

from .errors import ConfigurationError

_VISIBLE_SUFFIX = 4


def redact(credential: str) -> str:
    return f"****{credential[-_VISIBLE_SUFFIX:]}"


@dataclass(frozen=True, slots=True)
class CredentialEntry:
    credential: str
    index: int

    @property
    def redacted(self) -> str:
        return redact(self.credential)

    def __repr__(self) -> str:
        return f"CredentialEntry(credential={self.redacted!r}, index={self.index})"


def parse_credential_list(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


def dedupe_credentials(values: Iterable[str]) -> tuple[str, ...]:
    seen: dict[str, None] = {}
    for value in values:
        normalized = value.strip()
        if normalized and normalized not in seen:
            seen[normalized] = None
    return tuple(seen)


class CredentialPool:
    """Ordered, de-duplicated credentials with a process-wide rotation offset.

    The offset only moves on ``advance``, which the dispatcher calls once per
    fully successful logical request.
    """

    def __init__(self, credentials: Sequence[str]):
        self._credentials = dedupe_credentials(credentials)
        self._next_index = 0
        self._lock = threading.Lock()

    @classmethod
    def from_sources(
        cls, env_value: str | None, configured: Sequence[str] = ()
    ) -> "CredentialPool":
        return cls([*parse_credential_list(env_value), *configured])

    def __len__(self) -> int:
        return len(self._credentials)

    @property
    def next_index(self) -> int:
        with self._lock:
            return self._next_index

    def entries(self) -> list[CredentialEntry]:
        size = len(self._credentials)
        if not size:
            raise ConfigurationError(
                "no API credentials configured; set GATEWAY_API_KEYS or upstream.api_keys"
            )
        with self._lock:
            start = self._next_index
        return [
            CredentialEntry(self._credentials[(start + offset) % size], (start + offset) % size)
            for offset in range(size)
        ]

    def advance(self, used_index: int) -> None:
        size = len(self._credentials)
        if not size:
            raise ConfigurationError("cannot rotate an empty credential pool")
        with self._lock:
            self._next_index = (used_index + 1) % size
