from __future__ import annotations

import codecs
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Union

from .errors import ProtocolError

logger = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_MARKER = "[DONE]"


class FinishReason(str, Enum):
    STOP = "stop"
    LENGTH = "length"
    OTHER = "other"


def classify_finish_reason(raw: str) -> FinishReason:
    lowered = raw.strip().lower()
    if lowered == FinishReason.STOP.value:
        return FinishReason.STOP
    if lowered == FinishReason.LENGTH.value:
        return FinishReason.LENGTH
    return FinishReason.OTHER


@dataclass(frozen=True, slots=True)
class TextFragment:
    text: str


@dataclass(frozen=True, slots=True)
class FinishSignal:
    reason: FinishReason
    raw: str


@dataclass(frozen=True, slots=True)
class DoneSignal:
    pass


@dataclass(frozen=True, slots=True)
class Unparsable:
    line: str
    detail: str


IncrementalEvent = Union[TextFragment, FinishSignal, DoneSignal, Unparsable]


def _content_text(content: Any, *, separator: str) -> str | None:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts: list[str] = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict):
                text = part.get("text")
                if isinstance(text, str) and text:
                    parts.append(text)
        return separator.join(parts)
    return None


def _first_choice(choices: list[Any]) -> dict[str, Any] | None:
    fallback: dict[str, Any] | None = None
    for choice in choices:
        if not isinstance(choice, dict):
            continue
        if choice.get("index", 0) == 0:
            return choice
        if fallback is None:
            fallback = choice
    return fallback


def _error_message(error: Any) -> str:
    if isinstance(error, dict):
        message = error.get("message")
        if isinstance(message, str) and message:
            return message
    return str(error)


class ChunkedEventDecoder:
    """Reassembles raw transport chunks into SSE lines and decodes each line.

    A malformed line never aborts decoding; it is reported as ``Unparsable``.
    Everything after the ``[DONE]`` marker is ignored.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._utf8 = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._parts: list[str] = []
        self.finish: FinishSignal | None = None
        self.done = False
        self.fragments = 0

    @property
    def text(self) -> str:
        return "".join(self._parts)

    @property
    def finish_reason(self) -> FinishReason | None:
        return self.finish.reason if self.finish is not None else None

    @property
    def truncated(self) -> bool:
        return self.finish_reason is FinishReason.LENGTH

    def feed(self, chunk: bytes | str) -> list[IncrementalEvent]:
        if self.done:
            return []
        if isinstance(chunk, (bytes, bytearray)):
            chunk = self._utf8.decode(bytes(chunk))
        self._buffer += chunk
        *lines, self._buffer = self._buffer.split("\n")
        events: list[IncrementalEvent] = []
        for line in lines:
            events.extend(self._decode_line(line))
            if self.done:
                self._buffer = ""
                break
        return events

    def close(self) -> list[IncrementalEvent]:
        remaining = self._buffer + self._utf8.decode(b"", final=True)
        self._buffer = ""
        if self.done or not remaining.strip():
            return []
        return self._decode_line(remaining)

    def _unparsable(self, line: str, detail: str) -> Unparsable:
        logger.debug(f"decoder.unparsable detail={detail} line={line[:200]!r}")
        return Unparsable(line=line, detail=detail)

    def _decode_line(self, raw_line: str) -> list[IncrementalEvent]:
        line = raw_line.strip()
        if not line or not line.startswith(DATA_PREFIX):
            return []
        data = line[len(DATA_PREFIX):].strip()
        if data == DONE_MARKER:
            self.done = True
            return [DoneSignal()]
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as exc:
            return [self._unparsable(line, f"invalid json: {exc.msg}")]
        except (ValueError, RecursionError) as exc:
            return [self._unparsable(line, f"invalid json: {exc.__class__.__name__}")]
        if not isinstance(payload, dict):
            return [self._unparsable(line, "payload is not an object")]
        if payload.get("error") is not None:
            return [self._unparsable(line, f"upstream error: {_error_message(payload['error'])}")]
        choices = payload.get("choices")
        if choices is None and "usage" in payload:
            return []
        if not isinstance(choices, list):
            return [self._unparsable(line, "missing choices")]
        choice = _first_choice(choices)
        if choice is None:
            return []
        events: list[IncrementalEvent] = []
        delta = choice.get("delta")
        text: str | None
        if isinstance(delta, str):
            text = delta
        else:
            source = delta if isinstance(delta, dict) else choice.get("message")
            text = _content_text(source.get("content"), separator="") if isinstance(source, dict) else None
        if text:
            self._parts.append(text)
            self.fragments += 1
            events.append(TextFragment(text))
        finish = choice.get("finish_reason")
        if isinstance(finish, str) and finish:
            signal = FinishSignal(reason=classify_finish_reason(finish), raw=finish)
            if signal.reason is FinishReason.LENGTH:
                logger.warning("decoder.truncated finish_reason=length")
            self.finish = signal
            events.append(signal)
        return events


def extract_message_text(body: Any) -> tuple[str, str | None]:
    """Pull the generated text and finish reason out of a buffered response body."""
    if not isinstance(body, dict):
        raise ProtocolError("response body is not a JSON object")
    if body.get("error") is not None:
        raise ProtocolError(f"upstream error: {_error_message(body['error'])}")
    containers: list[Any] = [body]
    output = body.get("output")
    if isinstance(output, dict):
        containers.append(output)
    for container in containers:
        choices = container.get("choices")
        if isinstance(choices, list):
            choice = _first_choice(choices)
            if choice is None:
                continue
            message = choice.get("message")
            content = message.get("content") if isinstance(message, dict) else message
            finish = choice.get("finish_reason")
            text = _content_text(content, separator="\n")
            return text or "", finish if isinstance(finish, str) else None
    if isinstance(output, dict) and isinstance(output.get("text"), str):
        finish = output.get("finish_reason")
        return output["text"], finish if isinstance(finish, str) else None
    for key in ("result", "content"):
        text = _content_text(body.get(key), separator="\n")
        if text is not None:
            return text, None
    raise ProtocolError("response body has no recognizable text field")
