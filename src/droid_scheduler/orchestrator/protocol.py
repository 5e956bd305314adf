"""Decoding of the agent executable's newline-delimited JSON output stream."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any


@dataclass(slots=True, frozen=True)
class InitEvent:
    session_id: str | None
    raw: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return self.raw or {"type": "init", "session_id": self.session_id}


@dataclass(slots=True, frozen=True)
class AssistantEvent:
    text: str | None
    raw: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return self.raw or {"type": "assistant", "text": self.text}


@dataclass(slots=True, frozen=True)
class ResultEvent:
    input_tokens: int | None
    output_tokens: int | None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def has_usage(self) -> bool:
        return self.input_tokens is not None or self.output_tokens is not None

    def to_payload(self) -> dict[str, Any]:
        return self.raw or {
            "type": "result",
            "usage": {"input_tokens": self.input_tokens, "output_tokens": self.output_tokens},
        }


@dataclass(slots=True, frozen=True)
class ErrorEvent:
    error: str
    raw: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        return self.raw or {"type": "error", "error": self.error}


@dataclass(slots=True, frozen=True)
class RawTextEvent:
    """A stdout line that was not valid structured data; treated as assistant text."""

    text: str

    def to_payload(self) -> dict[str, Any]:
        return {"type": "assistant", "text": self.text}


@dataclass(slots=True, frozen=True)
class OtherEvent:
    """A structured record of a type the scheduler does not act on (tool calls etc.)."""

    event_type: str
    raw: dict[str, Any]

    def to_payload(self) -> dict[str, Any]:
        return self.raw


StreamEvent = InitEvent | AssistantEvent | ResultEvent | ErrorEvent | RawTextEvent | OtherEvent


def decode_line(line: str) -> StreamEvent:
    """Decode one complete stdout line into a stream event.

    Lines that are not JSON objects are downgraded to ``RawTextEvent`` so
    nothing the agent prints is lost.
    """

    try:
        payload = json.loads(line)
    except json.JSONDecodeError:
        return RawTextEvent(text=line)
    if not isinstance(payload, dict):
        return RawTextEvent(text=line)

    event_type = payload.get("type")
    if event_type == "init":
        return InitEvent(session_id=_optional_str(payload.get("session_id")), raw=payload)
    if event_type == "assistant":
        return AssistantEvent(text=_optional_str(payload.get("text")), raw=payload)
    if event_type == "result":
        usage = payload.get("usage")
        if not isinstance(usage, dict):
            usage = {}
        return ResultEvent(
            input_tokens=_optional_int(usage.get("input_tokens")),
            output_tokens=_optional_int(usage.get("output_tokens")),
            raw=payload,
        )
    if event_type == "error":
        return ErrorEvent(error=str(payload.get("error") or ""), raw=payload)
    if isinstance(event_type, str) and event_type:
        return OtherEvent(event_type=event_type, raw=payload)
    return RawTextEvent(text=line)


class LineBuffer:
    """Split a byte stream into complete lines, holding a partial trailing fragment."""

    def __init__(self, encoding: str = "utf-8") -> None:
        self._encoding = encoding
        self._pending = b""

    def feed(self, chunk: bytes) -> list[str]:
        """Add a chunk and return every line it completed (blank lines dropped)."""

        data = self._pending + chunk
        *complete, self._pending = data.split(b"\n")
        return [text for text in (self._decode(part) for part in complete) if text.strip()]

    def flush(self) -> list[str]:
        """Return the buffered fragment at end of stream."""

        remainder, self._pending = self._pending, b""
        text = self._decode(remainder)
        return [text] if text.strip() else []

    def _decode(self, raw: bytes) -> str:
        return raw.decode(self._encoding, errors="replace").rstrip("\r")


def _optional_str(value: object) -> str | None:
    if value is None:
        return None
    return str(value)


def _optional_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    if isinstance(value, str) and value.strip().isdigit():
        return int(value.strip())
    return None
