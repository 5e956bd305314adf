from __future__ import annotations

import allure

from droid_scheduler.orchestrator.protocol import (
    AssistantEvent,
    ErrorEvent,
    InitEvent,
    LineBuffer,
    OtherEvent,
    RawTextEvent,
    ResultEvent,
    decode_line,
)

pytestmark = [
    allure.epic("Task Scheduler"),
    allure.feature("Agent Output Stream"),
]


def test_decode_known_event_types() -> None:
    init = decode_line('{"type": "init", "session_id": "abc"}')
    assistant = decode_line('{"type": "assistant", "text": "hello"}')
    result = decode_line('{"type": "result", "usage": {"input_tokens": 12, "output_tokens": 3}}')
    error = decode_line('{"type": "error", "error": "boom"}')

    assert isinstance(init, InitEvent) and init.session_id == "abc"
    assert isinstance(assistant, AssistantEvent) and assistant.text == "hello"
    assert isinstance(result, ResultEvent)
    assert (result.input_tokens, result.output_tokens) == (12, 3)
    assert result.has_usage
    assert isinstance(error, ErrorEvent) and error.error == "boom"
    assert assistant.to_payload() == {"type": "assistant", "text": "hello"}


def test_result_without_usage_has_no_usage() -> None:
    result = decode_line('{"type": "result", "usage": "n/a"}')

    assert isinstance(result, ResultEvent)
    assert result.has_usage is False


def test_non_json_and_unknown_lines() -> None:
    raw = decode_line("Thinking about the answer...")
    array = decode_line("[1, 2, 3]")
    untyped = decode_line('{"text": "no type"}')
    tool = decode_line('{"type": "tool_use", "name": "Read"}')

    assert raw == RawTextEvent(text="Thinking about the answer...")
    assert raw.to_payload() == {"type": "assistant", "text": "Thinking about the answer..."}
    assert isinstance(array, RawTextEvent)
    assert isinstance(untyped, RawTextEvent)
    assert isinstance(tool, OtherEvent)
    assert tool.event_type == "tool_use"
    assert tool.to_payload() == {"type": "tool_use", "name": "Read"}


def test_line_buffer_reassembles_split_chunks() -> None:
    buffer = LineBuffer()

    assert buffer.feed(b'{"type": "ini') == []
    assert buffer.feed(b't"}\n{"type": "assistant", ') == ['{"type": "init"}']
    assert buffer.feed(b'"text": "hi"}\r\n\n\nlast') == ['{"type": "assistant", "text": "hi"}']
    assert buffer.flush() == ["last"]
    assert buffer.flush() == []


def test_line_buffer_keeps_multibyte_characters_across_chunks() -> None:
    encoded = "привет\n".encode()
    buffer = LineBuffer()

    assert buffer.feed(encoded[:3]) == []
    assert buffer.feed(encoded[3:]) == ["привет"]
