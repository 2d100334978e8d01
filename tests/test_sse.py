"""Tests for SSE framing and rewriting."""
import json

from marketplace.cost.tracker import TokenUsage
from marketplace.proxy.sse import DONE_EVENT, SSELineBuffer, process_line, rewrite_model


def test_line_buffer_carries_partial_lines():
    buffer = SSELineBuffer()
    assert buffer.feed('data: {"a"') == []
    assert buffer.feed(': 1}\n\ndata: [DO') == ['data: {"a": 1}', ""]
    assert buffer.feed("NE]\r\n") == ["data: [DONE]"]
    assert buffer.flush() == []


def test_line_buffer_flush_returns_trailing_line():
    buffer = SSELineBuffer()
    buffer.feed("data: [DONE]")
    assert buffer.flush() == ["data: [DONE]"]
    assert buffer.flush() == []


def test_process_line_rewrites_model_and_captures_usage():
    line = 'data: {"id":"c1","model":"gpt-4o-mini","choices":[],"usage":{"prompt_tokens":3,"completion_tokens":9}}'
    event = process_line(line, "gpt-mini")
    assert event.output.startswith("data: ")
    assert event.output.endswith("\n\n")
    payload = json.loads(event.output[len("data: "):])
    assert payload["model"] == "gpt-mini"
    assert event.usage == TokenUsage(tokens_input=3, tokens_output=9)


def test_process_line_anthropic_message_start():
    """Test the nested message.model and message.usage of message_start."""
    line = (
        'data: {"type":"message_start","message":{"id":"msg_1","model":"claude-3-haiku-20240307",'
        '"usage":{"input_tokens":25,"output_tokens":1}}}'
    )
    event = process_line(line, "claude-fast")
    payload = json.loads(event.output[len("data: "):])
    assert payload["message"]["model"] == "claude-fast"
    assert event.usage == TokenUsage(tokens_input=25, tokens_output=1)


def test_process_line_done_passthrough():
    event = process_line("data: [DONE]", "gpt-mini")
    assert event.output == DONE_EVENT
    assert event.done


def test_process_line_passes_through_non_json():
    assert process_line("event: message_delta", "m").output == "event: message_delta\n"
    assert process_line("data: not json", "m").output == "data: not json\n\n"
    assert process_line("", "m").output is None


def test_non_json_data_stays_a_separate_event():
    buffer = SSELineBuffer()
    lines = buffer.feed('data: keep-alive\n\ndata: {"model":"gpt-4o-mini"}\n\n')

    output = "".join(
        event.output for event in (process_line(line, "gpt-mini") for line in lines) if event.output
    )

    assert output == 'data: keep-alive\n\ndata: {"model":"gpt-mini"}\n\n'


def test_rewrite_model_ignores_payload_without_model():
    assert rewrite_model({"type": "ping"}, "m") == {"type": "ping"}
    assert rewrite_model(["x"], "m") == ["x"]
