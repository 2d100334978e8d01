"""Server-Sent-Event line framing and rewriting for streamed responses."""
import json
from dataclasses import dataclass
from typing import Any, List, Optional

from marketplace.cost.tracker import TokenUsage, extract_usage, merge_usage

DONE_EVENT = "data: [DONE]\n\n"


def sse_data(payload: Any) -> str:
    """Serialize one `data:` event the way upstream providers frame them."""
    return f"data: {json.dumps(payload, separators=(',', ':'), ensure_ascii=False)}\n\n"


class SSELineBuffer:
    """Splits a chunked text stream into complete lines.

    An incomplete trailing line is held until the next chunk arrives.
    """

    def __init__(self):
        self._pending = ""

    def feed(self, text: str) -> List[str]:
        self._pending += text
        lines = self._pending.split("\n")
        self._pending = lines.pop()
        return [line.rstrip("\r") for line in lines]

    def flush(self) -> List[str]:
        """Remaining partial line once the stream has ended."""
        pending, self._pending = self._pending.rstrip("\r"), ""
        return [pending] if pending else []


@dataclass
class StreamEvent:
    """Result of processing one upstream line."""

    output: Optional[str] = None
    usage: Optional[TokenUsage] = None
    done: bool = False


def rewrite_model(payload: Any, display_name: str) -> Any:
    """Replace the upstream model id with the customer-facing name.

    Anthropic's message_start event nests the model under `message`.
    """
    if isinstance(payload, dict):
        if "model" in payload:
            payload["model"] = display_name
        message = payload.get("message")
        if isinstance(message, dict) and "model" in message:
            message["model"] = display_name
    return payload


def _event_usage(payload: Any) -> Optional[TokenUsage]:
    usage = extract_usage(payload)
    if isinstance(payload, dict):
        nested = extract_usage(payload.get("message"))
        if nested is not None:
            usage = merge_usage(usage or TokenUsage(), nested)
    return usage


def process_line(line: str, display_name: str) -> StreamEvent:
    """
    Rewrite one complete SSE line for the caller.

    - `data: [DONE]` passes through unchanged
    - `data: {json}` has its model rewritten and usage captured
    - `data:` lines that are not JSON pass through as a complete event
    - other non-blank lines (event:, id:, comments) pass through
    - blank separators are dropped; data events carry their own
    """
    if line.startswith("data:"):
        data = line[5:].lstrip(" ")
        if data == "[DONE]":
            return StreamEvent(output=DONE_EVENT, done=True)
        try:
            payload = json.loads(data)
        except ValueError:
            return StreamEvent(output=line + "\n\n")
        usage = _event_usage(payload)
        return StreamEvent(output=sse_data(rewrite_model(payload, display_name)), usage=usage)

    if line.strip():
        return StreamEvent(output=line + "\n")
    return StreamEvent()
