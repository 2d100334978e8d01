"""Upstream provider stand-ins built on httpx.MockTransport."""
import json
from typing import Any, Callable, Iterable, List, Optional

import httpx


class UpstreamStub:
    """Stands in for a provider: records every request and replays a handler."""

    def __init__(self, handler: Callable[[httpx.Request], httpx.Response]):
        self.handler = handler
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.handler(request)

    @property
    def calls(self) -> int:
        return len(self.requests)

    def last_json(self) -> Any:
        return json.loads(self.requests[-1].content)

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


def json_upstream(payload: Any, status_code: int = 200) -> UpstreamStub:
    return UpstreamStub(lambda request: httpx.Response(status_code, json=payload))


def sse_upstream(
    chunks: Iterable[str],
    status_code: int = 200,
    fail_after: Optional[int] = None,
) -> UpstreamStub:
    """
    Upstream that streams the given text chunks.

    Args:
        chunks: Raw SSE text, split wherever the test wants read boundaries
        status_code: Upstream status
        fail_after: Raise httpx.ReadError after this many chunks
    """
    chunks = list(chunks)

    def handler(request: httpx.Request) -> httpx.Response:
        async def body():
            for index, chunk in enumerate(chunks):
                if fail_after is not None and index >= fail_after:
                    raise httpx.ReadError("connection reset by peer", request=request)
                yield chunk.encode("utf-8")

        return httpx.Response(
            status_code,
            headers={"content-type": "text/event-stream"},
            content=body(),
        )

    return UpstreamStub(handler)


def connection_refused() -> UpstreamStub:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    return UpstreamStub(handler)


def anthropic_message(model: str = "claude-3-haiku-20240307", tokens_in: int = 1000, tokens_out: int = 500):
    return {
        "id": "msg_01",
        "type": "message",
        "role": "assistant",
        "model": model,
        "content": [{"type": "text", "text": "Hello!"}],
        "stop_reason": "end_turn",
        "usage": {"input_tokens": tokens_in, "output_tokens": tokens_out},
    }


def openai_completion(model: str = "gpt-4o-mini", tokens_in: int = 1000, tokens_out: int = 500):
    return {
        "id": "chatcmpl-123",
        "object": "chat.completion",
        "model": model,
        "choices": [
            {
                "index": 0,
                "message": {"role": "assistant", "content": "Hi there!"},
                "finish_reason": "stop",
            }
        ],
        "usage": {
            "prompt_tokens": tokens_in,
            "completion_tokens": tokens_out,
            "total_tokens": tokens_in + tokens_out,
        },
    }
