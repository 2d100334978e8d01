"""Tests for the request proxy pipeline (mocked upstream)."""
import json
from decimal import Decimal

import pytest
from prometheus_client import REGISTRY
from sqlalchemy.exc import OperationalError

from marketplace.auth.api_key import ApiKeyContext
from marketplace.cost.ledger import DEDUCTION
from marketplace.errors import (
    BadRequestError,
    ForbiddenError,
    InsufficientCreditsError,
    ModelNotFoundError,
    QuotaExceededError,
)
from marketplace.providers.base import ProviderConnectionError, ProviderError
from marketplace.proxy.service import CLIENT_DISCONNECTED, ProxyRequest
from marketplace.proxy.sse import DONE_EVENT
from stubs import (
    anthropic_message,
    connection_refused,
    json_upstream,
    openai_completion,
    sse_upstream,
)

MESSAGES = [{"role": "user", "content": "Hello"}]


def _request(context, model, **extra):
    return ProxyRequest(
        context=context,
        body={"model": model, "messages": MESSAGES, "max_tokens": 64, **extra},
        ip_address="127.0.0.1",
    )


def _data_payloads(chunks):
    payloads = []
    for chunk in chunks:
        if chunk.startswith("data: ") and chunk != DONE_EVENT:
            payloads.append(json.loads(chunk[len("data: "):]))
    return payloads


def _deductions(ledger, user_id):
    _, total = ledger.list_transactions(user_id, transaction_type=DEDUCTION)
    return total


@pytest.mark.asyncio
async def test_anthropic_request_is_billed(
    make_proxy, key_context, anthropic_model, ledger, quota, recorder, user
):
    """Test a successful Messages call debits credits and counts quota."""
    upstream = json_upstream(anthropic_message(tokens_in=1000, tokens_out=500))
    proxy = make_proxy(upstream)

    result = await proxy.proxy_request(_request(key_context, "claude-fast"))

    # 1K * 0.25 + 0.5K * 1.25 = 0.875
    assert result.status_code == 200
    assert result.cost == Decimal("0.875")
    assert result.body["model"] == "claude-fast"

    sent = upstream.requests[0]
    assert str(sent.url) == "https://api.anthropic.com/v1/messages"
    assert sent.headers["x-api-key"] == "sk-ant-test-token-1234"
    assert sent.headers["anthropic-version"] == "2023-06-01"
    assert upstream.last_json()["model"] == "claude-3-haiku-20240307"
    assert upstream.last_json()["messages"] == MESSAGES

    assert ledger.get_balance(user.id).balance == Decimal("9.125")
    assert quota.check(key_context.api_key_id).used == 1

    rows, total = recorder.recent(user.id)
    assert total == 1
    assert rows[0].status_code == 200
    assert rows[0].tokens_input == 1000
    assert rows[0].tokens_output == 500
    assert rows[0].cost == Decimal("0.875")
    assert rows[0].ip_address == "127.0.0.1"


@pytest.mark.asyncio
async def test_openai_request_is_billed(make_proxy, key_context, openai_model, ledger, user):
    """Test the OpenAI usage shape and bearer authentication."""
    upstream = json_upstream(openai_completion(tokens_in=1000, tokens_out=500))
    proxy = make_proxy(upstream)

    result = await proxy.proxy_request(_request(key_context, "gpt-mini"))

    # 1K * 0.15 + 0.5K * 0.6 = 0.45
    assert result.cost == Decimal("0.45")
    assert result.body["model"] == "gpt-mini"
    assert str(upstream.requests[0].url) == "https://api.openai.com/v1/chat/completions"
    assert upstream.requests[0].headers["authorization"] == "Bearer sk-openai-test-token-5678"
    assert ledger.get_balance(user.id).balance == Decimal("9.55")


@pytest.mark.asyncio
async def test_zero_usage_is_not_charged(
    make_proxy, key_context, anthropic_model, ledger, quota, recorder, user
):
    upstream = json_upstream(anthropic_message(tokens_in=0, tokens_out=0))
    proxy = make_proxy(upstream)

    result = await proxy.proxy_request(_request(key_context, "claude-fast"))

    assert result.cost == Decimal("0")
    assert _deductions(ledger, user.id) == 0
    assert quota.check(key_context.api_key_id).used == 0
    _, total = recorder.recent(user.id)
    assert total == 1


@pytest.mark.asyncio
async def test_upstream_error_status_is_returned_not_charged(
    make_proxy, key_context, anthropic_model, ledger, quota, recorder, user
):
    error_body = {"type": "error", "error": {"type": "invalid_request_error", "message": "bad"}}
    proxy = make_proxy(json_upstream(error_body, status_code=400))

    result = await proxy.proxy_request(_request(key_context, "claude-fast"))

    assert result.status_code == 400
    assert result.body == error_body
    assert ledger.get_balance(user.id).balance == Decimal("10")
    assert quota.check(key_context.api_key_id).used == 0
    rows, _ = recorder.recent(user.id)
    assert rows[0].status_code == 400


@pytest.mark.asyncio
async def test_transport_failure_logs_502(make_proxy, key_context, anthropic_model, ledger, recorder, user):
    proxy = make_proxy(connection_refused())

    with pytest.raises(ProviderError):
        await proxy.proxy_request(_request(key_context, "claude-fast"))

    rows, _ = recorder.recent(user.id)
    assert rows[0].status_code == 502
    assert rows[0].cost == Decimal("0")
    assert _deductions(ledger, user.id) == 0


@pytest.mark.asyncio
async def test_connection_failures_are_retried_without_double_billing(
    make_proxy, key_context, anthropic_model, recorder, user
):
    upstream = connection_refused()
    proxy = make_proxy(upstream, max_attempts=2)

    with pytest.raises(ProviderConnectionError):
        await proxy.proxy_request(_request(key_context, "claude-fast"))

    assert upstream.calls == 2
    _, total = recorder.recent(user.id)
    assert total == 1


@pytest.mark.asyncio
async def test_insufficient_credits_short_circuits(
    make_proxy, anthropic_model, users, ledger, api_keys, recorder
):
    """Test no upstream call and no ledger entry when the balance is empty."""
    broke = users.create("broke@example.com")
    ledger.open_account(broke.id)
    api_key, _ = api_keys.create(broke.id, "broke-key")
    context = ApiKeyContext(user_id=broke.id, api_key_id=api_key.id)
    upstream = json_upstream(anthropic_message())
    proxy = make_proxy(upstream)

    with pytest.raises(InsufficientCreditsError):
        await proxy.proxy_request(_request(context, "claude-fast"))

    assert upstream.calls == 0
    _, transactions = ledger.list_transactions(broke.id)
    assert transactions == 0
    rows, _ = recorder.recent(broke.id)
    assert rows[0].status_code == 402
    assert rows[0].cost == Decimal("0")


@pytest.mark.asyncio
async def test_quota_exceeded_short_circuits(
    make_proxy, anthropic_model, api_keys, ledger, recorder, user
):
    api_key, _ = api_keys.create(user.id, "no-quota", quota_limit=0)
    context = ApiKeyContext(user_id=user.id, api_key_id=api_key.id)
    upstream = json_upstream(anthropic_message())
    proxy = make_proxy(upstream)

    with pytest.raises(QuotaExceededError):
        await proxy.proxy_request(_request(context, "claude-fast"))

    assert upstream.calls == 0
    assert _deductions(ledger, user.id) == 0
    rows, _ = recorder.recent(user.id)
    assert rows[0].status_code == 429


@pytest.mark.asyncio
async def test_model_outside_allow_list_is_forbidden(
    make_proxy, anthropic_model, openai_model, user, api_keys
):
    api_key, _ = api_keys.create(user.id, "gpt-only", allowed_models=["gpt-mini"])
    context = ApiKeyContext(user_id=user.id, api_key_id=api_key.id, allowed_models=["gpt-mini"])
    upstream = json_upstream(anthropic_message())
    proxy = make_proxy(upstream)

    with pytest.raises(ForbiddenError):
        await proxy.proxy_request(_request(context, "claude-fast"))
    assert upstream.calls == 0


@pytest.mark.asyncio
async def test_missing_and_unknown_model(make_proxy, key_context, anthropic_model):
    upstream = json_upstream(anthropic_message())
    proxy = make_proxy(upstream)

    with pytest.raises(BadRequestError):
        await proxy.proxy_request(ProxyRequest(context=key_context, body={"messages": MESSAGES}))
    with pytest.raises(ModelNotFoundError):
        await proxy.proxy_request(_request(key_context, "no-such-model"))
    assert upstream.calls == 0


@pytest.mark.asyncio
async def test_openai_stream_usage_from_final_chunk(
    make_proxy, key_context, openai_model, ledger, quota, recorder, user
):
    """Test usage sent only on the last chunk, with lines split across reads."""
    upstream = sse_upstream(
        [
            'data: {"id":"c1","model":"gpt-4o-mini","choices":[{"delta":{"content":"Hel"}}]}\n\n',
            'data: {"id":"c1","model":"gpt-4o-mini","choices":[{"delta":{"content":"lo"}}]}\n\ndata: {"id":"c1","mod',
            'el":"gpt-4o-mini","choices":[],"usage":{"prompt_tokens":1000,"completion_tokens":500}}\n\n',
            "data: [DONE]\n\n",
        ]
    )
    proxy = make_proxy(upstream)

    chunks = [chunk async for chunk in proxy.stream_request(_request(key_context, "gpt-mini", stream=True))]

    payloads = _data_payloads(chunks)
    assert len(payloads) == 3
    assert all(payload["model"] == "gpt-mini" for payload in payloads)
    assert chunks[-1] == DONE_EVENT
    assert upstream.last_json()["stream"] is True
    assert upstream.last_json()["model"] == "gpt-4o-mini"

    rows, total = recorder.recent(user.id)
    assert total == 1
    assert (rows[0].tokens_input, rows[0].tokens_output) == (1000, 500)
    assert rows[0].cost == Decimal("0.45")
    assert ledger.get_balance(user.id).balance == Decimal("9.55")
    assert quota.check(key_context.api_key_id).used == 1


@pytest.mark.asyncio
async def test_anthropic_stream_merges_usage_events(
    make_proxy, key_context, anthropic_model, ledger, recorder, user
):
    upstream = sse_upstream(
        [
            "event: message_start\n"
            'data: {"type":"message_start","message":{"id":"msg_1","model":"claude-3-haiku-20240307",'
            '"usage":{"input_tokens":25,"output_tokens":1}}}\n\n',
            "event: content_block_delta\n"
            'data: {"type":"content_block_delta","index":0,"delta":{"type":"text_delta","text":"Hi"}}\n\n',
            "event: message_delta\n"
            'data: {"type":"message_delta","delta":{"stop_reason":"end_turn"},"usage":{"output_tokens":15}}\n\n',
            'event: message_stop\ndata: {"type":"message_stop"}\n\n',
        ]
    )
    proxy = make_proxy(upstream)

    chunks = [chunk async for chunk in proxy.stream_request(_request(key_context, "claude-fast", stream=True))]

    assert "event: message_start\n" in chunks
    start = _data_payloads(chunks)[0]
    assert start["message"]["model"] == "claude-fast"

    rows, _ = recorder.recent(user.id)
    assert (rows[0].tokens_input, rows[0].tokens_output) == (25, 15)
    # 25 / 1000 * 0.25 + 15 / 1000 * 1.25 = 0.00625 + 0.01875
    assert rows[0].cost == Decimal("0.025")
    assert ledger.get_balance(user.id).balance == Decimal("9.975")


@pytest.mark.asyncio
async def test_stream_read_error_is_not_billed(
    make_proxy, key_context, openai_model, ledger, quota, recorder, user
):
    upstream = sse_upstream(
        [
            'data: {"id":"c1","model":"gpt-4o-mini","usage":{"prompt_tokens":100,"completion_tokens":1}}\n\n',
            'data: {"id":"c1","model":"gpt-4o-mini"}\n\n',
        ],
        fail_after=1,
    )
    proxy = make_proxy(upstream)

    received = []
    with pytest.raises(ProviderError):
        async for chunk in proxy.stream_request(_request(key_context, "gpt-mini", stream=True)):
            received.append(chunk)

    assert len(received) == 1
    rows, total = recorder.recent(user.id)
    assert total == 1
    assert rows[0].status_code == 502
    assert rows[0].cost == Decimal("0")
    assert ledger.get_balance(user.id).balance == Decimal("10")
    assert quota.check(key_context.api_key_id).used == 0


@pytest.mark.asyncio
async def test_stream_upstream_error_status(make_proxy, key_context, openai_model, ledger, recorder, user):
    proxy = make_proxy(sse_upstream(['{"error":{"message":"overloaded"}}'], status_code=529))

    with pytest.raises(ProviderError, match="529"):
        async for _ in proxy.stream_request(_request(key_context, "gpt-mini", stream=True)):
            pass

    rows, _ = recorder.recent(user.id)
    assert rows[0].status_code == 529
    assert rows[0].cost == Decimal("0")
    assert _deductions(ledger, user.id) == 0


@pytest.mark.asyncio
async def test_client_disconnect_bills_observed_usage(
    make_proxy, key_context, anthropic_model, ledger, recorder, user
):
    upstream = sse_upstream(
        [
            'data: {"type":"message_start","message":{"model":"claude-3-haiku-20240307",'
            '"usage":{"input_tokens":1000,"output_tokens":0}}}\n\n',
            'data: {"type":"content_block_delta","delta":{"text":"never read"}}\n\n',
        ]
    )
    proxy = make_proxy(upstream)

    stream = proxy.stream_request(_request(key_context, "claude-fast", stream=True))
    first = await stream.__anext__()
    assert "claude-fast" in first
    await stream.aclose()

    rows, total = recorder.recent(user.id)
    assert total == 1
    assert rows[0].error_message == CLIENT_DISCONNECTED
    assert rows[0].tokens_input == 1000
    # 1K * 0.25
    assert ledger.get_balance(user.id).balance == Decimal("9.75")


def _counter(name, **labels):
    return REGISTRY.get_sample_value(name, labels) or 0.0


@pytest.mark.asyncio
async def test_quota_update_failure_still_returns_response(
    make_proxy, key_context, anthropic_model, ledger, quota, monkeypatch, user
):
    """Test a paid request is delivered even if the quota counter cannot be written."""

    def broken_increment(api_key_id):
        raise OperationalError("UPDATE api_keys", {}, Exception("database is locked"))

    monkeypatch.setattr(quota, "increment", broken_increment)
    failures = _counter(
        "marketplace_settlement_failures_total", model="claude-fast", reason="quota_error"
    )
    proxy = make_proxy(json_upstream(anthropic_message(tokens_in=1000, tokens_out=500)))

    result = await proxy.proxy_request(_request(key_context, "claude-fast"))

    assert result.status_code == 200
    assert result.body["model"] == "claude-fast"
    assert ledger.get_balance(user.id).balance == Decimal("9.125")
    assert _counter(
        "marketplace_settlement_failures_total", model="claude-fast", reason="quota_error"
    ) == failures + 1


@pytest.mark.asyncio
async def test_stream_quota_update_failure_keeps_stream(
    make_proxy, key_context, openai_model, quota, monkeypatch, ledger, user
):
    def broken_increment(api_key_id):
        raise OperationalError("UPDATE api_keys", {}, Exception("database is locked"))

    monkeypatch.setattr(quota, "increment", broken_increment)
    upstream = sse_upstream(
        [
            'data: {"id":"c1","model":"gpt-4o-mini","usage":{"prompt_tokens":1000,"completion_tokens":500}}\n\n',
            "data: [DONE]\n\n",
        ]
    )
    proxy = make_proxy(upstream)

    chunks = [chunk async for chunk in proxy.stream_request(_request(key_context, "gpt-mini", stream=True))]

    assert chunks[-1] == DONE_EVENT
    assert ledger.get_balance(user.id).balance == Decimal("9.55")


@pytest.mark.asyncio
async def test_charged_credits_metric_counts_only_debits(
    make_proxy, key_context, anthropic_model, user
):
    charged = _counter("marketplace_credits_charged_total", model="claude-fast")
    error_body = {"type": "error", "error": {"type": "overloaded_error", "message": "busy"}}
    error_body["usage"] = {"input_tokens": 1000, "output_tokens": 0}
    failing = make_proxy(json_upstream(error_body, status_code=500))

    await failing.proxy_request(_request(key_context, "claude-fast"))
    assert _counter("marketplace_credits_charged_total", model="claude-fast") == charged

    ok = make_proxy(json_upstream(anthropic_message(tokens_in=1000, tokens_out=500)))
    await ok.proxy_request(_request(key_context, "claude-fast"))
    assert _counter("marketplace_credits_charged_total", model="claude-fast") == pytest.approx(
        charged + 0.875
    )
