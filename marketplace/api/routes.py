import uuid
from datetime import datetime
from typing import Any, AsyncIterator, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse
from prometheus_client import generate_latest
from pydantic import BaseModel, ConfigDict, Field

from marketplace.auth.api_key import ApiKeyContext, get_api_key
from marketplace.auth.quota import rate_limit_headers
from marketplace.errors import MarketplaceError
from marketplace.proxy.service import ProxyRequest, ProxyService
from marketplace.proxy.sse import DONE_EVENT, sse_data
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)

router = APIRouter()


# Data contracts for the proxy and account endpoints.
class ProxyRequestBody(BaseModel):
    """Chat request in either Anthropic Messages or OpenAI Chat Completions shape.

    Only `model` and `stream` are read; every other field is forwarded
    upstream untouched.
    """

    model_config = ConfigDict(extra="allow")

    model: Optional[str] = Field(None, description="Customer-facing model name")
    stream: bool = Field(False, description="Return Server-Sent Events instead of JSON")


class PublicModel(BaseModel):
    """Catalog entry visible without authentication."""

    id: str
    display_name: str
    provider_model: str
    pricing_input: float = Field(..., description="Credits per 1K input tokens")
    pricing_output: float = Field(..., description="Credits per 1K output tokens")
    is_active: bool


class PublicModelList(BaseModel):
    data: List[PublicModel]


class TransactionDetail(BaseModel):
    """Credit ledger entry."""

    id: str
    type: str
    amount: float
    balance_after: float
    description: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    created_at: datetime


class CreditsResponse(BaseModel):
    """Balance and recent ledger activity."""

    balance: float
    total_purchased: float
    total_consumed: float
    transactions: List[TransactionDetail]
    total_transactions: int


class UsageRecordDetail(BaseModel):
    """One proxied request."""

    id: str
    model: Optional[str] = None
    api_key_id: str
    status_code: int
    tokens_input: int
    tokens_output: int
    cost: float
    duration_ms: int
    error_message: Optional[str] = None
    created_at: datetime


class UsageSummary(BaseModel):
    total_requests: int
    total_tokens_input: int
    total_tokens_output: int
    total_cost: float


class UsageResponse(BaseModel):
    """Usage totals plus the most recent requests."""

    summary: UsageSummary
    requests: List[UsageRecordDetail]
    total_requests: int
    time_range: Dict[str, Optional[datetime]]


def transaction_detail(transaction) -> TransactionDetail:
    return TransactionDetail(
        id=str(transaction.id),
        type=transaction.type,
        amount=float(transaction.amount),
        balance_after=float(transaction.balance_after),
        description=transaction.description,
        metadata=transaction.details,
        created_at=transaction.created_at,
    )


def _client_ip(request: Request) -> Optional[str]:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else None


def _quota_headers(request: Request, api_key: ApiKeyContext) -> Dict[str, str]:
    return rate_limit_headers(request.app.state.quota.check(api_key.api_key_id))


async def sse_events(proxy: ProxyService, proxy_request: ProxyRequest) -> AsyncIterator[str]:
    """
    Wrap a proxied stream for the SSE channel.

    Errors, including admission failures, become a single
    `data: {"error": ...}` event that ends the stream. On success the
    stream ends with `data: [DONE]` unless upstream already sent it.
    """
    done_seen = False
    stream = proxy.stream_request(proxy_request)
    try:
        async for chunk in stream:
            if chunk == DONE_EVENT:
                done_seen = True
            yield chunk
    except MarketplaceError as e:
        yield sse_data({"error": e.message})
        return
    except Exception:
        logger.exception(
            "Unexpected streaming error",
            extra={"request_id": proxy_request.request_id},
        )
        yield sse_data({"error": "Internal server error"})
        return
    finally:
        await stream.aclose()

    if not done_seen:
        yield DONE_EVENT


async def _proxy(request: Request, payload: ProxyRequestBody, api_key: ApiKeyContext):
    proxy: ProxyService = request.app.state.proxy
    proxy_request = ProxyRequest(
        context=api_key,
        body=payload.model_dump(exclude_unset=True),
        ip_address=_client_ip(request),
        request_id=getattr(request.state, "request_id", None),
    )

    if payload.stream:
        headers = _quota_headers(request, api_key)
        headers.update({"Cache-Control": "no-cache", "Connection": "keep-alive"})
        return StreamingResponse(
            sse_events(proxy, proxy_request),
            media_type="text/event-stream",
            headers=headers,
        )

    result = await proxy.proxy_request(proxy_request)
    return JSONResponse(
        status_code=result.status_code,
        content=result.body,
        headers=_quota_headers(request, api_key),
    )


@router.post("/v1/messages")
async def messages(
    request: Request,
    payload: ProxyRequestBody,
    api_key: ApiKeyContext = Depends(get_api_key),
):
    """Anthropic Messages compatible endpoint."""
    return await _proxy(request, payload, api_key)


@router.post("/v1/chat/completions")
async def chat_completions(
    request: Request,
    payload: ProxyRequestBody,
    api_key: ApiKeyContext = Depends(get_api_key),
):
    """OpenAI Chat Completions compatible endpoint."""
    return await _proxy(request, payload, api_key)


@router.get("/v1/models", response_model=PublicModelList)
async def list_models(request: Request):
    """Active catalog with pricing. No authentication required."""
    models = request.app.state.registry.list_active()
    return PublicModelList(
        data=[
            PublicModel(
                id=str(model.id),
                display_name=model.display_name,
                provider_model=model.provider_model,
                pricing_input=float(model.pricing_input),
                pricing_output=float(model.pricing_output),
                is_active=model.is_active,
            )
            for model in models
        ]
    )


@router.get("/v1/credits", response_model=CreditsResponse)
async def get_credits(
    request: Request,
    api_key: ApiKeyContext = Depends(get_api_key),
    limit: int = Query(20, ge=1, le=100, description="Transactions per page"),
    offset: int = Query(0, ge=0),
    transaction_type: Optional[str] = Query(
        None, alias="type", description="Filter by grant, deduction or refund"
    ),
):
    """Balance of the key's owner and its ledger history."""
    ledger = request.app.state.ledger
    credits = ledger.get_balance(api_key.user_id)
    transactions, total = ledger.list_transactions(
        api_key.user_id, limit=limit, offset=offset, transaction_type=transaction_type
    )
    return CreditsResponse(
        balance=float(credits.balance) if credits else 0.0,
        total_purchased=float(credits.total_purchased) if credits else 0.0,
        total_consumed=float(credits.total_consumed) if credits else 0.0,
        transactions=[transaction_detail(t) for t in transactions],
        total_transactions=total,
    )


@router.get("/v1/usage", response_model=UsageResponse)
async def get_usage(
    request: Request,
    api_key: ApiKeyContext = Depends(get_api_key),
    start_date: Optional[datetime] = Query(None, description="Start date (ISO format)"),
    end_date: Optional[datetime] = Query(None, description="End date (ISO format)"),
    api_key_id: Optional[uuid.UUID] = Query(None, description="Only requests made with this key"),
    model_id: Optional[uuid.UUID] = Query(None, description="Only requests for this model"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
):
    """
    Get usage totals and recent requests for the key's owner.

    Totals and the listing apply the same filters; the listing is most
    recent first.
    """
    recorder = request.app.state.recorder
    filters = {
        "start_date": start_date,
        "end_date": end_date,
        "api_key_id": api_key_id,
        "model_id": model_id,
    }
    summary = recorder.summary(api_key.user_id, **filters)
    rows, total = recorder.recent(api_key.user_id, limit=limit, offset=offset, **filters)

    return UsageResponse(
        summary=UsageSummary(
            total_requests=summary["total_requests"],
            total_tokens_input=summary["total_tokens_input"],
            total_tokens_output=summary["total_tokens_output"],
            total_cost=float(summary["total_cost"]),
        ),
        requests=[
            UsageRecordDetail(
                id=str(row.id),
                model=row.model.display_name if row.model else None,
                api_key_id=str(row.api_key_id),
                status_code=row.status_code,
                tokens_input=row.tokens_input,
                tokens_output=row.tokens_output,
                cost=float(row.cost),
                duration_ms=row.duration_ms,
                error_message=row.error_message,
                created_at=row.created_at,
            )
            for row in rows
        ],
        total_requests=total,
        time_range={"start_date": start_date, "end_date": end_date},
    )


@router.get("/metrics")
async def metrics():
    """Prometheus metrics endpoint."""
    return Response(content=generate_latest(), media_type="text/plain")


@router.get("/health")
async def health():
    """Health check endpoint."""
    return {"status": "healthy", "service": "api-marketplace"}
