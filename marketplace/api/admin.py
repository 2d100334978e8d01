"""Operator endpoints: catalog, users, credits and API keys."""
import hmac
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, Query, Request, Security, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from pydantic import BaseModel, Field

from marketplace.api.routes import TransactionDetail, transaction_detail
from marketplace.config import settings
from marketplace.errors import ForbiddenError, UnauthenticatedError
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)

admin_scheme = HTTPBearer(auto_error=False)


async def require_admin(
    credentials: Optional[HTTPAuthorizationCredentials] = Security(admin_scheme),
) -> None:
    """
    Check the bearer token against the configured admin token.

    Raises:
        ForbiddenError: No admin token is configured
        UnauthenticatedError: Missing or wrong token
    """
    if not settings.admin_token:
        raise ForbiddenError("Admin API is disabled")
    if credentials is None:
        raise UnauthenticatedError("Missing admin token")
    if not hmac.compare_digest(
        credentials.credentials.encode("utf-8"), settings.admin_token.encode("utf-8")
    ):
        raise UnauthenticatedError("Invalid admin token")


router = APIRouter(prefix="/admin", dependencies=[Depends(require_admin)])


class ModelCreate(BaseModel):
    """New shadow model."""

    display_name: str = Field(..., min_length=1, max_length=100)
    provider_base_url: str
    provider_token: str = Field(..., min_length=1)
    provider_model: str = Field(..., min_length=1)
    provider_format: Optional[str] = Field(None, description="anthropic or openai; detected from the URL if omitted")
    pricing_input: Decimal = Field(Decimal("0"), description="Credits per 1K input tokens")
    pricing_output: Decimal = Field(Decimal("0"), description="Credits per 1K output tokens")
    is_active: bool = True


class ModelUpdate(BaseModel):
    """Partial update; omitted fields are unchanged."""

    display_name: Optional[str] = Field(None, min_length=1, max_length=100)
    provider_base_url: Optional[str] = None
    provider_token: Optional[str] = None
    provider_model: Optional[str] = None
    provider_format: Optional[str] = None
    pricing_input: Optional[Decimal] = None
    pricing_output: Optional[Decimal] = None
    is_active: Optional[bool] = None


class ModelDetail(BaseModel):
    """Admin view of a shadow model; the provider token is masked."""

    id: str
    display_name: str
    provider_base_url: str
    provider_token: str
    provider_model: str
    provider_format: Optional[str] = None
    pricing_input: float
    pricing_output: float
    is_active: bool
    created_at: datetime
    updated_at: Optional[datetime] = None


class UserCreate(BaseModel):
    email: str
    initial_credits: Decimal = Decimal("0")


class UserStatusUpdate(BaseModel):
    status: str = Field(..., description="active or suspended")


class UserDetail(BaseModel):
    id: str
    email: str
    status: str
    balance: float
    total_purchased: float
    total_consumed: float
    created_at: datetime


class CreditAdjustment(BaseModel):
    amount: Decimal
    description: Optional[str] = None


class TransactionList(BaseModel):
    data: List[TransactionDetail]
    total: int


class ApiKeyCreate(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    allowed_models: Optional[List[str]] = Field(None, description="Empty or omitted allows every model")
    quota_limit: Optional[int] = Field(None, ge=0)
    expires_at: Optional[datetime] = None


class ApiKeyUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    allowed_models: Optional[List[str]] = None
    quota_limit: Optional[int] = Field(None, ge=0)
    expires_at: Optional[datetime] = None


class ApiKeyDetail(BaseModel):
    id: str
    name: str
    key_prefix: str
    allowed_models: Optional[List[str]] = None
    quota_limit: Optional[int] = None
    quota_used: int
    expires_at: Optional[datetime] = None
    revoked_at: Optional[datetime] = None
    created_at: datetime


class ApiKeyCreated(ApiKeyDetail):
    """Returned once at creation; `key` is never retrievable again."""

    key: str


def _user_detail(request: Request, user) -> UserDetail:
    credits = request.app.state.ledger.get_balance(user.id)
    return UserDetail(
        id=str(user.id),
        email=user.email,
        status=user.status,
        balance=float(credits.balance) if credits else 0.0,
        total_purchased=float(credits.total_purchased) if credits else 0.0,
        total_consumed=float(credits.total_consumed) if credits else 0.0,
        created_at=user.created_at,
    )


def _api_key_detail(api_key) -> Dict[str, Any]:
    return {
        "id": str(api_key.id),
        "name": api_key.name,
        "key_prefix": api_key.key_prefix,
        "allowed_models": api_key.allowed_models,
        "quota_limit": api_key.quota_limit,
        "quota_used": api_key.quota_used,
        "expires_at": api_key.expires_at,
        "revoked_at": api_key.revoked_at,
        "created_at": api_key.created_at,
    }


# Shadow models
@router.get("/models", response_model=List[ModelDetail])
async def list_all_models(request: Request):
    """All models, newest first, including inactive ones."""
    registry = request.app.state.registry
    return [registry.to_admin_dict(model) for model in registry.list_all()]


@router.post("/models", response_model=ModelDetail, status_code=status.HTTP_201_CREATED)
async def create_model(request: Request, payload: ModelCreate):
    registry = request.app.state.registry
    model = registry.create(**payload.model_dump())
    return registry.to_admin_dict(model)


@router.get("/models/{model_id}", response_model=ModelDetail)
async def get_model(request: Request, model_id: uuid.UUID):
    registry = request.app.state.registry
    return registry.to_admin_dict(registry.get(model_id))


@router.put("/models/{model_id}", response_model=ModelDetail)
async def update_model(request: Request, model_id: uuid.UUID, payload: ModelUpdate):
    """Send `provider_format: ""` to fall back to URL detection."""
    registry = request.app.state.registry
    model = registry.update(model_id, **payload.model_dump(exclude_unset=True))
    return registry.to_admin_dict(model)


@router.delete("/models/{model_id}", response_model=ModelDetail)
async def delete_model(request: Request, model_id: uuid.UUID):
    """Soft delete: the model is deactivated and kept for usage history."""
    registry = request.app.state.registry
    return registry.to_admin_dict(registry.deactivate(model_id))


# Users and credits
@router.post("/users", response_model=UserDetail, status_code=status.HTTP_201_CREATED)
async def create_user(request: Request, payload: UserCreate):
    """Create a user together with its credit account."""
    user = request.app.state.users.create(payload.email)
    request.app.state.ledger.open_account(user.id, initial_grant=payload.initial_credits)
    return _user_detail(request, user)


@router.get("/users/{user_id}", response_model=UserDetail)
async def get_user(request: Request, user_id: uuid.UUID):
    return _user_detail(request, request.app.state.users.get(user_id))


@router.patch("/users/{user_id}", response_model=UserDetail)
async def update_user_status(request: Request, user_id: uuid.UUID, payload: UserStatusUpdate):
    user = request.app.state.users.set_status(user_id, payload.status)
    return _user_detail(request, user)


@router.post("/users/{user_id}/credits", response_model=TransactionDetail)
async def grant_credits(request: Request, user_id: uuid.UUID, payload: CreditAdjustment):
    transaction = request.app.state.ledger.credit(
        user_id,
        payload.amount,
        payload.description or "Admin credit grant",
        metadata={"source": "admin"},
    )
    return transaction_detail(transaction)


@router.post("/users/{user_id}/credits/deduct", response_model=TransactionDetail)
async def deduct_credits(request: Request, user_id: uuid.UUID, payload: CreditAdjustment):
    transaction = request.app.state.ledger.admin_deduct(
        user_id, payload.amount, payload.description or "Admin credit deduction"
    )
    return transaction_detail(transaction)


@router.post("/users/{user_id}/credits/refund", response_model=TransactionDetail)
async def refund_credits(request: Request, user_id: uuid.UUID, payload: CreditAdjustment):
    transaction = request.app.state.ledger.refund(
        user_id, payload.amount, payload.description or "Admin refund"
    )
    return transaction_detail(transaction)


@router.get("/users/{user_id}/transactions", response_model=TransactionList)
async def list_transactions(
    request: Request,
    user_id: uuid.UUID,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    transaction_type: Optional[str] = Query(None, alias="type"),
):
    rows, total = request.app.state.ledger.list_transactions(
        user_id, limit=limit, offset=offset, transaction_type=transaction_type
    )
    return TransactionList(data=[transaction_detail(row) for row in rows], total=total)


# API keys
@router.get("/users/{user_id}/api-keys", response_model=List[ApiKeyDetail])
async def list_api_keys(request: Request, user_id: uuid.UUID):
    return [_api_key_detail(key) for key in request.app.state.api_keys.list_for_user(user_id)]


@router.post(
    "/users/{user_id}/api-keys",
    response_model=ApiKeyCreated,
    status_code=status.HTTP_201_CREATED,
)
async def create_api_key(request: Request, user_id: uuid.UUID, payload: ApiKeyCreate):
    api_key, raw_key = request.app.state.api_keys.create(
        user_id,
        payload.name,
        allowed_models=payload.allowed_models,
        quota_limit=payload.quota_limit,
        expires_at=payload.expires_at,
    )
    return {**_api_key_detail(api_key), "key": raw_key}


@router.patch("/users/{user_id}/api-keys/{key_id}", response_model=ApiKeyDetail)
async def update_api_key(
    request: Request, user_id: uuid.UUID, key_id: uuid.UUID, payload: ApiKeyUpdate
):
    api_key = request.app.state.api_keys.update(
        user_id, key_id, **payload.model_dump(exclude_unset=True)
    )
    return _api_key_detail(api_key)


@router.delete("/users/{user_id}/api-keys/{key_id}", response_model=ApiKeyDetail)
async def revoke_api_key(request: Request, user_id: uuid.UUID, key_id: uuid.UUID):
    return _api_key_detail(request.app.state.api_keys.revoke(user_id, key_id))
