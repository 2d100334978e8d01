"""API key issuance, authentication and validation."""
import hashlib
import hmac
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, List, Optional, Tuple

from fastapi import Request, Security
from fastapi.security import APIKeyHeader, HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy import select

from marketplace.cost.database import Database
from marketplace.cost.models import ApiKey, User
from marketplace.errors import ForbiddenError, NotFoundError, UnauthenticatedError
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)

API_KEY_PREFIX = "amp_"
API_KEY_BYTES = 32
DISPLAY_PREFIX_LENGTH = 12  # "amp_" + first 8 hex characters

# Credential sources: x-api-key wins over Authorization: Bearer
bearer_scheme = HTTPBearer(auto_error=False)
api_key_header = APIKeyHeader(name="x-api-key", auto_error=False)


def generate_api_key() -> Tuple[str, str]:
    """Return a new raw key and its non-secret display prefix."""
    key = API_KEY_PREFIX + secrets.token_hex(API_KEY_BYTES)
    return key, key[:DISPLAY_PREFIX_LENGTH]


def hash_api_key(api_key: str) -> str:
    """SHA-256 hex digest used as the lookup key."""
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()


def verify_api_key(plain_key: str, hashed_key: str) -> bool:
    """Constant-time comparison of a raw key against a stored hash."""
    return hmac.compare_digest(hash_api_key(plain_key), hashed_key)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class ApiKeyContext:
    """Identity attached to an authenticated proxy request."""

    user_id: uuid.UUID
    api_key_id: uuid.UUID
    allowed_models: Optional[List[str]] = None

    def allows_model(self, display_name: str) -> bool:
        """An empty or missing allow-list permits every model."""
        if not self.allowed_models:
            return True
        return display_name in self.allowed_models


class ApiKeyAuthenticator:
    """Resolves a raw credential to the owning user and permissions."""

    def __init__(self, database: Database):
        self.database = database

    def authenticate(self, credential: Optional[str], now: Optional[datetime] = None) -> ApiKeyContext:
        """
        Validate a raw API key.

        Raises:
            UnauthenticatedError: Missing, unknown, revoked or expired key
            ForbiddenError: Owning user is not active
        """
        if not credential:
            raise UnauthenticatedError("Missing API key")

        key_hash = hash_api_key(credential)
        with self.database.session() as session:
            row = session.execute(
                select(ApiKey, User.status)
                .join(User, ApiKey.user_id == User.id)
                .where(ApiKey.key_hash == key_hash, ApiKey.revoked_at.is_(None))
            ).first()

        if row is None or not hmac.compare_digest(row.ApiKey.key_hash, key_hash):
            raise UnauthenticatedError("Invalid API key")

        api_key = row.ApiKey
        now = now or datetime.now(timezone.utc)
        if api_key.expires_at is not None and _as_utc(api_key.expires_at) < now:
            raise UnauthenticatedError("API key has expired")

        if row.status != "active":
            raise ForbiddenError("User account is suspended")

        return ApiKeyContext(
            user_id=api_key.user_id,
            api_key_id=api_key.id,
            allowed_models=list(api_key.allowed_models) if api_key.allowed_models else None,
        )


class ApiKeyService:
    """Issues and manages platform API keys for a user."""

    def __init__(self, database: Database):
        self.database = database

    def create(
        self,
        user_id: uuid.UUID,
        name: str,
        allowed_models: Optional[List[str]] = None,
        quota_limit: Optional[int] = None,
        expires_at: Optional[datetime] = None,
    ) -> Tuple[ApiKey, str]:
        """
        Create a key. The raw key is returned here and never again.

        Returns:
            Tuple of (stored ApiKey, raw key)
        """
        raw_key, prefix = generate_api_key()
        with self.database.transaction() as session:
            if session.get(User, user_id) is None:
                raise NotFoundError("User not found")
            api_key = ApiKey(
                user_id=user_id,
                name=name,
                key_hash=hash_api_key(raw_key),
                key_prefix=prefix,
                allowed_models=allowed_models or None,
                quota_limit=quota_limit,
                quota_used=0,
                expires_at=expires_at,
            )
            session.add(api_key)

        logger.info("API key created", extra={"api_key_id": str(api_key.id), "user_id": str(user_id)})
        return api_key, raw_key

    def list_for_user(self, user_id: uuid.UUID) -> List[ApiKey]:
        with self.database.session() as session:
            return list(
                session.scalars(
                    select(ApiKey)
                    .where(ApiKey.user_id == user_id, ApiKey.revoked_at.is_(None))
                    .order_by(ApiKey.created_at.desc())
                )
            )

    def update(self, user_id: uuid.UUID, key_id: uuid.UUID, **changes: Any) -> ApiKey:
        """
        Change name, allowed_models, quota_limit or expires_at.

        Fields passed as None are left unchanged. An empty allowed_models
        list clears the restriction.
        """
        with self.database.transaction() as session:
            api_key = session.scalars(
                select(ApiKey).where(
                    ApiKey.id == key_id,
                    ApiKey.user_id == user_id,
                    ApiKey.revoked_at.is_(None),
                )
            ).first()
            if api_key is None:
                raise NotFoundError("API key not found")

            for field in ("name", "allowed_models", "quota_limit", "expires_at"):
                value = changes.get(field)
                if value is None:
                    continue
                if field == "allowed_models":
                    value = value or None
                setattr(api_key, field, value)

        logger.info("API key updated", extra={"api_key_id": str(key_id), "user_id": str(user_id)})
        return api_key

    def revoke(self, user_id: uuid.UUID, key_id: uuid.UUID) -> ApiKey:
        """Set revoked_at; the row is kept for usage history."""
        with self.database.transaction() as session:
            api_key = session.scalars(
                select(ApiKey).where(
                    ApiKey.id == key_id,
                    ApiKey.user_id == user_id,
                    ApiKey.revoked_at.is_(None),
                )
            ).first()
            if api_key is None:
                raise NotFoundError("API key not found")
            api_key.revoked_at = datetime.now(timezone.utc)

        logger.info("API key revoked", extra={"api_key_id": str(key_id), "user_id": str(user_id)})
        return api_key


async def get_api_key(
    request: Request,
    header_key: Optional[str] = Security(api_key_header),
    credentials: Optional[HTTPAuthorizationCredentials] = Security(bearer_scheme),
) -> ApiKeyContext:
    """
    FastAPI dependency authenticating the caller's platform API key.

    Raises:
        UnauthenticatedError / ForbiddenError, rendered by the app's
        exception handler
    """
    credential = header_key or (credentials.credentials if credentials else None)
    context = request.app.state.authenticator.authenticate(credential)
    request.state.api_key = context
    return context
