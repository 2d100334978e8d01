"""Database models for the model catalog, API keys, credits and usage."""
import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

# Precision used for every monetary column
Money = Numeric(18, 8)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    """Account owning API keys and a credit balance."""

    __tablename__ = "users"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    email = Column(String(255), unique=True, nullable=False)
    status = Column(String(20), nullable=False, default="active")  # active, suspended
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    # Relationships
    credits = relationship("UserCredits", back_populates="user", uselist=False)
    api_keys = relationship("ApiKey", back_populates="user")


class ShadowModel(Base):
    """Provider-backed model exposed to customers under a display name."""

    __tablename__ = "shadow_models"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    display_name = Column(String(100), unique=True, nullable=False, index=True)
    provider_base_url = Column(String(500), nullable=False)
    provider_token = Column(Text, nullable=False)  # AES-256-GCM ciphertext
    provider_model = Column(String(200), nullable=False)
    provider_format = Column(String(20), nullable=True)  # anthropic, openai, NULL = detect
    pricing_input = Column(Money, nullable=False, default=0)  # per 1K tokens
    pricing_output = Column(Money, nullable=False, default=0)  # per 1K tokens
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


class ApiKey(Base):
    """Platform API key used by customers to access the proxy."""

    __tablename__ = "api_keys"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    key_hash = Column(String(64), unique=True, nullable=False, index=True)
    key_prefix = Column(String(20), nullable=False)
    allowed_models = Column(JSON, nullable=True)
    quota_limit = Column(Integer, nullable=True)
    quota_used = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    revoked_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    # Relationships
    user = relationship("User", back_populates="api_keys")


class UserCredits(Base):
    """Materialized credit balance; every change has a CreditTransaction."""

    __tablename__ = "user_credits"

    user_id = Column(Uuid, ForeignKey("users.id"), primary_key=True)
    balance = Column(Money, nullable=False, default=0)
    total_purchased = Column(Money, nullable=False, default=0)
    total_consumed = Column(Money, nullable=False, default=0)
    updated_at = Column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    # Relationships
    user = relationship("User", back_populates="credits")


class CreditTransaction(Base):
    """Append-only credit ledger entry."""

    __tablename__ = "credit_transactions"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    type = Column(String(20), nullable=False)  # grant, deduction, refund
    amount = Column(Money, nullable=False)  # negative for deductions
    balance_after = Column(Money, nullable=False)
    description = Column(String(500), nullable=True)
    # "metadata" is reserved on declarative classes
    details = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_credit_transactions_user_created", "user_id", "created_at"),
    )


class ApiRequest(Base):
    """One row per proxied call, successful or not."""

    __tablename__ = "api_requests"

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(Uuid, ForeignKey("users.id"), nullable=False)
    api_key_id = Column(Uuid, ForeignKey("api_keys.id"), nullable=False, index=True)
    model_id = Column(Uuid, ForeignKey("shadow_models.id"), nullable=False)
    tokens_input = Column(Integer, nullable=False, default=0)
    tokens_output = Column(Integer, nullable=False, default=0)
    cost = Column(Money, nullable=False, default=0)
    status_code = Column(Integer, nullable=False)
    duration_ms = Column(Integer, nullable=False, default=0)
    ip_address = Column(String(64), nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    # Relationships
    model = relationship("ShadowModel")

    __table_args__ = (
        Index("idx_api_requests_user_created", "user_id", "created_at"),
        Index("idx_api_requests_model", "model_id"),
    )
