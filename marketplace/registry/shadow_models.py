"""Shadow model catalog: provider connection config behind public names."""
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from sqlalchemy import select
from sqlalchemy.orm import Session

from marketplace.cost.database import Database
from marketplace.cost.models import ShadowModel
from marketplace.errors import (
    ModelInactiveError,
    ModelNotFoundError,
    NotFoundError,
    ValidationFailedError,
)
from marketplace.routing.rules import PROVIDER_FORMATS
from marketplace.utils.encryption import EncryptionService, mask_secret
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class ResolvedModel:
    """Active model with its provider token decrypted for an outbound call."""

    id: uuid.UUID
    display_name: str
    provider_base_url: str
    provider_token: str
    provider_model: str
    provider_format: Optional[str]
    pricing_input: Decimal
    pricing_output: Decimal


def validate_base_url(url: str) -> None:
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationFailedError("Invalid provider base URL format")


def _validate_pricing(name: str, value: Any) -> Decimal:
    try:
        amount = Decimal(str(value))
    except InvalidOperation:
        raise ValidationFailedError(f"{name} must be a number")
    if not amount.is_finite() or amount < 0:
        raise ValidationFailedError(f"{name} must be a non-negative number")
    return amount


def _validate_format(value: Optional[str]) -> Optional[str]:
    if value is not None and value not in PROVIDER_FORMATS:
        raise ValidationFailedError(
            f"provider_format must be one of: {', '.join(PROVIDER_FORMATS)}"
        )
    return value


class ModelRegistry:
    """Creates, updates and resolves shadow models."""

    def __init__(self, database: Database, encryption: EncryptionService):
        self.database = database
        self.encryption = encryption

    def _get_by_name(self, session: Session, display_name: str) -> Optional[ShadowModel]:
        return session.scalars(
            select(ShadowModel).where(ShadowModel.display_name == display_name)
        ).first()

    def create(
        self,
        display_name: str,
        provider_base_url: str,
        provider_token: str,
        provider_model: str,
        pricing_input: Any,
        pricing_output: Any,
        is_active: bool = True,
        provider_format: Optional[str] = None,
    ) -> ShadowModel:
        validate_base_url(provider_base_url)
        pricing_in = _validate_pricing("pricing_input", pricing_input)
        pricing_out = _validate_pricing("pricing_output", pricing_output)
        _validate_format(provider_format)

        with self.database.transaction() as session:
            if self._get_by_name(session, display_name):
                raise ValidationFailedError("Model with this display name already exists")

            model = ShadowModel(
                display_name=display_name,
                provider_base_url=provider_base_url,
                provider_token=self.encryption.encrypt(provider_token),
                provider_model=provider_model,
                provider_format=provider_format,
                pricing_input=pricing_in,
                pricing_output=pricing_out,
                is_active=is_active,
            )
            session.add(model)

        logger.info("Shadow model created", extra={"model": display_name})
        return model

    def update(self, model_id: uuid.UUID, **changes: Any) -> ShadowModel:
        """Apply a partial update; keys with a None value are ignored.

        `provider_format` may be cleared by passing an empty string.
        """
        changes = {k: v for k, v in changes.items() if v is not None}

        if "provider_base_url" in changes:
            validate_base_url(changes["provider_base_url"])
        for field in ("pricing_input", "pricing_output"):
            if field in changes:
                changes[field] = _validate_pricing(field, changes[field])
        if "provider_format" in changes:
            changes["provider_format"] = _validate_format(changes["provider_format"] or None)

        with self.database.transaction() as session:
            model = session.get(ShadowModel, model_id)
            if model is None:
                raise NotFoundError("Model not found")

            new_name = changes.get("display_name")
            if new_name and new_name != model.display_name:
                conflict = self._get_by_name(session, new_name)
                if conflict is not None and conflict.id != model.id:
                    raise ValidationFailedError("Model with this display name already exists")

            if "provider_token" in changes:
                changes["provider_token"] = self.encryption.encrypt(changes["provider_token"])

            for field, value in changes.items():
                setattr(model, field, value)

        logger.info("Shadow model updated", extra={"model": model.display_name})
        return model

    def deactivate(self, model_id: uuid.UUID) -> ShadowModel:
        """Soft delete. Usage rows keep referencing the model."""
        with self.database.transaction() as session:
            model = session.get(ShadowModel, model_id)
            if model is None:
                raise NotFoundError("Model not found")
            model.is_active = False

        logger.info("Shadow model deactivated", extra={"model": model.display_name})
        return model

    def get(self, model_id: uuid.UUID) -> ShadowModel:
        with self.database.session() as session:
            model = session.get(ShadowModel, model_id)
        if model is None:
            raise NotFoundError("Model not found")
        return model

    def resolve_active(self, display_name: str) -> ResolvedModel:
        with self.database.session() as session:
            model = self._get_by_name(session, display_name)

        if model is None:
            raise ModelNotFoundError(f"Model not found: {display_name}")
        if not model.is_active:
            raise ModelInactiveError(f"Model is not active: {display_name}")

        return ResolvedModel(
            id=model.id,
            display_name=model.display_name,
            provider_base_url=model.provider_base_url,
            provider_token=self.encryption.decrypt(model.provider_token),
            provider_model=model.provider_model,
            provider_format=model.provider_format,
            pricing_input=Decimal(model.pricing_input),
            pricing_output=Decimal(model.pricing_output),
        )

    def list_active(self) -> List[ShadowModel]:
        with self.database.session() as session:
            return list(
                session.scalars(
                    select(ShadowModel)
                    .where(ShadowModel.is_active.is_(True))
                    .order_by(ShadowModel.display_name.asc())
                )
            )

    def list_all(self) -> List[ShadowModel]:
        with self.database.session() as session:
            return list(
                session.scalars(select(ShadowModel).order_by(ShadowModel.created_at.desc()))
            )

    def masked_token(self, model: ShadowModel) -> str:
        """Admin-facing view of the provider token."""
        return mask_secret(self.encryption.decrypt(model.provider_token))

    def to_admin_dict(self, model: ShadowModel) -> Dict[str, Any]:
        return {
            "id": str(model.id),
            "display_name": model.display_name,
            "provider_base_url": model.provider_base_url,
            "provider_token": self.masked_token(model),
            "provider_model": model.provider_model,
            "provider_format": model.provider_format,
            "pricing_input": float(model.pricing_input),
            "pricing_output": float(model.pricing_output),
            "is_active": model.is_active,
            "created_at": model.created_at,
            "updated_at": model.updated_at,
        }
