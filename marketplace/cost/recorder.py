"""Append-only log of proxied requests."""
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import selectinload

from marketplace.cost.database import Database
from marketplace.cost.models import ApiRequest
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RequestRecord:
    """Everything written to the api_requests table for one call."""

    user_id: uuid.UUID
    api_key_id: uuid.UUID
    model_id: uuid.UUID
    status_code: int
    tokens_input: int = 0
    tokens_output: int = 0
    cost: Decimal = Decimal("0")
    duration_ms: int = 0
    ip_address: Optional[str] = None
    error_message: Optional[str] = None


class UsageRecorder:
    """Writes ApiRequest rows. Logging is best-effort and never raises."""

    def __init__(self, database: Database, attempts: int = 2):
        self.database = database
        self.attempts = attempts

    def log(self, record: RequestRecord) -> Optional[ApiRequest]:
        """
        Insert exactly one ApiRequest row in its own transaction.

        Returns:
            The stored row, or None if persistence failed on every attempt
        """
        for attempt in range(1, self.attempts + 1):
            try:
                with self.database.transaction() as session:
                    row = ApiRequest(
                        user_id=record.user_id,
                        api_key_id=record.api_key_id,
                        model_id=record.model_id,
                        tokens_input=record.tokens_input,
                        tokens_output=record.tokens_output,
                        cost=record.cost,
                        status_code=record.status_code,
                        duration_ms=record.duration_ms,
                        ip_address=record.ip_address,
                        error_message=record.error_message,
                    )
                    session.add(row)
                return row
            except SQLAlchemyError as e:
                logger.error(
                    f"Failed to record request (attempt {attempt}/{self.attempts})",
                    extra={
                        "api_key_id": str(record.api_key_id),
                        "status_code": record.status_code,
                        "cost": str(record.cost),
                        "error": str(e),
                    },
                )
        return None

    def _filters(
        self,
        user_id: uuid.UUID,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        api_key_id: Optional[uuid.UUID] = None,
        model_id: Optional[uuid.UUID] = None,
    ) -> List[Any]:
        conditions = [ApiRequest.user_id == user_id]
        if start_date:
            conditions.append(ApiRequest.created_at >= start_date)
        if end_date:
            conditions.append(ApiRequest.created_at <= end_date)
        if api_key_id:
            conditions.append(ApiRequest.api_key_id == api_key_id)
        if model_id:
            conditions.append(ApiRequest.model_id == model_id)
        return conditions

    def summary(
        self,
        user_id: uuid.UUID,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        api_key_id: Optional[uuid.UUID] = None,
        model_id: Optional[uuid.UUID] = None,
    ) -> Dict[str, Any]:
        """Totals over the user's requests, optionally filtered."""
        query = select(
            func.count(ApiRequest.id).label("total_requests"),
            func.sum(ApiRequest.tokens_input).label("total_tokens_input"),
            func.sum(ApiRequest.tokens_output).label("total_tokens_output"),
            func.sum(ApiRequest.cost).label("total_cost"),
        ).where(*self._filters(user_id, start_date, end_date, api_key_id, model_id))

        with self.database.session() as session:
            row = session.execute(query).one()

        return {
            "total_requests": row.total_requests or 0,
            "total_tokens_input": row.total_tokens_input or 0,
            "total_tokens_output": row.total_tokens_output or 0,
            "total_cost": Decimal(row.total_cost or 0),
        }

    def recent(
        self,
        user_id: uuid.UUID,
        limit: int = 20,
        offset: int = 0,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
        api_key_id: Optional[uuid.UUID] = None,
        model_id: Optional[uuid.UUID] = None,
    ) -> Tuple[List[ApiRequest], int]:
        """Most recent requests first, with the total count.

        Takes the same filters as summary().
        """
        conditions = self._filters(user_id, start_date, end_date, api_key_id, model_id)
        with self.database.session() as session:
            total = session.scalar(select(func.count(ApiRequest.id)).where(*conditions)) or 0
            rows = list(
                session.scalars(
                    select(ApiRequest)
                    .where(*conditions)
                    .order_by(ApiRequest.created_at.desc())
                    .options(selectinload(ApiRequest.model))
                    .offset(offset)
                    .limit(limit)
                )
            )
        return rows, total
