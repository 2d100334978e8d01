"""Prepaid credit ledger: one balance per user plus an append-only log."""
import uuid
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from marketplace.cost.database import Database
from marketplace.cost.models import CreditTransaction, UserCredits, utcnow
from marketplace.cost.tracker import quantize_credits
from marketplace.errors import (
    InsufficientCreditsError,
    InvalidAmountError,
    NotFoundError,
)
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)

GRANT = "grant"
DEDUCTION = "deduction"
REFUND = "refund"
TRANSACTION_TYPES = (GRANT, DEDUCTION, REFUND)


def _positive_amount(amount: Any) -> Decimal:
    """Parse an amount and round it to stored precision; must stay above zero."""
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        raise InvalidAmountError("Amount must be a number")
    if not value.is_finite():
        raise InvalidAmountError("Amount must be positive")
    try:
        value = quantize_credits(value)
    except InvalidOperation:
        raise InvalidAmountError("Amount is out of range")
    if value <= 0:
        raise InvalidAmountError("Amount must be positive")
    return value


class CreditLedger:
    """
    Every balance change runs as one transaction that updates UserCredits
    and inserts the matching CreditTransaction, so
    balance == total_purchased - total_consumed holds after each commit.
    """

    def __init__(self, database: Database):
        self.database = database

    def _balance(self, session: Session, user_id: uuid.UUID) -> Optional[Decimal]:
        return session.scalar(select(UserCredits.balance).where(UserCredits.user_id == user_id))

    def open_account(self, user_id: uuid.UUID, initial_grant: Any = 0) -> UserCredits:
        """Create the user's credit record if it does not exist yet."""
        try:
            with self.database.transaction() as session:
                credits = session.get(UserCredits, user_id)
                if credits is None:
                    credits = UserCredits(
                        user_id=user_id,
                        balance=Decimal("0"),
                        total_purchased=Decimal("0"),
                        total_consumed=Decimal("0"),
                    )
                    session.add(credits)
        except IntegrityError:
            # Created concurrently by another request
            logger.info("Credit account already exists", extra={"user_id": str(user_id)})

        if initial_grant and Decimal(str(initial_grant)) > 0:
            self.credit(user_id, initial_grant, "Initial credit grant")

        return self.get_balance(user_id)

    def get_balance(self, user_id: uuid.UUID) -> Optional[UserCredits]:
        with self.database.session() as session:
            return session.get(UserCredits, user_id)

    def check_sufficient(self, user_id: uuid.UUID, estimated_cost: Any) -> bool:
        """Advisory pre-check; does not reserve funds."""
        with self.database.session() as session:
            balance = self._balance(session, user_id)
        if balance is None:
            return False
        return Decimal(balance) >= Decimal(str(estimated_cost))

    def debit(
        self,
        user_id: uuid.UUID,
        amount: Any,
        metadata: Optional[Dict[str, Any]] = None,
        description: Optional[str] = None,
    ) -> CreditTransaction:
        """
        Deduct credits.

        The sufficiency check is part of the UPDATE's WHERE clause, so two
        concurrent debits can never both spend the same balance.

        Raises:
            InvalidAmountError: If amount <= 0
            InsufficientCreditsError: If the balance is lower than amount
            NotFoundError: If the user has no credit account
        """
        value = _positive_amount(amount)
        metadata = metadata or {}
        if description is None:
            description = (
                f"API usage: {metadata.get('tokens_input', 0)} input + "
                f"{metadata.get('tokens_output', 0)} output tokens"
            )

        with self.database.transaction() as session:
            result = session.execute(
                update(UserCredits)
                .where(UserCredits.user_id == user_id, UserCredits.balance >= value)
                .values(
                    balance=UserCredits.balance - value,
                    total_consumed=UserCredits.total_consumed + value,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                if self._balance(session, user_id) is None:
                    raise NotFoundError("User credits not found")
                raise InsufficientCreditsError()

            transaction = CreditTransaction(
                user_id=user_id,
                type=DEDUCTION,
                amount=-value,
                balance_after=self._balance(session, user_id),
                description=description,
                details=metadata,
            )
            session.add(transaction)

        logger.info(
            "Credits deducted",
            extra={"user_id": str(user_id), "cost": str(value)},
        )
        return transaction

    def credit(
        self,
        user_id: uuid.UUID,
        amount: Any,
        description: str,
        metadata: Optional[Dict[str, Any]] = None,
        transaction_type: str = GRANT,
    ) -> CreditTransaction:
        """
        Add credits (admin grant or refund).

        Both kinds increase total_purchased so the accumulators stay
        monotonic and the conservation invariant holds.
        """
        value = _positive_amount(amount)

        with self.database.transaction() as session:
            result = session.execute(
                update(UserCredits)
                .where(UserCredits.user_id == user_id)
                .values(
                    balance=UserCredits.balance + value,
                    total_purchased=UserCredits.total_purchased + value,
                    updated_at=utcnow(),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise NotFoundError("User credits not found")

            transaction = CreditTransaction(
                user_id=user_id,
                type=transaction_type,
                amount=value,
                balance_after=self._balance(session, user_id),
                description=description,
                details=metadata,
            )
            session.add(transaction)

        logger.info(
            f"Credits added ({transaction_type})",
            extra={"user_id": str(user_id), "cost": str(value)},
        )
        return transaction

    def refund(self, user_id: uuid.UUID, amount: Any, description: str) -> CreditTransaction:
        return self.credit(user_id, amount, description, transaction_type=REFUND)

    def admin_deduct(self, user_id: uuid.UUID, amount: Any, description: str) -> CreditTransaction:
        return self.debit(user_id, amount, metadata={"source": "admin"}, description=description)

    def list_transactions(
        self,
        user_id: uuid.UUID,
        limit: int = 20,
        offset: int = 0,
        transaction_type: Optional[str] = None,
    ) -> Tuple[List[CreditTransaction], int]:
        """Most recent first, with the total count for pagination."""
        query = select(CreditTransaction).where(CreditTransaction.user_id == user_id)
        if transaction_type:
            query = query.where(CreditTransaction.type == transaction_type)

        with self.database.session() as session:
            total = session.scalar(select(func.count()).select_from(query.subquery())) or 0
            rows = list(
                session.scalars(
                    query.order_by(CreditTransaction.created_at.desc())
                    .offset(offset)
                    .limit(limit)
                )
            )
        return rows, total
