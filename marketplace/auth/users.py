"""User accounts."""
import uuid
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from marketplace.cost.database import Database
from marketplace.cost.models import User
from marketplace.errors import NotFoundError, ValidationFailedError
from marketplace.utils.logging import get_logger

logger = get_logger(__name__)

USER_STATUSES = ("active", "suspended")


class UserDirectory:
    def __init__(self, database: Database):
        self.database = database

    def create(self, email: str) -> User:
        """Raises ValidationFailedError if the email is taken."""
        email = email.strip().lower()
        if not email or "@" not in email:
            raise ValidationFailedError("Invalid email address")
        try:
            with self.database.transaction() as session:
                user = User(email=email, status="active")
                session.add(user)
        except IntegrityError:
            raise ValidationFailedError("User with this email already exists")

        logger.info("User created", extra={"user_id": str(user.id)})
        return user

    def get(self, user_id: uuid.UUID) -> User:
        with self.database.session() as session:
            user = session.get(User, user_id)
        if user is None:
            raise NotFoundError("User not found")
        return user

    def find_by_email(self, email: str) -> Optional[User]:
        with self.database.session() as session:
            return session.scalars(select(User).where(User.email == email.strip().lower())).first()

    def set_status(self, user_id: uuid.UUID, status: str) -> User:
        """Suspended users fail authentication with Forbidden."""
        if status not in USER_STATUSES:
            raise ValidationFailedError(f"status must be one of: {', '.join(USER_STATUSES)}")
        with self.database.transaction() as session:
            user = session.get(User, user_id)
            if user is None:
                raise NotFoundError("User not found")
            user.status = status

        logger.info(f"User status set to {status}", extra={"user_id": str(user_id)})
        return user
