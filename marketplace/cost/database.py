"""Database connection and session management."""
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from marketplace.config import settings
from marketplace.cost.models import Base


class Database:
    """Engine and session factory shared by every component.

    Created once per process and passed to the services that need storage.
    """

    def __init__(self, url: Optional[str] = None, engine: Optional[Engine] = None, **engine_kwargs):
        self.url = url or settings.database_url
        self.engine = engine or create_engine(self.url, echo=False, **engine_kwargs)
        self._sessionmaker = sessionmaker(
            bind=self.engine, autoflush=False, expire_on_commit=False
        )

    def init_db(self) -> None:
        """Create tables that do not exist yet."""
        Base.metadata.create_all(bind=self.engine)

    def close(self) -> None:
        self.engine.dispose()

    def session(self) -> Session:
        return self._sessionmaker()

    @contextmanager
    def transaction(self) -> Iterator[Session]:
        """Session wrapped in a single transaction.

        Commits on success, rolls back on any exception.
        """
        with self._sessionmaker.begin() as session:
            yield session
