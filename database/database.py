import asyncio
import contextlib
import logging
from typing import Callable, Iterator, TypeVar

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool

from database.models import Base
from database.repository import NotificationRepository

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Database:
    """
    Engine + session factory for the notification tables.

    The ORM is synchronous; async callers go through run(), which executes
    one unit of work in a worker thread.
    """

    def __init__(self, url: str):
        self.url = url
        kwargs = {}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
            if url in ("sqlite://", "sqlite:///:memory:"):
                # one shared connection so every thread sees the same in-memory db
                kwargs["poolclass"] = StaticPool
        self.engine = create_engine(url, **kwargs)
        self.SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=self.engine)

    def create_tables(self) -> None:
        Base.metadata.create_all(self.engine)

    @contextlib.contextmanager
    def session_scope(self) -> Iterator[Session]:
        """Provide a transactional scope around a series of operations."""
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @contextlib.contextmanager
    def unit_of_work(self) -> Iterator[NotificationRepository]:
        """Yield a NotificationRepository bound to a fresh session."""
        with self.session_scope() as session:
            yield NotificationRepository(session)

    async def run(self, operation: Callable[[NotificationRepository], T]) -> T:
        """Run ``operation(repo)`` inside a unit of work without blocking the event loop."""
        def _work() -> T:
            with self.unit_of_work() as repo:
                return operation(repo)
        return await asyncio.to_thread(_work)

    def dispose(self) -> None:
        self.engine.dispose()
