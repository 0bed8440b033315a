from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import create_engine, text
from sqlalchemy.orm import sessionmaker, DeclarativeBase, Session

from .config import Settings


class Base(DeclarativeBase):
    pass


class Database:
    """Owns the engine and session factory for one application instance."""

    def __init__(self, settings: Settings):
        if settings.is_sqlite:
            engine_kwargs = {"connect_args": {"check_same_thread": False}}
        else:
            engine_kwargs = {
                "pool_size": settings.db_pool_size,
                "pool_timeout": settings.db_pool_timeout,
                "pool_pre_ping": True,
            }
        self.engine = create_engine(
            settings.database_url,
            echo=settings.log_sql,
            **engine_kwargs,
        )
        self._session_factory = sessionmaker(
            bind=self.engine, autoflush=False, autocommit=False, expire_on_commit=False
        )

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Context-manager style session with automatic commit/rollback."""
        session: Session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def create_all(self) -> None:
        # Import for side effect: registers ORM mappings with Base.metadata
        from . import models  # noqa: F401

        Base.metadata.create_all(bind=self.engine)

    def ping(self) -> None:
        """Round-trip to the database. Raises SQLAlchemyError when unreachable."""
        with self.engine.connect() as conn:
            conn.execute(text("SELECT 1"))

    def dispose(self) -> None:
        self.engine.dispose()
