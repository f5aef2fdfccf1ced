"""Database utilities and Alembic helpers."""

from __future__ import annotations

from pathlib import Path

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker
from sqlalchemy.pool import StaticPool

from .config import settings

MIGRATIONS_DIR = Path(__file__).resolve().parent.parent / "alembic"


class Base(DeclarativeBase):
    pass


def make_engine(url: str) -> Engine:
    """Create an engine; SQLite connections are shared across threads."""
    kwargs: dict = {"future": True}
    if url.startswith("sqlite"):
        kwargs["connect_args"] = {"check_same_thread": False, "timeout": 30}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
    return create_engine(url, **kwargs)


class Database:
    """Engine plus session factory shared by the stores."""

    def __init__(self, url: str | None = None, engine: Engine | None = None) -> None:
        self.url = url or settings.database_url
        self.engine = engine or make_engine(self.url)
        self.session_factory = sessionmaker(bind=self.engine, future=True, expire_on_commit=False)

    def session(self) -> Session:
        return self.session_factory()

    def create_all(self) -> None:
        """Create tables directly from the models (tests, scratch databases)."""
        from . import models  # noqa: F401 - register tables

        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()


def init_db(url: str | None = None) -> Database:
    """Return a ``Database`` with all tables created."""
    db = Database(url)
    db.create_all()
    return db


def run_migrations(url: str | None = None) -> None:
    """Apply Alembic migrations in-place."""
    from alembic import command
    from alembic.config import Config

    cfg = Config()
    cfg.set_main_option("script_location", str(MIGRATIONS_DIR))
    cfg.set_main_option("sqlalchemy.url", url or settings.database_url)
    command.upgrade(cfg, "head")


__all__ = ["Base", "Database", "make_engine", "init_db", "run_migrations"]
