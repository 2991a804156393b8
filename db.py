from collections.abc import Generator
from typing import Annotated

from fastapi import Depends
from sqlalchemy.engine import Engine
from sqlalchemy.pool import StaticPool
from sqlmodel import SQLModel, Session, create_engine

import config


def make_engine(url: str, echo: bool = False) -> Engine:
    """Build an engine; SQLite URLs get the thread and pool settings FastAPI needs."""
    if url.startswith("sqlite"):
        kwargs = {"connect_args": {"check_same_thread": False}}
        if url in ("sqlite://", "sqlite:///:memory:"):
            kwargs["poolclass"] = StaticPool
        return create_engine(url, echo=echo, **kwargs)
    return create_engine(url, echo=echo, pool_pre_ping=True)


engine = make_engine(config.DATABASE_URL, echo=config.DB_ECHO)


def create_db_and_tables(bind: Engine = engine) -> None:
    """Create all tables in the database if they don't exist."""
    # table classes must be registered on the metadata first
    import models  # noqa: F401

    SQLModel.metadata.create_all(bind)


def get_session() -> Generator[Session, None, None]:
    """Yield a database session for dependency injection."""
    with Session(engine) as session:
        yield session


SessionDep = Annotated[Session, Depends(get_session)]
