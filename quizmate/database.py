from fastapi import Depends
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, Session, create_engine
from .config import DATABASE_URL

# check_same_thread only applies to SQLite
connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = create_engine(
    DATABASE_URL,
    echo=False,
    connect_args=connect_args
)


def create_db_and_tables(bind: Engine = engine):
    """Create all database tables."""
    # Import models so their tables are registered on the metadata
    from . import models  # noqa: F401

    SQLModel.metadata.create_all(bind)


def get_engine() -> Engine:
    """Dependency for the engine that stores open their own sessions on."""
    return engine


def get_session(bind: Engine = Depends(get_engine)):
    """Dependency for getting database sessions."""
    # Rows stay readable after commit so they can be published and returned
    with Session(bind, expire_on_commit=False) as session:
        yield session
