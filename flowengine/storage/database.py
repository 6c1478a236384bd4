"""Database engine and session management."""

import os
from typing import Optional
from sqlalchemy import create_engine, Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

# Base class for all database models
Base = declarative_base()

DEFAULT_DATABASE_URL = "sqlite:///./flowengine.db"


def create_database_engine(database_url: Optional[str] = None,
                           echo: bool = False,
                           connect_args: Optional[dict] = None) -> Engine:
    """Create a new engine; SQLite uses a static pool so in-memory databases are shared across threads."""
    if database_url is None:
        database_url = os.getenv("FLOWENGINE_DATABASE_URL", DEFAULT_DATABASE_URL)

    if connect_args is None:
        connect_args = {"check_same_thread": False} if database_url.startswith("sqlite") else {}

    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args=connect_args,
            poolclass=StaticPool,
            echo=echo
        )
    return create_engine(database_url, echo=echo, connect_args=connect_args)


def create_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


def create_tables(engine: Engine):
    """Create all database tables."""
    from . import models  # noqa: F401  registers the mapped classes
    Base.metadata.create_all(bind=engine)
