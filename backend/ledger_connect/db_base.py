"""
SQLAlchemy declarative base and session helpers.

All ORM models inherit from Base. Engines are created from DATABASE_URL;
tests use an in-memory SQLite engine.
"""

from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

Base = declarative_base()


def create_db_engine(database_url: str) -> Engine:
    """Create an engine. In-memory SQLite shares one connection across threads."""
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
        if ":memory:" in database_url:
            return create_engine(database_url, connect_args=connect_args, poolclass=StaticPool)
        return create_engine(database_url, connect_args=connect_args)
    return create_engine(database_url, pool_pre_ping=True)


def create_session_factory(engine: Engine, create_tables: Optional[bool] = True) -> sessionmaker:
    """Build a session factory, creating the schema when asked."""
    if create_tables:
        Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)
