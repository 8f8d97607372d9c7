from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool


# Base class for declarative models
Base = declarative_base()


def make_engine(database_url: str) -> Engine:
    """
    Engine for the usage database.

    PostgreSQL in production. SQLite is accepted for tests; accounting runs in
    worker threads, so connections may not be pinned to their creating thread,
    and an in-memory database must share its single connection.
    """
    if database_url.startswith("sqlite"):
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            return create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        return create_engine(database_url, connect_args={"check_same_thread": False})

    return create_engine(
        database_url,
        pool_size=10,
        max_overflow=20,
        pool_recycle=3600,      # Recycle connections after 1 hour
        pool_pre_ping=True      # Test connection health before use
    )


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)
