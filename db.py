from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from config import settings


def build_engine(url: str, timeout_seconds: int = 5, **kwargs):
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args["check_same_thread"] = False
        connect_args["timeout"] = timeout_seconds
    elif url.startswith("postgresql"):
        connect_args["connect_timeout"] = timeout_seconds

    return create_engine(
        url,
        pool_pre_ping=True,
        connect_args=connect_args,
        **kwargs,
    )


# Create SQLAlchemy engine
engine = build_engine(settings.DATABASE_URL, settings.DATABASE_TIMEOUT_SECONDS)


# Session factory
SessionLocal = sessionmaker(
    autocommit=False,
    autoflush=False,
    bind=engine,
)


# Base class for all ORM models
Base = declarative_base()


@contextmanager
def session_scope(factory=SessionLocal):
    """
    Provides a database session and ensures it is rolled back
    on error and closed after use.
    """
    db = factory()
    try:
        yield db
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
