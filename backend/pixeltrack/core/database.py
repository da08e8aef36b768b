"""
Database configuration and session management.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from pixeltrack.core.config import settings

_engine_kwargs = {"pool_pre_ping": True}  # Verify connections before use

# Reduce worst-case probe delays when the DB host is unreachable.
# (psycopg2 honors connect_timeout in seconds)
if str(getattr(settings, "DATABASE_URL", "")).startswith(("postgresql://", "postgres://")):
    _engine_kwargs.update(
        connect_args={"connect_timeout": 5},
        pool_size=10,
        max_overflow=20,
        pool_timeout=30,
    )
elif str(getattr(settings, "DATABASE_URL", "")).startswith("sqlite"):
    _engine_kwargs["connect_args"] = {"check_same_thread": False}

engine = create_engine(settings.DATABASE_URL, **_engine_kwargs)

# Session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Base class for models
Base = declarative_base()


def get_db():
    """Dependency for getting database sessions."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
