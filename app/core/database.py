from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from typing import Generator
import redis
from .config import settings

def build_engine(database_url: str) -> Engine:
    """Create an engine with pool settings suited to the backing database."""
    if database_url.startswith("sqlite"):
        # Worker threads share the file database
        return create_engine(
            database_url, connect_args={"check_same_thread": False}
        )

    # PostgreSQL database setup with appropriate connection pool settings
    return create_engine(
        database_url,
        pool_size=5,
        max_overflow=10,
        pool_timeout=30,
        pool_recycle=1800,  # Recycle connections after 30 minutes
    )

engine = build_engine(settings.get_database_url)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

# Connections are opened lazily on first command
redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)

# Database dependency
def get_db() -> Generator[Session, None, None]:
    """Get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

# Session factory dependency
def get_session_factory() -> sessionmaker:
    """Get the factory used for short, independent transactions."""
    return SessionLocal

# Redis dependency
def get_redis():
    """Get Redis client."""
    return redis_client

# Database initialization
def init_db(bind: Engine = engine):
    """Initialize database tables."""
    # Register every mapped table on the metadata
    from .. import models  # noqa: F401
    Base.metadata.create_all(bind=bind)
