from sqlalchemy import create_engine, text
from sqlalchemy.exc import InterfaceError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import declarative_base, sessionmaker, Session
from typing import Generator
import logging
import redis
from .config import settings

logger = logging.getLogger(__name__)

# Driver errors meaning the store could not be reached
STORE_UNAVAILABLE = (OperationalError, InterfaceError)


def _connect_args(url: str) -> dict:
    if url.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


# Authoritative store: appointments, tokens, counter, invoices, payments
_database_url = settings.get_database_url
if _database_url.startswith("sqlite"):
    engine = create_engine(_database_url, connect_args=_connect_args(_database_url))
else:
    engine = create_engine(
        _database_url,
        pool_size=5,
        max_overflow=10,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=1800,  # Recycle connections after 30 minutes
        pool_pre_ping=True,
        connect_args={"connect_timeout": settings.DB_CONNECT_TIMEOUT},
    )

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()

# Local durable queue, kept apart so it stays writable while the store is down
queue_engine = create_engine(
    settings.OFFLINE_QUEUE_URL,
    connect_args=_connect_args(settings.OFFLINE_QUEUE_URL),
)

QueueSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=queue_engine)

QueueBase = declarative_base()

# Redis client; no connection is opened until the first command
redis_client = redis.from_url(settings.REDIS_URL, decode_responses=True)

# Database dependency
def get_db() -> Generator[Session, None, None]:
    """Get database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()

def get_queue_db() -> Generator[Session, None, None]:
    """Get offline queue session."""
    db = QueueSessionLocal()
    try:
        yield db
    finally:
        db.close()

# Redis dependency
def get_redis():
    """Get Redis client."""
    return redis_client

def db_healthcheck(bind=None):
    """Probe the authoritative store; returns (ok, error)."""
    try:
        with (bind or engine).connect() as conn:
            conn.execute(text("SELECT 1"))
        return True, None
    except SQLAlchemyError as e:
        return False, str(e)

# Database initialization
def init_db():
    """Initialize database tables."""
    # Register models with their metadata
    from .. import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    QueueBase.metadata.create_all(bind=queue_engine)
