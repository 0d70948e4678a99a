"""
Database Configuration and Session Management
"""

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from app.config import settings
import logging

logger = logging.getLogger(__name__)

# Create SQLAlchemy engine
engine = None
SessionLocal = None


def build_engine(database_url: str):
    """Create an engine with pool settings suited to the database dialect"""
    if database_url.startswith("sqlite"):
        # Worker threads of the reconciler open their own sessions
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": settings.store_call_timeout_seconds},
        )

    # psycopg3 driver, as in alembic/env.py
    if database_url.startswith("postgresql://"):
        database_url = database_url.replace("postgresql://", "postgresql+psycopg://", 1)

    return create_engine(
        database_url,
        pool_pre_ping=True,  # Verify connections before using them
        pool_size=5,
        max_overflow=10,
        pool_timeout=settings.store_call_timeout_seconds,
    )


def build_session_factory(bind) -> sessionmaker:
    """Sessions hand out detached rows, so attributes stay readable after close"""
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


def init_db():
    """Initialize database connection"""
    global engine, SessionLocal

    if not settings.database_url:
        logger.warning("DATABASE_URL not configured - database features disabled")
        return

    logger.info("Connecting to database...")
    engine = build_engine(settings.database_url)
    SessionLocal = build_session_factory(engine)

    if settings.auto_create_tables:
        # Import models so they register on Base.metadata
        import app.models  # noqa: F401
        Base.metadata.create_all(bind=engine)
        logger.info("Database tables ensured")

    logger.info("Database connection established")


def get_session_factory():
    """
    Dependency for getting the session factory
    Usage: session_factory = Depends(get_session_factory)

    Returns None if the database is not configured
    """
    if SessionLocal is None:
        logger.warning("Database not configured")
    return SessionLocal


# Base class for all models
Base = declarative_base()
