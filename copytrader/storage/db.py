"""
Database engine and session management.

PostgreSQL in production. SQLite is accepted for tests and local runs
(in-memory SQLite shares one connection across the process).
"""
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base, Session
from sqlalchemy.pool import Pool, StaticPool

from copytrader.monitoring.logger import get_logger

_pool_logger = get_logger("db.pool")

# Base class for ORM models
Base = declarative_base()


class Database:
    """Database engine and session manager."""

    def __init__(self, database_url: str):
        """
        Initialize database connection.

        Args:
            database_url: PostgreSQL (or SQLite) connection string
        """
        if not database_url.startswith(("postgresql", "sqlite")):
            raise ValueError(
                f"Unsupported database URL: {database_url[:30]}... "
                "Set DATABASE_URL to a postgresql:// connection string."
            )

        self.database_url = database_url

        if database_url.startswith("sqlite"):
            self.engine = create_engine(
                database_url,
                echo=False,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        else:
            self.engine = create_engine(
                database_url,
                echo=False,
                pool_pre_ping=True,  # Verify connections before using
                pool_size=10,
                max_overflow=20,
                pool_recycle=3600,
                pool_timeout=30,
            )

        self.SessionLocal = sessionmaker(
            autocommit=False, autoflush=False, expire_on_commit=False, bind=self.engine
        )

        _register_pool_events(self.engine.pool)

    def create_all(self):
        """Create all tables."""
        # Models must be imported so Base.metadata knows every table
        import copytrader.storage.models  # noqa: F401

        Base.metadata.create_all(bind=self.engine)

    def drop_all(self):
        """Drop all tables (use with caution!)."""
        Base.metadata.drop_all(bind=self.engine)

    @contextmanager
    def get_session(self) -> Generator[Session, None, None]:
        """
        Context manager for database sessions.

        Yields:
            SQLAlchemy Session

        Example:
            with db.get_session() as session:
                session.add(obj)
        """
        session = self.SessionLocal()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()


# Global database instance (initialized on first use)
_db_instance: Database | None = None


def get_db() -> Database:
    """Get or create the global database instance."""
    global _db_instance
    if _db_instance is None:
        from copytrader.utils.secret_manager import get_database_url

        _db_instance = Database(get_database_url())
        _db_instance.create_all()
    return _db_instance


def init_db(database_url: str) -> Database:
    """
    Initialize database with specific URL.

    Args:
        database_url: Connection string

    Returns:
        Database instance
    """
    global _db_instance
    _db_instance = Database(database_url)
    _db_instance.create_all()
    return _db_instance


def _register_pool_events(pool: Pool) -> None:
    """Log invalidated (stale) connections."""

    @event.listens_for(pool, "invalidate")
    def _on_invalidate(dbapi_connection, connection_record, exception):
        _pool_logger.warning(
            "POOL_INVALIDATE",
            error=str(exception) if exception else None,
        )
