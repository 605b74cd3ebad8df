"""Database session management"""
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker
from app.models.base import Base
from app.core.config import settings


def _is_sqlite(url: str) -> bool:
    return url.startswith("sqlite")


def configure_sqlite_pragmas(dbapi_connection, connection_record):
    """WAL journal so webhook writes and worker writes don't block each other"""
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA synchronous=NORMAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


def build_engine(url: str):
    """Create an engine for the given URL with the pragmas it needs"""
    if _is_sqlite(url):
        new_engine = create_engine(url, connect_args={"check_same_thread": False})
        event.listen(new_engine, "connect", configure_sqlite_pragmas)
        return new_engine
    return create_engine(url, pool_pre_ping=True, pool_recycle=3600)


# Create engine
engine = build_engine(settings.DATABASE_URL)

# Create session factory
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db():
    """Dependency for FastAPI endpoints"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Initialize database (create all tables)"""
    import app.models  # noqa: F401 - registers models with Base.metadata
    Base.metadata.create_all(bind=engine)
