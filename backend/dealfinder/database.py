import logging
import os

from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, declarative_base
from dealfinder.config import get_settings

logger = logging.getLogger(__name__)
settings = get_settings()

db_url = settings.database_url

connect_args = {"check_same_thread": False} if db_url.startswith("sqlite") else {}

engine = create_engine(db_url, connect_args=connect_args)


@event.listens_for(engine, "connect")
def set_sqlite_pragma(dbapi_connection, connection_record):
    if not db_url.startswith("sqlite"):
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def ensure_sqlite_directory():
    """Create the parent directory of a file-backed SQLite database."""
    if not db_url.startswith("sqlite:///") or db_url.endswith(":memory:"):
        return
    path = db_url[len("sqlite:///"):]
    directory = os.path.dirname(path)
    if directory and not os.path.isdir(directory):
        os.makedirs(directory, exist_ok=True)
        logger.info(f"Created SQLite directory {directory}")


def create_tables():
    """Create all tables for SQLite deployments (Postgres uses alembic)."""
    ensure_sqlite_directory()
    Base.metadata.create_all(bind=engine)
