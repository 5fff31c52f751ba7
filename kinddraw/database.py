import logging
from functools import lru_cache

from fastapi import Depends
from sqlalchemy import create_engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker, declarative_base

from kinddraw.config import Settings, get_settings
from kinddraw.errors import ConfigurationError

logger = logging.getLogger(__name__)

Base = declarative_base()


@lru_cache(maxsize=None)
def get_engine(database_url: str):
    """One engine per connection URL for the life of the process.

    Creating the engine does not connect; the first query does.
    """
    return create_engine(
        database_url,
        connect_args={"check_same_thread": False} if database_url.startswith("sqlite") else {}
    )


def session_factory(database_url: str) -> sessionmaker:
    return sessionmaker(bind=get_engine(database_url), autocommit=False, autoflush=False)


def init_db(database_url: str) -> bool:
    """Create missing tables. Returns False when the database is unreachable."""
    # Registers the tables on Base before create_all
    import kinddraw.models  # noqa: F401

    try:
        Base.metadata.create_all(bind=get_engine(database_url))
    except SQLAlchemyError as exc:
        logger.error("Could not create tables: %s", exc)
        return False
    return True


def get_db(settings: Settings = Depends(get_settings)):
    """Read/write session on the service connection."""
    db = session_factory(settings.require_database_url())()
    try:
        yield db
    finally:
        db.close()


def get_read_db(settings: Settings = Depends(get_settings)):
    """Session for public views; uses DATABASE_READ_URL when it is set."""
    if not settings.read_url:
        raise ConfigurationError("Missing DATABASE_URL or DATABASE_READ_URL")
    db = session_factory(settings.read_url)()
    try:
        yield db
    finally:
        db.close()
