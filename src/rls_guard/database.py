import logging
from typing import Generator
from sqlalchemy import create_engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import sessionmaker, Session

from rls_guard.settings import settings

logger = logging.getLogger(__name__)

_database_options = {
    "pool_pre_ping": True,
}

if not settings.DATABASE_URL.startswith("sqlite"):
    _database_options.update({
        "pool_size": 10,
        "max_overflow": 5,
        "pool_timeout": 30,
        "pool_recycle": 300
    })

_engine = create_engine(settings.DATABASE_URL, **_database_options)
SessionLocal = sessionmaker(autoflush=False, bind=_engine)


def get_engine():
    return _engine


def get_db() -> Generator[Session, None, None]:

    db = SessionLocal()

    try:
        yield db
    except OperationalError:
        logger.error("Database connection failed")
        db.rollback()
        raise
    finally:
        db.close()
