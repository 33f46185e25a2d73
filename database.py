"""
Database connection and session management.
"""

import logging

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from config import settings

logger = logging.getLogger(__name__)

Base = declarative_base()

_connect_args = {"check_same_thread": False} if settings.database_url.startswith("sqlite") else {}

engine = create_engine(settings.database_url, pool_pre_ping=True, connect_args=_connect_args)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
logger.debug("Database engine created for %s", engine.url.render_as_string(hide_password=True))


def get_db():
    """Dependency function that provides a database session."""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
