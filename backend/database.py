# database.py
import logging
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

import config

logger = logging.getLogger(__name__)

Base = declarative_base()


def make_engine(url: str):
    # SQLite connections are handed across FastAPI's worker threads
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    # 'pool_pre_ping=True' helps prevent connection drops
    return create_engine(url, pool_pre_ping=True, connect_args=connect_args)


engine = make_engine(config.DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def init_db(bind=None):
    """Create all tables on the given engine (defaults to the app engine)."""
    # models registers the tables on Base.metadata
    import models  # noqa: F401

    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables ready")


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


@contextmanager
def atomic(db):
    """Commit the session if the block succeeds, roll everything back otherwise."""
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
