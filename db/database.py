from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base

from api.config import DATABASE_URL

def _make_engine(url: str) -> Engine:
    if url.startswith("sqlite"):
        # check_same_thread: sessions move between FastAPI worker threads
        # timeout: writers wait on the file lock instead of failing fast
        return create_engine(url, connect_args={"check_same_thread": False, "timeout": 30})
    return create_engine(url, pool_pre_ping=True)

engine = _make_engine(DATABASE_URL)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

def configure(url: str) -> Engine:
    """Rebind the module engine and SessionLocal to another database URL."""
    global engine
    engine.dispose()
    engine = _make_engine(url)
    SessionLocal.configure(bind=engine)
    return engine

def get_engine() -> Engine:
    return engine
