from __future__ import annotations

import os

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker


SQLITE_FALLBACK_URL = "sqlite:///./review.db"

# Bare postgres schemes get the psycopg v3 driver; psycopg2 is not installed.
_PG_SCHEMES = ("postgres://", "postgresql://")


def _with_psycopg_driver(url: str) -> str:
    for scheme in _PG_SCHEMES:
        if url.startswith(scheme):
            return "postgresql+psycopg://" + url[len(scheme):]
    return url


def _database_url() -> str:
    url = (os.getenv("DATABASE_URL") or "").strip()
    if not url:
        return SQLITE_FALLBACK_URL
    return _with_psycopg_driver(url)


def _engine_kwargs(url: str) -> dict:
    kwargs = {
        "pool_pre_ping": True,
        "echo": os.getenv("DB_ECHO", "0").strip().lower() in ("1", "true", "yes"),
    }
    if url.startswith("sqlite"):
        # Sync handlers run in FastAPI's thread pool.
        kwargs["connect_args"] = {"check_same_thread": False}
    return kwargs


DATABASE_URL = _database_url()

engine = create_engine(DATABASE_URL, **_engine_kwargs(DATABASE_URL))

SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
Base = declarative_base()


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
