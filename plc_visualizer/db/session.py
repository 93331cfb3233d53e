# plc_visualizer/db/session.py
from __future__ import annotations

from pathlib import Path
from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from plc_visualizer.core.config import settings
from plc_visualizer.db.models import Base  # models must be imported before create_all


def _ensure_sqlite_dir(db_url: str) -> None:
    # sqlite:///./data/data.db  → ./data
    prefix = "sqlite:///"
    if db_url.startswith(prefix):
        fs_path = db_url[len(prefix):]
        if fs_path == ":memory:" or not fs_path:
            return
        Path(fs_path).resolve().parent.mkdir(parents=True, exist_ok=True)


def _engine_kwargs(db_url: str) -> dict:
    # background loops and request threads share the pool
    if db_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    return {}


# db.url lives in the YAML, so it has to be read before the engine exists
if not settings.get_cfg():
    settings.load_yaml_config()

db_url = settings.db_url
_ensure_sqlite_dir(db_url)
engine = create_engine(db_url, future=True, **_engine_kwargs(db_url))

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)


def init_db() -> None:
    """Create tables if they do not exist yet."""
    Base.metadata.create_all(bind=engine)


def get_db() -> Generator:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
