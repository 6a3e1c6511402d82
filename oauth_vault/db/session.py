from __future__ import annotations
from pathlib import Path
from typing import Optional
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, declarative_base

from oauth_vault.core.config import settings

BASE_DIR = Path(__file__).resolve().parents[2]  # repo root
DATA_DIR = BASE_DIR / "data"

Base = declarative_base()


def make_engine(url: Optional[str] = None) -> Engine:
    if not url:
        DATA_DIR.mkdir(exist_ok=True)
        url = f"sqlite:///{DATA_DIR / 'oauth_vault.sqlite3'}"
    if url.startswith("sqlite"):
        # check_same_thread=False: storage calls run in worker threads;
        # timeout bounds how long a writer waits on the database lock
        return create_engine(url, connect_args={"check_same_thread": False, "timeout": 10})
    return create_engine(url, pool_pre_ping=True, pool_timeout=10)


def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=bind)


engine = make_engine(settings.DATABASE_URL)
SessionLocal = make_session_factory(engine)
