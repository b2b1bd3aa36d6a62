from __future__ import annotations
import os
from contextlib import contextmanager
from typing import Any, Dict, Generator

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool
from dotenv import load_dotenv

# Ensure .env is loaded for all processes importing the engine
load_dotenv()

DB_URL = os.getenv("DB_URL", "sqlite:///./bounded_agent.db")  # dev default
ECHO = bool(int(os.getenv("DB_ECHO", "0")))


def make_engine(url: str = DB_URL, *, echo: bool = ECHO) -> Engine:
    """Engine with pool settings suited to the URL's dialect."""
    engine_kwargs: Dict[str, Any] = {"echo": echo, "future": True, "pool_pre_ping": True}
    if url.startswith("sqlite"):
        # Worker threads share connections with the caller.
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if url in {"sqlite://", "sqlite:///:memory:"}:
            engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs["pool_recycle"] = int(os.getenv("DB_POOL_RECYCLE", "300"))
        engine_kwargs["connect_args"] = {
            "keepalives": 1,
            "keepalives_idle": int(os.getenv("DB_KEEPALIVES_IDLE", "30")),
            "keepalives_interval": int(os.getenv("DB_KEEPALIVES_INTERVAL", "10")),
            "keepalives_count": int(os.getenv("DB_KEEPALIVES_COUNT", "5")),
        }
    return create_engine(url, **engine_kwargs)


def make_session_factory(bind: Engine) -> sessionmaker:
    return sessionmaker(bind=bind, autoflush=False, autocommit=False, future=True)


engine = make_engine()
SessionLocal = make_session_factory(engine)


@contextmanager
def session_scope(factory: sessionmaker | None = None) -> Generator[Session, None, None]:
    """Transactional scope."""
    db = (factory or SessionLocal)()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()
