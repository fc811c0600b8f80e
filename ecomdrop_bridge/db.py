from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from ecomdrop_bridge.config import settings
from ecomdrop_bridge.models import Base


def _engine_connect_args() -> dict:
    if settings.ECOMDROP_APP_DB_URL.startswith("sqlite"):
        return {"check_same_thread": False}
    return {}


engine: Engine = create_engine(
    settings.ECOMDROP_APP_DB_URL,
    future=True,
    connect_args=_engine_connect_args(),
)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)


def init_db() -> None:
    Base.metadata.create_all(bind=engine)


def get_session():
    session: Session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
