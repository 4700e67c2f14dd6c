from __future__ import annotations

from collections.abc import Generator
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from gigaid.core.config import get_settings


class Base(DeclarativeBase):
    pass


def _engine_kwargs(database_url: str) -> dict[str, Any]:
    settings = get_settings()
    if database_url.startswith("sqlite"):
        return {"connect_args": {"check_same_thread": False}}
    kwargs: dict[str, Any] = {"pool_pre_ping": True, "pool_timeout": settings.database_pool_timeout_seconds}
    if database_url.startswith("postgresql"):
        kwargs["connect_args"] = {"options": f"-c statement_timeout={settings.database_statement_timeout_ms}"}
    return kwargs


_settings = get_settings()
engine = create_engine(_settings.database_url, **_engine_kwargs(_settings.database_url))
SessionLocal = sessionmaker(bind=engine, autocommit=False, autoflush=False)


def get_db() -> Generator[Session, None, None]:
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
