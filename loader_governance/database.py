from __future__ import annotations

from typing import Generator

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from loader_governance.config import get_settings

Base = declarative_base()

settings = get_settings()


def _create_engine_with_fallback(url: str):
    engine_kwargs: dict[str, object] = {"future": True}
    if url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if url in {"sqlite://", "sqlite:///:memory:"}:
            engine_kwargs["poolclass"] = StaticPool

    try:
        return create_engine(url, **engine_kwargs)
    except ModuleNotFoundError as exc:
        if "psycopg2" in str(exc) and "psycopg2" in url:
            fallback_url = url.replace("psycopg2", "psycopg")
            __import__("psycopg")
            return create_engine(fallback_url, future=True)
        raise


engine = _create_engine_with_fallback(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)


def get_db() -> Generator[Session, None, None]:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
