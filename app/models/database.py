"""
Engine and session factory.

DATABASE_URL may use the async driver name used elsewhere in the platform
(postgresql+asyncpg://); the verification store is synchronous, so the URL
is normalised to the default sync driver.
"""
from __future__ import annotations

from functools import lru_cache

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.core.config import get_settings


def sync_url(url: str) -> str:
    return url.replace("postgresql+asyncpg://", "postgresql://")


def make_engine(url: str) -> Engine:
    url = sync_url(url)
    if url == "sqlite://" or (url.startswith("sqlite") and ":memory:" in url):
        # One shared connection, otherwise every checkout sees an empty database
        return create_engine(
            url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    if url.startswith("sqlite"):
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url, pool_pre_ping=True)


def make_session_factory(engine: Engine) -> sessionmaker:
    return sessionmaker(bind=engine, expire_on_commit=False)


@lru_cache
def get_engine() -> Engine:
    return make_engine(get_settings().database_url)


@lru_cache
def get_session_factory() -> sessionmaker:
    return make_session_factory(get_engine())
