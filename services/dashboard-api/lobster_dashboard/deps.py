"""Database engine, session factory and request-scoped dependencies."""

from __future__ import annotations

from collections.abc import AsyncIterator

from fastapi.requests import HTTPConnection
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from .config import DATABASE_URL

engine = create_async_engine(DATABASE_URL, pool_pre_ping=True)
SessionLocal = async_sessionmaker(engine, expire_on_commit=False)


async def get_session() -> AsyncIterator[AsyncSession]:
    async with SessionLocal() as session:
        yield session


def get_cache(conn: HTTPConnection):
    return conn.app.state.cache


def get_fetcher(conn: HTTPConnection):
    return conn.app.state.fetcher


def get_dashboard_service(conn: HTTPConnection):
    return conn.app.state.dashboard


def get_views(conn: HTTPConnection):
    return conn.app.state.views


def get_auth_feed(conn: HTTPConnection):
    return conn.app.state.auth_feed


def get_procedure(conn: HTTPConnection):
    return conn.app.state.procedure


def get_commands(conn: HTTPConnection):
    return conn.app.state.commands
