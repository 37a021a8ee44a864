"""
Async Database Configuration
"""
from typing import Any, Dict, Tuple
from urllib.parse import parse_qs, urlparse, urlunparse

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import declarative_base

# Create declarative base
Base = declarative_base()


def normalize_database_url(database_url: str) -> Tuple[str, Dict[str, Any]]:
    """Convert a psycopg2-style URL into an asyncpg URL plus connect_args.

    asyncpg doesn't support query string parameters, so sslmode is pulled out
    and translated; everything else in the query is dropped.
    """
    if database_url.startswith("sqlite"):
        return database_url, {}

    parsed = urlparse(database_url)
    query_params = parse_qs(parsed.query)
    sslmode = query_params.pop("sslmode", [None])[0]
    url = urlunparse(parsed._replace(query=""))

    connect_args: Dict[str, Any] = {}
    if sslmode in ("require", "prefer", "allow", "verify-ca", "verify-full"):
        connect_args["ssl"] = True
    elif sslmode == "disable":
        connect_args["ssl"] = False

    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+asyncpg://", 1)
    elif url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    return url, connect_args


def build_engine(database_url: str) -> AsyncEngine:
    url, connect_args = normalize_database_url(database_url)
    if url.startswith("sqlite"):
        return create_async_engine(url, echo=False)
    return create_async_engine(
        url,
        echo=False,
        pool_size=5,
        max_overflow=10,
        pool_pre_ping=True,
        pool_recycle=300,
        connect_args=connect_args,
    )


def build_session_factory(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )


async def create_tables(engine: AsyncEngine) -> None:
    # Import models so they register on Base.metadata
    from app.models import snapshot  # noqa: F401

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
