from __future__ import annotations

from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from alertwatch.core.settings import settings

from .models import Base

_SSL_MODES_REQUIRING_TLS = {"require", "verify-ca", "verify-full"}


def normalize_url(url: str) -> Tuple[str, Dict[str, Any]]:
    """Map libpq-style URLs onto the asyncpg driver.

    asyncpg does not understand ``sslmode``; it is stripped from the query
    and turned into the ``ssl`` connect argument.
    """
    parsed = urlparse(url)
    scheme = parsed.scheme.lower()
    connect_args: Dict[str, Any] = {}

    if scheme.startswith("sqlite"):
        # urlunparse drops the empty netloc of sqlite:///path, so rewrite the prefix
        if "+aiosqlite" not in scheme:
            return "sqlite+aiosqlite" + url[len(parsed.scheme):], connect_args
        return url, connect_args
    if not scheme.startswith("postgres"):
        return url, connect_args

    kept = []
    for key, val in parse_qsl(parsed.query, keep_blank_values=True):
        if key.lower() == "sslmode":
            mode = (val or "").strip().lower()
            if mode == "disable":
                connect_args["ssl"] = False
            elif mode in _SSL_MODES_REQUIRING_TLS:
                connect_args["ssl"] = True
            continue
        kept.append((key, val))

    normalized = urlunparse(parsed._replace(scheme="postgresql+asyncpg", query=urlencode(kept, doseq=True)))
    return normalized, connect_args


def make_engine(url: Optional[str] = None) -> AsyncEngine:
    target, connect_args = normalize_url(url or settings.DATABASE_URL or "sqlite+aiosqlite:///./local.db")
    return create_async_engine(target, future=True, pool_pre_ping=True, connect_args=connect_args)


def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


# Module-level engine/session, created lazily so tests can point DATABASE_URL
# elsewhere before first use.
engine: Optional[AsyncEngine] = None
SessionLocal: Optional[async_sessionmaker[AsyncSession]] = None


def ensure_engine() -> async_sessionmaker[AsyncSession]:
    global engine, SessionLocal
    if SessionLocal is None:
        engine = make_engine()
        SessionLocal = make_session_factory(engine)
    return SessionLocal


async def init_db(target: Optional[AsyncEngine] = None) -> None:
    """Create tables on startup."""
    if target is None:
        ensure_engine()
        target = engine
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def dispose_engine() -> None:
    global engine, SessionLocal
    if engine is not None:
        await engine.dispose()
    engine = None
    SessionLocal = None
