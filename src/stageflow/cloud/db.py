from __future__ import annotations

from typing import Any

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine


def make_session_factory(url: str, **engine_kwargs: Any) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    engine_kwargs.setdefault("pool_pre_ping", True)
    engine = create_async_engine(url, **engine_kwargs)
    return engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
