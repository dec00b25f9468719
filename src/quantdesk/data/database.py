"""SQLAlchemy 비동기 엔진 및 세션 유틸리티."""

from __future__ import annotations

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy.pool import StaticPool


class Base(DeclarativeBase):
    """ORM 테이블이 공유하는 Declarative Base."""


def create_engine(database_url: str, *, echo: bool = False) -> AsyncEngine:
    """비동기 엔진을 만든다. 메모리 SQLite 는 연결 하나를 공유해야 테이블이 유지된다."""

    url = make_url(database_url)
    if url.get_backend_name() == "sqlite" and url.database in (None, "", ":memory:"):
        return create_async_engine(
            database_url,
            echo=echo,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    return create_async_engine(database_url, echo=echo)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


async def init_models(engine: AsyncEngine) -> None:
    """등록된 모든 테이블을 생성한다."""

    async with engine.begin() as connection:
        await connection.run_sync(Base.metadata.create_all)


__all__ = ["Base", "create_engine", "create_session_factory", "init_models"]
