from __future__ import annotations
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine, async_sessionmaker, AsyncSession
from botgateway.config import Settings

def database_url(settings: Settings) -> str:
    return settings.database_url or f"sqlite+aiosqlite:///{settings.sqlite_path}"

def make_engine(settings: Settings) -> AsyncEngine:
    url = database_url(settings)
    engine = create_async_engine(url, future=True, echo=False)
    if url.startswith("sqlite"):
        busy_ms = int(settings.sqlite_busy_timeout_s * 1000)

        # status writes from concurrent transitions must wait, not fail
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_conn, _record):
            cur = dbapi_conn.cursor()
            cur.execute(f"PRAGMA busy_timeout={busy_ms}")
            cur.close()

    return engine

def make_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)
