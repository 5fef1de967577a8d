from __future__ import annotations
import os
from sqlalchemy.ext.asyncio import AsyncEngine
from botgateway.persistence.schema import Base

async def init_db(engine: AsyncEngine) -> None:
    """Create the bots table; for file-backed SQLite also its directory."""
    if engine.url.get_backend_name() == "sqlite":
        directory = os.path.dirname(engine.url.database or "")
        if directory:
            os.makedirs(directory, exist_ok=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
