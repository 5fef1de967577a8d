from __future__ import annotations
from datetime import datetime, timezone
from sqlalchemy import select, desc
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from botgateway.domain.models import BotConfig, BotStatus, utcnow
from botgateway.persistence.schema import BotRow


def _naive_utc(dt: datetime) -> datetime:
    # SQLite has no tz support; rows hold naive UTC
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def _aware(dt: datetime | None) -> datetime:
    if dt is None:
        return utcnow()
    return dt if dt.tzinfo is not None else dt.replace(tzinfo=timezone.utc)


def _to_model(r: BotRow) -> BotConfig:
    return BotConfig(
        id=r.id, tenant_id=r.tenant_id, name=r.name, platform=r.platform,
        credentials=r.credentials or "", webhook_url=r.webhook_url, settings=r.settings or {},
        status=BotStatus(r.status), auto_start=bool(r.auto_start), last_error=r.last_error,
        created_at=_aware(r.created_at), updated_at=_aware(r.updated_at),
    )


class Repo:
    def __init__(self, session: AsyncSession):
        self.s = session

    async def add_bot(self, bot: BotConfig) -> None:
        self.s.add(BotRow(
            id=bot.id, tenant_id=bot.tenant_id, name=bot.name, platform=bot.platform,
            credentials=bot.credentials, webhook_url=bot.webhook_url, settings=bot.settings,
            status=bot.status.value, auto_start=bot.auto_start, last_error=bot.last_error,
            created_at=_naive_utc(bot.created_at), updated_at=_naive_utc(bot.updated_at),
        ))

    async def get_bot(self, bot_id: str) -> BotConfig | None:
        row = await self.s.get(BotRow, bot_id)
        if not row:
            return None
        return _to_model(row)

    async def list_bots(self, tenant_id: str | None = None, platform: str | None = None) -> list[BotConfig]:
        stmt = select(BotRow).order_by(desc(BotRow.updated_at))
        if tenant_id:
            stmt = stmt.where(BotRow.tenant_id == tenant_id)
        if platform:
            stmt = stmt.where(BotRow.platform == platform)
        res = await self.s.execute(stmt)
        return [_to_model(r) for r in res.scalars().all()]

    async def list_auto_start(self) -> list[BotConfig]:
        stmt = select(BotRow).where(BotRow.auto_start.is_(True)).order_by(BotRow.created_at)
        res = await self.s.execute(stmt)
        return [_to_model(r) for r in res.scalars().all()]

    async def set_status(self, bot_id: str, status: BotStatus, last_error: str | None = None) -> bool:
        row = await self.s.get(BotRow, bot_id)
        if row is None:
            return False
        row.status = status.value
        row.last_error = last_error
        row.updated_at = _naive_utc(utcnow())
        return True

    async def update_settings(self, bot_id: str, settings: dict | None = None, name: str | None = None,
                              webhook_url: str | None = None, auto_start: bool | None = None,
                              credentials: str | None = None) -> BotConfig | None:
        row = await self.s.get(BotRow, bot_id)
        if row is None:
            return None
        if settings is not None:
            row.settings = {**(row.settings or {}), **settings}
        if name is not None:
            row.name = name
        if webhook_url is not None:
            row.webhook_url = webhook_url or None
        if auto_start is not None:
            row.auto_start = auto_start
        if credentials is not None:
            row.credentials = credentials
        row.updated_at = _naive_utc(utcnow())
        return _to_model(row)

    async def count_by_status(self) -> dict[str, int]:
        res = await self.s.execute(select(BotRow.status))
        out: dict[str, int] = {}
        for status in res.scalars().all():
            out[status] = out.get(status, 0) + 1
        return out


class BotStore:
    """Session-per-operation facade over ``Repo`` for the lifecycle manager."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.sf = session_factory

    async def create(self, bot: BotConfig) -> BotConfig:
        async with self.sf() as s:
            await Repo(s).add_bot(bot)
            await s.commit()
        return bot

    async def get(self, bot_id: str) -> BotConfig | None:
        async with self.sf() as s:
            return await Repo(s).get_bot(bot_id)

    async def list_bots(self, tenant_id: str | None = None, platform: str | None = None) -> list[BotConfig]:
        async with self.sf() as s:
            return await Repo(s).list_bots(tenant_id=tenant_id, platform=platform)

    async def list_auto_start(self) -> list[BotConfig]:
        async with self.sf() as s:
            return await Repo(s).list_auto_start()

    async def set_status(self, bot_id: str, status: BotStatus, last_error: str | None = None) -> bool:
        async with self.sf() as s:
            found = await Repo(s).set_status(bot_id, status, last_error)
            await s.commit()
            return found

    async def update_settings(self, bot_id: str, **changes) -> BotConfig | None:
        async with self.sf() as s:
            bot = await Repo(s).update_settings(bot_id, **changes)
            await s.commit()
            return bot

    async def count_by_status(self) -> dict[str, int]:
        async with self.sf() as s:
            return await Repo(s).count_by_status()
