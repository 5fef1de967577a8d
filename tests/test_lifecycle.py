import asyncio

import pytest

from botgateway.core.lifecycle import BotManager
from botgateway.core.router import OutboundRouter
from botgateway.domain.errors import (
    BotNotFoundError, StartError, StopError, UnsupportedPlatformError, ValidationError,
)
from botgateway.domain.models import BotStatus, PlatformStatus
from conftest import FakeFactory, make_registry


def build(settings, store, **factories):
    manager = BotManager(store, make_registry(**factories), settings)
    manager.router = OutboundRouter(settings, manager)
    return manager


@pytest.mark.asyncio
async def test_create_bot_is_inactive_with_generated_id(settings, store):
    manager = build(settings, store, telegram=FakeFactory("telegram"))
    bot = await manager.create_bot(tenant_id="t1", name="Support", platform="telegram", credentials="tok")
    assert bot.id.startswith("bot_")
    assert bot.status == BotStatus.inactive
    stored = await manager.get_bot(bot.id)
    assert stored.credentials == "tok"
    assert "credentials" not in stored.model_dump()

@pytest.mark.asyncio
async def test_create_bot_rejects_missing_fields_and_unknown_platform(settings, store):
    manager = build(settings, store, telegram=FakeFactory("telegram"))
    with pytest.raises(ValidationError):
        await manager.create_bot(tenant_id="t1", name="Support", platform="telegram", credentials="")
    with pytest.raises(UnsupportedPlatformError):
        await manager.create_bot(tenant_id="t1", name="Support", platform="icq", credentials="tok")
    assert await store.list_bots() == []

@pytest.mark.asyncio
async def test_start_twice_keeps_one_running_instance(settings, store):
    factory = FakeFactory("telegram")
    manager = build(settings, store, telegram=factory)
    bot = await manager.create_bot(tenant_id="t1", name="b1", platform="telegram", credentials="tok")

    first = await manager.start_bot(bot.id)
    second = await manager.start_bot(bot.id)

    assert first.success and second.success
    assert second.message == "already running"
    assert len(factory.instances) == 1
    assert len(manager.running_bots()) == 1
    assert (await manager.get_bot(bot.id)).status == BotStatus.active
    assert manager.router.platforms["telegram"].status == PlatformStatus.registered

@pytest.mark.asyncio
async def test_concurrent_starts_are_serialised(settings, store):
    factory = FakeFactory("telegram")
    manager = build(settings, store, telegram=factory)
    bot = await manager.create_bot(tenant_id="t1", name="b1", platform="telegram", credentials="tok")

    results = await asyncio.gather(*(manager.start_bot(bot.id) for _ in range(5)))

    assert all(r.success for r in results)
    assert len(factory.instances) == 1

@pytest.mark.asyncio
async def test_stop_when_not_running_succeeds(settings, store):
    manager = build(settings, store, telegram=FakeFactory("telegram"))
    bot = await manager.create_bot(tenant_id="t1", name="b1", platform="telegram", credentials="tok")
    result = await manager.stop_bot(bot.id)
    assert result.success
    assert result.status == BotStatus.inactive

@pytest.mark.asyncio
async def test_stop_removes_bot_even_when_adapter_stop_fails(settings, store):
    factory = FakeFactory("telegram", stop_error=StopError("webhook delete failed"))
    manager = build(settings, store, telegram=factory)
    bot = await manager.create_bot(tenant_id="t1", name="b1", platform="telegram", credentials="tok")
    await manager.start_bot(bot.id)

    result = await manager.stop_bot(bot.id)

    assert not result.success
    assert manager.running_bot(bot.id) is None
    stored = await manager.get_bot(bot.id)
    assert stored.status == BotStatus.inactive
    assert "webhook delete failed" in stored.last_error
    assert manager.router.platforms["telegram"].status == PlatformStatus.unregistered

@pytest.mark.asyncio
async def test_start_failure_is_surfaced_and_persisted(settings, store):
    factory = FakeFactory("telegram", fail_start=StartError("bad token"))
    manager = build(settings, store, telegram=factory)
    bot = await manager.create_bot(tenant_id="t1", name="b1", platform="telegram", credentials="tok")

    with pytest.raises(StartError):
        await manager.start_bot(bot.id)

    assert manager.running_bot(bot.id) is None
    stored = await manager.get_bot(bot.id)
    assert stored.status == BotStatus.error
    assert stored.last_error == "bad token"
    assert factory.instances[0].starts == 1
    assert factory.instances[0].closed is True

@pytest.mark.asyncio
async def test_start_timeout_becomes_start_error(settings, store):
    class Hanging(FakeFactory):
        def __call__(self):
            adapter = super().__call__()

            async def never(*args, **kwargs):
                await asyncio.sleep(60)

            adapter.start = never
            return adapter

    settings.start_timeout_s = 0.05
    factory = Hanging("telegram")
    manager = build(settings, store, telegram=factory)
    bot = await manager.create_bot(tenant_id="t1", name="b1", platform="telegram", credentials="tok")
    with pytest.raises(StartError):
        await manager.start_bot(bot.id)
    assert (await manager.get_bot(bot.id)).status == BotStatus.error
    assert factory.instances[0].closed is True

@pytest.mark.asyncio
async def test_start_configured_bots_isolates_failures(settings, store):
    manager = build(
        settings, store,
        telegram=FakeFactory("telegram"),
        discord=FakeFactory("discord", fail_start=StartError("gateway refused")),
        slack=FakeFactory("slack"),
    )
    ok1 = await manager.create_bot(tenant_id="t1", name="a", platform="telegram", credentials="x", auto_start=True)
    bad = await manager.create_bot(tenant_id="t1", name="b", platform="discord", credentials="x", auto_start=True)
    ok2 = await manager.create_bot(tenant_id="t2", name="c", platform="slack", credentials="x", auto_start=True)
    manual = await manager.create_bot(tenant_id="t2", name="d", platform="slack", credentials="x")

    result = await manager.start_configured_bots()

    assert result.total == 3
    assert sorted(result.succeeded) == sorted([ok1.id, ok2.id])
    assert list(result.failed) == [bad.id]
    assert manager.running_bot(manual.id) is None

@pytest.mark.asyncio
async def test_stop_all_bots(settings, store):
    manager = build(settings, store, telegram=FakeFactory("telegram"), slack=FakeFactory("slack"))
    a = await manager.create_bot(tenant_id="t1", name="a", platform="telegram", credentials="x")
    b = await manager.create_bot(tenant_id="t1", name="b", platform="slack", credentials="x")
    await manager.start_bot(a.id)
    await manager.start_bot(b.id)

    result = await manager.stop_all_bots()

    assert result.total == 2 and not result.failed
    assert manager.running_bots() == []

@pytest.mark.asyncio
async def test_tenant_scoping_and_running_annotation(settings, store):
    manager = build(settings, store, telegram=FakeFactory("telegram"))
    bot = await manager.create_bot(tenant_id="t1", name="a", platform="telegram", credentials="x")
    await manager.create_bot(tenant_id="t2", name="b", platform="telegram", credentials="x")
    await manager.start_bot(bot.id, tenant_id="t1")

    with pytest.raises(BotNotFoundError):
        await manager.start_bot(bot.id, tenant_id="t2")

    listed = await manager.list_bots(tenant_id="t1")
    assert [b["id"] for b in listed] == [bot.id]
    assert listed[0]["is_running"] is True
    assert "credentials" not in listed[0]

@pytest.mark.asyncio
async def test_webhook_url_cannot_change_while_running(settings, store):
    manager = build(settings, store, telegram=FakeFactory("telegram"))
    bot = await manager.create_bot(tenant_id="t1", name="a", platform="telegram", credentials="x")
    await manager.start_bot(bot.id)
    with pytest.raises(ValidationError):
        await manager.update_settings(bot.id, webhook_url="https://example.org")
    updated = await manager.update_settings(bot.id, settings={"secret": "s"})
    assert updated.settings == {"secret": "s"}

@pytest.mark.asyncio
async def test_bot_stats(settings, store):
    manager = build(settings, store, telegram=FakeFactory("telegram"))
    a = await manager.create_bot(tenant_id="t1", name="a", platform="telegram", credentials="x")
    await manager.create_bot(tenant_id="t1", name="b", platform="telegram", credentials="x")
    await manager.start_bot(a.id)

    stats = await manager.get_bot_stats()

    assert stats["total"] == 2
    assert stats["by_status"] == {"active": 1, "inactive": 1}
    assert stats["running_by_platform"] == {"telegram": 1}
