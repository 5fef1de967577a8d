import asyncio

import pytest

from botgateway.core.health import HealthMonitor
from botgateway.core.lifecycle import BotManager
from botgateway.core.router import OutboundRouter
from botgateway.domain.models import BotStatus, PlatformStatus
from conftest import FakeFactory, make_registry


def build(settings, store, **factories):
    manager = BotManager(store, make_registry(**factories), settings)
    router = OutboundRouter(settings, manager)
    manager.router = router
    return manager, router, HealthMonitor(manager, router, settings)

async def start(manager, platform):
    bot = await manager.create_bot(tenant_id="t1", name=platform, platform=platform, credentials="x")
    await manager.start_bot(bot.id)
    return bot


@pytest.mark.asyncio
async def test_one_unhealthy_platform_makes_gateway_unhealthy(settings, store):
    manager, router, monitor = build(settings, store, telegram=FakeFactory("telegram"),
                                     slack=FakeFactory("slack", healthy=False))
    await start(manager, "telegram")
    await start(manager, "slack")

    health = await monitor.run_once()

    assert health.is_healthy is False
    assert monitor.is_healthy is False
    assert health.platforms["telegram"].status == PlatformStatus.healthy
    assert health.platforms["slack"].status == PlatformStatus.unhealthy
    assert router.platforms["telegram"].status == PlatformStatus.healthy
    assert router.platforms["telegram"].last_health_check is not None

@pytest.mark.asyncio
async def test_all_healthy(settings, store):
    manager, router, monitor = build(settings, store, telegram=FakeFactory("telegram"), slack=FakeFactory("slack"))
    await start(manager, "telegram")
    await start(manager, "slack")
    health = await monitor.run_once()
    assert health.is_healthy is True
    assert {p.status for p in health.platforms.values()} == {PlatformStatus.healthy}

@pytest.mark.asyncio
async def test_raising_check_is_error_and_marks_bot(settings, store):
    manager, router, monitor = build(settings, store, telegram=FakeFactory("telegram"),
                                     discord=FakeFactory("discord", health_error=RuntimeError("socket closed")))
    await start(manager, "telegram")
    bad = await start(manager, "discord")

    health = await monitor.run_once()

    assert health.platforms["discord"].status == PlatformStatus.error
    assert "socket closed" in health.platforms["discord"].failures[bad.id]
    assert health.platforms["telegram"].status == PlatformStatus.healthy
    assert (await manager.get_bot(bad.id)).status == BotStatus.error
    # the running instance is kept
    assert manager.running_bot(bad.id) is not None

@pytest.mark.asyncio
async def test_hanging_check_times_out(settings, store):
    manager, router, monitor = build(settings, store, line=FakeFactory("line", health_delay=5.0))
    await start(manager, "line")
    health = await monitor.run_once()
    assert health.platforms["line"].status == PlatformStatus.error
    assert health.is_healthy is False

@pytest.mark.asyncio
async def test_marking_can_be_disabled(settings, store):
    settings.mark_unhealthy_bots = False
    manager, router, monitor = build(settings, store, discord=FakeFactory("discord", health_error=RuntimeError("x")))
    bot = await start(manager, "discord")
    await monitor.run_once()
    assert (await manager.get_bot(bot.id)).status == BotStatus.active

@pytest.mark.asyncio
async def test_monitor_start_stop(settings, store):
    manager, router, monitor = build(settings, store, telegram=FakeFactory("telegram"))
    monitor.start()
    await monitor.stop()
    assert monitor.is_healthy is True

@pytest.mark.asyncio
async def test_bot_stopped_mid_check_stays_inactive(settings, store):
    manager, router, monitor = build(settings, store, line=FakeFactory("line", health_delay=5.0))
    bot = await start(manager, "line")

    round_task = asyncio.create_task(monitor.run_once())
    await asyncio.sleep(0.05)
    await manager.stop_bot(bot.id)
    health = await round_task

    assert health.platforms["line"].status == PlatformStatus.error
    assert (await manager.get_bot(bot.id)).status == BotStatus.inactive

@pytest.mark.asyncio
async def test_passing_check_clears_error(settings, store):
    factory = FakeFactory("discord", health_error=RuntimeError("socket closed"))
    manager, router, monitor = build(settings, store, discord=factory)
    bot = await start(manager, "discord")
    await monitor.run_once()
    assert (await manager.get_bot(bot.id)).status == BotStatus.error

    factory.instances[0].health_error = None
    health = await monitor.run_once()

    assert health.is_healthy is True
    stored = await manager.get_bot(bot.id)
    assert stored.status == BotStatus.active
    assert stored.last_error is None
