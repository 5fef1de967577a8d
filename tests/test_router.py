import asyncio

import pytest

from botgateway.core.lifecycle import BotManager
from botgateway.core.router import OutboundRouter
from botgateway.domain.errors import (
    ConcurrencyLimitError, NoAvailablePlatformError, NotRunningError, RateLimitedError, SendError,
)
from botgateway.domain.models import OutboundMessage
from conftest import FakeClock, FakeFactory, make_registry


def build(settings, store, clock=None, **factories):
    manager = BotManager(store, make_registry(**factories), settings)
    router = OutboundRouter(settings, manager, clock=clock or FakeClock())
    manager.router = router
    return manager, router

async def running_bot(manager, platform="telegram", tenant="t1"):
    bot = await manager.create_bot(tenant_id=tenant, name=f"{platform}-bot", platform=platform, credentials="x")
    await manager.start_bot(bot.id)
    return bot

def msg(text="hi"):
    return OutboundMessage(chat_id="c1", content=text)


@pytest.mark.asyncio
async def test_send_before_start_is_not_running(settings, store):
    manager, router = build(settings, store, telegram=FakeFactory("telegram"))
    bot = await manager.create_bot(tenant_id="t1", name="b1", platform="telegram", credentials="x")
    with pytest.raises(NotRunningError):
        await router.send(bot.id, msg())

@pytest.mark.asyncio
async def test_sixth_send_in_window_is_rate_limited(settings, store):
    settings.platform_limits = {"telegram": {"rate_limit": 5}}
    clock = FakeClock()
    factory = FakeFactory("telegram")
    manager, router = build(settings, store, clock=clock, telegram=factory)
    bot = await running_bot(manager)

    for i in range(5):
        await router.send(bot.id, msg(f"m{i}"))
    with pytest.raises(RateLimitedError) as exc:
        await router.send(bot.id, msg("m5"))
    assert 0 < exc.value.retry_after_s <= 1.0
    assert len(factory.instances[0].sent) == 5

    clock.advance(1.0)
    ack = await router.send(bot.id, msg("after window"))
    assert ack.message_id == "m6"

@pytest.mark.asyncio
async def test_rate_limits_are_per_platform(settings, store):
    settings.platform_limits = {"telegram": {"rate_limit": 1}}
    manager, router = build(settings, store, telegram=FakeFactory("telegram"), slack=FakeFactory("slack"))
    tg = await running_bot(manager, "telegram")
    sl = await running_bot(manager, "slack")

    await router.send(tg.id, msg())
    with pytest.raises(RateLimitedError):
        await router.send(tg.id, msg())
    await router.send(sl.id, msg())

@pytest.mark.asyncio
async def test_send_records_stats_and_latency(settings, store):
    manager, router = build(settings, store, telegram=FakeFactory("telegram"))
    bot = await running_bot(manager)

    ack = await router.send(bot.id, msg())

    assert ack.latency_ms >= 0
    snap = router.stats()["platforms"]["telegram"]
    assert snap["messages_sent"] == 1
    assert snap["errors"] == 0
    assert snap["active_connections"] == 0

@pytest.mark.asyncio
async def test_send_errors_are_counted_and_propagated(settings, store):
    err = SendError("telegram sendMessage failed with HTTP 401", retryable=False, status_code=401)
    manager, router = build(settings, store, telegram=FakeFactory("telegram", send_error=err))
    bot = await running_bot(manager)

    with pytest.raises(SendError) as exc:
        await router.send(bot.id, msg())

    assert exc.value.retryable is False
    assert router.stats()["platforms"]["telegram"]["errors"] == 1

@pytest.mark.asyncio
async def test_send_timeout_is_retryable(settings, store):
    settings.send_timeout_s = 0.05
    manager, router = build(settings, store, telegram=FakeFactory("telegram", send_delay=1.0))
    bot = await running_bot(manager)

    with pytest.raises(SendError) as exc:
        await router.send(bot.id, msg())

    assert exc.value.retryable is True
    assert router.stats()["platforms"]["telegram"]["active_connections"] == 0

@pytest.mark.asyncio
async def test_concurrency_ceiling_rejects_instead_of_queueing(settings, store):
    settings.platform_limits = {"telegram": {"max_concurrent": 1}}
    manager, router = build(settings, store, telegram=FakeFactory("telegram", send_delay=0.1))
    bot = await running_bot(manager)

    first = asyncio.create_task(router.send(bot.id, msg("slow")))
    await asyncio.sleep(0.01)
    with pytest.raises(ConcurrencyLimitError):
        await router.send(bot.id, msg("second"))
    await first

@pytest.mark.asyncio
async def test_concurrency_rejection_leaves_rate_window_untouched(settings, store):
    settings.platform_limits = {"telegram": {"max_concurrent": 1, "rate_limit": 2}}
    manager, router = build(settings, store, telegram=FakeFactory("telegram", send_delay=0.05))
    bot = await running_bot(manager)

    first = asyncio.create_task(router.send(bot.id, msg("slow")))
    await asyncio.sleep(0.01)
    with pytest.raises(ConcurrencyLimitError):
        await router.send(bot.id, msg("second"))
    await first

    await router.send(bot.id, msg("third"))
    assert router.platforms["telegram"].window.count == 2

@pytest.mark.asyncio
async def test_no_new_sends_once_stop_began(settings, store):
    manager, router = build(settings, store, telegram=FakeFactory("telegram"))
    bot = await running_bot(manager)
    await manager.stop_bot(bot.id)
    with pytest.raises(NotRunningError):
        await router.send(bot.id, msg())

@pytest.mark.asyncio
async def test_select_optimal_platform(settings, store):
    manager, router = build(settings, store, telegram=FakeFactory("telegram"), slack=FakeFactory("slack"),
                            line=FakeFactory("line"))
    with pytest.raises(NoAvailablePlatformError):
        router.select_optimal_platform()

    await running_bot(manager, "slack")
    await running_bot(manager, "line")
    await running_bot(manager, "telegram")

    # preferred wins when available
    assert router.select_optimal_platform(preferred="line") == "line"
    # high priority: lowest configured priority value
    assert router.select_optimal_platform(priority="high") == "telegram"

    # normal traffic: least loaded
    router.platforms["telegram"].active_connections = 500
    router.platforms["slack"].active_connections = 300
    router.platforms["line"].active_connections = 400
    assert router.select_optimal_platform() == "slack"

    # a preferred platform at its ceiling is skipped
    router.platforms["line"].active_connections = router.platforms["line"].max_concurrent
    assert router.select_optimal_platform(preferred="line") == "slack"
