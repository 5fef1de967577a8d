import json

import pytest
from prometheus_client import REGISTRY

from botgateway.adapters.base import RawEvent
from botgateway.core.ingress import WebhookDispatcher
from botgateway.core.lifecycle import BotManager
from botgateway.core.router import OutboundRouter
from botgateway.domain.errors import NotRunningError, PipelineError, ValidationError
from conftest import FakeFactory, RecordingPipeline, make_registry


def build(settings, store, pipeline=None, **factories):
    manager = BotManager(store, make_registry(**factories), settings)
    router = OutboundRouter(settings, manager)
    manager.router = router
    pipeline = pipeline or RecordingPipeline()
    dispatcher = WebhookDispatcher(manager, router, pipeline)
    manager.sink_factory = dispatcher.sink_for
    return manager, router, dispatcher, pipeline

async def start(manager, platform="telegram", settings=None):
    bot = await manager.create_bot(tenant_id="t1", name="b", platform=platform, credentials="x", settings=settings)
    await manager.start_bot(bot.id)
    return bot

def event(texts, secret=None):
    headers = {"X-Secret": secret} if secret else {}
    return RawEvent(body=json.dumps({"chat": "c1", "texts": texts}).encode(), headers=headers)

def fallback_count(platform):
    return REGISTRY.get_sample_value("bgw_webhook_verifications_total",
                                     {"platform": platform, "outcome": "fallback_allowed"}) or 0.0


@pytest.mark.asyncio
async def test_valid_event_reaches_pipeline(settings, store):
    manager, router, dispatcher, pipeline = build(settings, store, telegram=FakeFactory("telegram"))
    bot = await start(manager, settings={"secret": "s3"})

    result = await dispatcher.dispatch("telegram", bot.id, event(["hello", "world"], secret="s3"))

    assert result.accepted and result.status_code == 200 and result.messages == 2
    assert [m.text for m, _ in pipeline.submitted] == ["hello", "world"]
    assert {tenant for _, tenant in pipeline.submitted} == {"t1"}
    assert router.stats()["platforms"]["telegram"]["messages_received"] == 2

@pytest.mark.asyncio
async def test_invalid_signature_never_reaches_pipeline_strict(settings, store):
    manager, router, dispatcher, pipeline = build(settings, store, discord=FakeFactory("discord", rejects=True))
    bot = await start(manager, "discord", settings={"secret": "s3"})

    result = await dispatcher.dispatch("discord", bot.id, event(["hello"], secret="wrong"))

    assert not result.accepted
    assert result.status_code == 401
    assert result.body["error"]["code"] == "verification_failed"
    assert pipeline.submitted == []

@pytest.mark.asyncio
async def test_invalid_signature_is_dropped_with_2xx_for_lenient_platforms(settings, store):
    manager, router, dispatcher, pipeline = build(settings, store, line=FakeFactory("line", rejects=False))
    bot = await start(manager, "line", settings={"secret": "s3"})

    result = await dispatcher.dispatch("line", bot.id, event(["hello"]))

    assert not result.accepted
    assert result.status_code == 200
    assert result.reason == "signature_mismatch"
    assert pipeline.submitted == []

@pytest.mark.asyncio
@pytest.mark.parametrize("body", [b"{not json", b'{"chat": "c1", "texts": 5}', b"[1, 2]"])
async def test_malformed_payload_is_acked_and_dropped_for_lenient_platforms(settings, store, body):
    manager, router, dispatcher, pipeline = build(settings, store, line=FakeFactory("line", rejects=False))
    bot = await start(manager, "line")

    result = await dispatcher.dispatch("line", bot.id, RawEvent(body=body))

    assert not result.accepted
    assert result.status_code == 200
    assert result.reason == "malformed_payload"
    assert pipeline.submitted == []

@pytest.mark.asyncio
async def test_malformed_payload_is_a_validation_error_for_strict_platforms(settings, store):
    manager, router, dispatcher, pipeline = build(settings, store, discord=FakeFactory("discord", rejects=True))
    bot = await start(manager, "discord")

    with pytest.raises(ValidationError):
        await dispatcher.dispatch("discord", bot.id, RawEvent(body=b"{not json"))
    with pytest.raises(ValidationError):
        await dispatcher.dispatch("discord", bot.id, RawEvent(body=b'{"texts": ["x"]}'))
    assert pipeline.submitted == []

@pytest.mark.asyncio
async def test_missing_secret_takes_observable_fallback(settings, store):
    manager, router, dispatcher, pipeline = build(settings, store, slack=FakeFactory("slack"))
    bot = await start(manager, "slack")
    before = fallback_count("slack")

    result = await dispatcher.dispatch("slack", bot.id, event(["hello"]))

    assert result.accepted
    assert len(pipeline.submitted) == 1
    assert fallback_count("slack") == before + 1

@pytest.mark.asyncio
async def test_unknown_or_mismatched_bot_is_not_running(settings, store):
    manager, router, dispatcher, pipeline = build(settings, store, telegram=FakeFactory("telegram"))
    bot = await start(manager)
    with pytest.raises(NotRunningError):
        await dispatcher.dispatch("telegram", "bot_missing", event(["x"]))
    with pytest.raises(NotRunningError):
        await dispatcher.dispatch("slack", bot.id, event(["x"]))

@pytest.mark.asyncio
async def test_pipeline_failure_does_not_fail_webhook(settings, store):
    pipeline = RecordingPipeline(error=PipelineError("pipeline answered HTTP 503"))
    manager, router, dispatcher, _ = build(settings, store, pipeline=pipeline, telegram=FakeFactory("telegram"))
    bot = await start(manager)

    result = await dispatcher.dispatch("telegram", bot.id, event(["hello"]))

    assert result.accepted and result.status_code == 200

@pytest.mark.asyncio
async def test_sink_forwards_polled_messages(settings, store):
    manager, router, dispatcher, pipeline = build(settings, store, telegram=FakeFactory("telegram"))
    bot = await start(manager)
    rb = manager.running_bot(bot.id)

    messages = rb.adapter.normalize(rb.handle, event(["polled"]))
    await rb.handle.sink(messages[0])

    assert [m.text for m, _ in pipeline.submitted] == ["polled"]
