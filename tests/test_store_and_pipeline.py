import json

import httpx
import pytest

from botgateway.config import Settings
from botgateway.core.pipeline import PipelineClient
from botgateway.domain.errors import PipelineError
from botgateway.domain.models import BotConfig, BotStatus, NormalizedMessage, utcnow


def bot(bot_id, tenant="t1", platform="telegram", **kw):
    return BotConfig(id=bot_id, tenant_id=tenant, name=bot_id, platform=platform, credentials="secret", **kw)

def message():
    return NormalizedMessage(id="telegram:42:7", platform="telegram", bot_id="bot_1", chat_id="42",
                             sender_id="9", timestamp=utcnow(), text="hello")


@pytest.mark.asyncio
async def test_store_round_trip_and_filters(store):
    await store.create(bot("a", settings={"secret_token": "s"}))
    await store.create(bot("b", tenant="t2", platform="slack", auto_start=True))

    got = await store.get("a")
    assert got.credentials == "secret"
    assert got.settings == {"secret_token": "s"}
    assert got.created_at.tzinfo is not None

    assert [b.id for b in await store.list_bots(tenant_id="t2")] == ["b"]
    assert [b.id for b in await store.list_bots(platform="telegram")] == ["a"]
    assert [b.id for b in await store.list_auto_start()] == ["b"]
    assert await store.get("missing") is None

@pytest.mark.asyncio
async def test_store_status_and_settings_merge(store):
    await store.create(bot("a", settings={"x": 1}))

    assert await store.set_status("a", BotStatus.error, "boom")
    assert not await store.set_status("missing", BotStatus.error)
    got = await store.get("a")
    assert got.status == BotStatus.error and got.last_error == "boom"

    updated = await store.update_settings("a", settings={"y": 2}, name="renamed")
    assert updated.settings == {"x": 1, "y": 2}
    assert updated.name == "renamed"
    assert await store.count_by_status() == {"error": 1}


@pytest.mark.asyncio
async def test_pipeline_disabled_without_url():
    seen = []
    client = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: seen.append(r) or httpx.Response(200)))
    await PipelineClient(Settings(pipeline_url=None), client=client).submit(message(), "t1")
    assert seen == []

@pytest.mark.asyncio
async def test_pipeline_posts_message_with_tenant_headers():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(202)

    pipeline = PipelineClient(Settings(pipeline_url="http://proc.local/messages", pipeline_api_key="pk"),
                              client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))
    await pipeline.submit(message(), "t1")

    [req] = seen
    assert req.headers["X-Tenant-ID"] == "t1"
    assert req.headers["X-Bot-ID"] == "bot_1"
    assert req.headers["X-API-Key"] == "pk"
    assert json.loads(req.content)["text"] == "hello"

@pytest.mark.asyncio
async def test_pipeline_error_status_raises():
    pipeline = PipelineClient(Settings(pipeline_url="http://proc.local/messages"),
                              client=httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(503))))
    with pytest.raises(PipelineError):
        await pipeline.submit(message(), "t1")
