import asyncio

import pytest
import pytest_asyncio

from botgateway.adapters.base import AdapterHandle, HttpAdapter, Verdict
from botgateway.adapters.registry import AdapterRegistry
from botgateway.config import Settings
from botgateway.domain.models import HealthStatus, NormalizedMessage, SendAck, utcnow
from botgateway.persistence.db import make_engine, make_session_factory
from botgateway.persistence.migrations import init_db
from botgateway.persistence.repo import BotStore


class FakeAdapter(HttpAdapter):
    """In-memory adapter: secret in settings["secret"], signature in header x-secret."""

    def __init__(self, platform="telegram", *, fail_start=None, stop_error=None, healthy=True,
                 health_error=None, health_delay=0.0, send_error=None, send_delay=0.0, rejects=True):
        super().__init__()
        self.platform = platform
        self.rejects_invalid_signature = rejects
        self.fail_start = fail_start
        self.stop_error = stop_error
        self.healthy = healthy
        self.health_error = health_error
        self.health_delay = health_delay
        self.send_error = send_error
        self.send_delay = send_delay
        self.starts = 0
        self.stops = 0
        self.sent = []
        self.closed = False

    async def start(self, bot_id, credentials, settings, webhook_url, sink):
        self.starts += 1
        if self.fail_start is not None:
            raise self.fail_start
        return AdapterHandle(bot_id=bot_id, platform=self.platform, credentials=credentials,
                             settings=dict(settings), webhook_url=webhook_url, sink=sink)

    async def stop(self, handle):
        self.stops += 1
        handle.stopped = True
        if self.stop_error is not None:
            raise self.stop_error

    def verify(self, handle, event):
        secret = handle.setting("secret")
        if not secret:
            return Verdict.fallback()
        if event.header("x-secret") != secret:
            return Verdict.deny("signature_mismatch")
        return Verdict.ok()

    def normalize(self, handle, event):
        payload = event.json()
        return [
            NormalizedMessage(
                id=NormalizedMessage.make_id(self.platform, payload["chat"], str(i)),
                platform=self.platform, bot_id=handle.bot_id, chat_id=payload["chat"],
                sender_id=payload.get("from", "u1"), timestamp=utcnow(), text=text,
            )
            for i, text in enumerate(payload.get("texts", []))
        ]

    async def send(self, handle, message):
        if self.send_delay:
            await asyncio.sleep(self.send_delay)
        if self.send_error is not None:
            raise self.send_error
        self.sent.append(message)
        return SendAck(bot_id=handle.bot_id, platform=self.platform, chat_id=message.chat_id,
                       message_id=f"m{len(self.sent)}")

    async def aclose(self):
        self.closed = True
        await super().aclose()

    async def health_check(self, handle):
        if self.health_delay:
            await asyncio.sleep(self.health_delay)
        if self.health_error is not None:
            raise self.health_error
        return HealthStatus(healthy=self.healthy, detail="ok" if self.healthy else "down")


class FakeFactory:
    def __init__(self, platform, **opts):
        self.platform = platform
        self.opts = opts
        self.instances = []

    def __call__(self):
        adapter = FakeAdapter(self.platform, **self.opts)
        self.instances.append(adapter)
        return adapter


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class RecordingPipeline:
    def __init__(self, error=None):
        self.submitted = []
        self.error = error

    async def submit(self, message, tenant_id):
        if self.error is not None:
            raise self.error
        self.submitted.append((message, tenant_id))

    async def aclose(self):
        pass


def make_registry(**factories):
    registry = AdapterRegistry()
    for platform, factory in factories.items():
        registry.register(platform, factory)
    return registry


@pytest.fixture
def settings(tmp_path):
    return Settings(
        sqlite_path=str(tmp_path / "bots.sqlite"),
        client_api_keys=["test-key"],
        json_logs=False,
        auto_start_on_boot=False,
        start_timeout_s=1.0,
        stop_timeout_s=1.0,
        send_timeout_s=1.0,
        health_timeout_s=0.2,
        health_interval_s=3600.0,
    )


@pytest_asyncio.fixture
async def store(settings):
    engine = make_engine(settings)
    await init_db(engine)
    yield BotStore(make_session_factory(engine))
    await engine.dispose()
