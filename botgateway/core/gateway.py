from __future__ import annotations
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from botgateway.adapters.registry import AdapterRegistry, default_registry
from botgateway.config import Settings
from botgateway.core.health import HealthMonitor
from botgateway.core.ingress import WebhookDispatcher
from botgateway.core.lifecycle import BotManager
from botgateway.core.pipeline import PipelineClient
from botgateway.core.router import OutboundRouter
from botgateway.observability.logging import get_logger
from botgateway.persistence.repo import BotStore
from botgateway.security.rate_limit import RateLimiter

log = get_logger("gateway")


class Gateway:
    """Single authority: wires the bot registry, router, monitor and ingress.

    External access: the HTTP management API and webhook routes.
    """

    def __init__(self, settings: Settings, engine: AsyncEngine, session_factory: async_sessionmaker[AsyncSession],
                 registry: Optional[AdapterRegistry] = None, pipeline: Optional[PipelineClient] = None):
        self.settings = settings
        self.engine = engine
        self.session_factory = session_factory

        self.registry = registry or default_registry(timeout_s=settings.send_timeout_s)
        self.store = BotStore(session_factory)
        self.manager = BotManager(self.store, self.registry, settings)
        self.router = OutboundRouter(settings, self.manager)
        self.manager.router = self.router
        self.pipeline = pipeline or PipelineClient(settings)
        self.dispatcher = WebhookDispatcher(self.manager, self.router, self.pipeline)
        self.manager.sink_factory = self.dispatcher.sink_for
        self.monitor = HealthMonitor(self.manager, self.router, settings)
        self.api_rate_limiter = RateLimiter(rate=settings.api_rate_limit_rps, burst=settings.api_rate_limit_burst)

    async def start(self) -> None:
        if self.settings.auto_start_on_boot:
            result = await self.manager.start_configured_bots()
            for bot_id, err in result.failed.items():
                log.error("boot_start_failed", bot_id=bot_id, err=err)
        self.monitor.start()
        log.info("gateway_started", instance_id=self.settings.instance_id, platforms=self.registry.platforms())

    async def stop(self) -> None:
        await self.monitor.stop()
        await self.manager.stop_all_bots()
        await self.pipeline.aclose()
        log.info("gateway_stopped", instance_id=self.settings.instance_id)

    async def status(self) -> dict:
        return {
            "instance_id": self.settings.instance_id,
            "is_healthy": self.monitor.is_healthy,
            "bots": await self.manager.get_bot_stats(),
            "platforms": self.router.stats(),
            "supported_platforms": self.registry.platforms(),
        }
