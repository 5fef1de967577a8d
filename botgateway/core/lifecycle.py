from __future__ import annotations
import asyncio, uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Callable, Optional

from botgateway.adapters.base import AdapterHandle, MessageSink, PlatformAdapter
from botgateway.adapters.registry import AdapterRegistry
from botgateway.config import Settings
from botgateway.domain.errors import (
    BotNotFoundError, GatewayError, StartError, StopError, UnsupportedPlatformError, ValidationError,
)
from botgateway.domain.models import BotConfig, BotStatus, BulkResult, LifecycleResult, utcnow
from botgateway.observability import metrics
from botgateway.observability.logging import get_logger
from botgateway.persistence.repo import BotStore

if TYPE_CHECKING:
    from botgateway.core.router import OutboundRouter

log = get_logger("lifecycle")

def gen_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


@dataclass
class RunningBot:
    bot_id: str
    tenant_id: str
    platform: str
    adapter: PlatformAdapter
    handle: AdapterHandle
    started_at: datetime = field(default_factory=utcnow)


class BotManager:
    """Registry of bot configurations and sole owner of the running-bot map.

    Transitions for one bot are serialised by a per-bot lock; different bots
    never contend. Starts are not retried here.
    """

    def __init__(self, store: BotStore, registry: AdapterRegistry, settings: Settings,
                 router: Optional["OutboundRouter"] = None,
                 sink_factory: Optional[Callable[[str], MessageSink]] = None):
        self.store = store
        self.registry = registry
        self.settings = settings
        self.router = router
        self.sink_factory = sink_factory
        self._running: dict[str, RunningBot] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, bot_id: str) -> asyncio.Lock:
        lock = self._locks.get(bot_id)
        if lock is None:
            lock = self._locks[bot_id] = asyncio.Lock()
        return lock

    # ------------------------------------------------------------------
    # records
    # ------------------------------------------------------------------

    async def create_bot(self, tenant_id: str, name: str, platform: str, credentials: str,
                         webhook_url: str | None = None, settings: dict[str, Any] | None = None,
                         auto_start: bool = False) -> BotConfig:
        missing = [k for k, v in (("tenant_id", tenant_id), ("name", name), ("platform", platform),
                                  ("credentials", credentials)) if not v or not str(v).strip()]
        if missing:
            raise ValidationError(f"missing required fields: {', '.join(missing)}", fields=missing)
        if not self.registry.is_supported(platform):
            raise UnsupportedPlatformError(f"unsupported platform: {platform}", platform=platform,
                                           supported=self.registry.platforms())
        bot = BotConfig(
            id=gen_id("bot"), tenant_id=tenant_id, name=name.strip(), platform=platform,
            credentials=credentials, webhook_url=webhook_url or None, settings=settings or {},
            status=BotStatus.inactive, auto_start=auto_start,
        )
        await self.store.create(bot)
        log.info("bot_created", bot_id=bot.id, tenant_id=tenant_id, platform=platform)
        return bot

    async def get_bot(self, bot_id: str, tenant_id: str | None = None) -> BotConfig:
        bot = await self.store.get(bot_id)
        if bot is None or (tenant_id is not None and bot.tenant_id != tenant_id):
            raise BotNotFoundError(f"bot {bot_id} not found", bot_id=bot_id)
        return bot

    async def list_bots(self, tenant_id: str | None = None) -> list[dict[str, Any]]:
        out = []
        for bot in await self.store.list_bots(tenant_id=tenant_id):
            running = self._running.get(bot.id)
            out.append({
                **bot.model_dump(mode="json"),
                "is_running": running is not None,
                "started_at": running.started_at.isoformat() if running else None,
            })
        return out

    async def update_settings(self, bot_id: str, tenant_id: str | None = None, settings: dict[str, Any] | None = None,
                              webhook_url: str | None = None, auto_start: bool | None = None,
                              name: str | None = None) -> BotConfig:
        await self.get_bot(bot_id, tenant_id)
        async with self._lock_for(bot_id):
            if webhook_url is not None and bot_id in self._running:
                raise ValidationError("stop the bot before changing its webhook_url", bot_id=bot_id)
            bot = await self.store.update_settings(bot_id, settings=settings, webhook_url=webhook_url,
                                                   auto_start=auto_start, name=name)
        if bot is None:
            raise BotNotFoundError(f"bot {bot_id} not found", bot_id=bot_id)
        log.info("bot_updated", bot_id=bot_id, keys=sorted((settings or {}).keys()))
        return bot

    async def get_bot_stats(self) -> dict[str, Any]:
        by_status = await self.store.count_by_status()
        by_platform: dict[str, int] = {}
        for rb in self._running.values():
            by_platform[rb.platform] = by_platform.get(rb.platform, 0) + 1
        return {
            "total": sum(by_status.values()),
            "by_status": by_status,
            "running": len(self._running),
            "running_by_platform": by_platform,
        }

    def running_bot(self, bot_id: str) -> RunningBot | None:
        return self._running.get(bot_id)

    def running_bots(self, platform: str | None = None) -> list[RunningBot]:
        return [rb for rb in self._running.values() if platform is None or rb.platform == platform]

    async def mark_error(self, bot_id: str, reason: str) -> None:
        """Persist ``error`` for a running bot; the running instance is kept.

        A bot stopped while its health check was in flight is left alone.
        """
        async with self._lock_for(bot_id):
            if bot_id not in self._running:
                return
            if await self.store.set_status(bot_id, BotStatus.error, reason):
                log.warning("bot_marked_error", bot_id=bot_id, reason=reason)

    async def mark_recovered(self, bot_id: str) -> None:
        """Move a running bot persisted as ``error`` back to ``active``."""
        async with self._lock_for(bot_id):
            if bot_id not in self._running:
                return
            bot = await self.store.get(bot_id)
            if bot is not None and bot.status == BotStatus.error:
                await self.store.set_status(bot_id, BotStatus.active)
                log.info("bot_recovered", bot_id=bot_id)

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------

    async def start_bot(self, bot_id: str, tenant_id: str | None = None) -> LifecycleResult:
        bot = await self.get_bot(bot_id, tenant_id)
        async with self._lock_for(bot_id):
            if bot_id in self._running:
                metrics.lifecycle_transitions.labels(action="start", outcome="noop").inc()
                return LifecycleResult(bot_id=bot_id, status=BotStatus.active, message="already running")

            adapter = self.registry.create(bot.platform)
            await self.store.set_status(bot_id, BotStatus.starting)
            sink = self.sink_factory(bot_id) if self.sink_factory else None
            webhook_base = bot.webhook_url or self.settings.public_base_url
            try:
                handle = await asyncio.wait_for(
                    adapter.start(bot_id, bot.credentials, bot.settings, webhook_base, sink),
                    timeout=self.settings.start_timeout_s,
                )
            except asyncio.TimeoutError:
                err = StartError(f"bot {bot_id} did not start within {self.settings.start_timeout_s}s", retryable=True)
                await self._fail_start(bot, adapter, err)
                raise err
            except StartError as e:
                await self._fail_start(bot, adapter, e)
                raise
            except GatewayError as e:
                err = StartError(e.message, cause=e.code)
                await self._fail_start(bot, adapter, err)
                raise err from e
            except Exception as e:
                log.exception("bot_start_crashed", bot_id=bot_id, platform=bot.platform)
                err = StartError(f"bot {bot_id} failed to start: {e}")
                await self._fail_start(bot, adapter, err)
                raise err from e

            self._running[bot_id] = RunningBot(bot_id=bot_id, tenant_id=bot.tenant_id, platform=bot.platform,
                                               adapter=adapter, handle=handle)
            if self.router is not None and len(self.running_bots(bot.platform)) == 1:
                self.router.register_platform(bot.platform)
            await self.store.set_status(bot_id, BotStatus.active)

        metrics.running_bots.labels(platform=bot.platform).inc()
        metrics.lifecycle_transitions.labels(action="start", outcome="ok").inc()
        log.info("bot_started", bot_id=bot_id, platform=bot.platform)
        return LifecycleResult(bot_id=bot_id, status=BotStatus.active, message="started")

    async def _fail_start(self, bot: BotConfig, adapter: PlatformAdapter, err: StartError) -> None:
        try:
            await adapter.aclose()
        except Exception:
            log.exception("adapter_release_failed", bot_id=bot.id, platform=bot.platform)
        await self.store.set_status(bot.id, BotStatus.error, err.message)
        metrics.lifecycle_transitions.labels(action="start", outcome="error").inc()
        log.error("bot_start_failed", bot_id=bot.id, platform=bot.platform, err=err.message)

    async def stop_bot(self, bot_id: str, tenant_id: str | None = None) -> LifecycleResult:
        await self.get_bot(bot_id, tenant_id)
        async with self._lock_for(bot_id):
            # leave the sendable set before the adapter is torn down
            rb = self._running.pop(bot_id, None)
            if rb is None:
                metrics.lifecycle_transitions.labels(action="stop", outcome="noop").inc()
                return LifecycleResult(bot_id=bot_id, status=BotStatus.inactive, message="not running")

            metrics.running_bots.labels(platform=rb.platform).dec()
            if self.router is not None and not self.running_bots(rb.platform):
                self.router.unregister_platform(rb.platform)
            await self.store.set_status(bot_id, BotStatus.stopping)

            problem: str | None = None
            try:
                await asyncio.wait_for(rb.adapter.stop(rb.handle), timeout=self.settings.stop_timeout_s)
            except asyncio.TimeoutError:
                problem = f"adapter stop timed out after {self.settings.stop_timeout_s}s"
            except StopError as e:
                problem = e.message
            except Exception as e:
                log.exception("bot_stop_crashed", bot_id=bot_id, platform=rb.platform)
                problem = str(e)

            await self.store.set_status(bot_id, BotStatus.inactive, problem)

        if problem:
            metrics.lifecycle_transitions.labels(action="stop", outcome="error").inc()
            log.warning("bot_stopped_with_error", bot_id=bot_id, platform=rb.platform, err=problem)
            return LifecycleResult(success=False, bot_id=bot_id, status=BotStatus.inactive,
                                   message=f"stopped; adapter reported: {problem}")
        metrics.lifecycle_transitions.labels(action="stop", outcome="ok").inc()
        log.info("bot_stopped", bot_id=bot_id, platform=rb.platform)
        return LifecycleResult(bot_id=bot_id, status=BotStatus.inactive, message="stopped")

    async def start_configured_bots(self) -> BulkResult:
        bots = await self.store.list_auto_start()
        result = BulkResult(total=len(bots))
        outcomes = await asyncio.gather(*(self.start_bot(b.id) for b in bots), return_exceptions=True)
        for bot, outcome in zip(bots, outcomes):
            if isinstance(outcome, BaseException):
                result.failed[bot.id] = getattr(outcome, "message", str(outcome))
            else:
                result.succeeded.append(bot.id)
        log.info("configured_bots_started", total=result.total, ok=len(result.succeeded), failed=len(result.failed))
        return result

    async def stop_all_bots(self) -> BulkResult:
        ids = list(self._running)
        result = BulkResult(total=len(ids))
        outcomes = await asyncio.gather(*(self.stop_bot(i) for i in ids), return_exceptions=True)
        for bot_id, outcome in zip(ids, outcomes):
            if isinstance(outcome, BaseException):
                result.failed[bot_id] = getattr(outcome, "message", str(outcome))
            elif not outcome.success:
                result.failed[bot_id] = outcome.message
            else:
                result.succeeded.append(bot_id)
        log.info("all_bots_stopped", total=result.total, failed=len(result.failed))
        return result
