from __future__ import annotations
import asyncio, contextlib
from typing import Optional

from botgateway.config import Settings
from botgateway.core.lifecycle import BotManager, RunningBot
from botgateway.core.router import OutboundRouter
from botgateway.domain.models import GatewayHealth, HealthStatus, PlatformHealth, PlatformStatus, utcnow
from botgateway.observability import metrics
from botgateway.observability.logging import get_logger

log = get_logger("health")


class HealthMonitor:
    """Periodically checks every running bot and folds results per platform.

    A platform is ``healthy`` only if all of its bots pass, ``unhealthy`` if
    any reported unhealthy and ``error`` if any check raised or timed out.
    """

    def __init__(self, manager: BotManager, router: OutboundRouter, settings: Settings):
        self.manager = manager
        self.router = router
        self.interval_s = settings.health_interval_s
        self.timeout_s = settings.health_timeout_s
        self.mark_unhealthy_bots = settings.mark_unhealthy_bots
        self.last: Optional[GatewayHealth] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_healthy(self) -> bool:
        return self.last.is_healthy if self.last is not None else True

    def start(self) -> None:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._loop(), name="health-monitor")
            log.info("health_monitor_started", interval_s=self.interval_s)

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await self._task
        self._task = None
        log.info("health_monitor_stopped")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval_s)
            try:
                await self.run_once()
            except Exception as e:
                log.exception("health_round_failed", err=str(e))

    async def _check(self, rb: RunningBot) -> tuple[str, HealthStatus | None, str | None]:
        """(bot_id, status, error). ``error`` is set when the check raised or timed out."""
        try:
            status = await asyncio.wait_for(rb.adapter.health_check(rb.handle), timeout=self.timeout_s)
        except asyncio.TimeoutError:
            return rb.bot_id, None, f"health check timed out after {self.timeout_s}s"
        except Exception as e:
            return rb.bot_id, None, f"health check raised: {e}"
        return rb.bot_id, status, None

    async def run_once(self) -> GatewayHealth:
        by_platform: dict[str, list[RunningBot]] = {}
        for rb in self.manager.running_bots():
            by_platform.setdefault(rb.platform, []).append(rb)

        platforms: dict[str, PlatformHealth] = {}
        for platform, bots in sorted(by_platform.items()):
            results = await asyncio.gather(*(self._check(rb) for rb in bots))
            failures: dict[str, str] = {}
            errored = unhealthy = False
            for bot_id, status, error in results:
                if error is not None:
                    errored = True
                    failures[bot_id] = error
                    if self.mark_unhealthy_bots:
                        await self.manager.mark_error(bot_id, error)
                elif not status.healthy:
                    unhealthy = True
                    failures[bot_id] = status.detail or "unhealthy"
                elif self.mark_unhealthy_bots:
                    await self.manager.mark_recovered(bot_id)

            if errored:
                pstatus = PlatformStatus.error
            elif unhealthy:
                pstatus = PlatformStatus.unhealthy
            else:
                pstatus = PlatformStatus.healthy
            now = utcnow()
            st = self.router.state_for(platform)
            st.status = pstatus
            st.last_health_check = now
            metrics.health_checks.labels(platform=platform, status=pstatus.value).inc()
            if failures:
                log.warning("platform_health_degraded", platform=platform, status=pstatus.value, failures=failures)
            platforms[platform] = PlatformHealth(platform=platform, status=pstatus, bots_checked=len(bots),
                                                 failures=failures, last_health_check=now)

        health = GatewayHealth(
            is_healthy=all(p.status == PlatformStatus.healthy for p in platforms.values()),
            platforms=platforms,
        )
        self.last = health
        return health
