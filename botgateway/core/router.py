from __future__ import annotations
import asyncio, time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from botgateway.config import Settings
from botgateway.domain.errors import (
    ConcurrencyLimitError, GatewayError, NoAvailablePlatformError, NotRunningError, RateLimitedError, SendError,
)
from botgateway.domain.models import OutboundMessage, PlatformStatus, SendAck
from botgateway.observability import metrics
from botgateway.observability.logging import get_logger
from botgateway.security.rate_limit import Clock, WindowCounter

log = get_logger("router")

# platform -> (max_concurrent, rate_limit per window, priority; lower wins)
DEFAULT_PLATFORM_LIMITS: dict[str, tuple[int, int, int]] = {
    "telegram": (1000, 30, 1),
    "discord": (2500, 50, 2),
    "whatsapp": (500, 20, 3),
    "slack": (1500, 30, 4),
    "line": (800, 25, 5),
    "wework": (600, 20, 6),
    "intercom": (400, 15, 7),
}
FALLBACK_LIMITS = (100, 10, 99)

# weight of the newest sample in the response-time moving average
EMA_ALPHA = 0.2


@dataclass
class PlatformStats:
    messages_sent: int = 0
    messages_received: int = 0
    errors: int = 0
    avg_response_ms: float = 0.0

    def record_latency(self, ms: float) -> None:
        if self.messages_sent <= 1:
            self.avg_response_ms = ms
        else:
            self.avg_response_ms = EMA_ALPHA * ms + (1 - EMA_ALPHA) * self.avg_response_ms


@dataclass
class PlatformRuntimeState:
    platform: str
    max_concurrent: int
    rate_limit: int
    priority: int
    window: WindowCounter
    active_connections: int = 0
    status: PlatformStatus = PlatformStatus.unregistered
    last_health_check: Optional[datetime] = None
    stats: PlatformStats = field(default_factory=PlatformStats)
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    @property
    def load_ratio(self) -> float:
        return self.active_connections / self.max_concurrent if self.max_concurrent else 1.0

    def snapshot(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "max_concurrent": self.max_concurrent,
            "rate_limit": self.rate_limit,
            "priority": self.priority,
            "active_connections": self.active_connections,
            "load_ratio": round(self.load_ratio, 4),
            "last_health_check": self.last_health_check.isoformat() if self.last_health_check else None,
            "messages_sent": self.stats.messages_sent,
            "messages_received": self.stats.messages_received,
            "errors": self.stats.errors,
            "avg_response_ms": round(self.stats.avg_response_ms, 2),
        }


class OutboundRouter:
    """Sends on behalf of running bots under per-platform rate and concurrency limits.

    ``bots`` is the lifecycle manager (anything with ``running_bot`` and
    ``running_bots``); it owns the running map. Nothing is queued: an
    exhausted window or a full platform fails immediately.
    """

    def __init__(self, settings: Settings, bots: Any, clock: Clock = time.monotonic):
        self.settings = settings
        self.bots = bots
        self._clock = clock
        self.platforms: dict[str, PlatformRuntimeState] = {}

    def state_for(self, platform: str) -> PlatformRuntimeState:
        st = self.platforms.get(platform)
        if st is None:
            max_c, rate, prio = DEFAULT_PLATFORM_LIMITS.get(platform, FALLBACK_LIMITS)
            override = self.settings.platform_limits.get(platform, {})
            max_c = int(override.get("max_concurrent", max_c))
            rate = int(override.get("rate_limit", rate))
            prio = int(override.get("priority", prio))
            st = PlatformRuntimeState(
                platform=platform, max_concurrent=max_c, rate_limit=rate, priority=prio,
                window=WindowCounter(limit=rate, window_s=self.settings.rate_limit_window_s,
                                     window_start=self._clock()),
            )
            self.platforms[platform] = st
        return st

    def register_platform(self, platform: str) -> None:
        st = self.state_for(platform)
        if st.status == PlatformStatus.unregistered:
            st.status = PlatformStatus.registered
            log.info("platform_registered", platform=platform)

    def unregister_platform(self, platform: str) -> None:
        st = self.platforms.get(platform)
        if st is not None:
            st.status = PlatformStatus.unregistered
            log.info("platform_unregistered", platform=platform)

    def record_received(self, platform: str, count: int = 1) -> None:
        self.state_for(platform).stats.messages_received += count

    def _available(self, st: PlatformRuntimeState) -> bool:
        return (
            st.status in (PlatformStatus.registered, PlatformStatus.healthy)
            and st.active_connections < st.max_concurrent
            and bool(self.bots.running_bots(st.platform))
        )

    def select_optimal_platform(self, preferred: str | None = None, priority: str = "normal") -> str:
        if preferred:
            st = self.platforms.get(preferred)
            if st is not None and self._available(st):
                return preferred
        candidates = [st for st in self.platforms.values() if self._available(st)]
        if not candidates:
            raise NoAvailablePlatformError("no platform is available", preferred=preferred)
        if priority == "high":
            best = min(candidates, key=lambda s: (s.priority, s.load_ratio))
        else:
            best = min(candidates, key=lambda s: (s.load_ratio, s.priority))
        return best.platform

    async def send(self, bot_id: str, message: OutboundMessage) -> SendAck:
        rb = self.bots.running_bot(bot_id)
        if rb is None:
            raise NotRunningError(f"bot {bot_id} is not running", bot_id=bot_id)
        st = self.state_for(rb.platform)

        async with st.lock:
            now = self._clock()
            if st.active_connections >= st.max_concurrent:
                raise ConcurrencyLimitError(f"{rb.platform} is at {st.max_concurrent} concurrent sends",
                                            platform=rb.platform)
            if not st.window.try_acquire(now):
                metrics.rate_limited_sends.labels(platform=rb.platform).inc()
                raise RateLimitedError(f"{rb.platform} send rate exhausted", retry_after_s=st.window.retry_after(now),
                                       platform=rb.platform)
            st.active_connections += 1

        started = time.perf_counter()
        try:
            ack = await asyncio.wait_for(rb.adapter.send(rb.handle, message), timeout=self.settings.send_timeout_s)
        except asyncio.TimeoutError as e:
            err = SendError(f"{rb.platform} send timed out after {self.settings.send_timeout_s}s", retryable=True)
            self._record_failure(st, err)
            raise err from e
        except GatewayError as e:
            self._record_failure(st, e)
            raise
        except Exception as e:
            log.exception("send_crashed", bot_id=bot_id, platform=rb.platform)
            err = SendError(f"{rb.platform} send failed: {e}", retryable=False)
            self._record_failure(st, err)
            raise err from e
        finally:
            st.active_connections -= 1

        elapsed = time.perf_counter() - started
        latency_ms = elapsed * 1000.0
        st.stats.messages_sent += 1
        st.stats.record_latency(latency_ms)
        metrics.outbound_sends.labels(platform=rb.platform, outcome="ok").inc()
        metrics.send_latency.labels(platform=rb.platform).observe(elapsed)
        log.info("message_sent", bot_id=bot_id, platform=rb.platform, chat_id=message.chat_id,
                 message_id=ack.message_id, latency_ms=round(latency_ms, 2))
        return ack.model_copy(update={"latency_ms": latency_ms})

    def _record_failure(self, st: PlatformRuntimeState, err: GatewayError) -> None:
        st.stats.errors += 1
        retryable = getattr(err, "retryable", False)
        metrics.outbound_sends.labels(platform=st.platform, outcome="retryable_error" if retryable else "error").inc()
        log.warning("send_failed", platform=st.platform, err=err.message, retryable=retryable)

    def stats(self) -> dict[str, Any]:
        platforms = {name: st.snapshot() for name, st in sorted(self.platforms.items())}
        return {
            "platforms": platforms,
            "totals": {
                "messages_sent": sum(p["messages_sent"] for p in platforms.values()),
                "messages_received": sum(p["messages_received"] for p in platforms.values()),
                "errors": sum(p["errors"] for p in platforms.values()),
                "active_connections": sum(p["active_connections"] for p in platforms.values()),
            },
        }
