from __future__ import annotations
import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Protocol, runtime_checkable

import httpx

from botgateway.domain.errors import SendError, StartError, ValidationError, VerificationError
from botgateway.domain.models import HealthStatus, NormalizedMessage, OutboundMessage, SendAck, utcnow
from botgateway.observability import metrics
from botgateway.observability.logging import get_logger

log = get_logger("adapters")

MessageSink = Callable[[NormalizedMessage], Awaitable[None]]


@dataclass
class RawEvent:
    """Transport-level inbound event, before verification."""
    body: bytes = b""
    headers: dict[str, str] = field(default_factory=dict)
    query: dict[str, str] = field(default_factory=dict)
    method: str = "POST"
    _payload: Any = field(default=None, repr=False)

    def __post_init__(self) -> None:
        self.headers = {k.lower(): v for k, v in self.headers.items()}

    def header(self, name: str) -> str | None:
        return self.headers.get(name.lower())

    @property
    def text(self) -> str:
        return self.body.decode("utf-8", errors="replace")

    def json(self) -> Any:
        if self._payload is None:
            if not self.body:
                self._payload = {}
            else:
                try:
                    self._payload = json.loads(self.body)
                except ValueError as e:
                    raise ValidationError("webhook body is not valid JSON") from e
        return self._payload


@dataclass(frozen=True)
class Verdict:
    """Outcome of a webhook authenticity check.

    ``enforced=False`` marks the allow-by-default branch taken when the
    platform secret is not configured.
    """
    allowed: bool
    reason: str
    enforced: bool = True

    @classmethod
    def ok(cls) -> "Verdict":
        return cls(True, "signature_valid")

    @classmethod
    def deny(cls, reason: str) -> "Verdict":
        return cls(False, reason)

    @classmethod
    def fallback(cls, reason: str = "secret_not_configured") -> "Verdict":
        return cls(True, reason, enforced=False)


@dataclass
class HandshakeReply:
    status_code: int = 200
    body: Any = ""
    media_type: str = "text/plain"


@dataclass
class AdapterHandle:
    """What stands in for a live connection of one bot."""
    bot_id: str
    platform: str
    credentials: str
    settings: dict[str, Any] = field(default_factory=dict)
    webhook_url: str | None = None
    sink: MessageSink | None = None
    started_at: datetime = field(default_factory=utcnow)
    state: dict[str, Any] = field(default_factory=dict)
    task: Optional[asyncio.Task] = None
    stopped: bool = False

    def setting(self, key: str, default: Any = None) -> Any:
        return self.settings.get(key, default)


@runtime_checkable
class PlatformAdapter(Protocol):
    """Capability set every platform integration provides.

    The registry and router only ever talk to adapters through this contract.
    """

    platform: str
    # strict vendors get a 401 on a bad signature; the rest get a 2xx and the
    # event is dropped so the vendor does not redeliver it
    rejects_invalid_signature: bool

    async def start(self, bot_id: str, credentials: str, settings: dict[str, Any],
                    webhook_url: str | None, sink: MessageSink | None) -> AdapterHandle: ...

    async def stop(self, handle: AdapterHandle) -> None: ...

    def verify(self, handle: AdapterHandle, event: RawEvent) -> Verdict: ...

    def normalize(self, handle: AdapterHandle, event: RawEvent) -> list[NormalizedMessage]: ...

    async def verify_and_normalize(self, handle: AdapterHandle, event: RawEvent) -> list[NormalizedMessage]: ...

    def handshake(self, handle: AdapterHandle, event: RawEvent) -> HandshakeReply | None: ...

    async def send(self, handle: AdapterHandle, message: OutboundMessage) -> SendAck: ...

    async def health_check(self, handle: AdapterHandle) -> HealthStatus: ...

    def webhook_ack(self, event: RawEvent) -> dict[str, Any]: ...

    async def aclose(self) -> None: ...


def from_epoch(value: Any) -> datetime:
    """Platform epoch (seconds, possibly a string or float) -> aware UTC datetime."""
    try:
        seconds = float(value)
    except (TypeError, ValueError):
        return utcnow()
    if seconds > 1e11:  # milliseconds
        seconds /= 1000.0
    return datetime.fromtimestamp(seconds, tz=timezone.utc)


def is_retryable_status(status_code: int) -> bool:
    return status_code in (408, 425, 429) or status_code >= 500


class HttpAdapter:
    """Shared plumbing for REST-based adapters.

    Owns the ``httpx.AsyncClient`` and converts transport failures into the
    gateway's typed errors so nothing raw leaves the adapter.
    """

    platform = "http"
    rejects_invalid_signature = True
    base_url = ""
    ack_body: dict[str, Any] = {"success": True}

    def __init__(self, client: httpx.AsyncClient | None = None, timeout_s: float = 30.0):
        self._client = client
        self._owns_client = client is None
        self.timeout_s = timeout_s

    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_s)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _request(self, method: str, url: str, *, op: str, **kwargs: Any) -> httpx.Response:
        try:
            resp = await self.client().request(method, url, **kwargs)
        except httpx.TimeoutException as e:
            raise SendError(f"{self.platform} {op} timed out", retryable=True) from e
        except httpx.HTTPError as e:
            raise SendError(f"{self.platform} {op} transport error: {e}", retryable=True) from e
        if resp.status_code >= 400:
            raise SendError(
                f"{self.platform} {op} failed with HTTP {resp.status_code}",
                retryable=is_retryable_status(resp.status_code),
                status_code=resp.status_code,
                body=resp.text[:500],
            )
        return resp

    def _json(self, resp: httpx.Response) -> Any:
        try:
            return resp.json()
        except ValueError as e:
            raise SendError(f"{self.platform} answered HTTP {resp.status_code} with a non-JSON body",
                            retryable=True, status_code=resp.status_code, body=resp.text[:200]) from e

    async def _start_call(self, coro: Awaitable[Any], bot_id: str) -> Any:
        """Run a start-time API call, surfacing failures as StartError."""
        try:
            return await coro
        except SendError as e:
            raise StartError(f"{self.platform} bot {bot_id} failed to start: {e.message}",
                             retryable=e.retryable) from e

    async def verify_and_normalize(self, handle: AdapterHandle, event: RawEvent) -> list[NormalizedMessage]:
        verdict = self.verify(handle, event)  # type: ignore[attr-defined]
        if not verdict.allowed:
            metrics.webhook_verifications.labels(platform=self.platform, outcome="rejected").inc()
            log.warning("webhook_verification_failed", bot_id=handle.bot_id, platform=self.platform, reason=verdict.reason)
            raise VerificationError(f"{self.platform} webhook failed verification", reason=verdict.reason)
        if not verdict.enforced:
            metrics.webhook_verifications.labels(platform=self.platform, outcome="fallback_allowed").inc()
            log.warning("webhook_verification_skipped", bot_id=handle.bot_id, platform=self.platform, reason=verdict.reason)
        else:
            metrics.webhook_verifications.labels(platform=self.platform, outcome="verified").inc()
        return self.normalize(handle, event)  # type: ignore[attr-defined]

    def handshake(self, handle: AdapterHandle, event: RawEvent) -> HandshakeReply | None:
        return None

    def webhook_ack(self, event: RawEvent) -> dict[str, Any]:
        return dict(self.ack_body)

    def _ensure_live(self, handle: AdapterHandle) -> None:
        if handle.stopped:
            raise SendError(f"{self.platform} bot {handle.bot_id} is stopped", retryable=False)

    async def _liveness(self, coro: Awaitable[Any]) -> HealthStatus:
        try:
            detail = await coro
        except SendError as e:
            return HealthStatus(healthy=False, detail=e.message)
        return HealthStatus(healthy=True, detail=str(detail or "ok"))
