from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Optional

from botgateway.adapters.base import HandshakeReply, MessageSink, RawEvent
from botgateway.core.lifecycle import BotManager, RunningBot
from botgateway.core.pipeline import PipelineClient
from botgateway.core.router import OutboundRouter
from botgateway.domain.errors import NotRunningError, PipelineError, ValidationError, VerificationError
from botgateway.domain.models import NormalizedMessage
from botgateway.observability import metrics
from botgateway.observability.logging import bind_bot_id, get_logger

log = get_logger("ingress")


@dataclass
class IngressResult:
    accepted: bool
    status_code: int = 200
    body: Any = field(default_factory=dict)
    media_type: str = "application/json"
    messages: int = 0
    reason: Optional[str] = None


class WebhookDispatcher:
    """Routes platform callbacks to the bot's running adapter, then to the pipeline.

    Nothing that fails verification is forwarded. Pipeline failures are logged
    and counted; the platform still gets its acknowledgement.
    """

    def __init__(self, manager: BotManager, router: OutboundRouter, pipeline: PipelineClient):
        self.manager = manager
        self.router = router
        self.pipeline = pipeline

    def _resolve(self, platform: str, bot_id: str) -> RunningBot:
        rb = self.manager.running_bot(bot_id)
        if rb is None or rb.platform != platform:
            raise NotRunningError(f"no running {platform} bot {bot_id}", bot_id=bot_id, platform=platform)
        return rb

    def handshake(self, platform: str, bot_id: str, event: RawEvent) -> HandshakeReply | None:
        rb = self._resolve(platform, bot_id)
        return rb.adapter.handshake(rb.handle, event)

    async def dispatch(self, platform: str, bot_id: str, event: RawEvent) -> IngressResult:
        rb = self._resolve(platform, bot_id)
        bind_bot_id(bot_id, platform)
        try:
            reply = rb.adapter.handshake(rb.handle, event)
            if reply is not None:
                return IngressResult(accepted=True, status_code=reply.status_code, body=reply.body,
                                     media_type=reply.media_type, reason="handshake")
            try:
                messages = await rb.adapter.verify_and_normalize(rb.handle, event)
            except VerificationError as e:
                if rb.adapter.rejects_invalid_signature:
                    return IngressResult(accepted=False, status_code=401,
                                         body={"success": False, "error": e.to_dict()}, reason=e.reason)
                return IngressResult(accepted=False, status_code=200, body=rb.adapter.webhook_ack(event),
                                     reason=e.reason)
            except (ValidationError, AttributeError, KeyError, TypeError, ValueError) as e:
                if rb.adapter.rejects_invalid_signature:
                    if isinstance(e, ValidationError):
                        raise
                    raise ValidationError(f"malformed {platform} payload", platform=platform) from e
                metrics.webhook_dropped.labels(platform=platform, reason="malformed_payload").inc()
                log.warning("webhook_payload_dropped", platform=platform, err=str(e))
                return IngressResult(accepted=False, status_code=200, body=rb.adapter.webhook_ack(event),
                                     reason="malformed_payload")

            for msg in messages:
                await self._deliver(rb, msg)
            return IngressResult(accepted=True, body=rb.adapter.webhook_ack(event), messages=len(messages))
        finally:
            bind_bot_id(None)

    async def _deliver(self, rb: RunningBot, msg: NormalizedMessage) -> None:
        metrics.inbound_messages.labels(platform=rb.platform).inc()
        self.router.record_received(rb.platform)
        log.info("message_received", msg_id=msg.id, type=msg.type.value, chat_id=msg.chat_id)
        try:
            await self.pipeline.submit(msg, rb.tenant_id)
        except PipelineError as e:
            log.error("pipeline_handoff_failed", msg_id=msg.id, err=e.message)

    def sink_for(self, bot_id: str) -> MessageSink:
        """Message sink for transports that pull (polling) rather than receive webhooks."""

        async def sink(msg: NormalizedMessage) -> None:
            rb = self.manager.running_bot(bot_id)
            if rb is None:
                log.warning("message_dropped_not_running", bot_id=bot_id, msg_id=msg.id)
                return
            await self._deliver(rb, msg)

        return sink
