from __future__ import annotations
from typing import Any

import httpx

from botgateway.adapters.base import AdapterHandle, HttpAdapter, MessageSink, RawEvent, Verdict, from_epoch
from botgateway.domain.errors import SendError
from botgateway.domain.models import Attachment, HealthStatus, MessageType, NormalizedMessage, OutboundMessage, SendAck
from botgateway.observability.logging import get_logger
from botgateway.security.signatures import constant_time_equals, hmac_b64

log = get_logger("adapter.line")

_MESSAGE_TYPES: dict[str, MessageType] = {
    "text": MessageType.text,
    "image": MessageType.image,
    "video": MessageType.video,
    "audio": MessageType.audio,
    "file": MessageType.file,
    "location": MessageType.location,
    "sticker": MessageType.sticker,
}

_LIFECYCLE_EVENTS = {"follow", "unfollow", "join", "leave", "memberJoined", "memberLeft"}


class LineAdapter(HttpAdapter):
    """LINE Messaging API adapter.

    ``X-Line-Signature`` is base64 HMAC-SHA256 of the body with the channel
    secret. Bad signatures are acknowledged with a 200 and dropped.
    """

    platform = "line"
    rejects_invalid_signature = False
    base_url = "https://api.line.me/v2/bot"

    def __init__(self, client: httpx.AsyncClient | None = None, timeout_s: float = 30.0):
        super().__init__(client, timeout_s)
        self._handle: AdapterHandle | None = None

    def _headers(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    async def _info(self, token: str) -> dict[str, Any]:
        resp = await self._request("GET", f"{self.base_url}/info", op="info", headers=self._headers(token))
        return self._json(resp)

    async def start(self, bot_id: str, credentials: str, settings: dict[str, Any],
                    webhook_url: str | None, sink: MessageSink | None) -> AdapterHandle:
        if self._handle is not None and not self._handle.stopped:
            return self._handle
        info = await self._start_call(self._info(credentials), bot_id)
        handle = AdapterHandle(bot_id=bot_id, platform=self.platform, credentials=credentials,
                               settings=dict(settings), webhook_url=webhook_url, sink=sink)
        handle.state["display_name"] = info.get("displayName")
        handle.state["user_id"] = info.get("userId")
        log.info("line_started", bot_id=bot_id, display_name=info.get("displayName"))
        self._handle = handle
        return handle

    async def stop(self, handle: AdapterHandle) -> None:
        if handle.stopped:
            return
        handle.stopped = True
        await self.aclose()

    def verify(self, handle: AdapterHandle, event: RawEvent) -> Verdict:
        secret = handle.setting("channel_secret")
        if not secret:
            return Verdict.fallback()
        signature = event.header("x-line-signature")
        if not signature:
            return Verdict.deny("missing_signature")
        if not constant_time_equals(hmac_b64(secret, event.body), signature):
            return Verdict.deny("signature_mismatch")
        return Verdict.ok()

    def normalize(self, handle: AdapterHandle, event: RawEvent) -> list[NormalizedMessage]:
        out: list[NormalizedMessage] = []
        for ev in event.json().get("events") or []:
            msg = self._normalize_event(handle, ev)
            if msg is not None:
                out.append(msg)
        return out

    def _normalize_event(self, handle: AdapterHandle, ev: dict[str, Any]) -> NormalizedMessage | None:
        source = ev.get("source") or {}
        chat_id = source.get("groupId") or source.get("roomId") or source.get("userId", "")
        kind = ev.get("type")
        text = ""
        attachments: list[Attachment] = []
        if kind == "message":
            body = ev.get("message") or {}
            raw_type = body.get("type", "")
            mtype = _MESSAGE_TYPES.get(raw_type, MessageType.system_event)
            native_id = body.get("id", "")
            if raw_type == "text":
                text = body.get("text", "")
            elif raw_type == "location":
                text = body.get("address") or body.get("title") or ""
                attachments.append(Attachment(type=mtype, name=f"{body.get('latitude')},{body.get('longitude')}"))
            elif raw_type == "sticker":
                attachments.append(Attachment(type=mtype, file_id=f"{body.get('packageId')}/{body.get('stickerId')}"))
            elif mtype != MessageType.system_event:
                attachments.append(Attachment(type=mtype, file_id=native_id, name=body.get("fileName"),
                                              size=body.get("fileSize")))
        elif kind == "postback":
            mtype = MessageType.interactive
            native_id = ev.get("webhookEventId", "")
            text = (ev.get("postback") or {}).get("data", "")
        elif kind in _LIFECYCLE_EVENTS:
            mtype = MessageType.system_event
            native_id = ev.get("webhookEventId", "")
            text = kind
        else:
            return None
        return NormalizedMessage(
            id=NormalizedMessage.make_id(self.platform, chat_id, native_id),
            platform=self.platform,
            bot_id=handle.bot_id,
            chat_id=chat_id,
            sender_id=source.get("userId", ""),
            timestamp=from_epoch(ev.get("timestamp")),
            type=mtype,
            text=text,
            attachments=attachments,
            metadata={
                "event_type": kind,
                "source_type": source.get("type"),
                "reply_token": ev.get("replyToken"),
                "redelivery": (ev.get("deliveryContext") or {}).get("isRedelivery", False),
            },
        )

    def _message_object(self, message: OutboundMessage) -> dict[str, Any]:
        opts = message.options
        if message.type == MessageType.text:
            return {"type": "text", "text": message.content}
        if message.type in (MessageType.image, MessageType.video):
            return {"type": message.type.value, "originalContentUrl": message.content,
                    "previewImageUrl": opts.get("preview_url", message.content)}
        if message.type == MessageType.audio:
            return {"type": "audio", "originalContentUrl": message.content, "duration": int(opts.get("duration_ms", 60000))}
        if message.type == MessageType.location:
            return {"type": "location", "title": opts.get("title", message.content), "address": opts.get("address", ""),
                    "latitude": opts.get("latitude"), "longitude": opts.get("longitude")}
        if message.type == MessageType.sticker:
            return {"type": "sticker", "packageId": opts.get("package_id"), "stickerId": opts.get("sticker_id", message.content)}
        if message.type == MessageType.interactive:
            return {"type": "template", "altText": message.content, "template": opts.get("template", {})}
        raise SendError(f"line cannot send {message.type.value} messages", retryable=False)

    async def send(self, handle: AdapterHandle, message: OutboundMessage) -> SendAck:
        self._ensure_live(handle)
        payload = {"messages": [self._message_object(message)]}
        reply_token = message.options.get("reply_token")
        if reply_token:
            op, url = "reply", f"{self.base_url}/message/reply"
            payload["replyToken"] = reply_token
        else:
            op, url = "push", f"{self.base_url}/message/push"
            payload["to"] = message.chat_id
        resp = await self._request("POST", url, op=op, headers=self._headers(handle.credentials), json=payload)
        sent = (self._json(resp) if resp.content else {}).get("sentMessages") or []
        message_id = sent[0].get("id") if sent else resp.headers.get("x-line-request-id", "")
        return SendAck(bot_id=handle.bot_id, platform=self.platform, chat_id=message.chat_id, message_id=str(message_id))

    async def health_check(self, handle: AdapterHandle) -> HealthStatus:
        async def _ping() -> str:
            info = await self._info(handle.credentials)
            return info.get("displayName", "ok")
        return await self._liveness(_ping())
