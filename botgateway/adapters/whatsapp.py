from __future__ import annotations
from typing import Any

import httpx

from botgateway.adapters.base import AdapterHandle, HandshakeReply, HttpAdapter, MessageSink, RawEvent, Verdict, from_epoch
from botgateway.domain.errors import SendError, StartError
from botgateway.domain.models import Attachment, HealthStatus, MessageType, NormalizedMessage, OutboundMessage, SendAck
from botgateway.observability.logging import get_logger
from botgateway.security.signatures import constant_time_equals, hmac_hex

log = get_logger("adapter.whatsapp")

_INBOUND_TYPES: dict[str, MessageType] = {
    "text": MessageType.text,
    "image": MessageType.image,
    "video": MessageType.video,
    "audio": MessageType.audio,
    "voice": MessageType.audio,
    "document": MessageType.file,
    "sticker": MessageType.sticker,
    "location": MessageType.location,
    "interactive": MessageType.interactive,
    "button": MessageType.interactive,
}

_OUTBOUND_MEDIA: dict[MessageType, str] = {
    MessageType.image: "image",
    MessageType.video: "video",
    MessageType.audio: "audio",
    MessageType.file: "document",
    MessageType.sticker: "sticker",
}


class WhatsAppAdapter(HttpAdapter):
    """WhatsApp Cloud API adapter.

    One webhook delivery may batch several messages, so ``normalize`` can
    return more than one item. Subscription is confirmed with the
    ``hub.challenge`` GET handshake.
    """

    platform = "whatsapp"
    rejects_invalid_signature = True
    base_url = "https://graph.facebook.com/v18.0"

    def __init__(self, client: httpx.AsyncClient | None = None, timeout_s: float = 30.0):
        super().__init__(client, timeout_s)
        self._handle: AdapterHandle | None = None

    def _headers(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}"}

    async def _phone_number(self, token: str, phone_number_id: str) -> dict[str, Any]:
        resp = await self._request("GET", f"{self.base_url}/{phone_number_id}", op="phone_number",
                                   headers=self._headers(token))
        return self._json(resp)

    async def start(self, bot_id: str, credentials: str, settings: dict[str, Any],
                    webhook_url: str | None, sink: MessageSink | None) -> AdapterHandle:
        if self._handle is not None and not self._handle.stopped:
            return self._handle
        phone_number_id = settings.get("phone_number_id")
        if not phone_number_id:
            raise StartError(f"whatsapp bot {bot_id} has no phone_number_id setting", retryable=False)
        info = await self._start_call(self._phone_number(credentials, phone_number_id), bot_id)
        handle = AdapterHandle(bot_id=bot_id, platform=self.platform, credentials=credentials,
                               settings=dict(settings), webhook_url=webhook_url, sink=sink)
        handle.state["display_phone_number"] = info.get("display_phone_number")
        log.info("whatsapp_started", bot_id=bot_id, phone=info.get("display_phone_number"))
        self._handle = handle
        return handle

    async def stop(self, handle: AdapterHandle) -> None:
        if handle.stopped:
            return
        handle.stopped = True
        await self.aclose()

    def verify(self, handle: AdapterHandle, event: RawEvent) -> Verdict:
        secret = handle.setting("app_secret")
        if not secret:
            return Verdict.fallback()
        signature = event.header("x-hub-signature-256")
        if not signature:
            return Verdict.deny("missing_signature")
        if not constant_time_equals("sha256=" + hmac_hex(secret, event.body), signature):
            return Verdict.deny("signature_mismatch")
        return Verdict.ok()

    def handshake(self, handle: AdapterHandle, event: RawEvent) -> HandshakeReply | None:
        if event.method != "GET":
            return None
        expected = handle.setting("verify_token")
        mode = event.query.get("hub.mode")
        token = event.query.get("hub.verify_token", "")
        if mode == "subscribe" and expected and constant_time_equals(expected, token):
            log.info("whatsapp_webhook_subscribed", bot_id=handle.bot_id)
            return HandshakeReply(200, event.query.get("hub.challenge", ""))
        log.warning("whatsapp_webhook_subscribe_refused", bot_id=handle.bot_id, mode=mode)
        return HandshakeReply(403, "forbidden")

    def normalize(self, handle: AdapterHandle, event: RawEvent) -> list[NormalizedMessage]:
        payload = event.json()
        out: list[NormalizedMessage] = []
        for entry in payload.get("entry") or []:
            for change in entry.get("changes") or []:
                value = change.get("value") or {}
                names = {c.get("wa_id"): (c.get("profile") or {}).get("name", "") for c in value.get("contacts") or []}
                for msg in value.get("messages") or []:
                    out.append(self._normalize_message(handle, msg, names, value.get("metadata") or {}))
        return out

    def _normalize_message(self, handle: AdapterHandle, msg: dict[str, Any], names: dict[str, str],
                           meta: dict[str, Any]) -> NormalizedMessage:
        raw_type = msg.get("type", "")
        mtype = _INBOUND_TYPES.get(raw_type, MessageType.system_event)
        sender = msg.get("from", "")
        text = ""
        attachments: list[Attachment] = []
        if raw_type == "text":
            text = (msg.get("text") or {}).get("body", "")
        elif raw_type == "location":
            loc = msg.get("location") or {}
            text = loc.get("name") or loc.get("address") or ""
            attachments.append(Attachment(type=mtype, name=f"{loc.get('latitude')},{loc.get('longitude')}"))
        elif raw_type == "interactive":
            reply = (msg.get("interactive") or {})
            picked = reply.get("button_reply") or reply.get("list_reply") or {}
            text = picked.get("title") or picked.get("id") or ""
        elif raw_type == "button":
            text = (msg.get("button") or {}).get("text", "")
        elif raw_type in ("image", "video", "audio", "voice", "document", "sticker"):
            media = msg.get(raw_type) or {}
            text = media.get("caption", "")
            attachments.append(Attachment(type=mtype, file_id=media.get("id"), name=media.get("filename"),
                                          mime_type=media.get("mime_type")))
        return NormalizedMessage(
            id=NormalizedMessage.make_id(self.platform, sender, msg.get("id", "")),
            platform=self.platform,
            bot_id=handle.bot_id,
            chat_id=sender,
            sender_id=sender,
            sender_name=names.get(sender, ""),
            timestamp=from_epoch(msg.get("timestamp")),
            type=mtype,
            text=text,
            attachments=attachments,
            metadata={
                "phone_number_id": meta.get("phone_number_id"),
                "context": msg.get("context"),
                "raw_type": raw_type,
            },
        )

    async def send(self, handle: AdapterHandle, message: OutboundMessage) -> SendAck:
        self._ensure_live(handle)
        body: dict[str, Any] = {"messaging_product": "whatsapp", "recipient_type": "individual", "to": message.chat_id}
        if message.type == MessageType.text:
            body["type"] = "text"
            body["text"] = {"body": message.content, "preview_url": bool(message.options.get("preview_url", False))}
        elif message.type in _OUTBOUND_MEDIA:
            kind = _OUTBOUND_MEDIA[message.type]
            media: dict[str, Any] = {"link": message.content}
            if "caption" in message.options and kind != "sticker":
                media["caption"] = message.options["caption"]
            body["type"] = kind
            body[kind] = media
        elif message.type == MessageType.location:
            body["type"] = "location"
            body["location"] = {k: message.options.get(k) for k in ("latitude", "longitude", "name", "address")}
        elif message.type == MessageType.interactive:
            body["type"] = "interactive"
            body["interactive"] = message.options.get("interactive") or {
                "type": "button", "body": {"text": message.content},
                "action": {"buttons": message.options.get("buttons", [])},
            }
        else:
            raise SendError(f"whatsapp cannot send {message.type.value} messages", retryable=False)
        if "template" in message.options:
            body["type"] = "template"
            body["template"] = message.options["template"]

        resp = await self._request(
            "POST", f"{self.base_url}/{handle.setting('phone_number_id')}/messages", op="messages",
            headers=self._headers(handle.credentials), json=body,
        )
        ids = self._json(resp).get("messages") or [{}]
        return SendAck(bot_id=handle.bot_id, platform=self.platform, chat_id=message.chat_id,
                       message_id=str(ids[0].get("id", "")))

    async def health_check(self, handle: AdapterHandle) -> HealthStatus:
        async def _lookup() -> str:
            info = await self._phone_number(handle.credentials, handle.setting("phone_number_id"))
            return info.get("display_phone_number", "ok")
        return await self._liveness(_lookup())
