from __future__ import annotations
import hashlib
import html
import re
from typing import Any

import httpx

from botgateway.adapters.base import AdapterHandle, HttpAdapter, MessageSink, RawEvent, Verdict, from_epoch
from botgateway.domain.errors import SendError
from botgateway.domain.models import Attachment, HealthStatus, MessageType, NormalizedMessage, OutboundMessage, SendAck
from botgateway.observability.logging import get_logger
from botgateway.security.signatures import constant_time_equals, hmac_hex

log = get_logger("adapter.intercom")

_TAG_RE = re.compile(r"<[^>]+>")

_USER_TOPICS = {"conversation.user.created", "conversation.user.replied"}
_EVENT_TOPICS = {
    "conversation.admin.assigned",
    "conversation.admin.closed",
    "conversation.admin.opened",
    "contact.created",
    "contact.signed_up",
}


def strip_html(body: str | None) -> str:
    return html.unescape(_TAG_RE.sub("", body or "")).strip()


class IntercomAdapter(HttpAdapter):
    """Intercom conversations adapter: webhook topics in, admin replies out."""

    platform = "intercom"
    rejects_invalid_signature = False
    base_url = "https://api.intercom.io"

    def __init__(self, client: httpx.AsyncClient | None = None, timeout_s: float = 30.0):
        super().__init__(client, timeout_s)
        self._handle: AdapterHandle | None = None

    def _headers(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bearer {token}", "Accept": "application/json", "Intercom-Version": "2.10"}

    async def _me(self, token: str) -> dict[str, Any]:
        resp = await self._request("GET", f"{self.base_url}/me", op="me", headers=self._headers(token))
        return self._json(resp)

    async def start(self, bot_id: str, credentials: str, settings: dict[str, Any],
                    webhook_url: str | None, sink: MessageSink | None) -> AdapterHandle:
        if self._handle is not None and not self._handle.stopped:
            return self._handle
        me = await self._start_call(self._me(credentials), bot_id)
        handle = AdapterHandle(bot_id=bot_id, platform=self.platform, credentials=credentials,
                               settings=dict(settings), webhook_url=webhook_url, sink=sink)
        handle.state["admin_id"] = settings.get("admin_id") or me.get("id")
        handle.state["app"] = (me.get("app") or {}).get("name")
        log.info("intercom_started", bot_id=bot_id, admin_id=handle.state["admin_id"])
        self._handle = handle
        return handle

    async def stop(self, handle: AdapterHandle) -> None:
        if handle.stopped:
            return
        handle.stopped = True
        await self.aclose()

    def verify(self, handle: AdapterHandle, event: RawEvent) -> Verdict:
        secret = handle.setting("client_secret")
        if not secret:
            return Verdict.fallback()
        signature = event.header("x-hub-signature")
        if not signature:
            return Verdict.deny("missing_signature")
        if not constant_time_equals("sha1=" + hmac_hex(secret, event.body, hashlib.sha1), signature):
            return Verdict.deny("signature_mismatch")
        return Verdict.ok()

    def normalize(self, handle: AdapterHandle, event: RawEvent) -> list[NormalizedMessage]:
        payload = event.json()
        topic = payload.get("topic", "")
        item = (payload.get("data") or {}).get("item") or {}
        if topic in _USER_TOPICS:
            return [self._normalize_conversation(handle, topic, item, payload)]
        if topic in _EVENT_TOPICS:
            chat_id = str(item.get("id", ""))
            return [NormalizedMessage(
                id=NormalizedMessage.make_id(self.platform, chat_id, payload.get("id") or topic),
                platform=self.platform,
                bot_id=handle.bot_id,
                chat_id=chat_id,
                sender_id=chat_id,
                timestamp=from_epoch(payload.get("created_at")),
                type=MessageType.system_event,
                text=topic,
                metadata={"topic": topic},
            )]
        return []

    def _normalize_conversation(self, handle: AdapterHandle, topic: str, item: dict[str, Any],
                                payload: dict[str, Any]) -> NormalizedMessage:
        chat_id = str(item.get("id", ""))
        parts = (item.get("conversation_parts") or {}).get("conversation_parts") or []
        if topic == "conversation.user.replied" and parts:
            latest = parts[-1]
            native_id, body, author = latest.get("id"), latest.get("body"), latest.get("author") or {}
            raw_attachments, created = latest.get("attachments") or [], latest.get("created_at")
        else:
            source = item.get("source") or {}
            native_id, body, author = source.get("id") or chat_id, source.get("body"), source.get("author") or {}
            raw_attachments, created = source.get("attachments") or [], item.get("created_at")
        attachments = [
            Attachment(
                type=MessageType.image if (a.get("content_type") or "").startswith("image/") else MessageType.file,
                url=a.get("url"),
                name=a.get("name"),
                mime_type=a.get("content_type"),
                size=a.get("filesize"),
            )
            for a in raw_attachments
        ]
        text = strip_html(body)
        return NormalizedMessage(
            id=NormalizedMessage.make_id(self.platform, chat_id, str(native_id)),
            platform=self.platform,
            bot_id=handle.bot_id,
            chat_id=chat_id,
            sender_id=str(author.get("id", "")),
            sender_name=author.get("name") or "",
            timestamp=from_epoch(created),
            type=MessageType.text if text or not attachments else attachments[0].type,
            text=text,
            attachments=attachments,
            metadata={
                "topic": topic,
                "author_type": author.get("type"),
                "email": author.get("email"),
                "assignee_id": item.get("admin_assignee_id"),
            },
        )

    async def send(self, handle: AdapterHandle, message: OutboundMessage) -> SendAck:
        self._ensure_live(handle)
        admin_id = message.options.get("admin_id") or handle.state.get("admin_id")
        if not admin_id:
            raise SendError("intercom reply needs an admin_id", retryable=False)
        body: dict[str, Any] = {
            "message_type": message.options.get("message_type", "comment"),
            "type": "admin",
            "admin_id": admin_id,
        }
        if message.type == MessageType.text:
            body["body"] = message.content
        elif message.type in (MessageType.image, MessageType.file):
            body["body"] = message.options.get("caption", "")
            body["attachment_urls"] = [message.content]
        else:
            raise SendError(f"intercom cannot send {message.type.value} messages", retryable=False)

        resp = await self._request(
            "POST", f"{self.base_url}/conversations/{message.chat_id}/reply", op="reply",
            headers=self._headers(handle.credentials), json=body,
        )
        data = self._json(resp)
        parts = (data.get("conversation_parts") or {}).get("conversation_parts") or []
        message_id = parts[-1].get("id") if parts else data.get("id", "")
        return SendAck(bot_id=handle.bot_id, platform=self.platform, chat_id=message.chat_id, message_id=str(message_id))

    async def health_check(self, handle: AdapterHandle) -> HealthStatus:
        async def _whoami() -> str:
            me = await self._me(handle.credentials)
            return me.get("name", "ok")
        return await self._liveness(_whoami())
