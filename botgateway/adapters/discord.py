from __future__ import annotations
from typing import Any

import httpx
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

from botgateway.adapters.base import AdapterHandle, HttpAdapter, MessageSink, RawEvent, Verdict, from_epoch
from botgateway.domain.models import Attachment, HealthStatus, MessageType, NormalizedMessage, OutboundMessage, SendAck
from botgateway.observability.logging import get_logger

log = get_logger("adapter.discord")

INTERACTION_PING = 1
INTERACTION_COMMAND = 2
INTERACTION_COMPONENT = 3
INTERACTION_AUTOCOMPLETE = 4
INTERACTION_MODAL_SUBMIT = 5

RESPONSE_PONG = 1
RESPONSE_DEFERRED = 5

# Discord snowflakes carry milliseconds since this epoch in their top bits
_DISCORD_EPOCH_MS = 1420070400000


def snowflake_time(snowflake: Any):
    try:
        return from_epoch(((int(snowflake) >> 22) + _DISCORD_EPOCH_MS) / 1000.0)
    except (TypeError, ValueError):
        return from_epoch(None)


def _attachment_type(content_type: str | None) -> MessageType:
    major = (content_type or "").split("/", 1)[0]
    return {"image": MessageType.image, "video": MessageType.video, "audio": MessageType.audio}.get(major, MessageType.file)


class DiscordAdapter(HttpAdapter):
    """Discord REST + interactions-endpoint adapter.

    Inbound traffic is the HTTP interactions webhook (slash commands, buttons)
    plus relayed ``MESSAGE_CREATE`` dispatches. Signatures are Ed25519 over
    ``timestamp + body`` with the application's public key; failures get a 401,
    which Discord requires.
    """

    platform = "discord"
    rejects_invalid_signature = True
    base_url = "https://discord.com/api/v10"

    def __init__(self, client: httpx.AsyncClient | None = None, timeout_s: float = 30.0):
        super().__init__(client, timeout_s)
        self._handle: AdapterHandle | None = None

    def _headers(self, token: str) -> dict[str, str]:
        return {"Authorization": f"Bot {token}"}

    async def _me(self, token: str) -> dict[str, Any]:
        resp = await self._request("GET", f"{self.base_url}/users/@me", op="users/@me", headers=self._headers(token))
        return self._json(resp)

    async def start(self, bot_id: str, credentials: str, settings: dict[str, Any],
                    webhook_url: str | None, sink: MessageSink | None) -> AdapterHandle:
        if self._handle is not None and not self._handle.stopped:
            return self._handle
        me = await self._start_call(self._me(credentials), bot_id)
        handle = AdapterHandle(bot_id=bot_id, platform=self.platform, credentials=credentials,
                               settings=dict(settings), webhook_url=webhook_url, sink=sink)
        handle.state["user_id"] = me.get("id")
        handle.state["username"] = me.get("username")
        log.info("discord_started", bot_id=bot_id, username=me.get("username"))
        self._handle = handle
        return handle

    async def stop(self, handle: AdapterHandle) -> None:
        if handle.stopped:
            return
        handle.stopped = True
        await self.aclose()

    def verify(self, handle: AdapterHandle, event: RawEvent) -> Verdict:
        public_key = handle.setting("public_key")
        if not public_key:
            return Verdict.fallback()
        signature = event.header("x-signature-ed25519")
        timestamp = event.header("x-signature-timestamp")
        if not signature or not timestamp:
            return Verdict.deny("missing_signature")
        try:
            key = Ed25519PublicKey.from_public_bytes(bytes.fromhex(public_key))
            key.verify(bytes.fromhex(signature), timestamp.encode("utf-8") + event.body)
        except InvalidSignature:
            return Verdict.deny("signature_mismatch")
        except ValueError:
            return Verdict.deny("malformed_signature")
        return Verdict.ok()

    def normalize(self, handle: AdapterHandle, event: RawEvent) -> list[NormalizedMessage]:
        payload = event.json()
        if payload.get("t") == "MESSAGE_CREATE":
            return self._normalize_message(handle, payload.get("d") or {})
        kind = payload.get("type")
        if kind == INTERACTION_PING or kind is None:
            return []
        return [self._normalize_interaction(handle, payload)]

    def _normalize_message(self, handle: AdapterHandle, msg: dict[str, Any]) -> list[NormalizedMessage]:
        author = msg.get("author") or {}
        if author.get("bot") or author.get("id") == handle.state.get("user_id"):
            return []
        chat_id = str(msg.get("channel_id", ""))
        attachments = [
            Attachment(
                type=_attachment_type(a.get("content_type")),
                url=a.get("url"),
                file_id=a.get("id"),
                name=a.get("filename"),
                mime_type=a.get("content_type"),
                size=a.get("size"),
            )
            for a in msg.get("attachments") or []
        ]
        if msg.get("content"):
            mtype = MessageType.text
        elif msg.get("sticker_items"):
            mtype = MessageType.sticker
        elif attachments:
            mtype = attachments[0].type
        else:
            mtype = MessageType.system_event
        return [NormalizedMessage(
            id=NormalizedMessage.make_id(self.platform, chat_id, str(msg.get("id"))),
            platform=self.platform,
            bot_id=handle.bot_id,
            chat_id=chat_id,
            sender_id=str(author.get("id", "")),
            sender_name=author.get("global_name") or author.get("username", ""),
            timestamp=snowflake_time(msg.get("id")),
            type=mtype,
            text=msg.get("content") or "",
            attachments=attachments,
            metadata={"guild_id": msg.get("guild_id"), "mentions": [m.get("id") for m in msg.get("mentions") or []]},
        )]

    def _normalize_interaction(self, handle: AdapterHandle, payload: dict[str, Any]) -> NormalizedMessage:
        data = payload.get("data") or {}
        user = (payload.get("member") or {}).get("user") or payload.get("user") or {}
        chat_id = str(payload.get("channel_id") or (payload.get("channel") or {}).get("id", ""))
        if payload.get("type") == INTERACTION_COMMAND:
            opts = " ".join(f"{o.get('name')}={o.get('value')}" for o in data.get("options") or [])
            text = f"/{data.get('name', '')} {opts}".strip()
        else:
            text = data.get("custom_id") or data.get("name") or ""
        return NormalizedMessage(
            id=NormalizedMessage.make_id(self.platform, chat_id, str(payload.get("id"))),
            platform=self.platform,
            bot_id=handle.bot_id,
            chat_id=chat_id,
            sender_id=str(user.get("id", "")),
            sender_name=user.get("global_name") or user.get("username", ""),
            timestamp=snowflake_time(payload.get("id")),
            type=MessageType.interactive,
            text=text,
            metadata={
                "interaction_type": payload.get("type"),
                "interaction_token": payload.get("token"),
                "application_id": payload.get("application_id"),
                "guild_id": payload.get("guild_id"),
                "values": data.get("values"),
            },
        )

    def webhook_ack(self, event: RawEvent) -> dict[str, Any]:
        payload = event.json()
        if payload.get("type") == INTERACTION_PING:
            return {"type": RESPONSE_PONG}
        return {"type": RESPONSE_DEFERRED}

    async def send(self, handle: AdapterHandle, message: OutboundMessage) -> SendAck:
        self._ensure_live(handle)
        body: dict[str, Any] = {}
        if message.type == MessageType.text:
            body["content"] = message.content
        elif message.type == MessageType.image:
            body["embeds"] = [{"image": {"url": message.content}}]
        elif message.type == MessageType.interactive:
            body["content"] = message.content
            body["components"] = message.options.get("components", [])
        else:
            # files, audio and video go out as links; Discord unfurls them
            body["content"] = message.content
        for key in ("embeds", "allowed_mentions", "message_reference", "tts"):
            if key in message.options:
                body[key] = message.options[key]

        resp = await self._request(
            "POST", f"{self.base_url}/channels/{message.chat_id}/messages", op="create_message",
            headers=self._headers(handle.credentials), json=body,
        )
        return SendAck(bot_id=handle.bot_id, platform=self.platform, chat_id=message.chat_id,
                       message_id=str(self._json(resp).get("id", "")))

    async def health_check(self, handle: AdapterHandle) -> HealthStatus:
        async def _whoami() -> str:
            me = await self._me(handle.credentials)
            return me.get("username", "ok")
        return await self._liveness(_whoami())
