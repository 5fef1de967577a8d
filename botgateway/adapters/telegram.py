from __future__ import annotations
import asyncio
import contextlib
from typing import Any

import httpx

from botgateway.adapters.base import AdapterHandle, HttpAdapter, MessageSink, RawEvent, Verdict, from_epoch, is_retryable_status
from botgateway.core.retry import retry_async
from botgateway.domain.errors import SendError, StopError
from botgateway.domain.models import Attachment, HealthStatus, MessageType, NormalizedMessage, OutboundMessage, SendAck
from botgateway.observability.logging import get_logger
from botgateway.security.signatures import constant_time_equals

log = get_logger("adapter.telegram")

# (update key, canonical type); first match wins
_MEDIA_KINDS: list[tuple[str, MessageType]] = [
    ("photo", MessageType.image),
    ("video", MessageType.video),
    ("animation", MessageType.video),
    ("audio", MessageType.audio),
    ("voice", MessageType.audio),
    ("document", MessageType.file),
    ("sticker", MessageType.sticker),
    ("location", MessageType.location),
    ("venue", MessageType.location),
]

_SEND_METHODS: dict[MessageType, tuple[str, str]] = {
    MessageType.image: ("sendPhoto", "photo"),
    MessageType.video: ("sendVideo", "video"),
    MessageType.audio: ("sendAudio", "audio"),
    MessageType.file: ("sendDocument", "document"),
    MessageType.sticker: ("sendSticker", "sticker"),
}

_PASSTHROUGH_OPTIONS = ("parse_mode", "reply_markup", "disable_web_page_preview", "disable_notification",
                        "reply_to_message_id", "caption", "message_thread_id")


class TelegramAdapter(HttpAdapter):
    """Telegram Bot API adapter.

    Uses a webhook when the bot has a ``webhook_url``, otherwise a long-polling
    ``getUpdates`` loop that feeds the message sink.

    Verification: ``X-Telegram-Bot-Api-Secret-Token`` must equal
    ``settings.secret_token``. A mismatch is dropped with a 200 because Telegram
    keeps redelivering on any non-2xx.
    """

    platform = "telegram"
    rejects_invalid_signature = False
    base_url = "https://api.telegram.org"
    ack_body = {"ok": True}

    def __init__(self, client: httpx.AsyncClient | None = None, timeout_s: float = 30.0,
                 poll_timeout_s: int = 25, poll_retry_wait_s: float = 1.0):
        super().__init__(client, timeout_s)
        self.poll_timeout_s = poll_timeout_s
        self.poll_retry_wait_s = poll_retry_wait_s
        self._handle: AdapterHandle | None = None

    async def _api(self, token: str, method: str, payload: dict[str, Any] | None = None,
                   timeout: float | None = None) -> Any:
        resp = await self._request(
            "POST", f"{self.base_url}/bot{token}/{method}", op=method,
            json=payload or {}, timeout=timeout or self.timeout_s,
        )
        data = self._json(resp)
        if not data.get("ok"):
            code = int(data.get("error_code") or 400)
            raise SendError(f"telegram {method}: {data.get('description', 'unknown error')}",
                            retryable=is_retryable_status(code), status_code=code)
        return data.get("result")

    # ------------------------------------------------------------------
    # lifecycle
    # ------------------------------------------------------------------

    async def start(self, bot_id: str, credentials: str, settings: dict[str, Any],
                    webhook_url: str | None, sink: MessageSink | None) -> AdapterHandle:
        if self._handle is not None and not self._handle.stopped:
            return self._handle
        handle = AdapterHandle(bot_id=bot_id, platform=self.platform, credentials=credentials,
                               settings=dict(settings), webhook_url=webhook_url, sink=sink)
        me = await self._start_call(self._api(credentials, "getMe"), bot_id)
        handle.state["username"] = (me or {}).get("username")

        if webhook_url:
            payload: dict[str, Any] = {"url": f"{webhook_url.rstrip('/')}/webhook/telegram/{bot_id}"}
            if handle.setting("secret_token"):
                payload["secret_token"] = handle.setting("secret_token")
            await self._start_call(self._api(credentials, "setWebhook", payload), bot_id)
            handle.state["mode"] = "webhook"
        else:
            await self._start_call(self._api(credentials, "deleteWebhook"), bot_id)
            handle.state["mode"] = "polling"
            handle.task = asyncio.create_task(self._poll(handle), name=f"telegram-poll-{bot_id}")

        log.info("telegram_started", bot_id=bot_id, mode=handle.state["mode"], username=handle.state["username"])
        self._handle = handle
        return handle

    async def stop(self, handle: AdapterHandle) -> None:
        if handle.stopped:
            return
        handle.stopped = True
        if handle.task is not None:
            handle.task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await handle.task
        try:
            if handle.state.get("mode") == "webhook":
                await self._api(handle.credentials, "deleteWebhook")
        except SendError as e:
            raise StopError(f"telegram deleteWebhook failed: {e.message}") from e
        finally:
            await self.aclose()

    async def _poll(self, handle: AdapterHandle) -> None:
        offset = 0
        while not handle.stopped:
            try:
                updates = await retry_async(
                    self._api, handle.credentials, "getUpdates",
                    {"offset": offset, "timeout": self.poll_timeout_s},
                    timeout=self.poll_timeout_s + 10,
                    max_attempts=5, min_wait=self.poll_retry_wait_s,
                )
            except SendError as e:
                if not e.retryable:
                    handle.state["error"] = e.message
                    log.error("telegram_polling_aborted", bot_id=handle.bot_id, err=e.message)
                    return
                log.warning("telegram_polling_backoff", bot_id=handle.bot_id, err=e.message)
                await asyncio.sleep(self.poll_retry_wait_s)
                continue
            except Exception as e:
                handle.state["error"] = f"polling crashed: {e}"
                log.exception("telegram_polling_crashed", bot_id=handle.bot_id)
                return
            for update in updates or []:
                try:
                    offset = max(offset, int(update.get("update_id", 0)) + 1)
                    messages = self._normalize_update(handle, update)
                except (AttributeError, KeyError, TypeError, ValueError) as e:
                    log.warning("telegram_update_dropped", bot_id=handle.bot_id, err=str(e))
                    continue
                for msg in messages:
                    if handle.sink is None:
                        continue
                    try:
                        await handle.sink(msg)
                    except Exception as e:
                        log.exception("telegram_sink_failed", bot_id=handle.bot_id, msg_id=msg.id, err=str(e))

    # ------------------------------------------------------------------
    # inbound
    # ------------------------------------------------------------------

    def verify(self, handle: AdapterHandle, event: RawEvent) -> Verdict:
        secret = handle.setting("secret_token")
        if not secret:
            return Verdict.fallback()
        provided = event.header("x-telegram-bot-api-secret-token")
        if not provided or not constant_time_equals(secret, provided):
            return Verdict.deny("secret_token_mismatch")
        return Verdict.ok()

    def normalize(self, handle: AdapterHandle, event: RawEvent) -> list[NormalizedMessage]:
        return self._normalize_update(handle, event.json())

    def _normalize_update(self, handle: AdapterHandle, update: dict[str, Any]) -> list[NormalizedMessage]:
        if "callback_query" in update:
            return [self._normalize_callback(handle, update["callback_query"])]
        msg = update.get("message") or update.get("edited_message") or update.get("channel_post")
        if not msg:
            return []
        chat = msg.get("chat") or {}
        sender = msg.get("from") or {}
        chat_id = str(chat.get("id", ""))
        mtype, attachments = self._classify(msg)
        if msg.get("new_chat_members") or msg.get("left_chat_member"):
            mtype = MessageType.system_event
        return [NormalizedMessage(
            id=NormalizedMessage.make_id(self.platform, chat_id, str(msg.get("message_id"))),
            platform=self.platform,
            bot_id=handle.bot_id,
            chat_id=chat_id,
            sender_id=str(sender.get("id", chat_id)),
            sender_name=" ".join(p for p in (sender.get("first_name"), sender.get("last_name")) if p)
                        or sender.get("username", ""),
            timestamp=from_epoch(msg.get("date")),
            type=mtype,
            text=msg.get("text") or msg.get("caption") or "",
            attachments=attachments,
            metadata={
                "update_id": update.get("update_id"),
                "chat_type": chat.get("type"),
                "chat_title": chat.get("title"),
                "username": sender.get("username"),
                "edited": "edited_message" in update,
            },
        )]

    def _classify(self, msg: dict[str, Any]) -> tuple[MessageType, list[Attachment]]:
        if "text" in msg:
            return MessageType.text, []
        for key, mtype in _MEDIA_KINDS:
            media = msg.get(key)
            if not media:
                continue
            if key == "photo":
                media = media[-1]  # largest size last
            if mtype == MessageType.location:
                loc = media.get("location", media)
                return mtype, [Attachment(type=mtype, name=f"{loc.get('latitude')},{loc.get('longitude')}")]
            return mtype, [Attachment(
                type=mtype,
                file_id=media.get("file_id"),
                name=media.get("file_name"),
                mime_type=media.get("mime_type"),
                size=media.get("file_size"),
            )]
        return MessageType.system_event, []

    def _normalize_callback(self, handle: AdapterHandle, query: dict[str, Any]) -> NormalizedMessage:
        sender = query.get("from") or {}
        message = query.get("message") or {}
        chat_id = str((message.get("chat") or {}).get("id", sender.get("id", "")))
        return NormalizedMessage(
            id=NormalizedMessage.make_id(self.platform, chat_id, f"cb-{query.get('id')}"),
            platform=self.platform,
            bot_id=handle.bot_id,
            chat_id=chat_id,
            sender_id=str(sender.get("id", "")),
            sender_name=sender.get("first_name") or sender.get("username", ""),
            timestamp=from_epoch(message.get("date")) if message.get("date") else from_epoch(None),
            type=MessageType.interactive,
            text=query.get("data") or "",
            metadata={"callback_query_id": query.get("id"), "message_id": message.get("message_id")},
        )

    # ------------------------------------------------------------------
    # outbound
    # ------------------------------------------------------------------

    async def send(self, handle: AdapterHandle, message: OutboundMessage) -> SendAck:
        self._ensure_live(handle)
        opts = {k: v for k, v in message.options.items() if k in _PASSTHROUGH_OPTIONS}
        if message.type in (MessageType.text, MessageType.interactive):
            method, payload = "sendMessage", {"chat_id": message.chat_id, "text": message.content, **opts}
        elif message.type == MessageType.location:
            try:
                lat, lon = float(message.options["latitude"]), float(message.options["longitude"])
            except (KeyError, TypeError, ValueError) as e:
                raise SendError("telegram location needs numeric latitude/longitude options", retryable=False) from e
            method, payload = "sendLocation", {"chat_id": message.chat_id, "latitude": lat, "longitude": lon}
        elif message.type in _SEND_METHODS:
            method, field_name = _SEND_METHODS[message.type]
            payload = {"chat_id": message.chat_id, field_name: message.content, **opts}
        else:
            raise SendError(f"telegram cannot send {message.type.value} messages", retryable=False)

        result = await self._api(handle.credentials, method, payload)
        return SendAck(bot_id=handle.bot_id, platform=self.platform, chat_id=message.chat_id,
                       message_id=str((result or {}).get("message_id", "")))

    async def health_check(self, handle: AdapterHandle) -> HealthStatus:
        if handle.state.get("mode") == "polling" and (handle.task is None or handle.task.done()):
            return HealthStatus(healthy=False, detail=handle.state.get("error") or "polling loop is not running")

        async def _me() -> str:
            me = await self._api(handle.credentials, "getMe")
            return f"@{(me or {}).get('username', '?')}"
        return await self._liveness(_me())
