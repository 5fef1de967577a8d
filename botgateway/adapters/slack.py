from __future__ import annotations
import json
import time
from typing import Any, Callable
from urllib.parse import parse_qs

import httpx

from botgateway.adapters.base import AdapterHandle, HandshakeReply, HttpAdapter, MessageSink, RawEvent, Verdict, from_epoch
from botgateway.domain.errors import SendError, ValidationError
from botgateway.domain.models import Attachment, HealthStatus, MessageType, NormalizedMessage, OutboundMessage, SendAck
from botgateway.observability.logging import get_logger
from botgateway.security.signatures import constant_time_equals, hmac_hex

log = get_logger("adapter.slack")

MAX_SKEW_S = 300

# Web API error strings that are worth retrying
_RETRYABLE_ERRORS = {"ratelimited", "internal_error", "fatal_error", "service_unavailable", "request_timeout"}

# message subtypes that are not user content
_IGNORED_SUBTYPES = {"bot_message", "message_deleted", "message_replied", "channel_join", "channel_leave"}


def _file_type(mimetype: str | None) -> MessageType:
    major = (mimetype or "").split("/", 1)[0]
    return {"image": MessageType.image, "video": MessageType.video, "audio": MessageType.audio}.get(major, MessageType.file)


class SlackAdapter(HttpAdapter):
    """Slack Events API + Web API adapter.

    Signature: ``v0=`` HMAC-SHA256 of ``v0:{timestamp}:{body}`` keyed by the
    signing secret; requests older than five minutes are refused.
    """

    platform = "slack"
    rejects_invalid_signature = True
    base_url = "https://slack.com/api"
    ack_body = {"ok": True}

    def __init__(self, client: httpx.AsyncClient | None = None, timeout_s: float = 30.0,
                 clock: Callable[[], float] = time.time):
        super().__init__(client, timeout_s)
        self._clock = clock
        self._handle: AdapterHandle | None = None

    async def _api(self, token: str, method: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
        resp = await self._request(
            "POST", f"{self.base_url}/{method}", op=method,
            headers={"Authorization": f"Bearer {token}"}, json=payload or {},
        )
        data = self._json(resp)
        if not data.get("ok"):
            err = data.get("error", "unknown_error")
            raise SendError(f"slack {method}: {err}", retryable=err in _RETRYABLE_ERRORS, slack_error=err)
        return data

    async def start(self, bot_id: str, credentials: str, settings: dict[str, Any],
                    webhook_url: str | None, sink: MessageSink | None) -> AdapterHandle:
        if self._handle is not None and not self._handle.stopped:
            return self._handle
        auth = await self._start_call(self._api(credentials, "auth.test"), bot_id)
        handle = AdapterHandle(bot_id=bot_id, platform=self.platform, credentials=credentials,
                               settings=dict(settings), webhook_url=webhook_url, sink=sink)
        handle.state.update(team_id=auth.get("team_id"), team=auth.get("team"), user_id=auth.get("user_id"))
        log.info("slack_started", bot_id=bot_id, team=auth.get("team"))
        self._handle = handle
        return handle

    async def stop(self, handle: AdapterHandle) -> None:
        if handle.stopped:
            return
        handle.stopped = True
        await self.aclose()

    def verify(self, handle: AdapterHandle, event: RawEvent) -> Verdict:
        secret = handle.setting("signing_secret")
        if not secret:
            return Verdict.fallback()
        ts = event.header("x-slack-request-timestamp")
        signature = event.header("x-slack-signature")
        if not ts or not signature:
            return Verdict.deny("missing_signature")
        try:
            skew = abs(self._clock() - int(ts))
        except ValueError:
            return Verdict.deny("malformed_timestamp")
        if skew > MAX_SKEW_S:
            return Verdict.deny("stale_timestamp")
        expected = "v0=" + hmac_hex(secret, f"v0:{ts}:".encode("utf-8") + event.body)
        if not constant_time_equals(expected, signature):
            return Verdict.deny("signature_mismatch")
        return Verdict.ok()

    def handshake(self, handle: AdapterHandle, event: RawEvent) -> HandshakeReply | None:
        if event.method != "POST" or not event.body.startswith(b"{"):
            return None
        payload = event.json()
        if payload.get("type") != "url_verification":
            return None
        if not self.verify(handle, event).allowed:
            return None
        return HandshakeReply(200, {"challenge": payload.get("challenge", "")}, "application/json")

    def _payload(self, event: RawEvent) -> dict[str, Any]:
        # interactive components and slash commands arrive form-encoded
        if event.body.startswith(b"{"):
            return event.json()
        form = {k: v[0] for k, v in parse_qs(event.text).items()}
        if "payload" in form:
            try:
                return json.loads(form["payload"])
            except ValueError as e:
                raise ValidationError("slack interaction payload is not valid JSON") from e
        return form

    def normalize(self, handle: AdapterHandle, event: RawEvent) -> list[NormalizedMessage]:
        payload = self._payload(event)
        kind = payload.get("type")
        if kind == "event_callback":
            return self._normalize_event(handle, payload)
        if kind in ("block_actions", "interactive_message", "view_submission"):
            return [self._normalize_action(handle, payload)]
        if "command" in payload:
            return [self._normalize_command(handle, payload)]
        return []

    def _normalize_event(self, handle: AdapterHandle, payload: dict[str, Any]) -> list[NormalizedMessage]:
        ev = payload.get("event") or {}
        if ev.get("type") not in ("message", "app_mention"):
            return []
        if ev.get("subtype") in _IGNORED_SUBTYPES or ev.get("bot_id") or ev.get("user") == handle.state.get("user_id"):
            return []
        chat_id = ev.get("channel", "")
        attachments = [
            Attachment(
                type=_file_type(f.get("mimetype")),
                url=f.get("url_private"),
                file_id=f.get("id"),
                name=f.get("name"),
                mime_type=f.get("mimetype"),
                size=f.get("size"),
            )
            for f in ev.get("files") or []
        ]
        if ev.get("subtype") == "message_changed":
            mtype = MessageType.system_event
        elif ev.get("text"):
            mtype = MessageType.text
        elif attachments:
            mtype = attachments[0].type
        else:
            mtype = MessageType.system_event
        return [NormalizedMessage(
            id=NormalizedMessage.make_id(self.platform, chat_id, ev.get("client_msg_id") or ev.get("ts", "")),
            platform=self.platform,
            bot_id=handle.bot_id,
            chat_id=chat_id,
            sender_id=ev.get("user", ""),
            timestamp=from_epoch(ev.get("ts")),
            type=mtype,
            text=ev.get("text") or "",
            attachments=attachments,
            metadata={
                "team_id": payload.get("team_id"),
                "event_id": payload.get("event_id"),
                "event_type": ev.get("type"),
                "ts": ev.get("ts"),
                "thread_ts": ev.get("thread_ts"),
                "channel_type": ev.get("channel_type"),
            },
        )]

    def _normalize_action(self, handle: AdapterHandle, payload: dict[str, Any]) -> NormalizedMessage:
        user = payload.get("user") or {}
        chat_id = (payload.get("channel") or {}).get("id", "")
        actions = payload.get("actions") or []
        first = actions[0] if actions else {}
        return NormalizedMessage(
            id=NormalizedMessage.make_id(self.platform, chat_id, payload.get("trigger_id") or first.get("action_ts", "")),
            platform=self.platform,
            bot_id=handle.bot_id,
            chat_id=chat_id,
            sender_id=user.get("id", ""),
            sender_name=user.get("name") or user.get("username", ""),
            timestamp=from_epoch(first.get("action_ts")),
            type=MessageType.interactive,
            text=first.get("value") or first.get("action_id") or "",
            metadata={"interaction": payload.get("type"), "actions": actions, "response_url": payload.get("response_url")},
        )

    def _normalize_command(self, handle: AdapterHandle, form: dict[str, Any]) -> NormalizedMessage:
        chat_id = form.get("channel_id", "")
        return NormalizedMessage(
            id=NormalizedMessage.make_id(self.platform, chat_id, form.get("trigger_id", "")),
            platform=self.platform,
            bot_id=handle.bot_id,
            chat_id=chat_id,
            sender_id=form.get("user_id", ""),
            sender_name=form.get("user_name", ""),
            timestamp=from_epoch(None),
            type=MessageType.interactive,
            text=f"{form.get('command', '')} {form.get('text', '')}".strip(),
            metadata={"team_id": form.get("team_id"), "response_url": form.get("response_url")},
        )

    async def send(self, handle: AdapterHandle, message: OutboundMessage) -> SendAck:
        self._ensure_live(handle)
        body: dict[str, Any] = {"channel": message.chat_id}
        if message.type == MessageType.image:
            body["text"] = message.options.get("alt_text", message.content)
            body["blocks"] = [{"type": "image", "image_url": message.content,
                               "alt_text": message.options.get("alt_text", "image")}]
        elif message.type == MessageType.interactive:
            body["text"] = message.content
            body["blocks"] = message.options.get("blocks", [])
        else:
            body["text"] = message.content
        for key in ("thread_ts", "blocks", "unfurl_links", "mrkdwn", "reply_broadcast"):
            if key in message.options:
                body[key] = message.options[key]

        data = await self._api(handle.credentials, "chat.postMessage", body)
        return SendAck(bot_id=handle.bot_id, platform=self.platform, chat_id=message.chat_id,
                       message_id=str(data.get("ts", "")))

    async def health_check(self, handle: AdapterHandle) -> HealthStatus:
        async def _auth() -> str:
            data = await self._api(handle.credentials, "auth.test")
            return data.get("team", "ok")
        return await self._liveness(_auth())
