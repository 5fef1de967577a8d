from __future__ import annotations
import time
from typing import Any, Callable
from xml.etree import ElementTree

import httpx

from botgateway.adapters.base import AdapterHandle, HandshakeReply, HttpAdapter, MessageSink, RawEvent, Verdict, from_epoch
from botgateway.domain.errors import SendError, StartError, ValidationError
from botgateway.domain.models import Attachment, HealthStatus, MessageType, NormalizedMessage, OutboundMessage, SendAck
from botgateway.observability.logging import get_logger
from botgateway.security.signatures import constant_time_equals, sha1_sorted

log = get_logger("adapter.wework")

# access tokens are refreshed this long before they expire
TOKEN_REFRESH_MARGIN_S = 300

# errcodes: -1 system busy, 42001 token expired, 40014 invalid token
_RETRYABLE_ERRCODES = {-1, 42001, 40014, 45009}
_TOKEN_ERRCODES = {42001, 40014}

_MSG_TYPES: dict[str, MessageType] = {
    "text": MessageType.text,
    "image": MessageType.image,
    "voice": MessageType.audio,
    "video": MessageType.video,
    "file": MessageType.file,
    "location": MessageType.location,
    "link": MessageType.text,
    "event": MessageType.system_event,
}


def parse_callback(event: RawEvent) -> dict[str, Any]:
    """Callback bodies are XML in plaintext mode; JSON relays are accepted too."""
    body = event.body.strip()
    if body.startswith(b"{"):
        return event.json()
    if not body:
        return {}
    try:
        root = ElementTree.fromstring(body)
    except ElementTree.ParseError as e:
        raise ValidationError("wework callback body is not valid XML") from e
    return {child.tag: (child.text or "") for child in root}


class WeWorkAdapter(HttpAdapter):
    """WeCom (WeChat Work) application adapter.

    Credentials are the application secret; ``corp_id`` and ``agent_id`` come
    from settings. Callback authenticity is ``sha1(sorted(token, timestamp,
    nonce))`` against the ``msg_signature`` query parameter.
    """

    platform = "wework"
    rejects_invalid_signature = False
    base_url = "https://qyapi.weixin.qq.com/cgi-bin"

    def __init__(self, client: httpx.AsyncClient | None = None, timeout_s: float = 30.0,
                 clock: Callable[[], float] = time.time):
        super().__init__(client, timeout_s)
        self._clock = clock
        self._handle: AdapterHandle | None = None

    def _check(self, data: dict[str, Any], op: str) -> dict[str, Any]:
        code = int(data.get("errcode", 0) or 0)
        if code != 0:
            raise SendError(f"wework {op}: {data.get('errmsg', 'unknown error')} ({code})",
                            retryable=code in _RETRYABLE_ERRCODES, errcode=code)
        return data

    async def _fetch_token(self, handle: AdapterHandle) -> str:
        resp = await self._request(
            "GET", f"{self.base_url}/gettoken", op="gettoken",
            params={"corpid": handle.setting("corp_id"), "corpsecret": handle.credentials},
        )
        data = self._check(self._json(resp), "gettoken")
        handle.state["access_token"] = data["access_token"]
        handle.state["token_expiry"] = self._clock() + int(data.get("expires_in", 7200)) - TOKEN_REFRESH_MARGIN_S
        return data["access_token"]

    async def _token(self, handle: AdapterHandle) -> str:
        token = handle.state.get("access_token")
        if not token or self._clock() >= handle.state.get("token_expiry", 0):
            token = await self._fetch_token(handle)
        return token

    async def _call(self, handle: AdapterHandle, method: str, path: str, op: str, **kwargs: Any) -> dict[str, Any]:
        token = await self._token(handle)
        params = dict(kwargs.pop("params", {}) or {})
        params["access_token"] = token
        resp = await self._request(method, f"{self.base_url}/{path}", op=op, params=params, **kwargs)
        try:
            return self._check(self._json(resp), op)
        except SendError as e:
            if e.details.get("errcode") in _TOKEN_ERRCODES:
                handle.state.pop("access_token", None)
            raise

    async def start(self, bot_id: str, credentials: str, settings: dict[str, Any],
                    webhook_url: str | None, sink: MessageSink | None) -> AdapterHandle:
        if self._handle is not None and not self._handle.stopped:
            return self._handle
        for key in ("corp_id", "agent_id"):
            if not settings.get(key):
                raise StartError(f"wework bot {bot_id} has no {key} setting", retryable=False)
        handle = AdapterHandle(bot_id=bot_id, platform=self.platform, credentials=credentials,
                               settings=dict(settings), webhook_url=webhook_url, sink=sink)
        agent = await self._start_call(
            self._call(handle, "GET", "agent/get", "agent/get", params={"agentid": settings["agent_id"]}), bot_id,
        )
        handle.state["agent_name"] = agent.get("name")
        log.info("wework_started", bot_id=bot_id, agent=agent.get("name"))
        self._handle = handle
        return handle

    async def stop(self, handle: AdapterHandle) -> None:
        if handle.stopped:
            return
        handle.stopped = True
        handle.state.pop("access_token", None)
        await self.aclose()

    def _signature_ok(self, handle: AdapterHandle, event: RawEvent, *extra: str) -> Verdict:
        token = handle.setting("token")
        if not token:
            return Verdict.fallback()
        signature = event.query.get("msg_signature") or event.query.get("signature")
        ts, nonce = event.query.get("timestamp"), event.query.get("nonce")
        if not signature or not ts or not nonce:
            return Verdict.deny("missing_signature")
        if not constant_time_equals(sha1_sorted(token, ts, nonce, *extra), signature):
            return Verdict.deny("signature_mismatch")
        return Verdict.ok()

    def verify(self, handle: AdapterHandle, event: RawEvent) -> Verdict:
        return self._signature_ok(handle, event)

    def handshake(self, handle: AdapterHandle, event: RawEvent) -> HandshakeReply | None:
        if event.method != "GET":
            return None
        echostr = event.query.get("echostr")
        if echostr is None:
            return HandshakeReply(400, "missing echostr")
        verdict = self._signature_ok(handle, event)
        if not verdict.allowed:
            log.warning("wework_url_verification_failed", bot_id=handle.bot_id, reason=verdict.reason)
            return HandshakeReply(403, "forbidden")
        return HandshakeReply(200, echostr)

    def normalize(self, handle: AdapterHandle, event: RawEvent) -> list[NormalizedMessage]:
        data = parse_callback(event)
        if not data:
            return []
        agent_id = str(handle.setting("agent_id", ""))
        if data.get("AgentID") and agent_id and str(data["AgentID"]) != agent_id:
            log.warning("wework_wrong_agent", bot_id=handle.bot_id, expected=agent_id, received=data["AgentID"])
            return []
        raw_type = data.get("MsgType", "")
        mtype = _MSG_TYPES.get(raw_type, MessageType.system_event)
        sender = data.get("FromUserName", "")
        text = data.get("Content", "")
        attachments: list[Attachment] = []
        if raw_type in ("image", "voice", "video", "file"):
            attachments.append(Attachment(type=mtype, file_id=data.get("MediaId"), url=data.get("PicUrl"),
                                          name=data.get("FileName")))
            text = data.get("Recognition") or data.get("FileName") or ""
        elif raw_type == "location":
            text = data.get("Label", "")
            attachments.append(Attachment(type=mtype, name=f"{data.get('Location_X')},{data.get('Location_Y')}"))
        elif raw_type == "link":
            text = data.get("Url") or data.get("Title", "")
        elif raw_type == "event":
            text = data.get("Event", "")
        native_id = data.get("MsgId") or f"{data.get('Event', raw_type)}-{data.get('CreateTime', '')}"
        return [NormalizedMessage(
            id=NormalizedMessage.make_id(self.platform, sender, native_id),
            platform=self.platform,
            bot_id=handle.bot_id,
            chat_id=sender,
            sender_id=sender,
            timestamp=from_epoch(data.get("CreateTime")),
            type=mtype,
            text=text,
            attachments=attachments,
            metadata={
                "agent_id": data.get("AgentID"),
                "corp_id": handle.setting("corp_id"),
                "to_user": data.get("ToUserName"),
                "event": data.get("Event"),
            },
        )]

    async def send(self, handle: AdapterHandle, message: OutboundMessage) -> SendAck:
        self._ensure_live(handle)
        body: dict[str, Any] = {"agentid": handle.setting("agent_id"), "safe": int(message.options.get("safe", 0))}
        if message.options.get("chat_kind") == "party":
            body["toparty"] = message.chat_id
        else:
            body["touser"] = message.chat_id
        if message.type == MessageType.text:
            body.update(msgtype="text", text={"content": message.content})
        elif message.type in (MessageType.image, MessageType.audio, MessageType.video, MessageType.file):
            kind = {MessageType.audio: "voice"}.get(message.type, message.type.value)
            body.update(msgtype=kind, **{kind: {"media_id": message.content}})
        elif message.type == MessageType.interactive:
            body.update(msgtype="textcard", textcard={
                "title": message.options.get("title", ""),
                "description": message.content,
                "url": message.options.get("url", ""),
            })
        else:
            raise SendError(f"wework cannot send {message.type.value} messages", retryable=False)

        data = await self._call(handle, "POST", "message/send", "message/send", json=body)
        return SendAck(bot_id=handle.bot_id, platform=self.platform, chat_id=message.chat_id,
                       message_id=str(data.get("msgid", "")))

    async def health_check(self, handle: AdapterHandle) -> HealthStatus:
        async def _refresh() -> str:
            await self._fetch_token(handle)
            return "token_refreshed"
        return await self._liveness(_refresh())
