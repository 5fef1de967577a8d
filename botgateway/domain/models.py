"""Domain models for the bot gateway."""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================================================
# Enums
# ============================================================================


class Platform(str, Enum):
    """Platforms shipped with the gateway."""

    telegram = "telegram"
    discord = "discord"
    slack = "slack"
    whatsapp = "whatsapp"
    line = "line"
    wework = "wework"
    intercom = "intercom"


class BotStatus(str, Enum):
    """Persisted bot status.

    ``inactive`` covers both "created" and "stopped"; ``active`` is "running".
    """

    inactive = "inactive"
    starting = "starting"
    active = "active"
    stopping = "stopping"
    error = "error"


class MessageType(str, Enum):
    """Canonical message kinds every adapter maps onto."""

    text = "text"
    image = "image"
    video = "video"
    audio = "audio"
    file = "file"
    location = "location"
    sticker = "sticker"
    interactive = "interactive"
    system_event = "system_event"


class PlatformStatus(str, Enum):
    """Runtime status of a platform as seen by the router and health monitor."""

    unregistered = "unregistered"
    registered = "registered"
    healthy = "healthy"
    unhealthy = "unhealthy"
    error = "error"


# ============================================================================
# Bot records
# ============================================================================


class BotConfig(BaseModel):
    """Persisted bot: one credential set bound to one platform and tenant."""

    id: str = Field(description="Unique bot identifier")
    tenant_id: str = Field(description="Owning tenant")
    name: str
    platform: str = Field(description="Registered adapter type")
    # never serialized into API responses
    credentials: str = Field(default="", exclude=True, repr=False)
    webhook_url: Optional[str] = None
    settings: dict[str, Any] = Field(default_factory=dict)
    status: BotStatus = Field(default=BotStatus.inactive)
    auto_start: bool = False
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class LifecycleResult(BaseModel):
    success: bool = True
    bot_id: str
    status: BotStatus
    message: str


class BulkResult(BaseModel):
    """Outcome of a per-item isolated bulk lifecycle operation."""

    total: int = 0
    succeeded: list[str] = Field(default_factory=list)
    failed: dict[str, str] = Field(default_factory=dict, description="bot_id -> error message")


# ============================================================================
# Messages
# ============================================================================


class Attachment(BaseModel):
    type: MessageType = MessageType.file
    url: Optional[str] = None
    file_id: Optional[str] = Field(default=None, description="Platform-side media handle")
    name: Optional[str] = None
    mime_type: Optional[str] = None
    size: Optional[int] = None


class NormalizedMessage(BaseModel):
    """The single inbound shape every adapter produces.

    ``id`` is ``<platform>:<chat_id>:<native id>`` so downstream consumers can
    dedupe at-least-once deliveries. ``metadata`` is passed through untouched.
    """

    id: str
    platform: str
    bot_id: str
    chat_id: str
    sender_id: str
    sender_name: str = ""
    timestamp: datetime
    type: MessageType = MessageType.text
    text: str = ""
    attachments: list[Attachment] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @staticmethod
    def make_id(platform: str, chat_id: str, native_id: str) -> str:
        return f"{platform}:{chat_id}:{native_id}"


class OutboundMessage(BaseModel):
    """Canonical send request. Envelope construction belongs to the adapter."""

    chat_id: str = Field(min_length=1)
    content: str = Field(description="Text, or a media URL/file reference for media types")
    type: MessageType = MessageType.text
    options: dict[str, Any] = Field(default_factory=dict)


class SendAck(BaseModel):
    bot_id: str
    platform: str
    chat_id: str
    message_id: str
    latency_ms: float = 0.0
    sent_at: datetime = Field(default_factory=utcnow)


# ============================================================================
# Health
# ============================================================================


class HealthStatus(BaseModel):
    """Result of one adapter liveness check."""

    healthy: bool
    detail: str = ""
    checked_at: datetime = Field(default_factory=utcnow)


class PlatformHealth(BaseModel):
    platform: str
    status: PlatformStatus
    bots_checked: int = 0
    failures: dict[str, str] = Field(default_factory=dict)
    last_health_check: Optional[datetime] = None


class GatewayHealth(BaseModel):
    is_healthy: bool
    platforms: dict[str, PlatformHealth] = Field(default_factory=dict)
    checked_at: datetime = Field(default_factory=utcnow)
