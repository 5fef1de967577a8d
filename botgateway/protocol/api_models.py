from __future__ import annotations
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field
from botgateway.domain.models import MessageType

class ApiModel(BaseModel):
    # clients send camelCase; snake_case is accepted too
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

class CreateBotRequest(ApiModel):
    tenant_id: Optional[str] = Field(default=None, alias="tenantId")
    name: str
    platform: str
    credentials: str
    webhook_url: Optional[str] = Field(default=None, alias="webhookUrl")
    settings: dict[str, Any] = Field(default_factory=dict)
    auto_start: bool = Field(default=False, alias="autoStart")

class UpdateBotRequest(ApiModel):
    name: Optional[str] = None
    settings: Optional[dict[str, Any]] = None
    webhook_url: Optional[str] = Field(default=None, alias="webhookUrl")
    auto_start: Optional[bool] = Field(default=None, alias="autoStart")

class SendRequest(ApiModel):
    channel_id: str = Field(alias="channelId", min_length=1)
    content: str
    message_type: MessageType = Field(default=MessageType.text, alias="messageType")
    options: dict[str, Any] = Field(default_factory=dict)
