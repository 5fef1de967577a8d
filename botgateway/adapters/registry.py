from __future__ import annotations

from dataclasses import dataclass, field
from functools import partial
from typing import Callable

from botgateway.adapters.base import PlatformAdapter
from botgateway.adapters.discord import DiscordAdapter
from botgateway.adapters.intercom import IntercomAdapter
from botgateway.adapters.line import LineAdapter
from botgateway.adapters.slack import SlackAdapter
from botgateway.adapters.telegram import TelegramAdapter
from botgateway.adapters.wework import WeWorkAdapter
from botgateway.adapters.whatsapp import WhatsAppAdapter
from botgateway.domain.errors import UnsupportedPlatformError

AdapterFactory = Callable[[], PlatformAdapter]


@dataclass
class AdapterRegistry:
    """Platform name -> adapter factory. Every start gets a fresh instance."""

    factories: dict[str, AdapterFactory] = field(default_factory=dict)

    def register(self, platform: str, factory: AdapterFactory) -> None:
        self.factories[platform] = factory

    def is_supported(self, platform: str) -> bool:
        return platform in self.factories

    def platforms(self) -> list[str]:
        return sorted(self.factories)

    def create(self, platform: str) -> PlatformAdapter:
        factory = self.factories.get(platform)
        if factory is None:
            raise UnsupportedPlatformError(f"unsupported platform: {platform}", platform=platform)
        return factory()


def default_registry(timeout_s: float = 30.0) -> AdapterRegistry:
    registry = AdapterRegistry()
    for cls in (TelegramAdapter, DiscordAdapter, SlackAdapter, WhatsAppAdapter, LineAdapter, WeWorkAdapter, IntercomAdapter):
        registry.register(cls.platform, partial(cls, timeout_s=timeout_s))
    return registry
