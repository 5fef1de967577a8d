from __future__ import annotations
from typing import Optional

import httpx

from botgateway.config import Settings
from botgateway.domain.errors import PipelineError
from botgateway.domain.models import NormalizedMessage
from botgateway.observability import metrics
from botgateway.observability.logging import get_logger

log = get_logger("pipeline")


class PipelineClient:
    """Hands normalized messages to the downstream processor, one POST each."""

    def __init__(self, settings: Settings, client: Optional[httpx.AsyncClient] = None):
        self.url = settings.pipeline_url
        self.api_key = settings.pipeline_api_key
        self.timeout_s = settings.pipeline_timeout_s
        self._client = client
        self._owns_client = client is None

    @property
    def enabled(self) -> bool:
        return bool(self.url)

    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_s)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def submit(self, message: NormalizedMessage, tenant_id: str) -> None:
        if not self.enabled:
            metrics.pipeline_handoffs.labels(outcome="disabled").inc()
            log.info("pipeline_disabled", msg_id=message.id, bot_id=message.bot_id)
            return
        headers = {"X-Tenant-ID": tenant_id, "X-Bot-ID": message.bot_id}
        if self.api_key:
            headers["X-API-Key"] = self.api_key
        try:
            resp = await self.client().post(self.url, json=message.model_dump(mode="json"), headers=headers,
                                            timeout=self.timeout_s)
        except httpx.HTTPError as e:
            metrics.pipeline_handoffs.labels(outcome="error").inc()
            raise PipelineError(f"pipeline unreachable: {e}", msg_id=message.id) from e
        if resp.status_code >= 400:
            metrics.pipeline_handoffs.labels(outcome="error").inc()
            raise PipelineError(f"pipeline answered HTTP {resp.status_code}", msg_id=message.id,
                                status_code=resp.status_code)
        metrics.pipeline_handoffs.labels(outcome="ok").inc()
