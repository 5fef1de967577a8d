from __future__ import annotations
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="BGW_", env_file=".env", extra="ignore")

    # Core
    instance_id: str = Field(default="bgw-1", description="Unique instance id for tracing.")
    sqlite_path: str = Field(default="./data/bot_gateway.sqlite")
    database_url: str | None = Field(default=None, description="SQLAlchemy async URL; overrides sqlite_path.")
    sqlite_busy_timeout_s: float = Field(default=5.0)
    auto_start_on_boot: bool = Field(default=True, description="Start bots flagged auto_start when the process boots.")

    # Network
    host: str = Field(default="127.0.0.1")
    port: int = Field(default=8790)
    metrics_path: str = Field(default="/metrics")
    health_path: str = Field(default="/healthz")
    public_base_url: str | None = Field(default=None, description="Externally reachable base URL used when registering webhooks.")
    access_log: bool = Field(default=False, description="uvicorn access log; off because webhook paths carry bot ids.")
    proxy_headers: bool = Field(default=True, description="Trust X-Forwarded-* from the TLS-terminating proxy.")

    # Management API security
    require_client_auth: bool = Field(default=True)
    client_api_keys: list[str] = Field(default_factory=list, description="Static API keys for management clients.")
    api_rate_limit_rps: float = Field(default=10.0, description="Management requests per second per API key.")
    api_rate_limit_burst: int = Field(default=30)

    # Lifecycle / outbound
    start_timeout_s: float = Field(default=30.0)
    stop_timeout_s: float = Field(default=15.0)
    send_timeout_s: float = Field(default=30.0)
    rate_limit_window_s: float = Field(default=1.0)
    platform_limits: dict[str, dict[str, int]] = Field(
        default_factory=dict,
        description='Per-platform overrides, e.g. {"telegram": {"rate_limit": 20}}.',
    )

    # Health monitor
    health_interval_s: float = Field(default=30.0)
    health_timeout_s: float = Field(default=5.0)
    mark_unhealthy_bots: bool = Field(default=True)

    # Pipeline hand-off
    pipeline_url: str | None = Field(default=None, description="Message processor endpoint; unset disables hand-off.")
    pipeline_api_key: str | None = Field(default=None)
    pipeline_timeout_s: float = Field(default=10.0)

    # Logging
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=True)

def load_settings() -> Settings:
    return Settings()
