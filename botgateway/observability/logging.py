from __future__ import annotations
import logging, sys
import structlog

# event keys whose values never reach a log sink
SECRET_KEYS = {"credentials", "token", "access_token", "secret", "signing_secret", "app_secret",
               "channel_secret", "client_secret", "api_key", "authorization"}

# httpx logs full request URLs at INFO and Telegram carries the bot token in the path
_NOISY_LOGGERS = ("httpx", "httpcore")


def redact_secrets(logger, method_name, event_dict):
    for key in SECRET_KEYS.intersection(event_dict):
        if event_dict[key]:
            event_dict[key] = "***"
    return event_dict


def configure_logging(level: str = "INFO", json_logs: bool = True) -> None:
    numeric = getattr(logging, level.upper(), logging.INFO)
    logging.basicConfig(level=numeric, stream=sys.stdout, format="%(message)s")
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(numeric, logging.WARNING))

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        redact_secrets,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    processors.append(structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.make_filtering_bound_logger(numeric),
        cache_logger_on_first_use=True,
    )

def get_logger(name: str = "bgw"):
    return structlog.get_logger(name)

def bind_bot_id(bot_id: str | None, platform: str | None = None):
    """Tag every log line of the current task with the bot it serves."""
    if bot_id is None:
        structlog.contextvars.unbind_contextvars("bot_id", "platform")
        return
    structlog.contextvars.bind_contextvars(bot_id=bot_id, platform=platform or "-")
