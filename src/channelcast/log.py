"""Logging setup — structlog for every module.

Learn: Modules just call structlog.get_logger() and log dotted event
names with keyword context. configure_logging() runs once at app start
and picks the renderer: JSON lines for log shippers, or the colored
console renderer for local development.

log_channel() is the sink the subscription registry writes to. Logging
is advisory there, so a broken sink must never take a broadcast down.
"""

import logging

import structlog

from channelcast.config import settings

logger = structlog.get_logger()


def configure_logging(level: str | None = None, json_logs: bool | None = None) -> None:
    """Configure structlog processors and the stdlib root level."""
    level_name = (level or settings.log_level).upper()
    use_json = settings.log_json if json_logs is None else json_logs

    logging.basicConfig(format="%(message)s", level=level_name)

    renderer = (
        structlog.processors.JSONRenderer()
        if use_json
        else structlog.dev.ConsoleRenderer()
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            logging.getLevelName(level_name)
        ),
        cache_logger_on_first_use=True,
    )


def log_channel(event: str, channel: str, level: str = "info", **context) -> None:
    """Emit a channel-scoped event. Never raises."""
    try:
        getattr(logger, level)(event, channel=channel, **context)
    except Exception:  # noqa: BLE001
        pass
