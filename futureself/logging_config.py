"""
structlog setup shared by the CLI commands and the API server.
JSON lines by default; `json_logs=False` gives the coloured dev renderer.
"""

from __future__ import annotations

import logging
import sys

import structlog

from futureself.config import Settings

_MASKED_KEYS = frozenset({"phone", "phone_e164", "to", "to_number_e164"})
_QUIET_LOGGERS = ("httpx", "httpcore", "openai")


def mask_phone_numbers(logger, method_name: str, event_dict: dict) -> dict:
    """Keep only the last four digits of any phone number field."""
    for key in _MASKED_KEYS.intersection(event_dict):
        value = event_dict[key]
        if isinstance(value, str) and len(value) > 4:
            event_dict[key] = "*" * (len(value) - 4) + value[-4:]
    return event_dict


def setup_logging(settings: Settings, json_logs: bool | None = None) -> None:
    """Configure structlog and the stdlib root logger from settings."""
    json_logs = settings.json_logs if json_logs is None else json_logs
    level = logging.getLevelName(settings.log_level.upper())
    if not isinstance(level, int):
        level = logging.INFO

    root = logging.getLogger()
    root.setLevel(level)
    if not any(getattr(h, "_futureself", False) for h in root.handlers):
        handlers: list[logging.Handler] = [logging.StreamHandler(sys.stdout)]
        if json_logs:
            settings.log_dir.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(settings.log_dir / "futureself.jsonl", encoding="utf-8"))
        for handler in handlers:
            handler._futureself = True  # type: ignore[attr-defined]
            root.addHandler(handler)

    # client libraries log every request at INFO
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    renderer = structlog.processors.JSONRenderer() if json_logs else structlog.dev.ConsoleRenderer()
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            mask_phone_numbers,
            structlog.processors.format_exc_info,
            renderer,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
