from __future__ import annotations

import logging

import structlog

from turnflow.core.config import settings


def configure_logging(level: str | None = None, *, json_output: bool | None = None) -> None:
    resolved_level = str(level or settings.LOG_LEVEL or "INFO").upper()
    logging.basicConfig(level=getattr(logging, resolved_level, logging.INFO), format="%(message)s")
    use_json = settings.TURN_LOG_JSON if json_output is None else json_output
    renderer = (
        structlog.processors.JSONRenderer()
        if use_json
        else structlog.dev.ConsoleRenderer(colors=False)
    )
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            renderer,
        ],
    )
