"""Logging configuration for agenthost.

Structured logging via loguru. The library stays silent until
``setup_logging`` is called, which the server entry point does on start.
Every module binds context (component, provider, user_id, ...) and that
context is rendered after the call site in each line.

Example:
    from agenthost.observability.logging import LogConfig, setup_logging

    handler_ids = setup_logging(LogConfig(level="DEBUG", console=True))
    ...
    teardown_logging(handler_ids)
"""

from __future__ import annotations

import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Literal

from loguru import logger

logger.disable("agenthost")

type LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR", "TRACE"]

_CONTEXT_KEYS = (
    "provider", "user_id", "setup_id", "session_id", "instance_id", "step",
)


# Anthropic keys, messaging bot tokens, bearer headers and PEM bodies
_SECRET_PATTERNS = (
    re.compile(r"sk-ant-[A-Za-z0-9_\-]+"),
    re.compile(r"\b\d{6,12}:[A-Za-z0-9_\-]{30,}\b"),
    re.compile(r"(?i)bearer\s+[A-Za-z0-9._\-]+"),
    re.compile(r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----", re.S),
)


def redact(text: str) -> str:
    """Mask anything shaped like a credential."""
    for pattern in _SECRET_PATTERNS:
        text = pattern.sub("***", text)
    return text


def _patch(record: Any) -> None:
    extra = record["extra"]
    extra.setdefault("component", record["name"])
    context = " ".join(f"{k}={extra[k]}" for k in _CONTEXT_KEYS if k in extra)
    extra["_ctx"] = f" ({context})" if context else ""
    record["message"] = redact(record["message"])


CONSOLE_FORMAT = (
    "<dim>{time:HH:mm:ss}</dim> <level>{level.name:<7}</level> "
    "<cyan>{extra[component]}</cyan><dim>{extra[_ctx]}</dim> {message}"
)

FILE_FORMAT = (
    "{time:YYYY-MM-DDTHH:mm:ss.SSSZZ} {level.name:<7} {name}:{line}{extra[_ctx]} {message}"
)


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Logging configuration for the service.

    Attributes:
        level: Minimum log level for the console sink.
        file: Path to log file. Empty string disables file output.
        console: Whether to log to stderr.
        rotation: File rotation policy (e.g., "50 MB", "1 day").
        retention: Number of old log files to keep.
    """

    level: LogLevel = "INFO"
    file: str = ".agenthost/agenthost.log"
    console: bool = True
    rotation: str = "50 MB"
    retention: int = 10


def setup_logging(config: LogConfig) -> list[int]:
    """Configure logging and return handler IDs for cleanup."""
    logger.remove()
    logger.enable("agenthost")
    handler_ids: list[int] = []

    logger.configure(patcher=_patch)

    if config.console:
        hid = logger.add(
            sys.stderr,
            level=config.level,
            format=CONSOLE_FORMAT,
            colorize=True,
            filter="agenthost",
        )
        handler_ids.append(hid)

    if config.file:
        Path(config.file).parent.mkdir(parents=True, exist_ok=True)
        hid = logger.add(
            config.file,
            level="DEBUG",
            format=FILE_FORMAT,
            rotation=config.rotation,
            retention=config.retention,
            compression="zip",
            diagnose=False,
            enqueue=False,
        )
        handler_ids.append(hid)

    return handler_ids


def teardown_logging(handler_ids: list[int]) -> None:
    """Remove handlers and disable logging."""
    for hid in handler_ids:
        logger.remove(hid)
    logger.disable("agenthost")
