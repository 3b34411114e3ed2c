"""stderr logging for the agent runtime.

Stdout is reserved for JSON envelopes, so records from the ``clawkalash``
logger tree are rendered by structlog onto stderr. Modules keep using plain
``logging.getLogger(__name__)``.
"""

import logging
import sys
from typing import Any, Optional

import structlog

from . import config
from .errors import ConfigError

ROOT_LOGGER = "clawkalash"
REDACTED = "[redacted]"
SENSITIVE_KEYS = frozenset({"private_key", "privateKey", "mnemonic", "passphrase", "password", "secret", "signature"})


def redact_secrets(_logger: Any, _method: str, event_dict: dict[str, Any]) -> dict[str, Any]:
    """Mask key material passed to a log call through ``extra=``."""
    for key in SENSITIVE_KEYS.intersection(event_dict):
        event_dict[key] = REDACTED
    return event_dict


def _resolve_level(name: str) -> int:
    level = logging.getLevelName(name.upper())
    if not isinstance(level, int):
        raise ConfigError(
            f"Unknown log level '{name}'.",
            "Use one of DEBUG, INFO, WARNING, ERROR.",
            {"logLevel": name},
        )
    return level


def build_formatter(log_format: str) -> structlog.stdlib.ProcessorFormatter:
    pre_chain: list[Any] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.ExtraAdder(),
        redact_secrets,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
    ]
    if log_format == "console":
        renderer: Any = structlog.dev.ConsoleRenderer(colors=sys.stderr.isatty())
    else:
        pre_chain.append(structlog.processors.format_exc_info)
        renderer = structlog.processors.JSONRenderer(sort_keys=True)
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=pre_chain,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
    )


def setup_logging(log_level: Optional[str] = None, log_format: Optional[str] = None) -> logging.Logger:
    """Attach a single stderr handler to the ``clawkalash`` logger and return it.

    Raises ``ConfigError`` for an unknown level or format.
    """
    level = _resolve_level(log_level or config.log_level())
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(build_formatter(log_format or config.log_format()))

    logger = logging.getLogger(ROOT_LOGGER)
    logger.handlers.clear()
    logger.addHandler(handler)
    logger.setLevel(level)
    logger.propagate = False
    return logger
