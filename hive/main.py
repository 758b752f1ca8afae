"""
Hive — Entry Point.

Configures structured logging and hands control to the click CLI.
"""

from __future__ import annotations

import logging
from typing import Optional

import structlog

from hive.config import LoggingConfig

# Fields that may carry task payloads or outputs; shortened in log output.
_BULKY_KEYS = {"payload", "output", "error", "args"}
_MAX_FIELD_LEN = 120


def _truncate_bulky_fields(logger, method_name, event_dict):
    """Structlog processor that keeps payload-like fields to one short line."""
    for key in _BULKY_KEYS:
        if key in event_dict:
            text = event_dict[key] if isinstance(event_dict[key], str) else repr(event_dict[key])
            if len(text) > _MAX_FIELD_LEN:
                text = text[:_MAX_FIELD_LEN] + "... [truncated]"
            event_dict[key] = text
    return event_dict


_logging_configured = False


def configure_logging(config: Optional[LoggingConfig] = None, *, force: bool = False) -> None:
    """Configure structlog over standard-library logging.

    Safe to call more than once; later calls are no-ops unless ``force`` is
    set (the CLI uses that to apply ``--verbose``).
    """
    global _logging_configured  # noqa: PLW0603
    if _logging_configured and not force:
        return
    _logging_configured = True

    config = config or LoggingConfig()
    level = getattr(logging, config.level, logging.WARNING)
    logging.basicConfig(format="%(message)s", level=level, force=True)

    processors = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        _truncate_bulky_fields,
    ]
    if config.json_output:
        processors += [structlog.processors.format_exc_info, structlog.processors.JSONRenderer()]
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=False,
    )


def main() -> None:
    """Entry point for the ``hive`` command."""
    configure_logging()
    from hive.cli.app import cli

    cli(obj={})


if __name__ == "__main__":
    main()
