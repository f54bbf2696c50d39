import logging
import logging.config
from typing import Any, Dict, List, Optional, Union

import structlog

LOG_FORMATS = ("colored", "plain", "json")

_LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}


def configure_logging(
    overrides: Optional[dict] = None,
    *,
    debug: bool = False,
    log_format: str = "colored",
    log_level: Union[str, int, None] = None,
):
    """Route structlog through the standard library logging module.

    ``overrides`` is merged into the ``logging.config.dictConfig``
    configuration, so handlers and loggers can be replaced completely. The
    formatters ``colored``, ``plain`` and ``json`` are always available.
    """
    if log_format not in LOG_FORMATS:
        raise ValueError(f"invalid log format '{log_format}'")
    overrides = dict(overrides or {})
    if debug:
        level = logging.DEBUG
    elif log_level is not None:
        level = parse_log_level(log_level)
    else:
        level = parse_log_level(overrides.get("root", {}).get("level", logging.INFO))

    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.dev.set_exc_info,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    logging_config: Dict[str, Any] = {
        "handlers": {
            "default": {
                "class": "logging.StreamHandler",
                "formatter": log_format,
            },
        },
        "loggers": {
            "uvicorn.access": {"level": max(level, logging.WARNING)},
        },
        "root": {},
    }
    logging_config.update(overrides)
    logging_config.update(
        {
            "version": 1,
            "incremental": False,
            "disable_existing_loggers": False,
            "formatters": _formatters(),
        }
    )
    root = dict(logging_config["root"])
    root.setdefault("handlers", ["default"])
    root["level"] = level
    logging_config["root"] = root
    logging.config.dictConfig(logging_config)


def _formatters() -> Dict[str, Dict[str, Any]]:
    foreign_pre_chain: List[Any] = [
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.ExtraAdder(),
        structlog.processors.format_exc_info,
    ]
    console_processors: List[Any] = [
        structlog.stdlib.ProcessorFormatter.remove_processors_meta,
        structlog.processors.TimeStamper(fmt="%Y-%m-%d %H:%M:%S", utc=False),
    ]

    def formatter(processors: List[Any]) -> Dict[str, Any]:
        return {
            "()": structlog.stdlib.ProcessorFormatter,
            "processors": processors,
            "foreign_pre_chain": foreign_pre_chain,
        }

    return {
        "plain": formatter(
            console_processors + [structlog.dev.ConsoleRenderer(colors=False)]
        ),
        "colored": formatter(
            console_processors + [structlog.dev.ConsoleRenderer(colors=True)]
        ),
        "json": formatter(
            [
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.dict_tracebacks,
                structlog.processors.JSONRenderer(),
            ]
        ),
    }


def parse_log_level(level: Union[str, int]) -> int:
    if isinstance(level, str):
        try:
            return _LOG_LEVELS[level.strip().lower()]
        except KeyError:
            raise ValueError(f"invalid log level '{level}'") from None
    return level
