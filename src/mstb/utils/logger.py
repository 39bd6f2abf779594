"""
Structured logging for the MSTB trading bot.

Every component logs through structlog with snake_case event names and
key/value context. Console output is either pretty or JSON; an optional log
file always receives JSON.

Example Usage:
    ```python
    from mstb.utils.logger import LogConfig, add_context, get_logger, setup_logging

    setup_logging(LogConfig(level="INFO", format="pretty"))
    logger = get_logger(__name__)

    logger.info("order_created", symbol="BTC/USDT", side="buy", amount=0.1)

    with add_context(symbol="ETH/USDT", cycle=42):
        logger.info("signals_collected", count=3)
    ```
"""

from contextlib import contextmanager
from dataclasses import dataclass
import logging
from pathlib import Path
import sys
from typing import Any, Literal

import structlog
from structlog.types import EventDict, Processor

APP_NAME = "mstb"

SENSITIVE_KEYS = frozenset(
    {
        "api_key",
        "apikey",
        "api_secret",
        "apisecret",
        "secret",
        "password",
        "token",
        "private_key",
    }
)


@dataclass
class LogConfig:
    """Configuration for the logging system.

    Attributes:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        format: "json" for production, "pretty" for development
        file_path: Optional JSON log file
        include_caller_info: Whether to add file/line/function to entries
        max_string_length: Strings longer than this are truncated
        environment: Environment name attached to every entry
        app_version: Version string attached to every entry
    """

    level: str = "INFO"
    format: Literal["json", "pretty"] = "pretty"
    file_path: str | None = None
    include_caller_info: bool = False
    max_string_length: int = 1000
    environment: str = "dev"
    app_version: str = "0.1.0"


class _AppInfo:
    """Processor stamping the application identity on each entry."""

    def __init__(self, environment: str, version: str):
        self.environment = environment
        self.version = version

    def __call__(self, logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict.setdefault("app", APP_NAME)
        event_dict.setdefault("environment", self.environment)
        event_dict.setdefault("version", self.version)
        return event_dict


def mask_sensitive(logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
    """Mask credentials anywhere in the event dictionary."""

    def mask(value: Any) -> Any:
        if isinstance(value, str) and len(value) > 4:
            return f"{value[:2]}***{value[-2:]}"
        return "***"

    def walk(data: Any) -> Any:
        if isinstance(data, dict):
            return {
                key: mask(value) if str(key).lower() in SENSITIVE_KEYS else walk(value)
                for key, value in data.items()
            }
        if isinstance(data, (list, tuple)):
            return type(data)(walk(item) for item in data)
        return data

    return walk(event_dict)


class _Truncate:
    """Processor cutting long strings so one bad payload cannot flood the log."""

    def __init__(self, max_length: int):
        self.max_length = max_length

    def __call__(self, logger: logging.Logger, method_name: str, event_dict: EventDict) -> EventDict:
        def cut(value: Any) -> Any:
            if isinstance(value, str) and len(value) > self.max_length:
                return f"{value[: self.max_length]}... [truncated]"
            if isinstance(value, dict):
                return {k: cut(v) for k, v in value.items()}
            if isinstance(value, (list, tuple)):
                return type(value)(cut(item) for item in value)
            return value

        return {key: cut(value) for key, value in event_dict.items()}


def _shared_processors(config: LogConfig) -> list[Processor]:
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        _AppInfo(config.environment, config.app_version),
        mask_sensitive,
        _Truncate(config.max_string_length),
        structlog.processors.TimeStamper(fmt="iso"),
    ]
    if config.include_caller_info:
        processors.append(
            structlog.processors.CallsiteParameterAdder(
                [
                    structlog.processors.CallsiteParameter.FILENAME,
                    structlog.processors.CallsiteParameter.LINENO,
                    structlog.processors.CallsiteParameter.FUNC_NAME,
                ]
            )
        )
    processors.append(structlog.processors.StackInfoRenderer())
    return processors


def setup_logging(config: LogConfig) -> None:
    """Configure structlog and the stdlib root logger.

    Args:
        config: LogConfig instance with logging configuration
    """
    shared = _shared_processors(config)
    level = getattr(logging, config.level.upper())

    console_renderer: Processor = (
        structlog.processors.JSONRenderer()
        if config.format == "json"
        else structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty())
    )

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.setLevel(level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[
                structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                structlog.processors.format_exc_info,
                console_renderer,
            ],
        )
    )
    root_logger.addHandler(console_handler)

    if config.file_path:
        file_path = Path(config.file_path)
        file_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(file_path)
        file_handler.setFormatter(
            structlog.stdlib.ProcessorFormatter(
                foreign_pre_chain=shared,
                processors=[
                    structlog.stdlib.ProcessorFormatter.remove_processors_meta,
                    structlog.processors.format_exc_info,
                    structlog.processors.JSONRenderer(),
                ],
            )
        )
        root_logger.addHandler(file_handler)

    # ccxt is chatty at DEBUG
    logging.getLogger("ccxt").setLevel(max(level, logging.INFO))


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    """Get a logger instance for the given name.

    Args:
        name: Logger name, typically __name__ of the calling module

    Returns:
        structlog BoundLogger
    """
    return structlog.get_logger(name)


@contextmanager
def add_context(**kwargs: Any):
    """Bind key/value pairs to every entry logged inside the block.

    Args:
        **kwargs: Context values

    Yields:
        None
    """
    with structlog.contextvars.bound_contextvars(**kwargs):
        yield


def set_log_level(level: str) -> None:
    """Change the root logging level at runtime."""
    logging.getLogger().setLevel(getattr(logging, level.upper()))


def clear_context() -> None:
    """Drop every context variable bound for the current task."""
    structlog.contextvars.clear_contextvars()
