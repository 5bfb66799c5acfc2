import sys
from typing import Literal
from loguru import logger

LOG_PREFIX = "mcpchat"

_COMPONENT_FORMAT = "<level>{level: <8}</level> | <cyan>{extra[module]}</cyan> | {message}"
_PLAIN_FORMAT = "<level>{level: <8}</level> | {message}"

_configured = False


def get_logger(name: str) -> "logger":
    """Logger tagged with ``mcpchat.<name>`` so stderr lines show which part of the engine spoke.

    Binding only attaches ``extra["module"]``; every component still writes
    through loguru's one process-wide logger.
    """
    return logger.bind(module=f"{LOG_PREFIX}.{name}")


def _has_component(record) -> bool:
    return "module" in record["extra"]


def _is_untagged(record) -> bool:
    # Audit records go to the JSONL sink only
    extra = record["extra"]
    return "module" not in extra and not extra.get("audit")


def configure_logging(
    level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = "INFO",
) -> None:
    """Route engine logs to stderr at ``level``.

    stdout stays free for chat output. Only the first call installs sinks;
    later calls leave the existing ones alone.
    """
    global _configured
    if _configured:
        return

    logger.remove()
    logger.add(sys.stderr, format=_COMPONENT_FORMAT, level=level, colorize=True, filter=_has_component)
    logger.add(sys.stderr, format=_PLAIN_FORMAT, level=level, colorize=True, filter=_is_untagged)
    _configured = True
