"""
Logging
Every service logs under the "n8n" logger hierarchy. A single stderr handler
on the parent carries the shared format, so one call to configure_logging()
sets the level for the validator, deployer, auto-heal queue and gateway.
"""
import logging
import sys
from typing import Optional, Union

ROOT_LOGGER = "n8n"
LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_handler: Optional[logging.Handler] = None


def _install_handler() -> logging.Logger:
    global _handler
    root = logging.getLogger(ROOT_LOGGER)
    if _handler is None:
        # stderr: stdout carries the MCP stdio transport
        _handler = logging.StreamHandler(sys.stderr)
        _handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        root.addHandler(_handler)
        root.setLevel(logging.INFO)
    return root


def resolve_level(level: Union[int, str, None], debug: bool = False) -> int:
    """Accept a numeric level or a name such as "warning"; None means INFO, or DEBUG in debug mode."""
    if level is None or (isinstance(level, str) and not level.strip()):
        return logging.DEBUG if debug else logging.INFO
    if isinstance(level, int):
        return level
    resolved = logging.getLevelName(level.strip().upper())
    if not isinstance(resolved, int):
        raise ValueError(f"Unknown log level: {level!r}")
    return resolved


def configure_logging(level: Union[int, str, None] = None, debug: bool = False) -> logging.Logger:
    root = _install_handler()
    root.setLevel(resolve_level(level, debug))
    return root


def get_logger(service: str) -> logging.Logger:
    _install_handler()
    return logging.getLogger(f"{ROOT_LOGGER}.{service}")


validator_logger = get_logger("validator")
quality_logger = get_logger("quality")
deploy_logger = get_logger("deploy")
autoheal_logger = get_logger("autoheal")
store_logger = get_logger("store")
gateway_logger = get_logger("gateway")
