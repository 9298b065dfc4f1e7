"""
TigerDorm process setup.

This module wires configuration, logging and the state store for
processes that embed TigerDorm (the API service, admin tooling):

    config = ServerConfig.from_env()
    setup_logging(config)
    store = await open_store(config)

Configuration is entirely via environment variables.
See config.py for all available settings.
"""

from __future__ import annotations

import logging

import json_log_formatter

from .config import ServerConfig
from .feed import ChangeFeed
from .store.state_store import StateStore

logger = logging.getLogger(__name__)


def setup_logging(config: ServerConfig) -> None:
    """Configure root logging based on configuration.

    Args:
        config: Server configuration
    """
    level = getattr(logging, config.observability.log_level.upper(), logging.INFO)

    if config.observability.log_format == "json":
        formatter: logging.Formatter = json_log_formatter.JSONFormatter()
    else:
        formatter = logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")

    handler = logging.StreamHandler()
    handler.setFormatter(formatter)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers = [handler]


async def open_store(config: ServerConfig, feed: ChangeFeed | None = None) -> StateStore:
    """Create the state store and make sure its schema exists.

    Args:
        config: Server configuration
        feed: Shared change feed (a new one sized from config if omitted)

    Returns:
        Initialized StateStore
    """
    config.log_config()
    store = StateStore.from_config(config, feed=feed)
    await store.initialize()
    return store
