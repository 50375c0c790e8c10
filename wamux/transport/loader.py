"""
Loading of the transport client factory.

The factory is configured as a dotted path ``package.module:callable`` and is
called as ``factory(account_id, settings)`` for every account session.
"""

import importlib
import logging
import re
from typing import Callable

from wamux.config import Settings
from wamux.transport.base import TransportClient

logger = logging.getLogger(__name__)

TransportFactory = Callable[[str, Settings], TransportClient]

FACTORY_PATH_PATTERN = re.compile(
    r"^[a-zA-Z_][a-zA-Z0-9_]*(\.[a-zA-Z_][a-zA-Z0-9_]*)*:[a-zA-Z_][a-zA-Z0-9_]*$"
)
MAX_FACTORY_PATH_LENGTH = 256


def _validate_factory_path(path: str) -> str:
    """
    Validate a factory path before importing anything.

    Raises:
        ValueError: If the path is malformed
    """
    if not path or not isinstance(path, str):
        raise ValueError("Transport factory path must be a non-empty string")

    path = path.strip()
    if len(path) > MAX_FACTORY_PATH_LENGTH:
        raise ValueError(
            f"Transport factory path too long: {len(path)} characters (max: {MAX_FACTORY_PATH_LENGTH})"
        )
    if "\x00" in path:
        raise ValueError("Transport factory path cannot contain null bytes")
    if not FACTORY_PATH_PATTERN.match(path):
        raise ValueError(
            f"Invalid transport factory path '{path}'. Expected format 'package.module:callable'"
        )
    return path


def load_transport_factory(path: str) -> TransportFactory:
    """
    Import and return the transport factory named by ``path``.

    Raises:
        ValueError: If the path is malformed or does not name a callable
        ImportError: If the module cannot be imported
    """
    path = _validate_factory_path(path)
    module_name, attr = path.split(":", 1)
    module = importlib.import_module(module_name)
    factory = getattr(module, attr, None)
    if factory is None or not callable(factory):
        raise ValueError(f"Transport factory '{path}' is not callable")
    logger.info(f"Loaded transport factory {path}")
    return factory
