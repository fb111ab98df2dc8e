"""Core runtime primitives."""

from .config import ConfigError, load_config_data
from .exceptions import PermanentError, RelaycordError, TransientError
from .logging_utils import log_event, setup_logger

__all__ = [
    "ConfigError",
    "load_config_data",
    "RelaycordError",
    "TransientError",
    "PermanentError",
    "log_event",
    "setup_logger",
]
