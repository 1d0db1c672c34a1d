"""
Centralized logging configuration for the memory engine.
"""

import logging
import sys
from typing import Optional

from .config import AppConfig

# Third-party loggers that are chatty at INFO/DEBUG
_NOISY_LOGGERS = ('neo4j', 'botocore', 'boto3', 'urllib3')


def setup_logging(config: Optional[AppConfig] = None) -> None:
    """
    Setup centralized logging configuration.

    Background workers log from their own threads, so the thread name is part of the format.

    Args:
        config: AppConfig instance, uses default if None
    """
    if config is None:
        from .config import config as default_config
        config = default_config

    level = getattr(logging, config.log_level.upper(), logging.INFO)
    logging.basicConfig(level=level,
                        format='%(asctime)s - %(name)s - %(levelname)s - [%(threadName)s] %(message)s',
                        handlers=[logging.StreamHandler(sys.stdout)])

    if level < logging.WARNING:
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)


def get_logger(name: str, config: Optional[AppConfig] = None) -> logging.Logger:
    """
    Get a logger with the configured level.

    Args:
        name: Logger name (usually __name__)
        config: AppConfig instance, uses default if None

    Returns:
        Configured logger instance
    """
    if config is None:
        from .config import config as default_config
        config = default_config

    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))
    return logger
