"""
Logging setup for the freelance manager API.

Records from the ``/api`` routes, the repository layer (``db_manager``) and
Flask's request log all go to stdout in one format, tagged with the service
name. The SQL statement log is kept at WARNING unless ``LOG_LEVEL=DEBUG``.
"""

import logging
import sys

SERVICE_NAME = "freelance-manager"
SQL_LOGGER = "sqlalchemy.engine"


def resolve_level(log_level: str) -> int:
    """Map a ``LOG_LEVEL`` value to a logging level, falling back to INFO."""
    level = logging.getLevelName(str(log_level).upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logging(log_level: str = "INFO", service_name: str = SERVICE_NAME) -> None:
    """
    Configure the root logger once for the process.

    Args:
        log_level: LOG_LEVEL from the app config (DEBUG, INFO, WARNING, ERROR)
        service_name: Tag written on every record
    """
    level = resolve_level(log_level)
    logging.basicConfig(
        level=level,
        format=f"%(asctime)s [{service_name}] %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    logging.getLogger(SQL_LOGGER).setLevel(logging.INFO if level <= logging.DEBUG else logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
