"""Logging configuration for the k3sctl package."""
import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def setup_logging(debug_mode: bool = False, settings=None) -> None:
    """Configure root logging for a CLI run.

    Args:
        debug_mode: Force DEBUG level regardless of settings
        settings: Optional ``LoggingSettings`` with level and file rotation
    """
    level_name = settings.level if settings is not None else "INFO"
    log_level = logging.DEBUG if debug_mode else getattr(logging, level_name, logging.INFO)

    handlers = [logging.StreamHandler(sys.stderr)]
    if settings is not None and settings.file:
        log_file = Path(settings.file).expanduser().absolute()
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(RotatingFileHandler(
            filename=log_file,
            maxBytes=settings.max_size_mb * 1024 * 1024,
            backupCount=settings.backup_count
        ))

    logging.basicConfig(level=log_level, format=LOG_FORMAT, handlers=handlers, force=True)

    # Disable debug logging for noisy libraries
    if not debug_mode:
        logging.getLogger('urllib3').setLevel(logging.WARNING)
        logging.getLogger('kubernetes').setLevel(logging.WARNING)

