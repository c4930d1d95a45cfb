import logging
import os
import time
from pathlib import Path
from typing import Optional, Union

import constants
from infra.errors import ConfigError, ErrorCodes


def setup_logging(level: Optional[str] = None):
    """Setup root logging for command line and embedding callers."""
    level = (level or os.getenv(constants.ENV_LOG_LEVEL, "INFO")).upper()
    if not isinstance(logging.getLevelName(level), int):
        raise ConfigError(f"Unknown log level: {level}", ErrorCodes.CONFIG_INVALID_VALUE)
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler()
        ]
    )

    # Set specific log levels
    logging.getLogger("yaml").setLevel(logging.WARNING)
    logging.getLogger("networkx").setLevel(logging.WARNING)


def cleanup_old_logs(log_dir: Path, lifespan_seconds: int = constants.LOG_FILE_LIFESPAN_SECONDS) -> int:
    """Deletes hunt log files older than the specified lifespan. Returns the number removed."""
    if not log_dir.is_dir():
        return 0

    removed = 0
    cutoff = time.time() - lifespan_seconds
    for log_file in log_dir.glob(f"{constants.LOG_FILE_PREFIX}*.log"):
        try:
            if log_file.stat().st_mtime < cutoff:
                log_file.unlink()
                removed += 1
        except OSError as e:
            logging.getLogger(__name__).warning("Error deleting log %s: %s", log_file.name, e)
    return removed


def get_file_logger(name: str, log_dir: Union[str, Path]) -> logging.Logger:
    """Initializes and returns a logger that also writes to a dated file.

    - Logs to hunt_<YYYYMMDD>.log inside log_dir.
    - Cleans up logs older than 2 days on initialization.
    """
    log_dir = Path(log_dir)
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigError(f"Cannot use log directory {log_dir}: {e}", ErrorCodes.LOG_DIR_UNUSABLE) from e
    cleanup_old_logs(log_dir)

    logger = logging.getLogger(f"hunt.{name}")
    log_filename = log_dir / f"{constants.LOG_FILE_PREFIX}{time.strftime('%Y%m%d')}.log"
    for handler in logger.handlers:
        if isinstance(handler, logging.FileHandler) and Path(handler.baseFilename) == log_filename.resolve():
            return logger  # Avoid adding duplicate handlers

    logger.setLevel(logging.INFO)

    try:
        handler = logging.FileHandler(log_filename, encoding=constants.ENCODING_UTF8)
    except OSError as e:
        raise ConfigError(f"Cannot open log file {log_filename}: {e}", ErrorCodes.LOG_DIR_UNUSABLE) from e
    handler.setLevel(logging.INFO)
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)

    return logger
