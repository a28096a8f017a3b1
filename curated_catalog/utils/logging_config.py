import logging
import sys
from pathlib import Path
from typing import Optional

LOGGER_NAME = "curated_catalog"

FILE_FORMAT = "%(asctime)s [%(levelname)s] %(threadName)s %(name)s: %(message)s"

# Request-level chatter from the HTTP stack
_NOISY_LOGGERS = ("urllib3", "requests")


def setup_logging(log_file: Optional[str] = None, level: str = "INFO") -> logging.Logger:
    """Send catalog logs to stderr, and also to ``log_file`` when set.

    Calling it again only changes the level.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    if logger.handlers:
        return logger

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))
    logger.addHandler(console)

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        logger.addHandler(file_handler)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    return logger
