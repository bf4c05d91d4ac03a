import logging
import os
from rich.logging import RichHandler


def setup_logger(name: str = "scheduler") -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        level = os.getenv("LOG_LEVEL", "INFO").upper()
        logger.setLevel(getattr(logging, level, logging.INFO))
        handler = RichHandler(rich_tracebacks=True, show_time=True, show_path=False)
        fmt = logging.Formatter("%(name)s - %(message)s")
        handler.setFormatter(fmt)
        logger.addHandler(handler)
    return logger
