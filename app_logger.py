import logging
import os

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
_DEFAULT_LEVEL = os.getenv("CANTEEN_LOG_LEVEL", "INFO").upper()


def setup_logging(level: str | None = None) -> logging.Logger:
    level_value = getattr(logging, (level or _DEFAULT_LEVEL), logging.INFO)

    logger = logging.getLogger("canteen")
    logger.setLevel(level_value)

    # Avoid duplicate console handlers when create_app() runs more than once
    if not any(isinstance(h, logging.StreamHandler) for h in logger.handlers):
        ch = logging.StreamHandler()
        ch.setFormatter(logging.Formatter(LOG_FORMAT))
        logger.addHandler(ch)

    for h in logger.handlers:
        h.setLevel(level_value)
    return logger


def get_logger(name: str | None = None) -> logging.Logger:
    base = logging.getLogger("canteen")
    return base.getChild(name) if name else base
