import logging
import sys

from config import settings

LOG_FORMAT = "[Storefront - %(asctime)s] %(levelname)s: %(message)s"


def setup_logging() -> logging.Logger:
    root = logging.getLogger("storefront")
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        root.addHandler(handler)
    root.setLevel(settings.log_level.upper())
    return root


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(f"storefront.{name}")
