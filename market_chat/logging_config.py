import logging
import sys
from typing import Optional

from market_chat.config import get_settings

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(name)s: %(message)s"

_configured = False


def setup_logging(level: Optional[str] = None) -> None:
    """Configure the ``market_chat`` logger tree once per process."""
    global _configured
    if _configured:
        return
    level_name = (level or get_settings().log_level).upper()

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))

    root = logging.getLogger("market_chat")
    root.setLevel(getattr(logging, level_name, logging.INFO))
    root.addHandler(handler)
    root.propagate = False

    # Motor/PyMongo heartbeat chatter
    logging.getLogger("pymongo").setLevel(logging.WARNING)
    _configured = True
