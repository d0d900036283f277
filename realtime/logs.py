import logging
from typing import List, Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
PACKAGE_LOGGERS = ("realtime", "generators")


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> List[logging.Logger]:
    """
    Attach a console handler (and optionally a file handler) to the package loggers.
    Calling it again replaces the handlers instead of stacking them.
    """
    formatter = logging.Formatter(LOG_FORMAT)
    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if log_file:
        handlers.append(logging.FileHandler(log_file))
    for h in handlers:
        h.setFormatter(formatter)

    loggers = []
    for name in PACKAGE_LOGGERS:
        logger = logging.getLogger(name)
        logger.setLevel(getattr(logging, level.upper()))
        for handler in logger.handlers[:]:
            logger.removeHandler(handler)
            handler.close()
        for h in handlers:
            logger.addHandler(h)
        logger.propagate = False
        loggers.append(logger)
    return loggers
