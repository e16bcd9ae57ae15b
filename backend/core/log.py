import logging
import sys

from backend.core.conf import settings

# Third-party loggers that are too chatty at INFO
_QUIET_LOGGERS = ('sqlalchemy.engine', 'httpx', 'stripe')


def setup_logging() -> None:
    """
    Configure the root logger for the service.

    Module loggers are created with ``logging.getLogger(__name__)`` and tag
    their messages (``[CREDITS]``, ``[LEDGER]``...), so a single stream
    handler on the root logger is enough.
    """
    root = logging.getLogger()
    root.setLevel(settings.LOG_STD_LEVEL)

    for handler in list(root.handlers):
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(settings.LOG_FORMAT, datefmt=settings.LOG_DATE_FORMAT))
    root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
