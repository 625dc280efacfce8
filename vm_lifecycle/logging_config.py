import logging
import sys

from vm_lifecycle.config import get_settings


_HANDLER_FLAG = "_vm_lifecycle_handler"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(threadName)s] %(name)s: %(message)s"


def configure_logging(level: str | int | None = None) -> None:
    """Attach a single stdout handler to the root logger.

    Safe to call more than once; an existing handler is reconfigured in place.
    """
    if level is None:
        level = get_settings().log_level
    if isinstance(level, str):
        level = logging.getLevelName(level.upper())
        if not isinstance(level, int):
            level = logging.INFO

    root = logging.getLogger()
    formatter = logging.Formatter(LOG_FORMAT)
    handler = next(
        (h for h in root.handlers if getattr(h, _HANDLER_FLAG, False)), None
    )
    if handler is None:
        handler = logging.StreamHandler(sys.stdout)
        setattr(handler, _HANDLER_FLAG, True)
        root.addHandler(handler)
    handler.setFormatter(formatter)
    handler.setLevel(level)
    root.setLevel(level)
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
