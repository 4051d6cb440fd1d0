import logging

from app.core.config import get_settings

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(level: str | None = None) -> None:
    resolved = (level or get_settings().log_level or "INFO").upper()
    root = logging.getLogger()
    if not any(getattr(handler, "_building_monitor", False) for handler in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._building_monitor = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(resolved)
    logging.getLogger("app").setLevel(resolved)
    # per-message paho logging is too chatty at INFO
    logging.getLogger("paho").setLevel(logging.WARNING)
