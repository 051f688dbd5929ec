import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from .config import Settings

LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"

# client libraries that log every request at DEBUG
NOISY_LOGGERS = ("httpx", "httpcore", "aiosqlite", "asyncio")


def configure_logging(settings: Settings):
    """Attach a rotating file handler to the root logger.

    Relative LOG_FILE paths resolve under `movever/logs/`. Calling this more
    than once does not add a second handler.
    """
    log_file = Path(settings.LOG_FILE)
    if not log_file.is_absolute():
        log_file = Path(__file__).resolve().parent / "logs" / log_file
    log_file.parent.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(settings.LOG_LEVEL.upper())
    if any(getattr(h, "baseFilename", None) == str(log_file) for h in root.handlers):
        return

    handler = RotatingFileHandler(log_file, maxBytes=settings.LOG_MAX_BYTES, backupCount=3)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%Y-%m-%dT%H:%M:%S"))
    root.addHandler(handler)
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
