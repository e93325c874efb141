import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from fieldday.app_storage import app_dir
from fieldday.constants import APP_NAME

_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


def setup_logging(level: str = "INFO", *, console: bool = False) -> Path:
    r"""Configure rotating file logs under %APPDATA%\fieldday\logs."""
    log_dir = app_dir() / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "fieldday.log"

    logger = logging.getLogger(APP_NAME)
    logger.setLevel(getattr(logging, str(level).upper(), logging.INFO))

    # called once per process in practice; guard against duplicate handlers anyway
    if not logger.handlers:
        fmt = logging.Formatter(_FORMAT)
        handler = RotatingFileHandler(str(log_file), maxBytes=1_000_000, backupCount=5, encoding="utf-8")
        handler.setFormatter(fmt)
        logger.addHandler(handler)

        if console:
            stream = logging.StreamHandler(sys.stdout)
            stream.setFormatter(fmt)
            logger.addHandler(stream)

    return log_file


def get_logger() -> logging.Logger:
    return logging.getLogger(APP_NAME)
