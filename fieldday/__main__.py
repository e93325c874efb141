from __future__ import annotations

import logging
import sys

from PySide6 import QtAsyncio, QtCore

from fieldday.app_storage import load_settings
from fieldday.bootstrap import run_backups
from fieldday.constants import APP_NAME
from fieldday.core.logging import setup_logging

LOGGER = logging.getLogger(APP_NAME)


def main() -> None:
    settings = load_settings()
    log_file = setup_logging(settings.get("logging", {}).get("level", "INFO"), console=True)
    LOGGER.info("Starting fieldday backups (log: %s)", log_file)

    app = QtCore.QCoreApplication.instance() or QtCore.QCoreApplication(sys.argv)
    app.setApplicationName(APP_NAME)
    QtAsyncio.run(run_backups(settings), keep_running=False, handle_sigint=True)


if __name__ == "__main__":
    main()
