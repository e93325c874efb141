from __future__ import annotations

import sys
from pathlib import Path

import pytest

# Ensure the repository root is importable when running pytest from any CWD.
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


@pytest.fixture(autouse=True, scope="session")
def qt_app():
    # Signals work without an event loop, but ensure the Qt application exists.
    from PySide6 import QtCore

    app = QtCore.QCoreApplication.instance() or QtCore.QCoreApplication([])
    yield app
